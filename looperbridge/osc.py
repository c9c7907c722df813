"""
OSC infrastructure shared by the looper session and the display protocol.

Classes:
    - OscClient: SimpleUDPClient that can be closed and used as a context manager
    - ReuseAddrBlockingOSCUDPServer: Blocking OSC server with SO_REUSEADDR
    - OscEndpoint: Send client + background listener pair for the looper session
    - MessageStatistics: Thread-safe message counter with formatted output

Functions:
    - reply_url(port): Reply URL advertised to the looper engine and display clients
    - validate_port(port): Validate port in range 1-65535

Constants:
    - DEFAULT_SEND_PORT: SooperLooper's default OSC port (9951)
    - DEFAULT_RECEIVE_PORT: Port this bridge listens on (9000)
    - LOOPBACK_HOST: Host the looper engine is reached on
"""

import socket
import threading
from typing import Callable, Optional

from pythonosc import dispatcher
from pythonosc import osc_server
from pythonosc import udp_client

from looperbridge.log import get_logger

logger = get_logger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_SEND_PORT = 9951       # SooperLooper listens here
DEFAULT_RECEIVE_PORT = 9000    # Replies from the engine and display requests

LOOPBACK_HOST = "127.0.0.1"
LISTEN_HOST = "0.0.0.0"

# Listener poll interval, bounds how long close() waits on the server thread
SERVER_POLL_INTERVAL = 0.05

# Return paths requested from the looper engine
PATH_PINGACK = "/pingack"
PATH_HEARTBEAT = "/heartbeat"
PATH_CTRL = "/ctrl"

# Port validation range
PORT_MIN = 1
PORT_MAX = 65535


def reply_url(port: int) -> str:
    """Build the reply URL the looper engine sends responses to.

    Examples:
        >>> reply_url(9000)
        'osc.udp://localhost:9000/'
    """
    return f"osc.udp://localhost:{port}/"


def validate_port(port: int) -> None:
    """Validate UDP port number is in valid range.

    Raises:
        ValueError: If port is outside range 1-65535
    """
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError(f"Port must be an integer, got {type(port).__name__}")
    if port < PORT_MIN or port > PORT_MAX:
        raise ValueError(f"Port must be in range {PORT_MIN}-{PORT_MAX}, got {port}")


# ============================================================================
# CLIENT / SERVER CLASSES
# ============================================================================

class OscClient(udp_client.SimpleUDPClient):
    """UDP client that owns its socket and can be closed explicitly.

    Used both for the persistent connection to the looper engine and for the
    short-lived replies to display clients.

    Args:
        address: Target host name or IP address
        port: Target UDP port
    """

    def __init__(self, address: str, port: int):
        super().__init__(address, port)
        self.address = address
        self.port = port

    def close(self):
        """Close the UDP socket."""
        if hasattr(self, '_sock') and self._sock:
            self._sock.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class ReuseAddrBlockingOSCUDPServer(osc_server.BlockingOSCUDPServer):
    """BlockingOSCUDPServer that sets SO_REUSEADDR before binding.

    Lets the listener rebind its port straight after a session reset closed
    the previous socket.
    """

    def server_bind(self):
        self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.socket.bind(self.server_address)
        self.server_address = self.socket.getsockname()


class OscEndpoint:
    """Send/receive pair used for the looper engine session.

    The send client and the listener are opened independently so that the
    supervisor can retry whichever half failed. A half is "open" when its
    port marker is set.

    Attributes:
        send_port (Optional[int]): Port of the open send client, None if closed
        receive_port (Optional[int]): Port of the open listener, None if closed
    """

    def __init__(self, disp: dispatcher.Dispatcher, host: str = LOOPBACK_HOST,
                 listen_host: str = LISTEN_HOST):
        self.dispatcher = disp
        self.host = host
        self.listen_host = listen_host
        self.send_port: Optional[int] = None
        self.receive_port: Optional[int] = None
        self._client: Optional[OscClient] = None
        self._server: Optional[ReuseAddrBlockingOSCUDPServer] = None
        self._server_thread: Optional[threading.Thread] = None

    @property
    def is_open(self) -> bool:
        return self.send_port is not None and self.receive_port is not None

    def open_sender(self, port: int) -> bool:
        """Open the send client to host:port. Returns True on success."""
        if self.send_port is not None:
            return True
        try:
            self._client = OscClient(self.host, port)
        except OSError as e:
            logger.error(f"Could not open OSC send port {port}: {e}")
            return False
        self.send_port = port
        logger.info(f"Opened OSC send port {self.host}:{port}")
        return True

    def open_receiver(self, port: int) -> bool:
        """Bind the listener on port and serve it from a daemon thread."""
        if self.receive_port is not None:
            return True
        try:
            self._server = ReuseAddrBlockingOSCUDPServer((self.listen_host, port), self.dispatcher)
        except OSError as e:
            logger.error(f"Could not listen on OSC port {port}: {e}")
            return False
        self._server_thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={'poll_interval': SERVER_POLL_INTERVAL},
            daemon=True,
        )
        self._server_thread.start()
        self.receive_port = self._server.server_address[1]
        logger.info(f"Listening for OSC on port {self.receive_port}")
        return True

    def send(self, address: str, *args) -> bool:
        """Send a message to the looper engine. Returns False if not sent."""
        if self._client is None:
            logger.debug(f"OSC send client not open, dropping {address}")
            return False
        try:
            self._client.send_message(address, list(args))
        except OSError as e:
            logger.warning(f"Failed to send {address}: {e}")
            return False
        return True

    def close(self) -> None:
        """Close both halves and clear the port markers."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            self._server_thread = None
        if self._client is not None:
            self._client.close()
            self._client = None
        self.send_port = None
        self.receive_port = None


def post_to(post: Callable, handler: Callable) -> Callable:
    """Wrap a dispatcher handler so it runs on the event queue.

    pythonosc calls handlers from its server thread; the wrapped handler only
    enqueues the call.
    """
    def enqueue(address, *args):
        post(handler, address, *args)
    return enqueue


# ============================================================================
# MESSAGE STATISTICS
# ============================================================================

class MessageStatistics:
    """Thread-safe message statistics tracker with formatted output.

    Typical counters:
        - pedal_events: Pedal down/up events decoded
        - ctrl_messages: /ctrl updates applied
        - invalid_messages: Messages that failed validation
        - session_resets: Heartbeat losses
        - display_requests: Requests from display clients

    Examples:
        >>> stats = MessageStatistics()
        >>> stats.increment('ctrl_messages')
        >>> stats.get('ctrl_messages')
        1
    """

    def __init__(self):
        self.counters = {}
        self.lock = threading.Lock()

    def increment(self, counter_name: str, amount: int = 1) -> None:
        """Increment a counter by specified amount (thread-safe)."""
        with self.lock:
            self.counters[counter_name] = self.counters.get(counter_name, 0) + amount

    def get(self, counter_name: str) -> int:
        """Get current value of a counter, 0 if it doesn't exist."""
        with self.lock:
            return self.counters.get(counter_name, 0)

    def format_stats(self, title: str = "STATISTICS") -> str:
        """Format all counters as a block of text, sorted by name."""
        with self.lock:
            snapshot = dict(self.counters)

        lines = ["=" * 60, title, "=" * 60]
        for name in sorted(snapshot.keys()):
            display_name = name.replace('_', ' ').title()
            lines.append(f"{display_name}: {snapshot[name]}")
        lines.append("=" * 60)
        return "\n".join(lines)

    def log_stats(self, title: str = "STATISTICS") -> None:
        """Log the formatted statistics block at INFO."""
        for line in self.format_stats(title).splitlines():
            logger.info(line)
