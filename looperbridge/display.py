"""
Remote display protocol - requests from LED display clients.

Every request carries where to answer: (reply_host, reply_port, reply_address).
Requests are accepted at /loop4r/<request> and at the bare /<request>.

    ping                     → reply_address(own_reply_url, version, led_count, pid)
    leds                     → reply_address(index, on, timer, visual), once per LED
    display                  → /display(selected_loop)
    register_auto_update     → start /led and /display broadcasts to this client
    unregister_auto_update   → stop broadcasts

register/unregister also accept (reply_host, reply_port) without an address.
Replies to ping/leds/display use a short-lived client that is closed right
after sending. Only one client receives broadcasts at a time.
"""

import os
from typing import Callable, Optional, Tuple

from pythonosc import dispatcher

from looperbridge.leds import ADDRESS_DISPLAY, led_message_args
from looperbridge.log import get_logger
from looperbridge.osc import OscClient, post_to, validate_port
from looperbridge.state import LED_COUNT, BridgeState, DisplayClient

logger = get_logger(__name__)

ADDRESS_PREFIX = "/loop4r"

REQUEST_PING = "ping"
REQUEST_LEDS = "leds"
REQUEST_DISPLAY = "display"
REQUEST_REGISTER = "register_auto_update"
REQUEST_UNREGISTER = "unregister_auto_update"


class RemoteDisplayProtocolHandler:
    """Answers display client requests and manages the broadcast client.

    Args:
        state: Shared bridge state (LEDs, selected loop, display client)
        get_reply_url: Returns this bridge's own reply URL
        version: Version string reported to ping requests
        client_factory: Creates an OSC client for (host, port)
        pid: Process id reported to ping requests, defaults to os.getpid()
    """

    def __init__(self, state: BridgeState, get_reply_url: Callable[[], str], version: str,
                 client_factory: Callable = OscClient, pid: Optional[int] = None):
        self.state = state
        self.get_reply_url = get_reply_url
        self.version = version
        self.client_factory = client_factory
        self.pid = pid if pid is not None else os.getpid()

    def map(self, disp: dispatcher.Dispatcher, post: Callable) -> None:
        """Map every request at its prefixed and bare address."""
        handlers = {
            REQUEST_PING: self.handle_ping,
            REQUEST_LEDS: self.handle_leds,
            REQUEST_DISPLAY: self.handle_display,
            REQUEST_REGISTER: self.handle_register,
            REQUEST_UNREGISTER: self.handle_unregister,
        }
        for request, handler in handlers.items():
            disp.map(f"{ADDRESS_PREFIX}/{request}", post_to(post, handler))
            disp.map(f"/{request}", post_to(post, handler))

    # ------------------------------------------------------------------
    # Request handlers
    # ------------------------------------------------------------------

    def handle_ping(self, address, *args):
        target = self._parse_request(address, args)
        if target is None:
            return
        host, port, reply_address = target
        self._reply(host, port, [
            (reply_address, (self.get_reply_url(), self.version, LED_COUNT, self.pid)),
        ])

    def handle_leds(self, address, *args):
        target = self._parse_request(address, args)
        if target is None:
            return
        host, port, reply_address = target
        self._reply(host, port, [(reply_address, led_message_args(led)) for led in self.state.leds])

    def handle_display(self, address, *args):
        target = self._parse_request(address, args)
        if target is None:
            return
        host, port, _ = target
        self._reply(host, port, [(ADDRESS_DISPLAY, (self.state.selected_loop,))])

    def handle_register(self, address, *args):
        target = self._parse_request(address, args, address_optional=True)
        if target is None:
            return
        host, port, reply_address = target

        current = self.state.display_client
        if current is not None and (current.host, current.port) == (host, port):
            current.reply_address = reply_address
            logger.debug(f"Display client {host}:{port} already registered")
            return

        if current is not None:
            self.close()

        client = self._connect(host, port)
        if client is None:
            return
        self.state.display_client = DisplayClient(host, port, reply_address, client)
        logger.info(f"Display client registered at {host}:{port}")

    def handle_unregister(self, address, *args):
        if self._parse_request(address, args, address_optional=True) is None:
            return
        if self.state.display_client is None:
            return
        self.close()

    def close(self) -> None:
        """Close and forget the registered display client."""
        current = self.state.display_client
        if current is None:
            return
        self.state.display_client = None
        if current.sender is not None:
            current.sender.close()
        logger.info(f"Display client {current.host}:{current.port} unregistered")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _parse_request(self, address, args,
                       address_optional: bool = False) -> Optional[Tuple[str, int, Optional[str]]]:
        self.state.stats.increment('display_requests')

        accepted = (2, 3) if address_optional else (3,)
        if len(args) not in accepted:
            self._reject(address, f"expected {' or '.join(map(str, accepted))} args, got {len(args)}")
            return None

        host, port = args[0], args[1]
        reply_address = args[2] if len(args) == 3 else None
        if not isinstance(host, str):
            self._reject(address, f"reply host must be a string, got {host!r}")
            return None
        try:
            validate_port(port)
        except ValueError as e:
            self._reject(address, str(e))
            return None
        if reply_address is not None and (not isinstance(reply_address, str)
                                          or not reply_address.startswith("/")):
            self._reject(address, f"reply address must be an OSC path, got {reply_address!r}")
            return None
        return host, port, reply_address

    def _reject(self, address, reason: str) -> None:
        logger.warning(f"Invalid {address} request: {reason}")
        self.state.stats.increment('invalid_messages')

    def _connect(self, host: str, port: int):
        try:
            return self.client_factory(host, port)
        except OSError as e:
            logger.warning(f"Could not connect to display client {host}:{port}: {e}")
            return None

    def _reply(self, host: str, port: int, messages) -> None:
        client = self._connect(host, port)
        if client is None:
            return
        with client:
            try:
                for reply_address, reply_args in messages:
                    client.send_message(reply_address, list(reply_args))
            except OSError as e:
                logger.warning(f"Reply to display client {host}:{port} failed: {e}")
