"""
Connection supervisor - periodic reconciliation of every transport.

Runs once per tick on the event loop:

1. Drop the MIDI input if its device vanished.
2. (Re)open the MIDI input, and the LED output device if one is configured.
3. Create the virtual MIDI output if it does not exist yet.
4. If the looper session is not established, open the OSC send client and
   listener and send /ping(reply_url, "/pingack").
5. Otherwise run the heartbeat countdown:
       counter <= -5  → session lost, close OSC and start over next tick
       counter == 0   → /ping(reply_url, "/heartbeat"), then count down
       otherwise      → count down

Any /pingack, /heartbeat or /ctrl from the engine sets the counter back to 5,
so a live engine never lets it reach 0 for long.
"""

import sys
from typing import Callable, Optional

from looperbridge.log import get_logger
from looperbridge.midi import MIDI_ERRORS, MidiPortWatcher, virtual_ports_supported
from looperbridge.osc import PATH_HEARTBEAT, PATH_PINGACK, OscEndpoint, reply_url
from looperbridge.session import LooperSession
from looperbridge.state import HEARTBEAT_LOST_THRESHOLD, HEARTBEAT_RESET, BridgeState

logger = get_logger(__name__)


class ConnectionSupervisor:
    """Keeps MIDI ports and the looper OSC session alive.

    Args:
        state: Shared bridge state
        session: Looper session to reset when the engine goes silent
        endpoint: OSC send/receive pair for the engine
        input_watcher: Watcher for the pedal controller's MIDI input
        send_port: Engine OSC port
        receive_port: Local OSC listen port
        virtual_output_name: Name of the virtual MIDI output to create
        open_virtual_output: Creates a virtual output port by name
        led_watcher: Optional watcher for a MIDI LED output device
        on_led_output_connected: Called after the LED device (re)connects
        platform: sys.platform value, decides virtual port support
    """

    def __init__(self, state: BridgeState, session: LooperSession, endpoint: OscEndpoint,
                 input_watcher: MidiPortWatcher, send_port: int, receive_port: int,
                 virtual_output_name: str, open_virtual_output: Callable[[str], object],
                 led_watcher: Optional[MidiPortWatcher] = None,
                 on_led_output_connected: Optional[Callable[[], None]] = None,
                 platform: str = sys.platform):
        self.state = state
        self.session = session
        self.endpoint = endpoint
        self.input_watcher = input_watcher
        self.led_watcher = led_watcher
        self.on_led_output_connected = on_led_output_connected
        self.send_port = send_port
        self.receive_port = receive_port
        self.virtual_output_name = virtual_output_name
        self._open_virtual_output = open_virtual_output

        self.virtual_output = None
        self.virtual_output_enabled = virtual_ports_supported(platform)
        if not self.virtual_output_enabled:
            logger.warning("Virtual MIDI output ports are not supported on Windows")
        self._virtual_output_failed = False

        self.established = False

    def reply_url(self) -> str:
        return reply_url(self.endpoint.receive_port or self.receive_port)

    def tick(self) -> None:
        self.check_midi()
        self.check_virtual_output()
        if not self.established:
            self.establish_session()
        else:
            self.check_heartbeat()

    # ------------------------------------------------------------------
    # MIDI
    # ------------------------------------------------------------------

    def check_midi(self) -> None:
        self.input_watcher.reconcile()
        self.state.midi_connected = self.input_watcher.is_open

        if self.led_watcher is not None:
            changed = self.led_watcher.reconcile()
            if changed and self.led_watcher.is_open and self.on_led_output_connected:
                self.on_led_output_connected()

    def check_virtual_output(self) -> None:
        if self.virtual_output is not None or not self.virtual_output_enabled:
            return
        try:
            self.virtual_output = self._open_virtual_output(self.virtual_output_name)
        except MIDI_ERRORS as e:
            if not self._virtual_output_failed:
                logger.error(f"Couldn't create virtual MIDI output port "
                             f"\"{self.virtual_output_name}\": {e}")
                self._virtual_output_failed = True
            return
        self._virtual_output_failed = False
        logger.info(f"Created virtual MIDI output port \"{self.virtual_output_name}\"")

    # ------------------------------------------------------------------
    # OSC session
    # ------------------------------------------------------------------

    def establish_session(self) -> None:
        sender_ok = self.endpoint.open_sender(self.send_port)
        receiver_ok = self.endpoint.open_receiver(self.receive_port)
        if not (sender_ok and receiver_ok):
            return

        self.endpoint.send("/ping", self.reply_url(), PATH_PINGACK)
        self.state.heartbeat = HEARTBEAT_RESET
        self.established = True
        logger.debug(f"Pinged looper engine on port {self.send_port}")

    def check_heartbeat(self) -> None:
        state = self.state
        if state.heartbeat <= HEARTBEAT_LOST_THRESHOLD:
            if state.osc_connected:
                logger.warning(f"Lost connection to looper engine {state.engine_id}, reconnecting")
            else:
                logger.debug("No answer from looper engine, retrying")
            self.endpoint.close()
            self.session.reset()
            self.established = False
            state.stats.increment('session_resets')
            return

        if state.heartbeat == 0:
            self.endpoint.send("/ping", self.reply_url(), PATH_HEARTBEAT)
        state.heartbeat -= 1

    def close(self) -> None:
        """Close every port this supervisor opened."""
        self.input_watcher.close()
        if self.led_watcher is not None:
            self.led_watcher.close()
        if self.virtual_output is not None:
            try:
                self.virtual_output.close()
            except MIDI_ERRORS as e:
                logger.debug(f"Error closing virtual MIDI output: {e}")
            self.virtual_output = None
        self.endpoint.close()
        self.established = False
