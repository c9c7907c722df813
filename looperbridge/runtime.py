"""
Runtime - the serialized event queue and the Bridge that wires components.

Threads:
    main thread      drains the event queue and runs the supervisor tick
    rtmidi thread    pedal MIDI callbacks, only post to the queue
    pythonosc thread OSC handlers, only post to the queue

Every handler runs on the main thread to completion before the next one, so
BridgeState needs no locking.
"""

import queue
import sys
import time
from typing import Callable, List, Optional, TextIO

import mido
from pythonosc import dispatcher

from looperbridge import __version__
from looperbridge.config import ACTION_LIST, ACTION_PANIC, BridgeConfig, describe
from looperbridge.display import RemoteDisplayProtocolHandler
from looperbridge.leds import LedStateMachine
from looperbridge.log import get_logger
from looperbridge.midi import (
    MidiLedOutput,
    MidiPortWatcher,
    MidiSender,
    TextLedOutput,
    list_input_names,
    list_output_names,
    send_panic,
)
from looperbridge.osc import PATH_CTRL, PATH_HEARTBEAT, PATH_PINGACK, OscEndpoint, post_to
from looperbridge.pedal import PedalEventInterpreter
from looperbridge.session import LooperSession
from looperbridge.state import BridgeState
from looperbridge.supervisor import ConnectionSupervisor

logger = get_logger(__name__)


class EventQueue:
    """Single consumer queue interleaving posted handlers with a periodic tick."""

    def __init__(self):
        self._queue = queue.Queue()
        self._running = False

    def post(self, handler: Callable, *args) -> None:
        """Queue handler(*args). Safe to call from any thread."""
        self._queue.put((handler, args))

    def stop(self) -> None:
        self._running = False
        self._queue.put(None)

    def run_pending(self) -> int:
        """Run everything queued so far without blocking. Returns the count run."""
        count = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return count
            if item is not None:
                self._call(*item)
                count += 1

    def run_forever(self, tick_interval: float, on_tick: Callable[[], None]) -> None:
        """Run posted handlers and call on_tick every tick_interval seconds until stop()."""
        self._running = True
        next_tick = time.monotonic()
        while self._running:
            now = time.monotonic()
            if now >= next_tick:
                self._call(on_tick, ())
                next_tick += tick_interval
                if next_tick <= now:
                    # Fell behind, skip missed ticks
                    next_tick = now + tick_interval
                continue

            try:
                item = self._queue.get(timeout=next_tick - now)
            except queue.Empty:
                continue
            if item is not None:
                self._call(*item)

    @staticmethod
    def _call(handler: Callable, args: tuple) -> None:
        try:
            handler(*args)
        except Exception as e:
            logger.error(f"Error in {getattr(handler, '__name__', handler)}: {e}", exc_info=True)


class Bridge:
    """Builds every component around one BridgeState and runs the event loop.

    Args:
        config: Bridge configuration
        led_stream: Stream for text LED output when no LED device is configured
    """

    def __init__(self, config: BridgeConfig, led_stream: Optional[TextIO] = None):
        self.config = config
        self.state = BridgeState()
        self.events = EventQueue()
        self.dispatcher = dispatcher.Dispatcher()
        self.endpoint = OscEndpoint(self.dispatcher)

        self.input_watcher = MidiPortWatcher("input", config.midi_input,
                                             list_input_names, self._open_input)
        self.led_watcher = None
        if config.led_output:
            self.led_watcher = MidiPortWatcher("output", config.led_output,
                                               list_output_names, mido.open_output)
            led_output = MidiLedOutput(MidiSender(lambda: self.led_watcher.port), config.channel)
        else:
            led_output = TextLedOutput(led_stream)

        self.looper_out = MidiSender(lambda: self.supervisor.virtual_output)
        self.leds = LedStateMachine(self.state, led_output)
        self.session = LooperSession(self.state, self.leds, self.endpoint.send, self.reply_url)
        self.pedal = PedalEventInterpreter(self.state, self.leds, self.looper_out,
                                           config.base_note, config.channel)
        self.display = RemoteDisplayProtocolHandler(self.state, self.reply_url, __version__)
        self.supervisor = ConnectionSupervisor(
            self.state, self.session, self.endpoint, self.input_watcher,
            send_port=config.osc_send_port,
            receive_port=config.osc_receive_port,
            virtual_output_name=config.virtual_output,
            open_virtual_output=lambda name: mido.open_output(name, virtual=True),
            led_watcher=self.led_watcher,
            on_led_output_connected=self.redraw,
        )

        self._map_handlers()

    def _map_handlers(self) -> None:
        post = self.events.post
        self.dispatcher.map(PATH_PINGACK, post_to(post, self.session.on_ping_ack))
        self.dispatcher.map(PATH_HEARTBEAT, post_to(post, self.session.on_heartbeat))
        self.dispatcher.map(PATH_CTRL, post_to(post, self.session.on_ctrl))
        self.display.map(self.dispatcher, post)
        self.dispatcher.set_default_handler(self._unhandled)

    def _unhandled(self, address, *args):
        logger.debug(f"Unhandled OSC message {address} {args}")

    def _open_input(self, name: str):
        return mido.open_input(name, callback=lambda msg: self.events.post(self.pedal.on_midi_message, msg))

    def reply_url(self) -> str:
        return self.supervisor.reply_url()

    def redraw(self) -> None:
        """Re-send every LED and the selected loop to the local LED output."""
        self.leds.refresh()
        self.leds.show_selected_loop(self.state.selected_loop)

    def panic(self) -> None:
        self.supervisor.check_virtual_output()
        send_panic(self.looper_out)

    def run(self, actions: Optional[List[str]] = None) -> None:
        """Run startup actions, then the event loop until Ctrl+C.

        A "list" action prints the MIDI devices and returns without starting.
        """
        for action in actions or []:
            if action == ACTION_LIST:
                list_devices()
                return
            if action == ACTION_PANIC:
                self.panic()

        logger.info(f"looperbridge {__version__} ({describe(self.config)})")
        logger.info("Waiting for pedal and looper... (Ctrl+C to stop)")
        try:
            self.events.run_forever(self.config.tick_interval, self.supervisor.tick)
        except KeyboardInterrupt:
            logger.info("Shutting down...")
        finally:
            self.close()
            self.state.stats.log_stats("LOOPERBRIDGE STATISTICS")

    def close(self) -> None:
        if self.state.osc_connected:
            self.session.unregister_all()
        self.display.close()
        self.supervisor.close()


def list_devices(stream: Optional[TextIO] = None) -> None:
    """Print available MIDI input and output devices."""
    stream = stream if stream is not None else sys.stdout
    print("MIDI Input devices:", file=stream)
    for name in list_input_names():
        print(f"  {name}", file=stream)
    print("MIDI Output devices:", file=stream)
    for name in list_output_names():
        print(f"  {name}", file=stream)
