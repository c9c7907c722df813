"""
MIDI helpers built on mido (python-rtmidi backend).

Covers device lookup, the tick-driven port watcher used by the supervisor,
the looper-bound output with its one-time "no port" warning, and the two LED
outputs (pedal MIDI port, or sendmidi-style text on stdout).
"""

import sys
from typing import Callable, List, Optional, TextIO

import mido
import rtmidi

from looperbridge.log import get_logger

logger = get_logger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_VIRTUAL_OUT_NAME = "looperbridge_out"

# Pedal controller (FCB1010 / EurekaProm I/O mode) control numbers
CC_PEDAL_DOWN = 104
CC_PEDAL_UP = 105
CC_LED_ON = 106
CC_LED_OFF = 107
CC_DISPLAY_TENS = 113
CC_DISPLAY_ONES = 114

# Panic controllers: sustain off, all sound off, all notes off
PANIC_CCS = (64, 120, 123)

NOTE_ON_VELOCITY = 127

# Errors the rtmidi backend raises for missing or busy devices
MIDI_ERRORS = (OSError, ValueError, rtmidi.RtMidiError)


def list_input_names() -> List[str]:
    return mido.get_input_names()


def list_output_names() -> List[str]:
    return mido.get_output_names()


def resolve_port_name(wanted: str, available: List[str]) -> Optional[str]:
    """Pick the device to open for a configured name.

    An exact match wins; otherwise the first device whose name contains
    wanted, ignoring case.

    Examples:
        >>> resolve_port_name("fcb", ["Midi Through", "FCB1010:FCB1010 MIDI 1 20:0"])
        'FCB1010:FCB1010 MIDI 1 20:0'
    """
    if wanted in available:
        return wanted
    lowered = wanted.lower()
    for name in available:
        if lowered in name.lower():
            return name
    return None


def virtual_ports_supported(platform: str = sys.platform) -> bool:
    """rtmidi cannot create virtual ports on Windows."""
    return not platform.startswith("win")


def midi_channel(channel: int) -> int:
    """Map a 1-16 channel (0 = omni) to mido's 0-15 numbering."""
    return max(channel, 1) - 1


# ============================================================================
# PORT WATCHER
# ============================================================================

class MidiPortWatcher:
    """Keeps one named MIDI device open across unplug/replug.

    Driven by reconcile() once per supervisor tick instead of its own thread,
    so opening and closing happens on the event loop.

    Args:
        kind: "input" or "output", used for logging
        wanted: Configured device name or substring, None to disable
        list_names: Returns currently available device names
        open_port: Opens a device by its full name
    """

    def __init__(self, kind: str, wanted: Optional[str],
                 list_names: Callable[[], List[str]],
                 open_port: Callable[[str], object]):
        self.kind = kind
        self.wanted = wanted
        self._list_names = list_names
        self._open_port = open_port
        self.port = None
        self.port_name: Optional[str] = None
        self._not_found_warned = False

    @property
    def is_open(self) -> bool:
        return self.port is not None

    def reconcile(self) -> bool:
        """Drop a vanished device, then try to (re)open the wanted one.

        Returns:
            True if the port state changed on this call
        """
        try:
            available = self._list_names()
        except MIDI_ERRORS as e:
            logger.error(f"Could not list MIDI {self.kind} devices: {e}")
            return False

        if self.port is not None:
            if self.port_name in available:
                return False
            logger.warning(f"MIDI {self.kind} port \"{self.port_name}\" got disconnected, waiting.")
            self.close()
            return True

        if not self.wanted:
            return False

        name = resolve_port_name(self.wanted, available)
        if name is None:
            if not self._not_found_warned:
                logger.warning(f"Couldn't find MIDI {self.kind} port \"{self.wanted}\", waiting.")
                self._not_found_warned = True
            return False

        try:
            self.port = self._open_port(name)
        except MIDI_ERRORS as e:
            logger.error(f"Failed to open MIDI {self.kind} port \"{name}\": {e}")
            return False

        self.port_name = name
        self._not_found_warned = False
        logger.info(f"Connected to MIDI {self.kind} port \"{name}\".")
        return True

    def close(self) -> None:
        if self.port is not None:
            try:
                self.port.close()
            except MIDI_ERRORS as e:
                logger.debug(f"Error closing MIDI {self.kind} port: {e}")
        self.port = None
        self.port_name = None


# ============================================================================
# OUTPUTS
# ============================================================================

class MidiSender:
    """Sends to an output port that may not exist yet.

    Messages sent while no port is available are dropped; the first drop logs
    a warning, later drops are silent.

    Args:
        get_port: Returns the current output port or None
    """

    def __init__(self, get_port: Callable[[], Optional[object]]):
        self._get_port = get_port
        self._missing_warned = False

    def send(self, message: mido.Message) -> bool:
        port = self._get_port()
        if port is None:
            if not self._missing_warned:
                logger.warning("No valid MIDI output port was specified for some of the messages")
                self._missing_warned = True
            return False
        try:
            port.send(message)
        except MIDI_ERRORS as e:
            logger.error(f"Error sending MIDI message {message}: {e}")
            return False
        return True

    def note_on(self, channel: int, note: int) -> bool:
        if not 0 <= note <= 127:
            logger.warning(f"Note {note} out of MIDI range, not sent")
            return False
        return self.send(mido.Message('note_on', channel=midi_channel(channel),
                                      note=note, velocity=NOTE_ON_VELOCITY))

    def note_off(self, channel: int, note: int) -> bool:
        if not 0 <= note <= 127:
            logger.warning(f"Note {note} out of MIDI range, not sent")
            return False
        return self.send(mido.Message('note_off', channel=midi_channel(channel),
                                      note=note, velocity=0))

    def control_change(self, channel: int, control: int, value: int) -> bool:
        return self.send(mido.Message('control_change', channel=midi_channel(channel),
                                      control=control, value=value))


def send_panic(sender: MidiSender) -> None:
    """Silence every channel: panic CCs plus a note-off for every note."""
    logger.info("Sending MIDI panic on all channels")
    for channel in range(1, 17):
        for control in PANIC_CCS:
            sender.control_change(channel, control, 0)
        for note in range(128):
            sender.note_off(channel, note)


class MidiLedOutput:
    """LED control changes sent to the pedal controller's MIDI input."""

    def __init__(self, sender: MidiSender, channel: int):
        self.sender = sender
        self.channel = channel

    def control(self, control: int, value: int) -> None:
        self.sender.control_change(self.channel, control, value)


class TextLedOutput:
    """LED control changes written as sendmidi commands, one per line.

    Example line: "cc 106 3". Meant to be piped into sendmidi pointed at the
    pedal controller.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream

    def control(self, control: int, value: int) -> None:
        stream = self.stream if self.stream is not None else sys.stdout
        stream.write(f"cc {control} {value}\n")
        stream.flush()
