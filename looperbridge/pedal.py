"""
Pedal event interpreter - FCB1010 control changes to looper notes.

The pedal controller reports each footswitch as a control change: CC 104 on
press, CC 105 on release, with the value identifying the switch. Switches are
turned into note on/off messages for the looper's MIDI bindings.

Pedal value → logical pedal:
    1-9  → pedals 0-8
    0    → pedal 9 (Undo)
    10   → Up
    11   → Down

Loop pedals 0-3 play at base_note + mode + pedal, so the Record pedal can
swap in a second bank of loop bindings (mode 20). All other pedals play at
base_note + pedal.
"""

from typing import Dict, Optional

import mido

from looperbridge.leds import LedStateMachine
from looperbridge.log import get_logger
from looperbridge.midi import CC_PEDAL_DOWN, CC_PEDAL_UP, MidiSender
from looperbridge.state import MODE_OFFSET, BridgeState, Pedal

logger = get_logger(__name__)

LOOP_PEDALS = range(Pedal.LOOP_1, Pedal.LOOP_4 + 1)


def pedal_index(value: int) -> int:
    """Convert a CC 104/105 value to a logical pedal index.

    Examples:
        >>> pedal_index(1)
        0
        >>> pedal_index(0)
        9
        >>> pedal_index(11)
        11
    """
    if 1 <= value <= 9:
        return value - 1
    if value == 0:
        return Pedal.UNDO
    return value


class PedalEventInterpreter:
    """Turns pedal presses into looper notes and local LED changes.

    Args:
        state: Shared bridge state (holds the pedal mode)
        leds: LED state machine for Record/Undo LEDs and refreshes
        looper_out: Sender for the looper-bound MIDI port
        base_note: Note played by pedal 0 in mode 0
        channel: 1-16 to filter input and send on that channel, 0 for omni
    """

    def __init__(self, state: BridgeState, leds: LedStateMachine, looper_out: MidiSender,
                 base_note: int, channel: int = 0):
        self.state = state
        self.leds = leds
        self.looper_out = looper_out
        self.base_note = base_note
        self.channel = channel
        # pedal -> note sounding since its press
        self._held: Dict[int, int] = {}

    def on_midi_message(self, msg: mido.Message) -> None:
        """Entry point for every message from the pedal controller."""
        if msg.type != 'control_change':
            return
        if self.channel and msg.channel != self.channel - 1:
            return

        if msg.control == CC_PEDAL_DOWN:
            self.handle_event(pedal_index(msg.value), True)
        elif msg.control == CC_PEDAL_UP:
            self.handle_event(pedal_index(msg.value), False)
        else:
            # Expression pedals and anything else go straight to the looper
            self.looper_out.send(msg)

    def handle_event(self, pedal: int, is_down: bool) -> None:
        self.state.stats.increment('pedal_events')
        logger.debug(f"Pedal {pedal} {'down' if is_down else 'up'} (mode {self.state.mode})")
        if is_down:
            self.pedal_down(pedal)
        else:
            self.pedal_up(pedal)

    def pedal_down(self, pedal: int) -> None:
        if pedal in LOOP_PEDALS:
            self._press(pedal, self.base_note + self.state.mode + pedal)
        elif pedal == Pedal.RECORD:
            self.toggle_mode()
        elif pedal == Pedal.UNDO:
            self.leds.led_on(Pedal.UNDO)
            self._press(pedal, self.base_note + pedal)
        else:
            self._press(pedal, self.base_note + pedal)

    def pedal_up(self, pedal: int) -> None:
        if pedal == Pedal.RECORD:
            return
        if pedal == Pedal.UNDO:
            self.leds.led_off(Pedal.UNDO)
            self._release(pedal)
            self.leds.refresh()
        else:
            self._release(pedal)

    def toggle_mode(self) -> None:
        """Swap between the normal and alternate loop pedal banks."""
        self.state.mode = 0 if self.state.mode else MODE_OFFSET
        if self.state.mode:
            self.leds.led_on(Pedal.RECORD)
        else:
            self.leds.led_off(Pedal.RECORD)
        logger.info(f"Pedal mode {self.state.mode}")
        self.leds.refresh()

    def _press(self, pedal: int, note: int) -> None:
        self._held[pedal] = note
        self.looper_out.note_on(self.channel, note)

    def _release(self, pedal: int) -> None:
        note: Optional[int] = self._held.pop(pedal, None)
        if note is None:
            # Release without a press we saw (e.g. pedal held during startup)
            note = self._note_for(pedal)
        self.looper_out.note_off(self.channel, note)

    def _note_for(self, pedal: int) -> int:
        if pedal in LOOP_PEDALS:
            return self.base_note + self.state.mode + pedal
        return self.base_note + pedal
