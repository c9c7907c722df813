"""
LED state machine - loop state to pedal LED mapping.

Every loop owns the LED at its own index. Four LEDs double as shared action
LEDs (Multiply, Insert, Replace, Substitute) that light while any loop is in
the matching state. Each LED change goes to the local LED output as
CC 106 (on) / CC 107 (off) and, when a display client is registered, as an
OSC /led broadcast.

Mapping (mode 0 = normal bank, mode != 0 = alternate bank):

    Unknown, Off                                Dark       timer off   LED off
    WaitStart, WaitStop                         FastBlink  fast        LED on
    Recording, Overdubbing, Delay,
    Scratching, OneShot                         Light      off         LED on
    Inserting/Replacing/Substitute/Multiplying  FastBlink  fast        LED on + action LED on
    Playing (mode 0)                            Light      off         LED on
    Playing (mode != 0)                         Blink      slow        LED on
    Muted, Paused                               Blink      slow        LED on
    anything else                               Dark       off         LED off
"""

from typing import NamedTuple, Optional

from looperbridge.log import get_logger
from looperbridge.midi import CC_DISPLAY_ONES, CC_DISPLAY_TENS, CC_LED_OFF, CC_LED_ON
from looperbridge.state import BridgeState, Led, LedTimer, LedVisual, Loop, LoopState, Pedal

logger = get_logger(__name__)

ADDRESS_LED = "/led"
ADDRESS_DISPLAY = "/display"


class LedAppearance(NamedTuple):
    visual: LedVisual
    timer: LedTimer
    on: bool
    action_led: Optional[int] = None


DARK = LedAppearance(LedVisual.DARK, LedTimer.OFF, False)
LIGHT = LedAppearance(LedVisual.LIGHT, LedTimer.OFF, True)
BLINK = LedAppearance(LedVisual.BLINK, LedTimer.SLOW, True)
FAST_BLINK = LedAppearance(LedVisual.FAST_BLINK, LedTimer.FAST, True)

LED_STATE_TABLE = {
    LoopState.UNKNOWN: DARK,
    LoopState.OFF: DARK,
    LoopState.WAIT_START: FAST_BLINK,
    LoopState.WAIT_STOP: FAST_BLINK,
    LoopState.RECORDING: LIGHT,
    LoopState.OVERDUBBING: LIGHT,
    LoopState.DELAY: LIGHT,
    LoopState.SCRATCHING: LIGHT,
    LoopState.ONE_SHOT: LIGHT,
    LoopState.INSERTING: FAST_BLINK._replace(action_led=Pedal.INSERT),
    LoopState.REPLACING: FAST_BLINK._replace(action_led=Pedal.REPLACE),
    LoopState.SUBSTITUTE: FAST_BLINK._replace(action_led=Pedal.SUBSTITUTE),
    LoopState.MULTIPLYING: FAST_BLINK._replace(action_led=Pedal.MULTIPLY),
    LoopState.PLAYING: LIGHT,
    LoopState.MUTED: BLINK,
    LoopState.PAUSED: BLINK,
}

# Playing blinks while the alternate pedal bank is active
PLAYING_SHIFTED = BLINK

# States that hold a shared action LED on
ACTION_LEDS = {
    state: appearance.action_led
    for state, appearance in LED_STATE_TABLE.items()
    if appearance.action_led is not None
}


def appearance_for(state: int, mode: int) -> LedAppearance:
    """Look up how a loop in state should look under the given pedal mode."""
    if state == LoopState.PLAYING and mode != 0:
        return PLAYING_SHIFTED
    return LED_STATE_TABLE.get(state, DARK)


def led_display_number(index: int) -> int:
    """Number the pedal controller uses for an LED.

    LEDs 0-8 are labelled 1-9 on the pedal, LED 9 is labelled 0.
    """
    if 0 <= index <= 8:
        return index + 1
    if index == 9:
        return 0
    return index


def led_message_args(led: Led) -> tuple:
    return (led.index, 1 if led.on else 0, int(led.timer), int(led.visual))


class LedStateMachine:
    """Applies loop states to the LED pool and emits every LED change.

    Args:
        state: Shared bridge state (LED pool, loops, mode, display client)
        output: Local LED output with a control(control, value) method
    """

    def __init__(self, state: BridgeState, output):
        self.state = state
        self.output = output

    def apply_loop_state(self, loop: Loop, new_state: int) -> None:
        """Move loop to new_state and update its LED and any action LED."""
        previous = loop.state
        if new_state != previous:
            stale_action = ACTION_LEDS.get(previous)
            if stale_action is not None:
                self.led_off(stale_action)

        appearance = appearance_for(new_state, self.state.mode)

        led = self.state.led_for(loop)
        if led is not None:
            led.visual = appearance.visual
            led.timer = appearance.timer
            if appearance.on:
                self.led_on(led.index)
            else:
                self.led_off(led.index)
        else:
            logger.debug(f"Loop {loop.index} has no LED, state {new_state} not shown")

        if appearance.action_led is not None:
            self.led_on(appearance.action_led)

        loop.state = new_state

    def refresh(self) -> None:
        """Re-render every loop from its stored state."""
        for loop in self.state.loops:
            self.apply_loop_state(loop, loop.state)

    def led_on(self, index: int) -> None:
        self._set_led(index, True)

    def led_off(self, index: int) -> None:
        self._set_led(index, False)

    def _set_led(self, index: int, on: bool) -> None:
        led = self.state.leds[index]
        led.on = on
        self.output.control(CC_LED_ON if on else CC_LED_OFF, led_display_number(index))
        self.broadcast(ADDRESS_LED, *led_message_args(led))

    def show_selected_loop(self, selected: int) -> None:
        """Show the selected loop on the pedal's two-digit display."""
        self.state.selected_loop = selected
        if selected >= 0:
            tens, ones = divmod(selected, 10)
            tens = min(tens, 127)
        else:
            tens, ones = 0, 0
        self.output.control(CC_DISPLAY_TENS, tens)
        self.output.control(CC_DISPLAY_ONES, ones)
        self.broadcast(ADDRESS_DISPLAY, selected)

    def broadcast(self, address: str, *args) -> None:
        """Send to the registered display client, if any."""
        client = self.state.display_client
        if client is None or client.sender is None:
            return
        try:
            client.sender.send_message(address, list(args))
        except OSError as e:
            logger.warning(f"Broadcast {address} to {client.host}:{client.port} failed: {e}")
