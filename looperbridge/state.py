"""
Bridge state - loops, LEDs and the looper session fields.

Everything the event loop mutates lives in one BridgeState instance that is
created at startup and handed to each component. Components never keep their
own copies of loop or LED state.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional

from looperbridge.osc import MessageStatistics


# ============================================================================
# CONSTANTS
# ============================================================================

LED_COUNT = 10

# Heartbeat countdown, in supervisor ticks
HEARTBEAT_RESET = 5
HEARTBEAT_LOST_THRESHOLD = -5

# Note offset applied to the loop pedals while the Record pedal bank is active
MODE_OFFSET = 20


class LoopState(IntEnum):
    """SooperLooper loop state codes, as sent in /ctrl "state" updates."""
    UNKNOWN = -1
    OFF = 0
    WAIT_START = 1
    RECORDING = 2
    WAIT_STOP = 3
    PLAYING = 4
    OVERDUBBING = 5
    MULTIPLYING = 6
    INSERTING = 7
    REPLACING = 8
    DELAY = 9
    MUTED = 10
    SCRATCHING = 11
    ONE_SHOT = 12
    SUBSTITUTE = 13
    PAUSED = 14


class LedVisual(IntEnum):
    DARK = 0
    LIGHT = 1
    BLINK = 2
    FAST_BLINK = 3


class LedTimer(IntEnum):
    OFF = 0
    FAST = 1
    SLOW = 3


class Pedal(IntEnum):
    """Logical pedal indices. Pedals 0-3 select loops 1-4."""
    LOOP_1 = 0
    LOOP_2 = 1
    LOOP_3 = 2
    LOOP_4 = 3
    RECORD = 4
    MULTIPLY = 5
    INSERT = 6
    REPLACE = 7
    SUBSTITUTE = 8
    UNDO = 9
    UP = 10
    DOWN = 11


# ============================================================================
# DATA MODEL
# ============================================================================

@dataclass
class Led:
    index: int
    on: bool = False
    timer: LedTimer = LedTimer.OFF
    visual: LedVisual = LedVisual.DARK

    def clear(self) -> None:
        self.on = False
        self.timer = LedTimer.OFF
        self.visual = LedVisual.DARK


@dataclass
class Loop:
    """One loop slot in the looper engine.

    state holds the raw SooperLooper code; known codes compare equal to the
    matching LoopState member. led_index is the LED that shows this loop,
    None for loops beyond the LED pool.
    """
    index: int
    state: int = LoopState.OFF

    @property
    def led_index(self) -> Optional[int]:
        return self.index if 0 <= self.index < LED_COUNT else None


@dataclass
class DisplayClient:
    """The display client registered for LED/selected-loop broadcasts."""
    host: str
    port: int
    reply_address: Optional[str] = None
    sender: object = None


@dataclass
class BridgeState:
    """All mutable state owned by the event loop.

    Attributes:
        leds: Fixed pool of LED_COUNT LEDs, index == position
        loops: Loops reported by the engine, index == position
        engine_id: Engine instance id from /pingack or /heartbeat
        host_url: Engine host URL
        version: Engine version string
        selected_loop: Selected loop reported by the engine, -1 until known
        heartbeat: Heartbeat countdown in ticks
        handshake_done: True once /pingack populated this session
        midi_connected: MIDI input open
        osc_connected: Engine answered the handshake and the session is live
        mode: 0, or MODE_OFFSET while the alternate pedal bank is active
        display_client: Registered display client, if any
        stats: Message counters
    """
    leds: List[Led] = field(default_factory=lambda: [Led(i) for i in range(LED_COUNT)])
    loops: List[Loop] = field(default_factory=list)
    engine_id: int = 0
    host_url: str = ""
    version: str = ""
    selected_loop: int = -1
    heartbeat: int = HEARTBEAT_RESET
    handshake_done: bool = False
    midi_connected: bool = False
    osc_connected: bool = False
    mode: int = 0
    display_client: Optional[DisplayClient] = None
    stats: MessageStatistics = field(default_factory=MessageStatistics)

    @property
    def loop_count(self) -> int:
        return len(self.loops)

    def led_for(self, loop: Loop) -> Optional[Led]:
        index = loop.led_index
        return self.leds[index] if index is not None else None
