"""
Looper session - OSC protocol with the SooperLooper engine.

Handshake:
    bridge → /ping(reply_url, "/pingack")
    engine → /pingack(host_url, version, loop_count, engine_id)

Keepalive (see ConnectionSupervisor):
    bridge → /ping(reply_url, "/heartbeat")
    engine → /heartbeat(host_url, version, loop_count, engine_id)

State updates, requested per loop and once globally:
    bridge → /sl/<i>/register_auto_update("state", 100, reply_url, "/ctrl")
    bridge → /sl/<i>/get("state", reply_url, "/ctrl")
    bridge → /register_update("selected_loop_num", reply_url, "/ctrl")
    engine → /ctrl(loop_index, key, value)

Loop index -2 in /ctrl addresses engine-global controls.
"""

import math
from typing import Callable, Optional, Tuple

from looperbridge.leds import LedStateMachine
from looperbridge.log import get_logger
from looperbridge.osc import PATH_CTRL
from looperbridge.state import HEARTBEAT_RESET, BridgeState, Loop, LoopState

logger = get_logger(__name__)

GLOBAL_LOOP_INDEX = -2
CTRL_STATE = "state"
CTRL_SELECTED_LOOP = "selected_loop_num"

# Minimum interval between state updates, ms
AUTO_UPDATE_INTERVAL_MS = 100


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return _is_int(value) or isinstance(value, float)


class LooperSession:
    """Owns the handshake, heartbeat bookkeeping and loop registry.

    Args:
        state: Shared bridge state
        leds: LED state machine that renders loop and selected-loop updates
        send: Sends (address, *args) to the engine, returns False if not sent
        get_reply_url: Returns the reply URL for the current listener
    """

    def __init__(self, state: BridgeState, leds: LedStateMachine,
                 send: Callable[..., bool], get_reply_url: Callable[[], str]):
        self.state = state
        self.leds = leds
        self.send = send
        self.get_reply_url = get_reply_url

    # ------------------------------------------------------------------
    # Wire handlers (dispatcher signature)
    # ------------------------------------------------------------------

    def on_ping_ack(self, address, *args):
        identity = self._parse_identity(address, args)
        if identity is not None:
            self.handle_ping_ack(*identity)

    def on_heartbeat(self, address, *args):
        identity = self._parse_identity(address, args)
        if identity is not None:
            self.handle_heartbeat(*identity)

    def on_ctrl(self, address, *args):
        """Handle /ctrl(loop_index, key, value)."""
        if len(args) != 3:
            self._reject(address, f"expected 3 args, got {len(args)}")
            return
        loop_index, key, value = args
        if not _is_int(loop_index) or not isinstance(key, str) or not _is_number(value):
            self._reject(address, f"bad argument types {args}")
            return
        if not math.isfinite(value):
            self._reject(address, f"non-finite value {value}")
            return
        self.handle_ctrl(loop_index, key, value)

    def _parse_identity(self, address, args) -> Optional[Tuple[str, str, int, int]]:
        if len(args) != 4:
            self._reject(address, f"expected 4 args, got {len(args)}")
            return None
        host_url, version, loop_count, engine_id = args
        if not isinstance(host_url, str) or not isinstance(version, str):
            self._reject(address, f"host url and version must be strings, got {args}")
            return None
        if not _is_int(loop_count) or not _is_int(engine_id):
            self._reject(address, f"loop count and engine id must be integers, got {args}")
            return None
        if loop_count < 0:
            self._reject(address, f"negative loop count {loop_count}")
            return None
        return host_url, version, loop_count, engine_id

    def _reject(self, address, reason: str) -> None:
        logger.warning(f"Invalid {address} message: {reason}")
        self.state.stats.increment('invalid_messages')

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    def handle_ping_ack(self, host_url: str, version: str, loop_count: int, engine_id: int) -> None:
        state = self.state
        state.host_url = host_url
        state.version = version
        state.engine_id = engine_id

        # An engine without loops leaves the handshake open for the next reply
        if not state.handshake_done and loop_count > 0:
            self.rebuild_loops(loop_count)
            state.handshake_done = True

        state.heartbeat = HEARTBEAT_RESET
        self._mark_connected()

    def handle_heartbeat(self, host_url: str, version: str, loop_count: int, engine_id: int) -> None:
        """Track engine restarts and loop count changes.

        A heartbeat can be the first reply of a session when the handshake
        ping was lost, so it also completes the handshake.
        """
        state = self.state
        state.host_url = host_url
        state.version = version

        if engine_id != state.engine_id:
            logger.info(f"Looper engine changed from {state.engine_id} to {engine_id}, "
                        f"rebuilding {loop_count} loops")
            state.engine_id = engine_id
            self.rebuild_loops(loop_count)
            self.leds.refresh()
        elif not state.handshake_done and loop_count > 0:
            self.rebuild_loops(loop_count)
            self.leds.refresh()
        elif loop_count > state.loop_count:
            self.add_loops(loop_count)
        elif loop_count < state.loop_count:
            self.remove_loops(loop_count)

        if state.loop_count > 0:
            state.handshake_done = True
        state.heartbeat = HEARTBEAT_RESET
        self._mark_connected()

    def _mark_connected(self) -> None:
        state = self.state
        if not state.osc_connected:
            state.osc_connected = True
            logger.info(f"Connected to looper engine {state.engine_id} at {state.host_url} "
                        f"(version {state.version}, {state.loop_count} loops)")

    def handle_ctrl(self, loop_index: int, key: str, value: float) -> None:
        self.state.heartbeat = HEARTBEAT_RESET

        if loop_index == GLOBAL_LOOP_INDEX:
            if key == CTRL_SELECTED_LOOP:
                self.leds.show_selected_loop(int(value))
                self.state.stats.increment('ctrl_messages')
            return
        if loop_index < 0 or key != CTRL_STATE:
            logger.debug(f"Ignoring control {key} for loop {loop_index}")
            return
        if loop_index >= self.state.loop_count:
            logger.warning(f"State update for unknown loop {loop_index} "
                           f"({self.state.loop_count} loops), dropped")
            return

        self.leds.apply_loop_state(self.state.loops[loop_index], int(value))
        self.state.stats.increment('ctrl_messages')

    def reset(self) -> None:
        """Forget the engine session; the next /pingack registers everything again."""
        self.state.osc_connected = False
        self.state.handshake_done = False
        self.state.heartbeat = HEARTBEAT_RESET

    # ------------------------------------------------------------------
    # Loop registry
    # ------------------------------------------------------------------

    def rebuild_loops(self, loop_count: int) -> None:
        """Replace the loop list with loop_count fresh loops and subscribe to all of them."""
        for loop in self.state.loops:
            self.leds.apply_loop_state(loop, LoopState.OFF)
        self.state.loops = [Loop(i) for i in range(loop_count)]
        for loop in self.state.loops:
            self.register_auto_update(loop.index)
            self.get_state(loop.index)
        self.register_global_updates()

    def add_loops(self, loop_count: int) -> None:
        first_new = self.state.loop_count
        logger.info(f"Engine reports {loop_count} loops, adding loops {first_new}-{loop_count - 1}")
        for index in range(first_new, loop_count):
            self.state.loops.append(Loop(index))
            self.register_auto_update(index)
            self.get_state(index)
        self.leds.refresh()

    def remove_loops(self, loop_count: int) -> None:
        logger.info(f"Engine reports {loop_count} loops, dropping loops "
                    f"{loop_count}-{self.state.loop_count - 1}")
        for loop in self.state.loops[loop_count:]:
            self.register_auto_update(loop.index, unregister=True)
            self.leds.apply_loop_state(loop, LoopState.OFF)
        del self.state.loops[loop_count:]

    def unregister_all(self) -> None:
        """Cancel every subscription, used on shutdown."""
        for loop in self.state.loops:
            self.register_auto_update(loop.index, unregister=True)
        self.register_global_updates(unregister=True)

    # ------------------------------------------------------------------
    # Outbound requests
    # ------------------------------------------------------------------

    def register_auto_update(self, loop_index: int, unregister: bool = False) -> bool:
        if unregister:
            return self.send(f"/sl/{loop_index}/unregister_auto_update",
                             CTRL_STATE, self.get_reply_url(), PATH_CTRL)
        return self.send(f"/sl/{loop_index}/register_auto_update",
                         CTRL_STATE, AUTO_UPDATE_INTERVAL_MS, self.get_reply_url(), PATH_CTRL)

    def get_state(self, loop_index: int) -> bool:
        return self.send(f"/sl/{loop_index}/get", CTRL_STATE, self.get_reply_url(), PATH_CTRL)

    def register_global_updates(self, unregister: bool = False) -> bool:
        address = "/unregister_update" if unregister else "/register_update"
        return self.send(address, CTRL_SELECTED_LOOP, self.get_reply_url(), PATH_CTRL)
