"""
Tests for the connection supervisor tick.

Tests cover:
1. OSC session establishment and the heartbeat timeline
2. Session loss and reconnection
3. MIDI input and LED output reconciliation
4. Virtual output creation and platform support
"""

from unittest.mock import Mock

import pytest

from looperbridge.midi import MidiPortWatcher
from looperbridge.state import HEARTBEAT_RESET
from looperbridge.supervisor import ConnectionSupervisor
from tests.fakes import FakeMidiPort

REPLY = "osc.udp://localhost:9000/"


class FakeEndpoint:
    """OscEndpoint stand-in with switchable open results."""

    def __init__(self):
        self.sender_ok = True
        self.receiver_ok = True
        self.receive_port = None
        self.sent = []
        self.closed = 0

    def open_sender(self, port):
        return self.sender_ok

    def open_receiver(self, port):
        if self.receiver_ok:
            self.receive_port = port
        return self.receiver_ok

    def send(self, address, *args):
        self.sent.append((address, args))
        return True

    def close(self):
        self.closed += 1
        self.receive_port = None


class FakeDevices:
    """Device list plus an opener that records what it opened."""

    def __init__(self, names=()):
        self.names = list(names)
        self.opened = []

    def list_names(self):
        return list(self.names)

    def open_port(self, name):
        port = FakeMidiPort(name)
        self.opened.append(port)
        return port


@pytest.fixture
def endpoint():
    return FakeEndpoint()


@pytest.fixture
def devices():
    return FakeDevices(["Midi Through Port-0", "FCB1010:FCB1010 MIDI 1 20:0"])


@pytest.fixture
def virtual_opener():
    return Mock(side_effect=lambda name: FakeMidiPort(name))


@pytest.fixture
def supervisor(state, session, endpoint, devices, virtual_opener):
    watcher = MidiPortWatcher("input", "fcb1010", devices.list_names, devices.open_port)
    return ConnectionSupervisor(state, session, endpoint, watcher,
                                send_port=9951, receive_port=9000,
                                virtual_output_name="looperbridge_out",
                                open_virtual_output=virtual_opener,
                                platform="linux")


def pings(endpoint):
    return [args for address, args in endpoint.sent if address == "/ping"]


class TestEstablish:
    """Test OSC session establishment."""

    def test_first_tick_pings_for_pingack(self, supervisor, endpoint, state):
        state.heartbeat = -4
        supervisor.tick()

        assert pings(endpoint) == [(REPLY, "/pingack")]
        assert state.heartbeat == HEARTBEAT_RESET
        assert supervisor.established is True

    def test_no_ping_until_both_halves_open(self, supervisor, endpoint):
        endpoint.receiver_ok = False
        supervisor.tick()
        supervisor.tick()
        assert pings(endpoint) == []
        assert supervisor.established is False

        endpoint.receiver_ok = True
        supervisor.tick()
        assert pings(endpoint) == [(REPLY, "/pingack")]


class TestHeartbeatTimeline:
    """Test the countdown: ping on tick 6, reset on tick 11."""

    def test_silent_engine(self, supervisor, endpoint, state):
        supervisor.tick()    # establish, counter = 5
        endpoint.sent.clear()

        for _ in range(5):
            supervisor.tick()
        assert state.heartbeat == 0
        assert pings(endpoint) == []

        supervisor.tick()    # tick 6
        assert pings(endpoint) == [(REPLY, "/heartbeat")]
        assert state.heartbeat == -1

        for _ in range(4):
            supervisor.tick()
        assert state.heartbeat == -5
        assert endpoint.closed == 0

        supervisor.tick()    # tick 11
        assert endpoint.closed == 1
        assert supervisor.established is False
        assert state.stats.get('session_resets') == 1

    def test_reconnects_after_reset(self, supervisor, endpoint, state):
        supervisor.tick()
        for _ in range(11):
            supervisor.tick()
        endpoint.sent.clear()

        supervisor.tick()

        assert pings(endpoint) == [(REPLY, "/pingack")]
        assert supervisor.established is True

    def test_live_engine_keeps_session(self, supervisor, session, endpoint, state):
        """Heartbeat answers keep the counter from reaching the threshold."""
        supervisor.tick()
        session.on_ping_ack("/pingack", "osc.udp://host:9951/", "1.7.4", 1, 7)

        answered = 0
        for _ in range(30):
            supervisor.tick()
            heartbeat_pings = pings(endpoint).count((REPLY, "/heartbeat"))
            if heartbeat_pings > answered:
                session.on_heartbeat("/heartbeat", "osc.udp://host:9951/", "1.7.4", 1, 7)
                answered = heartbeat_pings

        assert answered == 5
        assert endpoint.closed == 0
        assert state.osc_connected is True

    def test_reset_forgets_session(self, supervisor, session, state):
        supervisor.tick()
        session.on_ping_ack("/pingack", "osc.udp://host:9951/", "1.7.4", 2, 7)
        assert state.osc_connected is True

        for _ in range(11):
            supervisor.tick()

        assert state.osc_connected is False
        assert state.handshake_done is False


class TestMidiInput:
    """Test MIDI input reconciliation."""

    def test_opens_by_substring(self, supervisor, devices, state):
        supervisor.tick()

        assert [p.name for p in devices.opened] == ["FCB1010:FCB1010 MIDI 1 20:0"]
        assert state.midi_connected is True

    def test_disconnect_then_reconnect(self, supervisor, devices, state):
        supervisor.tick()
        first = devices.opened[0]

        devices.names.remove(first.name)
        supervisor.tick()
        assert first.closed is True
        assert state.midi_connected is False

        devices.names.append(first.name)
        supervisor.tick()
        assert len(devices.opened) == 2
        assert state.midi_connected is True

    def test_missing_device_waits(self, state, session, endpoint, virtual_opener):
        devices = FakeDevices(["Midi Through Port-0"])
        watcher = MidiPortWatcher("input", "fcb1010", devices.list_names, devices.open_port)
        supervisor = ConnectionSupervisor(state, session, endpoint, watcher, 9951, 9000,
                                          "looperbridge_out", virtual_opener, platform="linux")
        supervisor.tick()
        supervisor.tick()

        assert devices.opened == []
        assert state.midi_connected is False

    def test_led_output_connect_callback(self, state, session, endpoint, devices, virtual_opener):
        outputs = FakeDevices(["FCB1010:FCB1010 MIDI 1 20:0"])
        on_connect = Mock()
        supervisor = ConnectionSupervisor(
            state, session, endpoint,
            MidiPortWatcher("input", "fcb", devices.list_names, devices.open_port),
            9951, 9000, "looperbridge_out", virtual_opener,
            led_watcher=MidiPortWatcher("output", "fcb", outputs.list_names, outputs.open_port),
            on_led_output_connected=on_connect,
            platform="linux",
        )

        supervisor.tick()
        supervisor.tick()

        assert len(outputs.opened) == 1
        on_connect.assert_called_once()


class TestVirtualOutput:
    """Test virtual MIDI output creation."""

    def test_created_once(self, supervisor, virtual_opener):
        supervisor.tick()
        supervisor.tick()

        virtual_opener.assert_called_once_with("looperbridge_out")
        assert supervisor.virtual_output.name == "looperbridge_out"

    def test_retried_after_failure(self, supervisor, virtual_opener):
        virtual_opener.side_effect = [OSError("busy"), OSError("busy"), FakeMidiPort("looperbridge_out")]

        supervisor.tick()
        supervisor.tick()
        assert supervisor.virtual_output is None

        supervisor.tick()
        assert supervisor.virtual_output is not None

    def test_disabled_on_windows(self, state, session, endpoint, devices, virtual_opener):
        supervisor = ConnectionSupervisor(
            state, session, endpoint,
            MidiPortWatcher("input", "fcb", devices.list_names, devices.open_port),
            9951, 9000, "looperbridge_out", virtual_opener, platform="win32",
        )

        supervisor.tick()
        supervisor.tick()

        virtual_opener.assert_not_called()
        assert supervisor.virtual_output_enabled is False

    def test_close_releases_ports(self, supervisor, devices, endpoint):
        supervisor.tick()
        virtual = supervisor.virtual_output

        supervisor.close()

        assert devices.opened[0].closed is True
        assert virtual.closed is True
        assert endpoint.closed == 1
