"""
Tests for the remote display protocol.

Tests cover:
1. ping/leds/display replies over short-lived clients
2. Broadcast client registration, replacement and unregistration
3. Request validation and connect failures
4. Dispatcher mapping at prefixed and bare addresses
"""

from unittest.mock import Mock

import pytest
from pythonosc import dispatcher

from looperbridge.display import RemoteDisplayProtocolHandler
from looperbridge.state import LED_COUNT, LedTimer, LedVisual, Loop, LoopState
from tests.conftest import REPLY_URL
from tests.fakes import FakeClientFactory


@pytest.fixture
def display(state, client_factory):
    return RemoteDisplayProtocolHandler(state, lambda: REPLY_URL, "0.1.0",
                                        client_factory=client_factory, pid=4242)


class TestTransientReplies:
    """Test requests answered over a short-lived client."""

    def test_ping(self, display, client_factory):
        display.handle_ping("/loop4r/ping", "10.0.0.2", 9100, "/pong")

        assert client_factory.events == [
            ("open", "10.0.0.2", 9100),
            ("send", "10.0.0.2", 9100, "/pong", [REPLY_URL, "0.1.0", LED_COUNT, 4242]),
            ("close", "10.0.0.2", 9100),
        ]

    def test_leds_sends_every_led_in_order(self, display, state, leds, client_factory):
        leds.apply_loop_state(Loop(3), LoopState.MUTED)

        display.handle_leds("/loop4r/leds", "10.0.0.2", 9100, "/led")

        sends = client_factory.sends()
        assert [args[0] for _, args in sends] == list(range(LED_COUNT))
        assert sends[3] == ("/led", [3, 1, int(LedTimer.SLOW), int(LedVisual.BLINK)])
        assert sends[0] == ("/led", [0, 0, 0, 0])
        assert client_factory.clients[0].closed is True

    def test_display_sends_selected_loop(self, display, state, client_factory):
        state.selected_loop = 2

        display.handle_display("/loop4r/display", "10.0.0.2", 9100, "/ignored")

        assert client_factory.sends() == [("/display", [2])]

    def test_client_closed_on_send_failure(self, state):
        client = Mock()
        client.__enter__ = Mock(return_value=client)
        client.__exit__ = Mock(side_effect=lambda *exc: client.close())
        client.send_message.side_effect = OSError("network unreachable")
        display = RemoteDisplayProtocolHandler(state, lambda: REPLY_URL, "0.1.0",
                                               client_factory=lambda host, port: client)

        display.handle_ping("/loop4r/ping", "10.0.0.2", 9100, "/pong")

        client.close.assert_called_once()

    def test_connect_failure_dropped(self, state):
        factory = FakeClientFactory(fail_hosts={"nowhere"})
        display = RemoteDisplayProtocolHandler(state, lambda: REPLY_URL, "0.1.0", client_factory=factory)

        display.handle_ping("/loop4r/ping", "nowhere", 9100, "/pong")

        assert factory.events == []

    def test_transient_replies_leave_no_client(self, display, state):
        display.handle_ping("/loop4r/ping", "10.0.0.2", 9100, "/pong")
        assert state.display_client is None


class TestRegistration:
    """Test broadcast client registration."""

    def test_register(self, display, state, client_factory):
        display.handle_register("/loop4r/register_auto_update", "10.0.0.2", 9100, "/led")

        assert state.display_client.host == "10.0.0.2"
        assert state.display_client.port == 9100
        assert state.display_client.reply_address == "/led"
        assert client_factory.events == [("open", "10.0.0.2", 9100)]

    def test_register_without_address(self, display, state):
        display.handle_register("/register_auto_update", "10.0.0.2", 9100)
        assert state.display_client.reply_address is None

    def test_new_client_replaces_old(self, display, state, client_factory):
        """(h1, p1) then (h2, p2): the first is closed before the second opens."""
        display.handle_register("/loop4r/register_auto_update", "h1", 9101, "/led")
        display.handle_register("/loop4r/register_auto_update", "h2", 9102, "/led")

        assert client_factory.events == [
            ("open", "h1", 9101),
            ("close", "h1", 9101),
            ("open", "h2", 9102),
        ]
        assert state.display_client.host == "h2"

    def test_same_client_only_updates_address(self, display, state, client_factory):
        display.handle_register("/loop4r/register_auto_update", "h1", 9101, "/a")
        display.handle_register("/loop4r/register_auto_update", "h1", 9101, "/b")

        assert client_factory.events == [("open", "h1", 9101)]
        assert state.display_client.reply_address == "/b"

    def test_unregister(self, display, state, client_factory):
        display.handle_register("/loop4r/register_auto_update", "h1", 9101, "/led")
        display.handle_unregister("/loop4r/unregister_auto_update", "h1", 9101, "/led")

        assert state.display_client is None
        assert client_factory.clients[0].closed is True

    def test_replace_then_unregister_leaves_nothing_open(self, display, state, client_factory):
        display.handle_register("/loop4r/register_auto_update", "h1", 9101, "/led")
        display.handle_register("/loop4r/register_auto_update", "h2", 9102, "/led")
        display.handle_unregister("/loop4r/unregister_auto_update", "h2", 9102, "/led")

        assert state.display_client is None
        assert [(c.host, c.port) for c in client_factory.clients] == [("h1", 9101), ("h2", 9102)]
        assert all(client.closed for client in client_factory.clients)

    def test_unregister_without_client_is_noop(self, display, state, client_factory):
        display.handle_unregister("/loop4r/unregister_auto_update", "h1", 9101)

        assert state.display_client is None
        assert client_factory.events == []

    def test_registered_client_receives_broadcasts(self, display, state, leds, client_factory):
        display.handle_register("/loop4r/register_auto_update", "h1", 9101, "/led")

        leds.show_selected_loop(4)

        assert client_factory.sends() == [("/display", [4])]


class TestValidation:
    """Test malformed display requests."""

    @pytest.mark.parametrize("args", [
        (),
        ("10.0.0.2", 9100),
        (5, 9100, "/pong"),
        ("10.0.0.2", "9100", "/pong"),
        ("10.0.0.2", 0, "/pong"),
        ("10.0.0.2", 70000, "/pong"),
        ("10.0.0.2", 9100, "pong"),
        ("10.0.0.2", 9100, "/pong", "extra"),
    ])
    def test_bad_ping(self, display, state, client_factory, args):
        display.handle_ping("/loop4r/ping", *args)

        assert client_factory.events == []
        assert state.stats.get('invalid_messages') == 1

    def test_bad_register(self, display, state, client_factory):
        display.handle_register("/loop4r/register_auto_update", "h1")

        assert state.display_client is None
        assert client_factory.events == []
        assert state.stats.get('invalid_messages') == 1

    def test_requests_counted(self, display, state):
        display.handle_ping("/loop4r/ping", "10.0.0.2", 9100, "/pong")
        display.handle_leds("/loop4r/leds", "10.0.0.2", 9100, "/led")
        assert state.stats.get('display_requests') == 2


class TestDispatcherMapping:
    """Test requests reach the handlers through the dispatcher."""

    @pytest.mark.parametrize("address", ["/loop4r/ping", "/ping"])
    def test_ping_addresses(self, display, client_factory, address):
        disp = dispatcher.Dispatcher()
        posted = []
        display.map(disp, lambda handler, *args: posted.append((handler, args)))

        for handler in disp.handlers_for_address(address):
            handler.callback(address, "10.0.0.2", 9100, "/pong")

        assert len(posted) == 1
        handler, args = posted[0]
        handler(*args)
        assert client_factory.sends()[0][0] == "/pong"

    @pytest.mark.parametrize("request_name", ["leds", "display", "register_auto_update", "unregister_auto_update"])
    def test_all_requests_mapped(self, display, request_name):
        disp = dispatcher.Dispatcher()
        display.map(disp, lambda handler, *args: None)

        assert list(disp.handlers_for_address(f"/loop4r/{request_name}"))
        assert list(disp.handlers_for_address(f"/{request_name}"))
