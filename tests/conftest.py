"""Shared fixtures: bridge state, recording outputs and wired components."""

import pytest

from looperbridge.leds import LedStateMachine
from looperbridge.session import LooperSession
from looperbridge.state import BridgeState
from tests.fakes import FakeClientFactory, FakeLedOutput, RecordingSender

REPLY_URL = "osc.udp://localhost:9000/"


@pytest.fixture
def state():
    return BridgeState()


@pytest.fixture
def led_output():
    return FakeLedOutput()


@pytest.fixture
def leds(state, led_output):
    return LedStateMachine(state, led_output)


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def session(state, leds, sender):
    return LooperSession(state, leds, sender, lambda: REPLY_URL)


@pytest.fixture
def client_factory():
    return FakeClientFactory()
