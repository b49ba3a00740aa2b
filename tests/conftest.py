import os

import pytest

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

from PySide6 import QtCore

from solderbot.core.config import DEFAULT_CONFIG
from solderbot.core.dispatch import CommandDispatcher
from solderbot.core.sequence import RunOptions, SequenceOrchestrator
from solderbot.core.session import ConsoleSession
from solderbot.core.telemetry import TelemetryStore


@pytest.fixture(scope="session", autouse=True)
def qapp():
    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication([])
    yield app


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeTransport(QtCore.QObject):
    """Records what the console writes; tests push controller events through `emit_event`."""
    statusChanged     = QtCore.Signal(str, str)
    portsChanged      = QtCore.Signal(list)
    eventReceived     = QtCore.Signal(str, object)
    connectionChanged = QtCore.Signal(bool)

    def __init__(self, connected: bool = True):
        super().__init__()
        self.connected = connected
        self.sent = []

    def available_ports(self):
        return ["FAKE0"]

    def refresh_ports(self):
        self.portsChanged.emit(self.available_ports())

    def connect(self, port, baud):
        self.connected = True
        self.connectionChanged.emit(True)

    def disconnect(self):
        self.connected = False
        self.connectionChanged.emit(False)

    def send_event(self, name, payload=None):
        self.sent.append((name, dict(payload or {})))

    def emit_event(self, name, payload=None):
        self.eventReceived.emit(name, payload if payload is not None else {})

    def names(self):
        return [name for name, _ in self.sent]

    def last(self, name):
        for n, payload in reversed(self.sent):
            if n == name:
                return payload
        raise AssertionError(f"{name} was never sent; sent: {self.names()}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def dispatcher(transport, clock):
    return CommandDispatcher(transport, clock=clock)


@pytest.fixture
def telemetry(clock):
    store = TelemetryStore(clock=clock)
    yield store
    store._liveness_timer.stop()


@pytest.fixture
def orchestrator(dispatcher, telemetry):
    return SequenceOrchestrator(dispatcher, telemetry, options=RunOptions())


@pytest.fixture
def session(transport, clock):
    return ConsoleSession(DEFAULT_CONFIG, transport=transport, clock=clock)
