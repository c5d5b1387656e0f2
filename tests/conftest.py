"""Shared fakes for session tests"""

from datetime import datetime

import pytest

from rccar.network.session import Session, SessionConfig
from rccar.network.transport import TransportError


class FakeHandle:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Manual scheduler with the call_later surface of an asyncio loop"""

    def __init__(self):
        self.now = 0.0
        self.handles = []

    def call_later(self, delay, callback):
        handle = FakeHandle(self.now + delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self):
        return [h for h in self.handles if not h.cancelled]

    def advance(self, seconds):
        """Runs every callback that falls due within the next `seconds`"""
        target = self.now + seconds
        while True:
            due = [h for h in self.pending if h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            handle.cancelled = True
            self.now = handle.when
            handle.callback()
        self.now = target


class FakeClock:
    def __init__(self, start=1000.0):
        self.value = start

    def __call__(self):
        return self.value


class FakeTransport:
    def __init__(self, url, listener):
        self.url = url
        self.listener = listener
        self.sent = []
        self.close_calls = []

    def send(self, frame):
        self.sent.append(frame)

    def close(self, code, reason):
        self.close_calls.append((code, reason))

    # Helpers driving the listener the way a real link would
    def open(self):
        self.listener.on_open(self)

    def receive(self, frame):
        self.listener.on_message(self, frame)

    def closed(self, code=1000, reason="", clean=True):
        self.listener.on_close(self, code, reason, clean)

    def fail(self, error=None):
        self.listener.on_error(self, error or OSError("connection refused"))

    @property
    def commands(self):
        return [f for f in self.sent if f != "PING\r\n"]


class TransportFactory:
    def __init__(self):
        self.transports = []
        self.fail_next = False

    def __call__(self, url, listener):
        if self.fail_next:
            self.fail_next = False
            raise TransportError(f"bad url {url}")
        transport = FakeTransport(url, listener)
        self.transports.append(transport)
        return transport

    @property
    def last(self):
        return self.transports[-1]


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def factory():
    return TransportFactory()


@pytest.fixture
def make_session(factory, scheduler, clock):
    def _make(**overrides):
        config = SessionConfig(url="ws://192.168.4.1:81", **overrides)
        session = Session(factory, scheduler, config, clock=clock,
                          wall_clock=lambda: datetime(2024, 1, 1, 12, 0, 0))
        session.notifications = []
        session.add_notification_listener(session.notifications.append)
        return session
    return _make


@pytest.fixture
def session(make_session):
    return make_session()


@pytest.fixture
def connected(session, factory):
    """Session with an open link"""
    session.request_connect()
    factory.last.open()
    return session


@pytest.fixture
def authorized(connected, factory):
    """Open session whose operator has been authorized by the car"""
    factory.last.receive('RFID:{"authorized": true, "user": "Alice"}')
    factory.last.sent.clear()
    connected.notifications.clear()
    return connected
