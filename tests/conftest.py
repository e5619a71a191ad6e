"""Shared fakes for sockets, WebSocket connections and sinks."""

import errno
import queue
import socket
import threading

import pytest
from websockets.exceptions import ConnectionClosedError

from airvol.events import EventLog
from airvol.volume_controller import SinkError, VolumeSink


class FakeUdpSocket:
    def __init__(self, datagrams=(), bind_error=None, send_error=None):
        self.options = {}
        self.bound = None
        self.timeout = None
        self.sent = []
        self.closed = False
        self.bind_error = bind_error
        self.send_error = send_error
        self.inbox = queue.Queue()
        for datagram in datagrams:
            self.inbox.put(datagram)

    def setsockopt(self, level, option, value):
        self.options[option] = value

    def settimeout(self, timeout):
        self.timeout = timeout

    def bind(self, address):
        if self.bind_error:
            raise self.bind_error
        self.bound = address

    def sendto(self, data, address):
        if self.send_error:
            raise self.send_error
        self.sent.append((data, address))
        return len(data)

    def recvfrom(self, size):
        if self.closed:
            raise OSError(errno.EBADF, "Bad file descriptor")
        try:
            return self.inbox.get(timeout=0.02)
        except queue.Empty:
            raise socket.timeout("timed out")

    def shutdown(self, how):
        if self.closed:
            raise OSError(errno.EBADF, "Bad file descriptor")

    def close(self):
        self.closed = True


class FakeConnection:
    """Stands in for websockets.sync.client.ClientConnection."""

    def __init__(self, frames=(), fail_send=False):
        self.inbox = queue.Queue()
        for frame in frames:
            self.inbox.put(frame)
        self.sent = []
        self.fail_send = fail_send
        self.closed = threading.Event()

    def recv(self):
        while True:
            if self.closed.is_set():
                raise ConnectionClosedError(None, None)
            try:
                item = self.inbox.get(timeout=0.01)
            except queue.Empty:
                continue
            if isinstance(item, Exception):
                raise item
            return item

    def send(self, message):
        if self.fail_send or self.closed.is_set():
            raise ConnectionClosedError(None, None)
        self.sent.append(message)

    def close(self):
        self.closed.set()


class FakeConnector:
    """Returns (or raises) scripted outcomes, one per connect call."""

    def __init__(self, *outcomes, default=None):
        self.outcomes = list(outcomes)
        self.default = default
        self.urls = []
        self.kwargs = []

    def __call__(self, url, **kwargs):
        self.urls.append(url)
        self.kwargs.append(kwargs)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if outcome is None:
            outcome = ConnectionRefusedError(111, "Connection refused")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSink(VolumeSink):
    name = "recording"

    def __init__(self, fail=False):
        self.applied = []
        self.fail = fail

    def apply(self, percent):
        self.applied.append(percent)
        if self.fail:
            raise SinkError("device unavailable")


class RecordingEvents(EventLog):
    def __init__(self):
        super().__init__(max_lines=1000)
        self.states = []

    def state_changed(self, state):
        self.states.append(state)
        super().state_changed(state)


@pytest.fixture
def events():
    return RecordingEvents()


@pytest.fixture
def sink():
    return RecordingSink()
