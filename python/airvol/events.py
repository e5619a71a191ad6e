"""
Event sink contract and the in-process event log.

The core never renders anything. It hands timestamped log lines and
connection state transitions to an injected ``EventSink``; UI or log
collaborators implement the sink.
"""

import threading
import logging
from collections import deque
from datetime import datetime

logger = logging.getLogger(__name__)


class EventSink:
    """Collaborator interface. Implementations must return promptly."""

    def log_line(self, timestamp, message):
        raise NotImplementedError

    def state_changed(self, state):
        raise NotImplementedError


class EventLog(EventSink):
    """Thread-safe bounded buffer of log lines plus the latest state"""

    def __init__(self, max_lines=200):
        """
        Initialize the event log

        Args:
            max_lines (int): Number of most recent lines to keep
        """
        self._lines = deque(maxlen=max_lines)
        self._state = None
        self._listeners = []
        self._lock = threading.Lock()

    def log_line(self, timestamp, message):
        stamp = datetime.fromtimestamp(timestamp).strftime("%H:%M:%S")
        with self._lock:
            self._lines.append(f"{stamp} {message}")
            listeners = list(self._listeners)
        self._notify(listeners, "log_line", timestamp, message)

    def state_changed(self, state):
        with self._lock:
            self._state = state
            listeners = list(self._listeners)
        self._notify(listeners, "state_changed", state)

    def subscribe(self, listener):
        """Register another EventSink to be fed every event."""
        with self._lock:
            self._listeners.append(listener)

    def _notify(self, listeners, method, *args):
        for listener in listeners:
            try:
                getattr(listener, method)(*args)
            except Exception as e:
                logger.error(f"Event listener {listener!r} failed in {method}: {e}")

    @property
    def state(self):
        with self._lock:
            return self._state

    def lines(self):
        with self._lock:
            return list(self._lines)

    def dump(self):
        """Return all buffered lines joined by newlines."""
        return "\n".join(self.lines())


def emit_log(log, sink, message, level=logging.INFO):
    """Log through ``log`` and forward the same line to ``sink`` if present."""
    log.log(level, message)
    if sink is not None:
        try:
            sink.log_line(datetime.now().timestamp(), message)
        except Exception as e:
            log.error(f"Event sink rejected log line: {e}")
