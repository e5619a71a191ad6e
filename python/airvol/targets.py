"""
Current target selection from discovery candidates and forced overrides.
"""

import queue
import threading
import logging
from .constants import DEFAULT_WS_PORT
from .events import emit_log
from .models import ALWAYS_FRESH, ForcedConfig, Target

logger = logging.getLogger(__name__)


class TargetSelector:
    """Holds the single current target behind one lock"""

    def __init__(self, forced=None, event_sink=None, default_ws_port=DEFAULT_WS_PORT):
        """
        Initialize the selector

        Args:
            forced (ForcedConfig): Forced overrides
            event_sink: EventSink receiving log lines
            default_ws_port (int): Port used for a forced IP with no known port
        """
        self.forced = forced or ForcedConfig()
        self.event_sink = event_sink
        self.default_ws_port = default_ws_port

        self._current = None
        self._lock = threading.Lock()
        self._replace_callbacks = []

        self._pump_thread = None
        self._pump_stop = threading.Event()

    def _log(self, message, level=logging.INFO):
        emit_log(logger, self.event_sink, f"[TARGET] {message}", level)

    def on_target_replaced(self, callback):
        """Register ``callback(target)`` invoked after the current target changes device."""
        self._replace_callbacks.append(callback)

    @property
    def current(self):
        with self._lock:
            return self._current

    def select(self):
        """
        Return the target to connect to.

        With a forced IP the target is synthesized from forced values, falling
        back to the last announced port/name/path of that IP and finally to
        ``default_ws_port``.

        Returns:
            Target or None
        """
        if self.forced.ip is None:
            with self._lock:
                return self._current

        with self._lock:
            known = self._current if self._current and self._current.ip == self.forced.ip else None
            port = self.forced.port or (known.ws_port if known else self.default_ws_port)
            forced_target = Target(
                ip=self.forced.ip,
                ws_port=port,
                name=self.forced.name or (known.name if known else None),
                path=known.path if known else None,
                last_seen=ALWAYS_FRESH,
            )
            # Only swap the stored reference on a structural change
            if self._current != forced_target:
                self._current = forced_target
            return self._current

    def on_candidate(self, candidate):
        """
        Merge or adopt a discovered candidate.

        Returns:
            bool: True if the candidate became (or refreshed) the current target
        """
        if not self.forced.accepts(candidate.ip, candidate.name):
            self._log(f"candidate {candidate.label} rejected by forced filter", logging.DEBUG)
            return False

        with self._lock:
            current = self._current
            if current is not None and current.same_device(candidate):
                self._current = current.enriched_with(candidate)
                return True
            self._current = candidate

        self._log(f"target selected -> {candidate.label}")
        for callback in list(self._replace_callbacks):
            try:
                callback(candidate)
            except Exception as e:
                logger.error(f"Target replacement callback failed: {e}")
        return True

    def start(self, candidates):
        """Consume Targets from ``candidates`` on a background thread."""
        if self._pump_thread and self._pump_thread.is_alive():
            return
        self._pump_stop = threading.Event()
        self._pump_thread = threading.Thread(
            target=self._pump, args=(candidates, self._pump_stop),
            name="airvol.targets", daemon=True)
        self._pump_thread.start()

    def stop(self):
        self._pump_stop.set()
        thread, self._pump_thread = self._pump_thread, None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=2)

    def _pump(self, candidates, stop_event):
        while not stop_event.is_set():
            try:
                candidate = candidates.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self.on_candidate(candidate)
            except Exception as e:
                logger.error(f"Error handling discovery candidate: {e}")
