"""
Connection supervisor: picks the current target, connects over WebSocket and
keeps the session alive with a heartbeat and a receive watchdog.
"""

import random
import threading
import time
import logging
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect as ws_connect
from .constants import (
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_WATCHDOG_TIMEOUT,
    DEFAULT_WATCHDOG_TICK,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_CLOSE_TIMEOUT,
    DEFAULT_RETRY_MIN,
    DEFAULT_RETRY_MAX,
    DEFAULT_RETRY_JITTER,
    DEFAULT_RETRY_MULTIPLIER,
    DEFAULT_STALE_TARGET_TTL,
    DEFAULT_IDLE_POLL,
    DEFAULT_WS_PATHS,
    DEFAULT_ORIGIN,
    HEARTBEAT_PAYLOAD,
)
from .events import emit_log
from .models import ConnectionState, ForcedConfig, StateKind

logger = logging.getLogger(__name__)


def build_candidate_urls(target, forced_port=None):
    """
    Ordered WebSocket URLs for a target, port-major.

    Ports: forced port first, then the announced port. Paths: announced
    path, then "/ws", then "/". Duplicates are dropped keeping order.
    """
    ports = []
    if forced_port:
        ports.append(forced_port)
    if target.ws_port not in ports:
        ports.append(target.ws_port)

    paths = []
    if target.path and target.path.startswith("/"):
        paths.append(target.path)
    for path in DEFAULT_WS_PATHS:
        if path not in paths:
            paths.append(path)

    host = f"[{target.ip}]" if ":" in target.ip else target.ip
    return [f"ws://{host}:{port}{path}" for port in ports for path in paths]


class RetryBackoff:
    """Multiplicative retry delay bounded by [minimum, maximum]"""

    def __init__(self, minimum=DEFAULT_RETRY_MIN, maximum=DEFAULT_RETRY_MAX,
                 multiplier=DEFAULT_RETRY_MULTIPLIER, jitter=DEFAULT_RETRY_JITTER):
        self.minimum = minimum
        self.maximum = maximum
        self.multiplier = multiplier
        self.jitter = jitter
        self.delay = minimum

    def reset(self):
        self.delay = self.minimum

    def sleep_time(self):
        """Current delay plus jitter, never negative."""
        return max(0.0, self.delay + random.uniform(-self.jitter, self.jitter))

    def grow(self):
        self.delay = min(self.maximum, max(self.minimum, self.delay * self.multiplier))
        return self.delay


class _Session:
    """Shared state of one open connection, seen by all three duties."""

    def __init__(self, connection, url):
        self.connection = connection
        self.url = url
        self.ended = threading.Event()
        self.reason = None
        self.messages = 0
        self._lock = threading.Lock()
        self._last_receive = time.monotonic()

    def touch(self):
        with self._lock:
            self._last_receive = time.monotonic()
            self.messages += 1

    def idle_for(self):
        with self._lock:
            return time.monotonic() - self._last_receive

    def end(self, reason):
        """Record why the session ended. Only the first reason sticks."""
        with self._lock:
            if self.reason is not None:
                return False
            self.reason = reason
        self.ended.set()
        return True

    def close(self):
        try:
            self.connection.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket {self.url}: {e}")


class ConnectionSupervisor:
    """Owns the connection state machine and at most one live session"""

    def __init__(self, selector, gate, event_sink=None, forced=None,
                 heartbeat_interval=DEFAULT_HEARTBEAT_INTERVAL,
                 watchdog_timeout=DEFAULT_WATCHDOG_TIMEOUT,
                 watchdog_tick=DEFAULT_WATCHDOG_TICK,
                 connect_timeout=DEFAULT_CONNECT_TIMEOUT,
                 close_timeout=DEFAULT_CLOSE_TIMEOUT,
                 stale_target_ttl=DEFAULT_STALE_TARGET_TTL,
                 idle_poll=DEFAULT_IDLE_POLL,
                 origin=DEFAULT_ORIGIN,
                 backoff=None,
                 connector=None,
                 clock=time.time):
        """
        Initialize the supervisor

        Args:
            selector (TargetSelector): Source of the current target
            gate (VolumeGate): Receives every inbound frame
            event_sink: EventSink for log lines and state transitions
            forced (ForcedConfig): Forced overrides
            heartbeat_interval (float): Seconds between keepalive frames
            watchdog_timeout (float): Max seconds without an inbound frame
            watchdog_tick (float): Watchdog check period
            connect_timeout (float): WebSocket open timeout
            close_timeout (float): WebSocket closing handshake timeout
            stale_target_ttl (float): Max age of a discovered target
            idle_poll (float): Sleep while no usable target exists
            origin (str): Origin header sent on connect
            backoff (RetryBackoff): Retry delay policy
            connector: Callable opening a connection (websockets.sync.client.connect)
            clock: Wall clock used for target staleness
        """
        self.selector = selector
        self.gate = gate
        self.event_sink = event_sink
        self.forced = forced or ForcedConfig()
        self.heartbeat_interval = heartbeat_interval
        self.watchdog_timeout = watchdog_timeout
        self.watchdog_tick = watchdog_tick
        self.connect_timeout = connect_timeout
        self.close_timeout = close_timeout
        self.stale_target_ttl = stale_target_ttl
        self.idle_poll = idle_poll
        self.origin = origin
        self.backoff = backoff or RetryBackoff()
        self.connector = connector or ws_connect
        self.clock = clock

        self._state = ConnectionState.idle()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread = None
        self._session = None
        self._session_lock = threading.Lock()
        self.sessions_opened = 0

        selector.on_target_replaced(self._on_target_replaced)

    @property
    def state(self):
        with self._state_lock:
            return self._state

    def _set_state(self, state, unless=()):
        """
        Publish ``state`` unless the current state's kind is in ``unless``.

        Returns:
            bool: True if the state changed
        """
        with self._state_lock:
            if state == self._state or self._state.kind in unless:
                return False
            self._state = state
        logger.debug(f"State -> {state}")
        if self.event_sink is not None:
            try:
                self.event_sink.state_changed(state)
            except Exception as e:
                logger.error(f"Event sink rejected state change: {e}")
        return True

    def _on_target_replaced(self, target):
        # A session to the old target continues or fails on its own
        self._set_state(ConnectionState.discovering(),
                        unless=(StateKind.CONNECTED, StateKind.CONNECTING))

    def _log(self, message, level=logging.INFO):
        emit_log(logger, self.event_sink, message, level)

    def start(self):
        """
        Start the supervisor loop in a background thread

        Returns:
            bool: False if a previous loop is still winding down
        """
        if self._thread and self._thread.is_alive():
            if not self._stop_event.is_set():
                return True
            self._thread.join(timeout=self.connect_timeout)
            if self._thread.is_alive():
                logger.warning("Previous supervisor loop is still running, not starting another")
                return False
        self._stop_event = threading.Event()
        if self.forced.ip:
            self._set_state(ConnectionState.connecting(self.forced.ip))
        else:
            self._set_state(ConnectionState.discovering())
        self._thread = threading.Thread(target=self.run, args=(self._stop_event,),
                                        name="airvol.supervisor", daemon=True)
        self._thread.start()
        logger.info("Connection supervisor started")
        return True

    def stop(self, timeout=None):
        """
        Stop the loop and close any live session. Idempotent.

        The loop publishes the final Idle state itself when it exits. A
        connection attempt that is still opening when the join times out
        is closed as soon as it returns.
        """
        self._stop_event.set()
        with self._session_lock:
            session = self._session
        if session is not None:
            session.end("stopped")
            session.close()

        thread = self._thread
        if thread is None:
            self._set_state(ConnectionState.idle())
            return
        if thread is threading.current_thread():
            return
        if timeout is None:
            timeout = self.close_timeout + self.watchdog_tick + 1.0
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("Connection supervisor did not stop in time")
        else:
            self._thread = None

    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    def run(self, stop_event=None):
        """Supervisor loop; returns once ``stop_event`` is set"""
        if stop_event is None:
            stop_event = self._stop_event
        self.backoff.reset()
        try:
            while not stop_event.is_set():
                try:
                    self.run_once(stop_event)
                except Exception as e:
                    logger.debug("Supervisor iteration failed", exc_info=True)
                    self._set_state(ConnectionState.error(str(e)))
                    self._log(f"[MAIN] error: {e}", logging.ERROR)
                    self._back_off(stop_event)
        finally:
            self._set_state(ConnectionState.idle())
        logger.info("Connection supervisor stopped")

    def run_once(self, stop_event):
        """
        One loop iteration.

        Returns:
            str: "waiting", "connected", "failed" or "stopped"
        """
        target = self.selector.select()
        if target is None:
            if self.forced.ip:
                self._set_state(ConnectionState.connecting(self.forced.ip))
            else:
                self._set_state(ConnectionState.waiting_for_target())
            stop_event.wait(self.idle_poll)
            return "waiting"

        if not self.forced.ip and target.is_stale(self.clock(), self.stale_target_ttl):
            self._set_state(ConnectionState.waiting_for_target())
            stop_event.wait(self.idle_poll)
            return "waiting"

        for url in build_candidate_urls(target, self.forced.port):
            if stop_event.is_set():
                return "stopped"
            self._set_state(ConnectionState.connecting(url))
            self._log(f"[MAIN] connecting to {url} ({target.label}) ...")
            if self.connect(url, stop_event):
                self.backoff.reset()
                return "connected"

        if stop_event.is_set():
            return "stopped"
        self._back_off(stop_event)
        return "failed"

    def _back_off(self, stop_event):
        sleep_time = self.backoff.sleep_time()
        self._set_state(ConnectionState.reconnecting(sleep_time))
        self._log(f"[MAIN] connection lost, retrying in {sleep_time:.3f}s")
        stop_event.wait(sleep_time)
        self.backoff.grow()

    def connect(self, url, stop_event=None):
        """
        Open ``url`` and run the session until one of its duties ends it.

        Returns:
            bool: True if the transport opened (the session always ends later)
        """
        stop_event = stop_event or self._stop_event
        try:
            connection = self.connector(
                url,
                open_timeout=self.connect_timeout,
                close_timeout=self.close_timeout,
                origin=self.origin,
            )
        except (OSError, WebSocketException) as e:
            self._log(f"[WS] cannot open {url}: {e}", logging.WARNING)
            return False

        session = _Session(connection, url)
        with self._session_lock:
            self._session = session
        if stop_event.is_set():
            # stop() arrived while the transport was opening
            session.end("stopped")
            session.close()
            with self._session_lock:
                self._session = None
            self._log(f"[WS] closed {url}: supervisor stopped while opening")
            return False

        self.sessions_opened += 1
        self._set_state(ConnectionState.connected(url))
        self._log(f"[WS] connected to {url}")

        heartbeat = threading.Thread(target=self._heartbeat_duty, args=(session,),
                                     name="airvol.heartbeat", daemon=True)
        watchdog = threading.Thread(target=self._watchdog_duty, args=(session,),
                                    name="airvol.watchdog", daemon=True)
        heartbeat.start()
        watchdog.start()
        try:
            self._receive_duty(session)
        finally:
            session.end("closed")
            session.close()
            heartbeat.join()
            watchdog.join()
            with self._session_lock:
                self._session = None
            self._log(f"[WS] session to {url} ended: {session.reason} "
                      f"({session.messages} messages)")
        return True

    def _receive_duty(self, session):
        while not session.ended.is_set():
            try:
                message = session.connection.recv()
            except ConnectionClosed as e:
                if session.end(f"closed by peer ({e})"):
                    self._log(f"[WS] closed: {e}", logging.WARNING)
                return
            except Exception as e:
                if session.end(f"receive error ({e})"):
                    self._log(f"[WS] error: {e}", logging.ERROR)
                return

            if session.ended.is_set():
                return
            session.touch()
            self._dispatch(message)

    def _dispatch(self, message):
        if isinstance(message, bytes):
            try:
                message = message.decode("utf-8")
            except UnicodeDecodeError:
                logger.debug("Dropping binary frame that is not UTF-8")
                return
        try:
            self.gate.handle_payload(message)
        except Exception as e:
            logger.error(f"Error handling volume frame: {e}")

    def _heartbeat_duty(self, session):
        while not session.ended.wait(self.heartbeat_interval):
            try:
                session.connection.send(HEARTBEAT_PAYLOAD)
            except Exception as e:
                if session.end(f"heartbeat failed ({e})"):
                    self._log(f"[HB] heartbeat send error: {e}", logging.WARNING)
                    session.close()
                return

    def _watchdog_duty(self, session):
        while not session.ended.wait(self.watchdog_tick):
            idle = session.idle_for()
            if idle > self.watchdog_timeout:
                if session.end("watchdog timeout"):
                    self._log(f"[MAIN] Watchdog: no application data received for {idle:.1f}s",
                              logging.WARNING)
                    session.close()
                return
