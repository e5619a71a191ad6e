"""
UDP broadcast discovery of volume devices.
"""

import errno
import json
import math
import os
import queue
import random
import socket
import threading
import time
import logging
from .constants import (
    DEFAULT_DISCOVERY_PORT,
    DEFAULT_DISCOVERY_ADDRESS,
    DEFAULT_SERVICE_NAME,
    DEFAULT_DISCOVER_INTERVAL,
    DEFAULT_DISCOVER_JITTER,
    MIN_DISCOVER_INTERVAL,
    DISCOVERY_RECEIVE_TIMEOUT,
    DISCOVERY_BUFFER_SIZE,
    STOP_POLL_SLICE,
    RECEIVE_ERROR_PAUSE,
    MAX_PORT,
)
from .events import emit_log
from .models import ForcedConfig, Target

logger = logging.getLogger(__name__)

TRANSIENT_ERRNOS = {errno.EAGAIN, errno.EWOULDBLOCK, errno.EINTR}
ANNOUNCE_TYPES = ("announce", "response")


def describe_socket_error(error):
    """Format an OSError as 'errno (strerror)'"""
    code = getattr(error, "errno", None)
    if code is None:
        return str(error)
    return f"{code} ({os.strerror(code)})"


def parse_port(value):
    """
    Parse an announced WebSocket port.

    Accepts ints, floats, and strings holding either. Fractional values are
    rounded half away from zero.

    Returns:
        int or None: Port in 1..65535, or None when unusable
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        port = value
    elif isinstance(value, (float, str)):
        port = _round_port(value)
    else:
        return None
    if port is None or not 1 <= port <= MAX_PORT:
        return None
    return port


def _round_port(value):
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            pass
        try:
            value = float(text)
        except ValueError:
            return None
    if not math.isfinite(value):
        return None
    return int(math.floor(value + 0.5)) if value >= 0 else int(math.ceil(value - 0.5))


def _text_field(payload, *keys):
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str):
            return value
    return None


def parse_announce(payload, sender_ip, service=DEFAULT_SERVICE_NAME, forced=None, now=None):
    """
    Validate a decoded discovery datagram.

    Args:
        payload (dict): Decoded JSON object
        sender_ip (str): Address the datagram came from
        service (str): Expected service name
        forced (ForcedConfig): Forced name/IP filter
        now (float): Timestamp for ``last_seen``

    Returns:
        tuple: (Target or None, reason). Reason is None for silent drops
        (own probes) and for accepted candidates.
    """
    forced = forced or ForcedConfig()
    if not isinstance(payload, dict):
        return None, "payload is not an object"
    if payload.get("service") != service:
        return None, "service mismatch"

    message_type = payload.get("type")
    if not isinstance(message_type, str):
        return None, "payload without type"
    message_type = message_type.lower()
    if message_type == "discover":
        return None, None
    if message_type not in ANNOUNCE_TYPES:
        return None, f"unhandled type ({message_type})"

    explicit_ip = payload.get("ip")
    if isinstance(explicit_ip, str) and explicit_ip:
        ip = explicit_ip
    elif sender_ip:
        ip = sender_ip
    else:
        return None, "no usable ip"

    port_value = payload.get("ws_port")
    if port_value is None:
        port_value = payload.get("wsPort")
    if port_value is None:
        port_value = payload.get("port")
    ws_port = parse_port(port_value)
    if ws_port is None:
        return None, "announce without ws_port"

    name = _text_field(payload, "name", "device_name")
    if not forced.accepts(ip, name):
        return None, "filtered by forced configuration"

    path = _text_field(payload, "ws_path", "path")
    if path is not None and not path.startswith("/"):
        path = None

    target = Target(
        ip=ip,
        ws_port=ws_port,
        name=name,
        path=path,
        last_seen=time.time() if now is None else now,
    )
    return target, None


class DiscoveryListener:
    """Broadcasts discovery probes and publishes validated announces"""

    def __init__(self, candidates, forced=None, event_sink=None,
                 port=DEFAULT_DISCOVERY_PORT,
                 address=DEFAULT_DISCOVERY_ADDRESS,
                 service=DEFAULT_SERVICE_NAME,
                 interval=DEFAULT_DISCOVER_INTERVAL,
                 jitter=DEFAULT_DISCOVER_JITTER,
                 receive_timeout=DISCOVERY_RECEIVE_TIMEOUT,
                 socket_factory=None):
        """
        Initialize the discovery listener

        Args:
            candidates (queue.Queue): Bounded queue receiving accepted Targets
            forced (ForcedConfig): Forced name/IP filter
            event_sink: EventSink receiving log lines
            port (int): UDP port to bind and probe
            address (str): Broadcast address for probes
            service (str): Service name expected in announces
            interval (float): Seconds between probes
            jitter (float): Symmetric random jitter applied to the interval
            receive_timeout (float): Socket receive timeout in seconds
            socket_factory: Callable returning a UDP socket (tests)
        """
        self.candidates = candidates
        self.forced = forced or ForcedConfig()
        self.event_sink = event_sink
        self.port = port
        self.address = address
        self.service = service
        self.interval = interval
        self.jitter = jitter
        self.receive_timeout = receive_timeout
        self.socket_factory = socket_factory or (
            lambda: socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP))

        self.probe = json.dumps({"type": "discover", "service": service}).encode("utf-8")

        self._sock = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._sender_thread = None
        self._receiver_thread = None

    def _log(self, message, level=logging.INFO):
        emit_log(logger, self.event_sink, f"[DISCOVERY] {message}", level)

    def start(self):
        """Open and bind the socket, then launch the send and receive loops

        Returns:
            bool: True if the listener is running
        """
        with self._lock:
            if self._sock is not None:
                return True

            try:
                sock = self.socket_factory()
            except OSError as e:
                self._log(f"error opening socket: {describe_socket_error(e)}", logging.ERROR)
                return False

            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                if hasattr(socket, "SO_REUSEPORT"):
                    try:
                        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                    except OSError as e:
                        self._log(f"SO_REUSEPORT unavailable: {describe_socket_error(e)}",
                                  logging.DEBUG)
                sock.settimeout(self.receive_timeout)
                sock.bind(("", self.port))
            except OSError as e:
                self._log(f"bind error: {describe_socket_error(e)}", logging.ERROR)
                sock.close()
                return False

            self._sock = sock
            self._stop_event = threading.Event()
            stop_event = self._stop_event

            self._sender_thread = threading.Thread(
                target=self._send_loop, args=(stop_event,),
                name="airvol.discovery.sender", daemon=True)
            self._receiver_thread = threading.Thread(
                target=self._receive_loop, args=(stop_event,),
                name="airvol.discovery.receiver", daemon=True)
            self._sender_thread.start()
            self._receiver_thread.start()

        self._log(f"started on UDP *:{self.port} (broadcast enabled)")
        return True

    def stop(self):
        """Close the socket and stop both loops. Safe to call repeatedly."""
        with self._lock:
            self._stop_event.set()
            sock, self._sock = self._sock, None
            threads = [self._sender_thread, self._receiver_thread]
            self._sender_thread = None
            self._receiver_thread = None

        if sock is None:
            return

        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Unconnected UDP sockets report ENOTCONN here
            pass
        sock.close()

        current = threading.current_thread()
        for thread in threads:
            if thread is not None and thread is not current:
                thread.join(timeout=self.receive_timeout + STOP_POLL_SLICE * 2)
        self._log("stopped")

    def is_running(self):
        with self._lock:
            return self._sock is not None

    def _current_socket(self):
        with self._lock:
            return self._sock

    def _sleep(self, stop_event, seconds):
        """Sleep in short slices so stop() is observed promptly."""
        deadline = time.monotonic() + max(0.0, seconds)
        while not stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            stop_event.wait(min(STOP_POLL_SLICE, remaining))

    def _next_interval(self):
        delay = self.interval + random.uniform(-self.jitter, self.jitter)
        return max(MIN_DISCOVER_INTERVAL, delay)

    def _send_loop(self, stop_event):
        self.send_probe()
        while not stop_event.is_set():
            self._sleep(stop_event, self._next_interval())
            if stop_event.is_set():
                break
            self.send_probe()

    def send_probe(self):
        """Broadcast one discovery probe

        Returns:
            bool: True if the datagram was handed to the socket
        """
        sock = self._current_socket()
        if sock is None:
            return False
        try:
            sent = sock.sendto(self.probe, (self.address, self.port))
        except OSError as e:
            if self._current_socket() is None:
                return False
            self._log(f"sendto error: {describe_socket_error(e)}", logging.WARNING)
            return False
        self._log(f"discover sent ({sent} bytes)", logging.DEBUG)
        return True

    def _receive_loop(self, stop_event):
        while not stop_event.is_set():
            sock = self._current_socket()
            if sock is None:
                break
            try:
                data, addr = sock.recvfrom(DISCOVERY_BUFFER_SIZE)
            except socket.timeout:
                continue
            except OSError as e:
                if stop_event.is_set() or self._current_socket() is None:
                    break
                if e.errno in TRANSIENT_ERRNOS:
                    continue
                self._log(f"recvfrom error: {describe_socket_error(e)}", logging.WARNING)
                self._sleep(stop_event, RECEIVE_ERROR_PAUSE)
                continue

            if not data:
                continue
            self.handle_datagram(data, addr)

    def handle_datagram(self, data, addr):
        """Decode, validate and publish one datagram

        Returns:
            Target or None: The published candidate
        """
        self._log(f"announce received ({len(data)} bytes)", logging.DEBUG)
        try:
            payload = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            self._log(f"payload ignored: {data[:200]!r}", logging.DEBUG)
            return None

        sender_ip = addr[0] if addr else None
        target, reason = parse_announce(payload, sender_ip, self.service, self.forced)
        if target is None:
            if reason:
                self._log(f"{reason}: {json.dumps(payload, sort_keys=True)}", logging.DEBUG)
            return None

        try:
            self.candidates.put_nowait(target)
        except queue.Full:
            self._log(f"candidate queue full, dropping {target.label}", logging.WARNING)
            return None
        self._log(f"candidate selected -> {target.label}")
        return target
