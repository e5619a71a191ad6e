import errno
import json
import queue
import time

import pytest

from airvol.discovery import DiscoveryListener, parse_announce, parse_port
from airvol.models import ForcedConfig, Target
from conftest import FakeUdpSocket


def _announce(**fields):
    payload = {"service": "airvol", "type": "announce"}
    payload.update(fields)
    return payload


@pytest.mark.parametrize(
    "value, expected",
    [
        (81, 81),
        ("81", 81),
        (" 81 ", 81),
        ("80.6", 81),
        (80.6, 81),
        ("80.4", 80),
        (0, None),
        (-5, None),
        ("0", None),
        ("-3.2", None),
        ("abc", None),
        ("", None),
        (None, None),
        (True, None),
        ([81], None),
        ("nan", None),
        (65535, 65535),
        (65536, None),
        ("70000", None),
        (65535.6, None),
    ],
)
def test_parse_port(value, expected):
    assert parse_port(value) == expected


def test_announce_with_explicit_ip():
    target, reason = parse_announce(_announce(ip="10.0.0.5", ws_port=81), "10.0.0.99", now=100.0)
    assert reason is None
    assert target == Target(ip="10.0.0.5", ws_port=81, name=None)
    assert target.last_seen == 100.0


def test_announce_with_out_of_range_port_is_rejected():
    target, reason = parse_announce(_announce(ip="10.0.0.5", ws_port=70000), "10.0.0.5")
    assert target is None
    assert reason == "announce without ws_port"


def test_announce_ip_falls_back_to_sender():
    target, _ = parse_announce(_announce(ip="", ws_port="81"), "192.168.1.7")
    assert target.ip == "192.168.1.7"


def test_announce_port_aliases_and_response_type():
    target, _ = parse_announce({"service": "airvol", "type": "Response", "wsPort": 8080}, "10.0.0.2")
    assert target.ws_port == 8080
    target, _ = parse_announce(_announce(port="82.0"), "10.0.0.2")
    assert target.ws_port == 82


def test_announce_name_and_path_fields():
    target, _ = parse_announce(
        _announce(ws_port=81, device_name="Studio", path="/volume"), "10.0.0.2")
    assert target.name == "Studio"
    assert target.path == "/volume"

    target, _ = parse_announce(_announce(ws_port=81, ws_path="volume"), "10.0.0.2")
    assert target.path is None


def test_own_probe_is_dropped_silently():
    target, reason = parse_announce({"service": "airvol", "type": "discover"}, "10.0.0.2")
    assert target is None
    assert reason is None


@pytest.mark.parametrize(
    "payload, reason",
    [
        ({"service": "other", "type": "announce", "ws_port": 81}, "service mismatch"),
        ({"service": "airvol", "ws_port": 81}, "payload without type"),
        ({"service": "airvol", "type": "hello", "ws_port": 81}, "unhandled type (hello)"),
        ({"service": "airvol", "type": "announce"}, "announce without ws_port"),
        ({"service": "airvol", "type": "announce", "ws_port": "x"}, "announce without ws_port"),
        (["not", "an", "object"], "payload is not an object"),
    ],
)
def test_rejected_announces_carry_a_reason(payload, reason):
    target, why = parse_announce(payload, "10.0.0.2")
    assert target is None
    assert why == reason


def test_forced_name_filter_drops_other_devices():
    forced = ForcedConfig(name="Studio")
    target, reason = parse_announce(_announce(ws_port=81, name="Other"), "10.0.0.2", forced=forced)
    assert target is None
    assert reason == "filtered by forced configuration"

    target, _ = parse_announce(_announce(ws_port=81, name="Studio"), "10.0.0.2", forced=forced)
    assert target.name == "Studio"


def test_forced_ip_filter():
    forced = ForcedConfig(ip="10.0.0.5")
    target, _ = parse_announce(_announce(ws_port=81), "10.0.0.6", forced=forced)
    assert target is None


def _listener(sock, events=None, **kwargs):
    candidates = queue.Queue(maxsize=kwargs.pop("maxsize", 8))
    listener = DiscoveryListener(
        candidates,
        event_sink=events,
        interval=60.0,
        jitter=0.0,
        receive_timeout=0.05,
        socket_factory=lambda: sock,
        **kwargs
    )
    return listener, candidates


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_listener_sends_probe_immediately_and_publishes_candidates(events):
    announce = json.dumps(_announce(ip="10.0.0.5", ws_port=81, name="Desk")).encode()
    sock = FakeUdpSocket(datagrams=[(announce, ("10.0.0.5", 4210))])
    listener, candidates = _listener(sock, events)

    assert listener.start() is True
    try:
        assert _wait_for(lambda: sock.sent)
        data, address = sock.sent[0]
        assert json.loads(data) == {"type": "discover", "service": "airvol"}
        assert address == ("255.255.255.255", 4210)
        assert sock.bound == ("", 4210)
        assert sock.timeout == 0.05

        target = candidates.get(timeout=2.0)
        assert target == Target(ip="10.0.0.5", ws_port=81, name="Desk")
    finally:
        listener.stop()

    assert any("candidate selected -> Desk" in line for line in events.lines())


def test_listener_drops_malformed_datagrams(events):
    sock = FakeUdpSocket()
    listener, candidates = _listener(sock, events)

    assert listener.handle_datagram(b"\xff\x00garbage", ("10.0.0.5", 4210)) is None
    assert listener.handle_datagram(b'{"service":"airvol","type":"announce"}', ("10.0.0.5", 4210)) is None
    assert candidates.empty()
    lines = events.lines()
    assert any("payload ignored" in line for line in lines)
    assert any("announce without ws_port" in line for line in lines)


def test_listener_reports_full_queue(events):
    sock = FakeUdpSocket()
    listener, candidates = _listener(sock, events, maxsize=1)
    datagram = json.dumps(_announce(ws_port=81)).encode()

    assert listener.handle_datagram(datagram, ("10.0.0.5", 4210)) is not None
    assert listener.handle_datagram(datagram, ("10.0.0.5", 4210)) is None
    assert candidates.qsize() == 1
    assert any("candidate queue full" in line for line in events.lines())


def test_listener_stop_is_prompt_and_idempotent():
    sock = FakeUdpSocket()
    listener, _ = _listener(sock)
    listener.start()
    assert listener.is_running()

    started = time.monotonic()
    listener.stop()
    assert time.monotonic() - started < 1.5
    assert sock.closed
    assert not listener.is_running()

    listener.stop()
    assert listener.send_probe() is False


def test_stop_before_start_is_harmless():
    listener, _ = _listener(FakeUdpSocket())
    listener.stop()
    assert not listener.is_running()


def test_bind_failure_is_logged_and_not_fatal(events):
    sock = FakeUdpSocket(bind_error=OSError(errno.EADDRINUSE, "Address already in use"))
    listener, _ = _listener(sock, events)

    assert listener.start() is False
    assert sock.closed
    assert not listener.is_running()
    assert any("bind error: %d" % errno.EADDRINUSE in line for line in events.lines())


def test_send_failure_is_logged(events):
    sock = FakeUdpSocket(send_error=OSError(errno.ENETUNREACH, "Network is unreachable"))
    listener, _ = _listener(sock, events)
    listener.start()
    try:
        assert _wait_for(lambda: any("sendto error" in line for line in events.lines()))
        assert listener.is_running()
    finally:
        listener.stop()
