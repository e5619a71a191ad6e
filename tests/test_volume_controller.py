import random
import subprocess

import pytest

from airvol import volume_controller
from airvol.models import VolumeSample
from airvol.volume_controller import (
    LinuxVolumeSink,
    NullVolumeSink,
    SinkError,
    VolumeGate,
    create_volume_sink,
    interpret,
)
from conftest import RecordingSink


@pytest.mark.parametrize(
    "payload, expected",
    [
        (b'{"percent":"37.6"}', VolumeSample(38, "percent")),
        ('{"pct": 12}', VolumeSample(12, "pct")),
        ('{"volume_percent": 99.4}', VolumeSample(99, "volume_percent")),
        ('{"percent": 140}', VolumeSample(100, "percent")),
        ('{"percent": -3}', VolumeSample(0, "percent")),
        ('{"raw": 2048}', VolumeSample(50, "raw")),
        ('{"raw": "4095"}', VolumeSample(100, "raw")),
        ('{"raw": 0}', VolumeSample(0, "raw")),
        ('{"percent": "loud", "raw": 4095}', VolumeSample(100, "raw")),
    ],
)
def test_interpret(payload, expected):
    assert interpret(payload) == expected


@pytest.mark.parametrize(
    "payload",
    [b'{"hb":1}', b"not json", b"[1, 2]", b'{"percent": true}', b'{"raw": null}', b"\xff\xfe"],
)
def test_interpret_ignores_other_shapes(payload):
    assert interpret(payload) is None


def test_raw_rescale_matches_rounding_over_domain():
    for raw in range(0, 4096):
        expected = round(raw * 100 / 4095)
        scaled = raw * 100 / 4095
        if abs(scaled - int(scaled) - 0.5) < 1e-9:
            continue
        assert interpret('{"raw": %d}' % raw).percent == expected


def test_gate_applies_first_value_and_reports_changed(sink):
    gate = VolumeGate(sink, threshold=0.5)
    assert gate.handle_payload(b'{"percent":"37.6"}') is True
    assert sink.applied == [38]
    assert gate.last_applied == 38


def test_gate_rounds_fractional_percent(sink):
    gate = VolumeGate(sink)
    assert gate.gate(37.6) is True
    assert gate.gate(37.4) is True
    assert gate.gate(104.2) is True
    assert gate.gate(-3) is True
    assert sink.applied == [38, 37, 100, 0]


def test_gate_suppresses_small_changes(sink):
    gate = VolumeGate(sink, threshold=3)
    assert gate.gate(50) is True
    assert gate.gate(52) is False
    assert gate.gate(48) is False
    assert gate.gate(53) is True
    assert sink.applied == [50, 53]


def test_gate_sequence_property(sink):
    rng = random.Random(7)
    threshold = 4
    gate = VolumeGate(sink, threshold=threshold)
    last = None
    for _ in range(500):
        value = rng.randint(0, 100)
        changed = gate.gate(value)
        if changed:
            assert last is None or abs(last - value) >= threshold
            last = value
        else:
            assert abs(last - value) < threshold
    for previous, current in zip(sink.applied, sink.applied[1:]):
        assert abs(previous - current) >= threshold


def test_sink_failure_still_updates_last_applied():
    failing = RecordingSink(fail=True)
    gate = VolumeGate(failing, threshold=0.5)
    assert gate.gate(40) is True
    assert gate.last_applied == 40
    assert gate.gate(40) is False
    assert failing.applied == [40]


def test_null_sink_records_values():
    sink = NullVolumeSink()
    VolumeGate(sink).gate(10)
    assert sink.applied == [10]


def test_create_volume_sink_falls_back_when_unavailable(monkeypatch):
    monkeypatch.setattr(volume_controller.shutil, "which", lambda name: None)
    assert isinstance(create_volume_sink("linux"), NullVolumeSink)
    assert isinstance(create_volume_sink("bogus"), NullVolumeSink)


def test_command_sink_wraps_failures(monkeypatch):
    monkeypatch.setattr(volume_controller.shutil, "which", lambda name: "/usr/bin/" + name)
    calls = []

    def fake_run(command, **kwargs):
        calls.append(command)
        return subprocess.CompletedProcess(command, 1, stdout="", stderr="no sink")

    monkeypatch.setattr(volume_controller.subprocess, "run", fake_run)
    sink = LinuxVolumeSink()
    with pytest.raises(SinkError):
        sink.apply(42)
    assert calls == [["pactl", "set-sink-volume", "@DEFAULT_SINK@", "42%"]]
