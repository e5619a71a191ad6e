"""
Volume payload interpretation, change gating and output sinks.
"""

import json
import math
import shutil
import subprocess
import sys
import threading
import logging
from .constants import (
    DEFAULT_VOLUME_THRESHOLD,
    PERCENT_KEYS,
    RAW_KEY,
    RAW_MAX,
    PYCAW_AVAILABLE,
)
from .models import VolumeSample

if PYCAW_AVAILABLE:
    from ctypes import cast, POINTER
    from comtypes import CLSCTX_ALL
    from pycaw.pycaw import AudioUtilities, IAudioEndpointVolume

logger = logging.getLogger(__name__)


class SinkError(Exception):
    """Raised by a VolumeSink when the output volume could not be changed"""


class VolumeSink:
    """Capability that sets the local output volume"""

    name = "sink"

    def apply(self, percent):
        """
        Set the output volume.

        Args:
            percent (int): Volume level 0-100

        Raises:
            SinkError: The platform refused the change
        """
        raise NotImplementedError


class NullVolumeSink(VolumeSink):
    """Dry-run sink that only records what it would apply"""

    name = "null"

    def __init__(self):
        self.applied = []

    def apply(self, percent):
        self.applied.append(percent)
        logger.info(f"[dry-run] volume -> {percent}%")


class WindowsVolumeSink(VolumeSink):
    """Master endpoint volume through the Windows Core Audio API"""

    name = "windows"

    def __init__(self):
        if not PYCAW_AVAILABLE:
            raise SinkError("pycaw is not installed")
        try:
            devices = AudioUtilities.GetSpeakers()
            interface = devices.Activate(IAudioEndpointVolume._iid_, CLSCTX_ALL, None)
            self.volume = cast(interface, POINTER(IAudioEndpointVolume))
            current = int(round(self.volume.GetMasterVolumeLevelScalar() * 100))
            logger.info(f"Current system volume: {current}%")
        except Exception as e:
            raise SinkError(f"Failed to initialize audio interface: {e}") from e

    def apply(self, percent):
        try:
            self.volume.SetMasterVolumeLevelScalar(percent / 100.0, None)
        except Exception as e:
            raise SinkError(f"Error setting volume: {e}") from e


class _CommandVolumeSink(VolumeSink):
    """Sets the volume by running a platform command"""

    executable = None
    timeout = 5.0

    def __init__(self):
        if shutil.which(self.executable) is None:
            raise SinkError(f"{self.executable} not found")

    def command(self, percent):
        raise NotImplementedError

    def apply(self, percent):
        try:
            result = subprocess.run(self.command(percent), capture_output=True,
                                    text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SinkError(f"{self.executable} failed: {e}") from e
        if result.returncode != 0:
            raise SinkError(f"{self.executable} exited with {result.returncode}: "
                            f"{result.stderr.strip()}")


class MacVolumeSink(_CommandVolumeSink):
    name = "macos"
    executable = "osascript"

    def command(self, percent):
        return ["osascript", "-e", f"set volume output volume {percent}"]


class LinuxVolumeSink(_CommandVolumeSink):
    name = "linux"
    executable = "pactl"

    def command(self, percent):
        return ["pactl", "set-sink-volume", "@DEFAULT_SINK@", f"{percent}%"]


SINKS = {
    "windows": WindowsVolumeSink,
    "macos": MacVolumeSink,
    "linux": LinuxVolumeSink,
    "null": NullVolumeSink,
}


def create_volume_sink(kind="auto"):
    """
    Build the volume sink for ``kind`` or for the running platform.

    Falls back to a NullVolumeSink when the platform sink is unavailable.
    """
    if kind == "auto":
        if sys.platform.startswith("win"):
            kind = "windows"
        elif sys.platform == "darwin":
            kind = "macos"
        else:
            kind = "linux"
    sink_class = SINKS.get(kind)
    if sink_class is None:
        logger.warning(f"Unknown volume sink '{kind}', using dry-run sink")
        return NullVolumeSink()
    try:
        sink = sink_class()
    except SinkError as e:
        logger.error(f"Volume sink '{kind}' unavailable ({e}), using dry-run sink")
        return NullVolumeSink()
    logger.info(f"Volume sink: {sink.name}")
    return sink


def _as_number(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def round_percent(value):
    """Clamp to [0, 100] and round half up."""
    clamped = min(100.0, max(0.0, value))
    return int(math.floor(clamped + 0.5))


def interpret(payload):
    """
    Decode a device frame into a volume sample.

    Args:
        payload (bytes or str): Raw frame text

    Returns:
        VolumeSample or None: None when the frame carries no volume
    """
    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        data = json.loads(payload)
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    for key in PERCENT_KEYS:
        if key in data:
            number = _as_number(data[key])
            if number is not None:
                return VolumeSample(percent=round_percent(number), source=key)

    if RAW_KEY in data:
        number = _as_number(data[RAW_KEY])
        if number is not None:
            return VolumeSample(percent=round_percent(number * 100.0 / RAW_MAX), source=RAW_KEY)

    return None


class VolumeGate:
    """Suppresses sink writes that do not move the volume by ``threshold``"""

    def __init__(self, sink, threshold=DEFAULT_VOLUME_THRESHOLD):
        """
        Initialize the gate

        Args:
            sink (VolumeSink): Output volume capability
            threshold (float): Minimum change that reaches the sink
        """
        self.sink = sink
        self.threshold = threshold
        self.last_applied = None
        self.lock = threading.Lock()

    def gate(self, percent, threshold=None):
        """
        Apply ``percent`` if it differs enough from the last applied value.

        Returns:
            bool: True if the sink was called ("changed")
        """
        threshold = self.threshold if threshold is None else threshold
        percent = round_percent(percent)
        with self.lock:
            previous = self.last_applied
            if previous is not None and abs(previous - percent) < threshold:
                return False
            # Remember the attempt even if the sink fails
            self.last_applied = percent

        try:
            self.sink.apply(percent)
            logger.info(f"Volume set to {percent}%")
        except SinkError as e:
            logger.error(f"Volume sink failed for {percent}%: {e}")
        except Exception as e:
            logger.error(f"Unexpected error applying volume {percent}%: {e}")
        return True

    def handle_payload(self, payload):
        """Interpret a frame and gate it

        Returns:
            bool: True if the volume changed
        """
        sample = interpret(payload)
        if sample is None:
            logger.debug(f"Ignoring frame without volume: {payload!r}")
            return False
        return self.gate(sample.percent)
