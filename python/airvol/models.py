"""
Data model shared by discovery, target selection and the connection supervisor.
"""

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Union

# lastSeen of forced targets; never stale.
ALWAYS_FRESH = math.inf


@dataclass(frozen=True)
class Target:
    """
    A discovered or forced endpoint.

    Two targets describe the same device when ``ip`` and ``ws_port`` match.
    ``last_seen`` does not take part in equality.
    """
    ip: str
    ws_port: int
    name: Optional[str] = None
    path: Optional[str] = None
    last_seen: float = field(default=0.0, compare=False)

    def same_device(self, other):
        return other is not None and self.ip == other.ip and self.ws_port == other.ws_port

    def enriched_with(self, newer):
        """Merge a re-announce of the same device, never dropping known name/path."""
        return replace(
            self,
            name=newer.name or self.name,
            path=newer.path or self.path,
            last_seen=max(self.last_seen, newer.last_seen),
        )

    def is_stale(self, now, ttl):
        return now - self.last_seen > ttl

    @property
    def label(self):
        return self.name or f"{self.ip}:{self.ws_port}"


class StateKind(Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    WAITING_FOR_TARGET = "waiting_for_target"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionState:
    """Supervisor state plus its payload (endpoint, delay or reason)."""
    kind: StateKind
    detail: Union[str, float, None] = None

    @classmethod
    def idle(cls):
        return cls(StateKind.IDLE)

    @classmethod
    def discovering(cls):
        return cls(StateKind.DISCOVERING)

    @classmethod
    def connecting(cls, endpoint):
        return cls(StateKind.CONNECTING, endpoint)

    @classmethod
    def connected(cls, endpoint):
        return cls(StateKind.CONNECTED, endpoint)

    @classmethod
    def waiting_for_target(cls):
        return cls(StateKind.WAITING_FOR_TARGET)

    @classmethod
    def reconnecting(cls, delay):
        return cls(StateKind.RECONNECTING, delay)

    @classmethod
    def error(cls, reason):
        return cls(StateKind.ERROR, reason)

    def describe(self):
        if self.kind is StateKind.IDLE:
            return "Idle"
        if self.kind is StateKind.DISCOVERING:
            return "Searching for devices..."
        if self.kind is StateKind.CONNECTING:
            return f"Connecting to {self.detail}"
        if self.kind is StateKind.CONNECTED:
            return f"Connected to {self.detail}"
        if self.kind is StateKind.WAITING_FOR_TARGET:
            return "No device available"
        if self.kind is StateKind.RECONNECTING:
            return f"Reconnecting in {self.detail:.2f}s"
        return f"Error: {self.detail}"

    def __str__(self):
        return self.describe()


@dataclass(frozen=True)
class ForcedConfig:
    """Operator overrides, fixed for the lifetime of the process."""
    ip: Optional[str] = None
    port: Optional[int] = None
    name: Optional[str] = None

    def is_active(self):
        return bool(self.ip or self.port or self.name)

    def accepts(self, ip, name):
        """Forced name/IP filter applied to discovered candidates."""
        if self.name is not None and (name or "") != self.name:
            return False
        if self.ip is not None and ip != self.ip:
            return False
        return True


@dataclass(frozen=True)
class VolumeSample:
    """A decoded volume percentage and the payload key it came from."""
    percent: int
    source: str
