from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import TargetError


class ProbeType(str, Enum):
    TCP = "tcp"
    ICMP = "icmp"

    @classmethod
    def parse(cls, value: Any) -> "ProbeType":
        """Accepts "tcp", "icmp" and the stored alias "ping"; missing means tcp."""
        if isinstance(value, ProbeType):
            return value
        if value is None or value == "":
            return cls.TCP
        text = str(value).strip().lower()
        if text == "ping":
            return cls.ICMP
        try:
            return cls(text)
        except ValueError:
            raise TargetError(f"unknown probe type {value!r}") from None

    @property
    def stored_name(self) -> str:
        return "ping" if self is ProbeType.ICMP else "tcp"


class Health(str, Enum):
    OPTIMAL = "optimal"
    GREAT = "great"
    GOOD = "good"
    WARN = "warn"
    BAD = "bad"
    DOWN = "down"
    UNKNOWN = "unknown"

    @property
    def rank(self) -> int:
        return _HEALTH_RANK[self]


_HEALTH_RANK = {
    Health.OPTIMAL: 6,
    Health.GREAT: 5,
    Health.GOOD: 4,
    Health.WARN: 3,
    Health.BAD: 2,
    Health.DOWN: 1,
    Health.UNKNOWN: 0,
}


@dataclass(frozen=True)
class Target:
    id: str
    name: str
    host: str
    port: int = 0
    probe_type: ProbeType = ProbeType.TCP

    def __post_init__(self):
        probe_type = ProbeType.parse(self.probe_type)
        object.__setattr__(self, "probe_type", probe_type)
        object.__setattr__(self, "host", self.host.strip())
        if not self.id:
            raise TargetError("target id must not be empty")
        if not self.name:
            raise TargetError(f"target {self.id}: name must not be empty")
        if not self.host:
            raise TargetError(f"target {self.id}: host must not be empty")
        if probe_type is ProbeType.ICMP:
            # ping targets carry no port
            object.__setattr__(self, "port", 0)
        elif not 1 <= int(self.port) <= 65535:
            raise TargetError(f"target {self.id}: invalid TCP port {self.port!r}")
        else:
            object.__setattr__(self, "port", int(self.port))

    def connection_key(self) -> Tuple[str, int, ProbeType]:
        return (self.host, self.port, self.probe_type)

    @property
    def address(self) -> str:
        if self.probe_type is ProbeType.ICMP:
            return f"ping {self.host}"
        return f"{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "probe_type": self.probe_type.stored_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Target":
        return cls(
            id=data["id"],
            name=data["name"],
            host=data["host"],
            port=int(data.get("port", 0)),
            probe_type=ProbeType.parse(data.get("probe_type")),
        )


def new_target(
    name: str, host: str, port: int = 0, probe_type: Any = ProbeType.TCP
) -> Target:
    return Target(str(uuid.uuid4()), name, host, port, ProbeType.parse(probe_type))


@dataclass(frozen=True)
class ProbeResult:
    target_id: str
    ok: bool
    latency_ms: float
    error: Optional[str]
    timestamp: float
    # time.monotonic() when the scheduler dispatched the probe
    dispatched: Optional[float] = field(default=None, compare=False)

    @classmethod
    def success(cls, target_id: str, latency_ms: float, timestamp: float) -> "ProbeResult":
        return cls(target_id, True, max(0.0, float(latency_ms)), None, timestamp)

    @classmethod
    def failure(
        cls, target_id: str, error: str, timestamp: float, latency_ms: float = 0.0
    ) -> "ProbeResult":
        return cls(target_id, False, max(0.0, float(latency_ms)), error, timestamp)

    @property
    def error_tag(self) -> Optional[str]:
        """The error category without its detail, e.g. "refused"."""
        if self.error is None:
            return None
        return self.error.split(":", 1)[0]


@dataclass(frozen=True)
class WindowSummary:
    success_rate: Optional[float]
    average: Optional[float]
    p90: Optional[float]
    last_result: Optional[ProbeResult]
    count: int = 0


EMPTY_SUMMARY = WindowSummary(None, None, None, None, 0)


@dataclass(frozen=True)
class TargetStatus:
    target: Target
    summary: WindowSummary
    health: Health
    # ICMP target in an environment that cannot send echoes
    unsupported: bool = False
