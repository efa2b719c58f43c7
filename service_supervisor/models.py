from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class HealthClassification(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"

    @classmethod
    def coerce(cls, value: Any, *, default: "HealthClassification") -> "HealthClassification":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return default


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ProbeResult:
    name: str
    ok: bool
    detail: str = ""
    measurement: float | None = None
    elapsed_ms: float | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> str:
        mark = "ok" if self.ok else "FAIL"
        if self.detail:
            return f"{self.name}: {mark} ({self.detail})"
        return f"{self.name}: {mark}"


@dataclass
class SupervisorState:
    restart_attempt_count: int = 0
    last_restart_ts: float | None = None
    last_classification: HealthClassification = HealthClassification.HEALTHY
    last_notified_classification: HealthClassification = HealthClassification.HEALTHY
    escalated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "restart_attempt_count": int(self.restart_attempt_count),
            "last_restart_ts": self.last_restart_ts,
            "last_classification": self.last_classification.value,
            "last_notified_classification": self.last_notified_classification.value,
            "escalated": bool(self.escalated),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SupervisorState":
        """
        Best-effort decode of a persisted record.
        Individual invalid values fall back to their defaults.
        """
        count = 0
        try:
            count = max(0, int(data.get("restart_attempt_count") or 0))
        except (TypeError, ValueError):
            count = 0

        last_restart_ts = None
        raw_ts = data.get("last_restart_ts")
        if raw_ts is not None:
            try:
                last_restart_ts = float(raw_ts)
            except (TypeError, ValueError):
                last_restart_ts = None
            if last_restart_ts is not None and last_restart_ts <= 0:
                last_restart_ts = None

        escalated = data.get("escalated")
        return cls(
            restart_attempt_count=count,
            last_restart_ts=last_restart_ts,
            last_classification=HealthClassification.coerce(
                data.get("last_classification"), default=HealthClassification.HEALTHY
            ),
            last_notified_classification=HealthClassification.coerce(
                data.get("last_notified_classification"), default=HealthClassification.HEALTHY
            ),
            escalated=escalated if isinstance(escalated, bool) else False,
        )


@dataclass(frozen=True)
class SnapshotRef:
    path: str
    created_ts: float
    sections: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RemediationResult:
    attempted: bool
    ok: bool
    attempt: int
    command: list[str] = field(default_factory=list)
    error: str | None = None
    skipped_reason: str | None = None
    verification: list[ProbeResult] = field(default_factory=list)


@dataclass
class TickOutcome:
    initial: HealthClassification
    final: HealthClassification
    results: list[ProbeResult]
    state: SupervisorState
    remediation: RemediationResult | None = None
    escalated: bool = False
    notified: bool = False
    snapshot: SnapshotRef | None = None

    @property
    def exit_code(self) -> int:
        return 1 if self.final is HealthClassification.CRITICAL else 0
