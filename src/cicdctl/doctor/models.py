"""Data models and helpers for doctor probes."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from ..authorizer import RestartAuthorizer
    from ..backups import BackupManager
    from ..config import AppConfig
    from ..credentials import SecretStore
    from ..whitelist import ServiceWhitelist


class ProbeStatus(str, Enum):
    """High-level outcome for a doctor probe."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is ProbeStatus.RED

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the status represents a warning."""
        return self is ProbeStatus.YELLOW


class DoctorImpact(Enum):
    """Impact tier used to derive the doctor exit code."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


ProbeCategory = Literal["env", "fs", "secrets", "whitelist", "authorization", "backups"]

PROBE_CATEGORY_VALUES: tuple[ProbeCategory, ...] = (
    "env",
    "fs",
    "secrets",
    "whitelist",
    "authorization",
    "backups",
)


@dataclass(slots=True, frozen=True)
class ProbeContext:
    """Components a probe may inspect. Probes never mutate anything."""

    config: AppConfig
    whitelist: ServiceWhitelist
    authorizer: RestartAuthorizer
    secrets: SecretStore
    backups: BackupManager


@dataclass(slots=True, frozen=True)
class ProbeResult:
    """Outcome of running a probe."""

    id: str
    category: ProbeCategory
    status: ProbeStatus
    impact: DoctorImpact
    message: str
    remediation: str | None = None
    duration_ms: int | None = None
    data: Mapping[str, Any] | None = None
    warnings: Sequence[str] = field(default_factory=tuple)

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the probe result represents a failure."""
        return self.status.is_failure

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "id": self.id,
            "category": self.category,
            "status": self.status.value,
            "impact": self.impact.name.lower(),
            "message": self.message,
            "remediation": self.remediation,
            "duration_ms": self.duration_ms,
            "data": dict(self.data) if self.data else {},
            "warnings": list(self.warnings),
        }


@dataclass(slots=True, frozen=True)
class ProbeDefinition:
    """Metadata + callable for a probe."""

    id: str
    category: ProbeCategory
    run: Callable[[ProbeContext], ProbeResult]


@dataclass(slots=True, frozen=True)
class DoctorSummary:
    """Aggregated summary derived from probe results."""

    status: ProbeStatus
    impact: DoctorImpact
    exit_code: int
    totals: Mapping[ProbeStatus, int]


@dataclass(slots=True, frozen=True)
class DoctorReport:
    """Complete report for a doctor run."""

    results: Sequence[ProbeResult]
    summary: DoctorSummary
    metadata: Mapping[str, Any] | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "status": self.summary.status.value,
            "exit_code": self.summary.exit_code,
            "totals": {status.value: count for status, count in self.summary.totals.items()},
            "results": [result.to_dict() for result in self.results],
            "metadata": dict(self.metadata) if self.metadata else {},
        }


STATUS_ORDER: Mapping[ProbeStatus, int] = {
    ProbeStatus.GREEN: 0,
    ProbeStatus.YELLOW: 1,
    ProbeStatus.RED: 2,
}


def aggregate_results(results: Iterable[ProbeResult]) -> DoctorSummary:
    """Compute the overall status; the exit code is the worst impact seen."""
    totals: dict[ProbeStatus, int] = {status: 0 for status in ProbeStatus}
    worst_impact = DoctorImpact.OK
    worst_status = ProbeStatus.GREEN
    for result in results:
        totals[result.status] += 1
        if result.impact.value > worst_impact.value:
            worst_impact = result.impact
        if STATUS_ORDER[result.status] > STATUS_ORDER[worst_status]:
            worst_status = result.status
    return DoctorSummary(
        status=worst_status,
        impact=worst_impact,
        exit_code=worst_impact.value,
        totals=totals,
    )


def build_report(
    results: Sequence[ProbeResult],
    metadata: Mapping[str, Any] | None = None,
) -> DoctorReport:
    """Create a full DoctorReport from probe results."""
    summary = aggregate_results(results)
    return DoctorReport(results=tuple(results), summary=summary, metadata=metadata)
