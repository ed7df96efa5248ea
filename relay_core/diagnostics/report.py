"""Health report structures produced by one diagnostic run."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from relay_core.diagnostics.resources import ResourceSnapshot
from relay_core.orchestration.supervisor import UnitStatus


class CheckStatus(Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"
    SKIPPED = "skipped"


@dataclass
class CheckResult:
    """Result of a single diagnostic check.

    Attributes:
        name: Identifier for this check (e.g., 'resources', 'gateway_health').
        status: PASS/WARN/FAIL/SKIPPED.
        message: One-line human-readable outcome.
        hint: Command or action that would resolve a failure.
        latency_ms: Wall time of the probe, when it made a network call.
        details: Structured extras for JSON output.
    """

    name: str
    status: CheckStatus
    message: str = ""
    hint: str = ""
    latency_ms: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.status in (CheckStatus.PASS, CheckStatus.WARN, CheckStatus.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class BenchmarkResult:
    elapsed_seconds: float
    words: int
    words_per_second: float
    tokens_per_second: Optional[float] = None
    preview: str = ""


@dataclass
class HealthReport:
    """Aggregate result of one diagnostic run; not persisted."""

    checks: List[CheckResult] = field(default_factory=list)
    resources: Optional[ResourceSnapshot] = None
    units: Dict[str, UnitStatus] = field(default_factory=dict)
    benchmark: Optional[BenchmarkResult] = None

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def failures(self) -> List[CheckResult]:
        return [c for c in self.checks if c.status == CheckStatus.FAIL]

    def get(self, name: str) -> Optional[CheckResult]:
        for check in self.checks:
            if check.name == name:
                return check
        return None

    def summary(self) -> str:
        """E.g. 'HEALTHY (8/8 checks passed)' or 'DEGRADED (6/8 checks passed): ...'"""
        total = len(self.checks)
        ok = sum(1 for c in self.checks if c.passed)
        verdict = "HEALTHY" if self.passed else "DEGRADED"
        msg = f"{verdict} ({ok}/{total} checks passed)"
        if not self.passed:
            msg += ": " + ", ".join(c.name for c in self.failures)
        return msg

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "checks": [c.to_dict() for c in self.checks],
            "resources": self.resources.to_dict() if self.resources else None,
            "units": {name: status.to_dict() for name, status in self.units.items()},
            "benchmark": asdict(self.benchmark) if self.benchmark else None,
        }


__all__ = ["BenchmarkResult", "CheckResult", "CheckStatus", "HealthReport"]
