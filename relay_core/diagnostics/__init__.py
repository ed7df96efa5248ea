"""
Diagnostics for the relay: resource snapshot, per-unit status,
connectivity probes, throughput benchmark, and confirmed remediation.
"""

from relay_core.diagnostics.aggregator import DiagnosticsAggregator, http_request
from relay_core.diagnostics.report import (
    BenchmarkResult,
    CheckResult,
    CheckStatus,
    HealthReport,
)
from relay_core.diagnostics.resources import (
    AcceleratorInfo,
    ResourceSnapshot,
    take_resource_snapshot,
)

__all__ = [
    "AcceleratorInfo",
    "BenchmarkResult",
    "CheckResult",
    "CheckStatus",
    "DiagnosticsAggregator",
    "HealthReport",
    "ResourceSnapshot",
    "http_request",
    "take_resource_snapshot",
]
