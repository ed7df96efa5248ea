"""
Error taxonomy for the relay.

Every failure that reaches an operator is a ``RelayError`` carrying a
one-line ``hint``: the command or action that would resolve it. The CLI
prints ``message`` and ``hint`` and exits non-zero; the gateway converts
request-level failures into HTTP responses; diagnostics record them per
check.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class RelayError(Exception):
    """Base class for all relay failures."""

    default_hint: str = ""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint if hint is not None else self.default_hint

    def __str__(self) -> str:
        return self.message


class ConfigError(RelayError):
    """Persisted configuration is unreadable or invalid."""

    default_hint = "Run 'relayctl configure' to rewrite the configuration file"


# ============================================================================
# Port negotiation
# ============================================================================

class PortRangeExhausted(RelayError):
    """No free port in the requested range."""

    def __init__(self, low: int, high: int):
        super().__init__(
            f"No available port in range {low}-{high}",
            hint="Free a port in the range or pass a wider --range to 'relayctl configure'",
        )
        self.low = low
        self.high = high


class PortBindExhausted(RelayError):
    """Every bind attempt lost the race for its port."""

    def __init__(self, attempted: Sequence[int]):
        ports = ", ".join(str(p) for p in attempted)
        super().__init__(
            f"Could not bind gateway after {len(attempted)} attempts (ports: {ports})",
            hint="Run 'relayctl ports' to see which processes hold the ports",
        )
        self.attempted: List[int] = list(attempted)


# ============================================================================
# Backend
# ============================================================================

class BackendUnreachable(RelayError):
    """Transport failure or timeout talking to the inference backend."""

    default_hint = "Run 'relayctl start inference-daemon' or check the backend URL"


class BackendError(RelayError):
    """The backend answered with a non-200 status."""

    def __init__(self, status: int, body: str = ""):
        super().__init__(
            f"Backend error: {status}",
            hint="Run 'relayctl logs' to inspect the inference daemon log",
        )
        self.status = status
        self.body = body


# ============================================================================
# Supervision
# ============================================================================

class SupervisorError(RelayError):
    """Base for lifecycle failures of a managed unit."""

    def __init__(self, unit: str, message: str, hint: Optional[str] = None):
        super().__init__(message, hint=hint)
        self.unit = unit


class StartFailed(SupervisorError):
    def __init__(self, unit: str, reason: str = "", log_path: Optional[str] = None):
        message = f"Failed to start {unit}"
        if reason:
            message += f": {reason}"
        hint = f"Check the log: tail -20 {log_path}" if log_path else "Run 'relayctl logs'"
        super().__init__(unit, message, hint=hint)


class StopFailed(SupervisorError):
    def __init__(self, unit: str, reason: str = ""):
        message = f"Failed to stop {unit}"
        if reason:
            message += f": {reason}"
        super().__init__(unit, message, hint=f"Retry with 'relayctl stop {unit} --force'")


class Indeterminate(SupervisorError):
    """A unit is neither cleanly running nor stopped after its settle window."""

    def __init__(self, unit: str, detail: str = ""):
        message = f"{unit} is in an indeterminate state"
        if detail:
            message += f" ({detail})"
        super().__init__(unit, message, hint=f"Run 'relayctl restart {unit}'")


# ============================================================================
# Configuration drift / diagnostics
# ============================================================================

class ConfigDrift(RelayError):
    """Persisted gateway port disagrees with the port actually bound."""

    def __init__(self, persisted: Optional[int], actual: int):
        super().__init__(
            f"Configured gateway port {persisted} but gateway is bound to {actual}",
            hint=(
                f"Restart the gateway on {persisted} ('relayctl restart gateway') or run "
                f"'relayctl configure --port {actual}' and update dependent worker configuration"
            ),
        )
        self.persisted = persisted
        self.actual = actual


class BenchmarkFailed(RelayError):
    default_hint = "Run 'relayctl diagnose' to check backend connectivity"


__all__ = [
    "RelayError",
    "ConfigError",
    "PortRangeExhausted",
    "PortBindExhausted",
    "BackendUnreachable",
    "BackendError",
    "SupervisorError",
    "StartFailed",
    "StopFailed",
    "Indeterminate",
    "ConfigDrift",
    "BenchmarkFailed",
]
