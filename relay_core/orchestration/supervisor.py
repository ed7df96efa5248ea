"""
Service supervisor for the relay's managed units.

State machine per unit: ``UNKNOWN -> {RUNNING, STOPPED}``, with
``INDETERMINATE`` surfaced when a unit settles neither cleanly running nor
cleanly stopped. Operations:

- start: no-op if running, else launch, settle, re-check
- stop: graceful signal via the managing mechanism, bounded grace period
- status: pure read
- restart: stop, fixed delay, start (or the unit's native restart)
- restart_all: inference-daemon, gateway, then container-worker

Failures raise ``StartFailed`` / ``StopFailed`` / ``Indeterminate`` once per
invocation. Nothing is retried automatically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional

from relay_core.errors import Indeterminate, StartFailed, StopFailed
from relay_core.orchestration.units import UNIT_ORDER, ManagedUnit, UnitState

logger = logging.getLogger(__name__)


class Outcome(Enum):
    """Successful results of a lifecycle action."""
    STARTED = "started"
    ALREADY_RUNNING = "already_running"
    STOPPED = "stopped"
    NOT_RUNNING = "not_running"
    RESTARTED = "restarted"


@dataclass
class ActionResult:
    unit: str
    outcome: Outcome
    message: str = ""


@dataclass
class UnitStatus:
    """Snapshot of one unit for status output and diagnostics."""
    unit: str
    state: UnitState = UnitState.UNKNOWN
    detail: str = ""
    running_count: Optional[int] = None
    total_count: Optional[int] = None

    @property
    def running(self) -> bool:
        return self.state == UnitState.RUNNING

    def to_dict(self) -> Dict[str, object]:
        return {
            "unit": self.unit,
            "state": self.state.value,
            "running": self.running,
            "detail": self.detail,
            "running_count": self.running_count,
            "total_count": self.total_count,
        }


class ServiceSupervisor:
    """
    Start/stop/restart/status for a fixed set of units.

    Args:
        units: managed units keyed by name
        settle_seconds: wait after launching before re-checking state
        restart_delay: pause between stop and start on restart
        stop_grace: how long a stopping unit may take before it counts as failed
        poll_interval: state polling period inside the grace window
    """

    def __init__(
        self,
        units: Mapping[str, ManagedUnit],
        settle_seconds: float = 5.0,
        restart_delay: float = 3.0,
        stop_grace: float = 5.0,
        poll_interval: float = 0.5,
    ):
        self.units: Dict[str, ManagedUnit] = dict(units)
        self.settle_seconds = settle_seconds
        self.restart_delay = restart_delay
        self.stop_grace = stop_grace
        self.poll_interval = poll_interval

    @classmethod
    def from_config(cls, config) -> "ServiceSupervisor":
        from relay_core.orchestration.units import build_units

        return cls(
            build_units(config),
            settle_seconds=config.settle_seconds,
            restart_delay=config.restart_delay,
            stop_grace=config.stop_grace,
        )

    def unit(self, name: str) -> ManagedUnit:
        try:
            return self.units[name]
        except KeyError:
            raise KeyError(f"Unknown unit '{name}' (expected one of: {', '.join(self.units)})") from None

    @property
    def ordered_names(self) -> List[str]:
        """Unit names in dependency order; unknown extras last."""
        known = [n for n in UNIT_ORDER if n in self.units]
        return known + [n for n in self.units if n not in known]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, name: str) -> ActionResult:
        unit = self.unit(name)

        if await unit.state() == UnitState.RUNNING:
            logger.info(f"{name} already running")
            return ActionResult(name, Outcome.ALREADY_RUNNING, f"{name} is already running")

        logger.info(f"Starting {name}...")
        try:
            await unit.launch()
        except Exception as e:
            logger.error(f"Launching {name} failed: {e}")
            raise StartFailed(name, str(e), log_path=_log(unit)) from e

        return await self._await_started(unit)

    async def _await_started(self, unit: ManagedUnit) -> ActionResult:
        await asyncio.sleep(self.settle_seconds)
        state = await unit.state()

        if state == UnitState.RUNNING:
            logger.info(f"✅ {unit.name} started")
            return ActionResult(unit.name, Outcome.STARTED, f"{unit.name} started")
        if state == UnitState.INDETERMINATE:
            detail, _, _ = await unit.detail()
            raise Indeterminate(unit.name, detail)
        raise StartFailed(
            unit.name,
            f"not running after {self.settle_seconds:g}s",
            log_path=_log(unit),
        )

    async def stop(self, name: str, force: bool = False) -> ActionResult:
        unit = self.unit(name)

        if await unit.state() == UnitState.STOPPED:
            logger.info(f"{name} is not running")
            return ActionResult(name, Outcome.NOT_RUNNING, f"{name} is not running")

        logger.info(f"Stopping {name}{' (forced)' if force else ''}...")
        try:
            await unit.terminate(force=force)
        except Exception as e:
            logger.error(f"Stopping {name} failed: {e}")
            raise StopFailed(name, str(e)) from e

        deadline = time.monotonic() + self.stop_grace
        state = await unit.state()
        while state != UnitState.STOPPED and time.monotonic() < deadline:
            await asyncio.sleep(self.poll_interval)
            state = await unit.state()

        if state == UnitState.STOPPED:
            logger.info(f"{name} stopped")
            return ActionResult(name, Outcome.STOPPED, f"{name} stopped")
        if state == UnitState.INDETERMINATE:
            detail, _, _ = await unit.detail()
            raise Indeterminate(name, detail)
        raise StopFailed(name, f"still running after {self.stop_grace:g}s")

    async def restart(self, name: str) -> ActionResult:
        unit = self.unit(name)

        try:
            native = await unit.restart_in_place()
        except Exception as e:
            raise StartFailed(name, f"restart failed: {e}", log_path=_log(unit)) from e

        if native:
            logger.info(f"Restarted {name} via its runtime")
            result = await self._await_started(unit)
        else:
            await self.stop(name)
            await asyncio.sleep(self.restart_delay)
            result = await self.start(name)

        return ActionResult(name, Outcome.RESTARTED, f"{name} restarted ({result.outcome.value})")

    async def status(self, name: str) -> UnitStatus:
        unit = self.unit(name)
        state, detail, running, total = await unit.inspect()
        return UnitStatus(name, state, detail, running, total)

    # ------------------------------------------------------------------
    # Composed operations
    # ------------------------------------------------------------------

    async def status_all(self) -> List[UnitStatus]:
        names = self.ordered_names
        return list(await asyncio.gather(*(self.status(n) for n in names)))

    async def start_all(self) -> List[ActionResult]:
        return [await self.start(name) for name in self.ordered_names]

    async def stop_all(self, force: bool = False) -> List[ActionResult]:
        return [await self.stop(name, force=force) for name in reversed(self.ordered_names)]

    async def restart_all(self) -> List[ActionResult]:
        """Restart every unit, one at a time, dependencies first."""
        results = []
        for name in self.ordered_names:
            results.append(await self.restart(name))
        return results


def _log(unit: ManagedUnit) -> Optional[str]:
    return str(unit.log_path) if unit.log_path else None


__all__ = ["ActionResult", "Outcome", "ServiceSupervisor", "UnitStatus"]
