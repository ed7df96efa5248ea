"""
Managed units and how to detect them.

Three units are supervised:

    inference-daemon   init-system service, falls back to a detached
                       ``ollama serve``
    gateway            detached ``python -m relay_core.gateway``
    container-worker   compose project driven through the container runtime

Each unit carries an ordered list of ``UnitDetector`` strategies: the
authoritative one first, a fallback second. A unit is running if any
detector says so.
"""

from __future__ import annotations

import logging
import re
import signal
import sys
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from relay_core.config import RelayConfig
from relay_core.orchestration.process import (
    CommandResult,
    find_processes,
    run_command,
    signal_processes,
    spawn_detached,
)

logger = logging.getLogger(__name__)

DAEMON = "inference-daemon"
GATEWAY = "gateway"
WORKER = "container-worker"

# Dependency order: the worker needs the gateway's address to be live.
UNIT_ORDER = (DAEMON, GATEWAY, WORKER)


class UnitState(Enum):
    """Observed state of a managed unit."""
    UNKNOWN = "unknown"
    RUNNING = "running"
    STOPPED = "stopped"
    INDETERMINATE = "indeterminate"


# ============================================================================
# EXTERNAL COLLABORATORS
# ============================================================================

class InitSystem:
    """``systemctl`` adapter: is-active, start, stop."""

    TRANSITIONAL = ("activating", "deactivating", "reloading")

    def __init__(self, use_sudo: bool = True, timeout: float = 30.0):
        self.use_sudo = use_sudo
        self.timeout = timeout

    def _privileged(self, args: List[str]) -> List[str]:
        return ["sudo", "-n", *args] if self.use_sudo else args

    async def is_active(self, unit: str) -> str:
        """``active``, ``inactive``, ``activating``... or ``unavailable``."""
        result = await run_command(["systemctl", "is-active", unit], timeout=self.timeout)
        state = result.stdout.strip()
        if not state or result.returncode == 127:
            return "unavailable"
        return state

    async def start(self, unit: str) -> CommandResult:
        return await run_command(self._privileged(["systemctl", "start", unit]), timeout=self.timeout)

    async def stop(self, unit: str) -> CommandResult:
        return await run_command(self._privileged(["systemctl", "stop", unit]), timeout=self.timeout)


class ContainerRuntime:
    """
    Compose CLI adapter for the worker project.

    ``docker compose ps`` (v2) lists only running containers, so the total
    comes from the services the project defines (``config --services``)
    and only the running count comes from ``ps``.
    """

    def __init__(
        self,
        project_dir: Path,
        command: Sequence[str] = ("docker", "compose"),
        timeout: float = 120.0,
        container_command: Sequence[str] = ("docker",),
    ):
        self.project_dir = Path(project_dir)
        self.command = list(command)
        self.timeout = timeout
        self.container_command = list(container_command)

    def available(self) -> bool:
        return self.project_dir.is_dir()

    @property
    def project_name(self) -> str:
        """Compose's default project name: the directory name, normalized."""
        return re.sub(r"[^a-z0-9_-]", "", self.project_dir.name.lower())

    async def _compose(self, *args: str, timeout: Optional[float] = None) -> CommandResult:
        return await run_command(
            [*self.command, *args],
            timeout=timeout or self.timeout,
            cwd=self.project_dir,
        )

    async def _lines(self, *args: str) -> List[str]:
        result = await self._compose(*args, timeout=30.0)
        if not result.ok:
            raise RuntimeError(
                f"compose {' '.join(args)} exited {result.returncode}: {result.stderr.strip()}"
            )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def list_services(self, running_only: bool = False) -> List[str]:
        """Defined services, or only those with a running container."""
        if running_only:
            return await self._lines("ps", "--services", "--filter", "status=running")
        return await self._lines("config", "--services")

    async def count_running(self) -> Tuple[int, int]:
        """(running, total) services of the project. Raises if compose cannot answer."""
        if not self.available():
            return 0, 0
        total = set(await self.list_services())
        running = set(await self.list_services(running_only=True))
        return len(running & total), len(total)

    async def count_labelled(self) -> Tuple[int, int]:
        """(running, total) containers carrying the project's compose label."""
        result = await run_command(
            [
                *self.container_command,
                "ps",
                "--all",
                "--filter",
                f"label=com.docker.compose.project={self.project_name}",
                "--format",
                "{{.State}}",
            ],
            timeout=30.0,
        )
        if not result.ok:
            raise RuntimeError(f"container ps exited {result.returncode}: {result.stderr.strip()}")
        states = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return sum(1 for s in states if s == "running"), len(states)

    async def up(self) -> CommandResult:
        return await self._compose("up", "-d")

    async def restart(self) -> CommandResult:
        return await self._compose("restart")

    async def stop(self) -> CommandResult:
        return await self._compose("stop")


# ============================================================================
# DETECTORS
# ============================================================================

class UnitDetector(ABC):
    """One way of telling whether a unit is running."""

    name: str = "detector"

    @abstractmethod
    async def probe(self) -> UnitState:
        ...


class InitSystemDetector(UnitDetector):
    name = "init-system"

    def __init__(self, init: InitSystem, unit: str):
        self.init = init
        self.unit = unit

    async def probe(self) -> UnitState:
        state = await self.init.is_active(self.unit)
        if state == "active":
            return UnitState.RUNNING
        if state in InitSystem.TRANSITIONAL:
            return UnitState.INDETERMINATE
        return UnitState.STOPPED


class ProcessPatternDetector(UnitDetector):
    name = "process-pattern"

    def __init__(self, pattern: str):
        self.pattern = pattern

    async def probe(self) -> UnitState:
        return UnitState.RUNNING if find_processes(self.pattern) else UnitState.STOPPED


def container_state(running: int, total: int) -> UnitState:
    """Running only when every service is up and there is at least one."""
    if total > 0 and running == total:
        return UnitState.RUNNING
    if running == 0:
        return UnitState.STOPPED
    return UnitState.INDETERMINATE


class ContainerDetector(UnitDetector):
    name = "container-runtime"

    def __init__(self, runtime: ContainerRuntime):
        self.runtime = runtime

    async def counts(self) -> Tuple[int, int]:
        return await self.runtime.count_running()

    async def probe(self) -> UnitState:
        return container_state(*await self.counts())


class ContainerLabelDetector(ContainerDetector):
    """Asks the container runtime for containers labelled with the project name."""

    name = "container-label"

    async def counts(self) -> Tuple[int, int]:
        return await self.runtime.count_labelled()


# ============================================================================
# MANAGED UNITS
# ============================================================================

class ManagedUnit(ABC):
    """A process or container group under supervisor control."""

    def __init__(
        self,
        name: str,
        detectors: Sequence[UnitDetector],
        log_path: Optional[Path] = None,
        stop_signal: int = signal.SIGTERM,
    ):
        self.name = name
        self.detectors = list(detectors)
        self.log_path = log_path
        self.stop_signal = stop_signal

    async def state(self) -> UnitState:
        """Ask each detector in priority order; any RUNNING wins."""
        seen_indeterminate = False
        for detector in self.detectors:
            try:
                state = await detector.probe()
            except Exception as e:
                logger.debug(f"{self.name}: {detector.name} probe failed: {e}")
                continue
            if state == UnitState.RUNNING:
                return UnitState.RUNNING
            if state == UnitState.INDETERMINATE:
                seen_indeterminate = True
        return UnitState.INDETERMINATE if seen_indeterminate else UnitState.STOPPED

    async def detail(self) -> Tuple[str, Optional[int], Optional[int]]:
        """Extra status text plus (running, total) sub-process counts if any."""
        return "", None, None

    async def inspect(self) -> Tuple[UnitState, str, Optional[int], Optional[int]]:
        """State and detail in one pass."""
        state = await self.state()
        detail, running, total = await self.detail()
        return state, detail, running, total

    @abstractmethod
    async def launch(self) -> None:
        """Issue the start command. Raises on an immediate failure."""

    @abstractmethod
    async def terminate(self, force: bool = False) -> None:
        """Ask the unit to stop through whatever currently manages it."""

    async def restart_in_place(self) -> bool:
        """Native restart primitive, if the unit has one. False = not supported."""
        return False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class InferenceDaemonUnit(ManagedUnit):
    """Backend engine: init-system service preferred, direct process as fallback."""

    def __init__(self, config: RelayConfig, init: Optional[InitSystem] = None):
        self.init = init or InitSystem(use_sudo=config.use_sudo, timeout=config.command_timeout)
        self.unit = config.daemon_unit
        self.command = list(config.daemon_command)
        self.pattern = config.daemon_pattern
        self.init_detector = InitSystemDetector(self.init, self.unit)
        super().__init__(
            DAEMON,
            detectors=[self.init_detector, ProcessPatternDetector(self.pattern)],
            log_path=config.daemon_log,
        )

    async def launch(self) -> None:
        result = await self.init.start(self.unit)
        if result.ok:
            logger.info(f"Started {self.unit} via init system")
            return
        logger.info(
            f"Init system start of {self.unit} unavailable "
            f"({result.stderr.strip() or result.returncode}), launching directly"
        )
        spawn_detached(self.command, self.log_path)

    async def terminate(self, force: bool = False) -> None:
        if await self.init_detector.probe() == UnitState.RUNNING:
            result = await self.init.stop(self.unit)
            if result.ok:
                return
            logger.warning(f"systemctl stop {self.unit} failed: {result.stderr.strip()}")
        sig = signal.SIGKILL if force else self.stop_signal
        signal_processes(self.pattern, sig)


class GatewayUnit(ManagedUnit):
    """Gateway process, spawned detached with its output in the gateway log."""

    def __init__(self, config: RelayConfig, init: Optional[InitSystem] = None):
        self.config = config
        self.init = init or InitSystem(use_sudo=config.use_sudo, timeout=config.command_timeout)
        self.pattern = config.gateway_pattern
        self.init_detector = InitSystemDetector(self.init, config.gateway_unit)
        super().__init__(
            GATEWAY,
            detectors=[ProcessPatternDetector(self.pattern), self.init_detector],
            log_path=config.gateway_log,
        )

    def command(self) -> List[str]:
        cmd = [sys.executable, "-m", "relay_core.gateway", "--model", self.config.model_identifier]
        if self.config.gateway_port is not None:
            cmd += ["--port", str(self.config.gateway_port)]
        return cmd

    async def launch(self) -> None:
        spawn_detached(self.command(), self.log_path)

    async def terminate(self, force: bool = False) -> None:
        if await self.init_detector.probe() == UnitState.RUNNING:
            result = await self.init.stop(self.config.gateway_unit)
            if result.ok:
                return
        sig = signal.SIGKILL if force else self.stop_signal
        signal_processes(self.pattern, sig)


class ContainerWorkerUnit(ManagedUnit):
    """
    Containerized worker, healthy only when all its services run.

    Compose is asked first; when it cannot answer, the containers carrying
    the project label are counted instead. State and detail come from the
    same count.
    """

    def __init__(self, config: RelayConfig, runtime: Optional[ContainerRuntime] = None):
        self.runtime = runtime or ContainerRuntime(
            config.compose_dir,
            config.compose_command,
            container_command=config.container_command,
        )
        super().__init__(
            WORKER,
            detectors=[ContainerDetector(self.runtime), ContainerLabelDetector(self.runtime)],
        )

    async def inspect(self) -> Tuple[UnitState, str, Optional[int], Optional[int]]:
        if not self.runtime.available():
            return UnitState.STOPPED, f"project directory {self.runtime.project_dir} not found", 0, 0
        for detector in self.detectors:
            try:
                running, total = await detector.counts()
            except Exception as e:
                logger.debug(f"{self.name}: {detector.name} failed: {e}")
                continue
            return (
                container_state(running, total),
                f"{running} of {total} sub-processes running",
                running,
                total,
            )
        return UnitState.STOPPED, "container runtime not responding", None, None

    async def state(self) -> UnitState:
        return (await self.inspect())[0]

    async def detail(self) -> Tuple[str, Optional[int], Optional[int]]:
        _, detail, running, total = await self.inspect()
        return detail, running, total

    async def _checked(self, result: CommandResult, action: str) -> None:
        if not result.ok:
            raise RuntimeError(f"compose {action} exited {result.returncode}: {result.stderr.strip()}")

    async def launch(self) -> None:
        if not self.runtime.available():
            raise FileNotFoundError(f"Worker project directory not found: {self.runtime.project_dir}")
        await self._checked(await self.runtime.up(), "up")

    async def terminate(self, force: bool = False) -> None:
        await self._checked(await self.runtime.stop(), "stop")

    async def restart_in_place(self) -> bool:
        if not self.runtime.available():
            return False
        await self._checked(await self.runtime.restart(), "restart")
        return True


def build_units(config: RelayConfig) -> Dict[str, ManagedUnit]:
    """The three managed units, keyed by name, in dependency order."""
    init = InitSystem(use_sudo=config.use_sudo, timeout=config.command_timeout)
    return {
        DAEMON: InferenceDaemonUnit(config, init),
        GATEWAY: GatewayUnit(config, init),
        WORKER: ContainerWorkerUnit(config),
    }


__all__ = [
    "DAEMON",
    "GATEWAY",
    "WORKER",
    "UNIT_ORDER",
    "UnitState",
    "InitSystem",
    "ContainerRuntime",
    "UnitDetector",
    "InitSystemDetector",
    "ProcessPatternDetector",
    "ContainerDetector",
    "ContainerLabelDetector",
    "container_state",
    "ManagedUnit",
    "InferenceDaemonUnit",
    "GatewayUnit",
    "ContainerWorkerUnit",
    "build_units",
]
