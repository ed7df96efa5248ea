"""
Orchestration module for the relay.

Provides:
- Managed unit definitions and detection strategies
- Service supervisor (start/stop/restart/status)
- Subprocess primitives (bounded commands, detached spawning)
"""

from relay_core.orchestration.process import (
    CommandResult,
    find_processes,
    run_command,
    signal_processes,
    spawn_detached,
)

from relay_core.orchestration.units import (
    DAEMON,
    GATEWAY,
    WORKER,
    UNIT_ORDER,
    ContainerDetector,
    ContainerRuntime,
    ContainerWorkerUnit,
    GatewayUnit,
    InferenceDaemonUnit,
    InitSystem,
    InitSystemDetector,
    ManagedUnit,
    ProcessPatternDetector,
    UnitDetector,
    UnitState,
    build_units,
    container_state,
)

from relay_core.orchestration.supervisor import (
    ActionResult,
    Outcome,
    ServiceSupervisor,
    UnitStatus,
)

__all__ = [
    # Process primitives
    "CommandResult",
    "find_processes",
    "run_command",
    "signal_processes",
    "spawn_detached",
    # Units
    "DAEMON",
    "GATEWAY",
    "WORKER",
    "UNIT_ORDER",
    "ContainerDetector",
    "ContainerRuntime",
    "ContainerWorkerUnit",
    "GatewayUnit",
    "InferenceDaemonUnit",
    "InitSystem",
    "InitSystemDetector",
    "ManagedUnit",
    "ProcessPatternDetector",
    "UnitDetector",
    "UnitState",
    "build_units",
    "container_state",
    # Supervisor
    "ActionResult",
    "Outcome",
    "ServiceSupervisor",
    "UnitStatus",
]
