"""
Relay configuration.

- RelayConfig: environment tunables plus the persisted assignment
- ConfigStore: shell-compatible KEY=value file
- get_config / load_config: process-wide loading
- check_drift: persisted port vs bound port reconciliation
"""

from relay_core.config.base_config import (
    DEFAULT_MODEL,
    MODEL_KEY,
    PORT_KEY,
    ConfigStore,
    RelayConfig,
    check_drift,
    get_config,
    load_config,
    parse_port,
    reset_config,
    save_assignment,
)

__all__ = [
    "DEFAULT_MODEL",
    "MODEL_KEY",
    "PORT_KEY",
    "ConfigStore",
    "RelayConfig",
    "check_drift",
    "get_config",
    "load_config",
    "parse_port",
    "reset_config",
    "save_assignment",
]
