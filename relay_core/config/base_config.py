"""
Configuration for the relay.

Two layers:
- Tunables (backend URL, timeouts, unit names, paths) come from environment
  variables with defaults, read by ``RelayConfig.from_env()``.
- The persisted assignment (model identifier and gateway port) lives in a
  line-oriented ``KEY=value`` file shared with shell consumers, managed by
  ``ConfigStore``. It is written during initial setup and explicit
  reconfiguration only.

``get_config()`` returns the process-wide instance, loaded once.
"""

from __future__ import annotations

import logging
import os
import shlex
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from relay_core.errors import ConfigDrift, ConfigError

logger = logging.getLogger(__name__)

MODEL_KEY = "MODEL_IDENTIFIER"
PORT_KEY = "GATEWAY_PORT"

# Keys written by earlier installer versions, read-only.
LEGACY_KEYS: Dict[str, str] = {
    "MODEL_NAME": MODEL_KEY,
    "OLLAMA_PORT": PORT_KEY,
}

DEFAULT_MODEL = "llama3.2:1b"
DEFAULT_CONFIG_FILE = Path.home() / ".relay_config"

_config_instance: Optional["RelayConfig"] = None
_config_lock = threading.Lock()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    return Path(raw).expanduser() if raw else default


def parse_port(raw: str, source: str = "GATEWAY_PORT") -> int:
    try:
        port = int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{source} must be an integer, got {raw!r}") from e
    if not 1 <= port <= 65535:
        raise ConfigError(f"{source} must be within 1-65535, got {port}")
    return port


# ============================================================================
# PERSISTED KEY=VALUE STORE
# ============================================================================

class ConfigStore:
    """
    Line-oriented ``KEY=value`` file.

    Blank lines and ``#`` comments are ignored, surrounding quotes are
    stripped, and later lines win so that appended reconfiguration steps
    override the initial setup, the same way ``source`` behaves in a shell.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> Dict[str, str]:
        if not self.exists():
            return {}

        values: Dict[str, str] = {}
        try:
            text = self.path.read_text()
        except OSError as e:
            raise ConfigError(f"Cannot read {self.path}: {e}") from e

        for lineno, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export "):].lstrip()
            if "=" not in line:
                logger.warning(f"Ignoring malformed line {lineno} in {self.path}: {raw_line!r}")
                continue
            key, _, value = line.partition("=")
            values[key.strip()] = _unquote(value.strip())

        return values

    def write(self, updates: Mapping[str, object]) -> None:
        """Rewrite ``updates`` in place, keeping unrelated lines and comments."""
        lines: List[str] = []
        if self.exists():
            lines = self.path.read_text().splitlines()

        pending = {k: _format_value(v) for k, v in updates.items()}
        out: List[str] = []
        for raw_line in lines:
            key = raw_line.split("=", 1)[0].strip() if "=" in raw_line else None
            if key and key.startswith("export "):
                key = key[len("export "):].strip()
            if key in pending:
                # Collapse duplicates of an updated key into a single line.
                if pending[key] is not None:
                    out.append(f"{key}={pending[key]}")
                    pending[key] = None
                continue
            out.append(raw_line)

        for key, value in pending.items():
            if value is not None:
                out.append(f"{key}={value}")

        self._atomic_write("\n".join(out) + "\n")
        logger.info(f"Wrote {', '.join(updates)} to {self.path}")

    def append(self, key: str, value: object) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(f"{key}={_format_value(value)}\n")
        logger.debug(f"Appended {key} to {self.path}")

    def _atomic_write(self, content: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _format_value(value: object) -> str:
    text = str(value)
    if text and all(c.isalnum() or c in "._-:/@+" for c in text):
        return text
    return shlex.quote(text)


# ============================================================================
# RELAY CONFIG
# ============================================================================

@dataclass
class RelayConfig:
    """Settings shared by the gateway, supervisor, diagnostics and CLI."""

    # Persisted assignment
    model_identifier: str = DEFAULT_MODEL
    gateway_port: Optional[int] = None
    config_file: Path = DEFAULT_CONFIG_FILE

    # Backend engine
    backend_url: str = "http://127.0.0.1:11434"

    # Gateway
    gateway_host: str = "0.0.0.0"
    port_range: Tuple[int, int] = (11000, 12000)
    bind_retries: int = 3

    # Timeouts (seconds)
    generate_timeout: float = 60.0
    health_timeout: float = 5.0
    inference_timeout: float = 30.0
    benchmark_timeout: float = 60.0
    pull_timeout: float = 3600.0
    command_timeout: float = 30.0

    # Supervision
    settle_seconds: float = 5.0
    restart_delay: float = 3.0
    stop_grace: float = 5.0
    use_sudo: bool = True
    daemon_unit: str = "ollama"
    daemon_command: List[str] = field(default_factory=lambda: ["ollama", "serve"])
    daemon_pattern: str = "ollama serve"
    gateway_unit: str = "relay-gateway"
    gateway_pattern: str = "relay_core.gateway"
    compose_dir: Path = field(
        default_factory=lambda: Path.home() / "kuzco-installer-docker" / "kuzco-main"
    )
    compose_command: List[str] = field(default_factory=lambda: ["docker", "compose"])
    container_command: List[str] = field(default_factory=lambda: ["docker"])
    container_daemon_unit: str = "docker"

    # Files
    log_dir: Path = field(default_factory=Path.home)
    model_cache_dir: Path = field(default_factory=lambda: Path.home() / ".ollama" / "models")

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Build a config from ``RELAY_*`` environment variables."""
        defaults = cls()
        low = _env_int("RELAY_PORT_RANGE_LOW", defaults.port_range[0])
        high = _env_int("RELAY_PORT_RANGE_HIGH", defaults.port_range[1])
        compose_cmd = os.getenv("RELAY_COMPOSE_COMMAND")
        container_cmd = os.getenv("RELAY_CONTAINER_COMMAND")
        daemon_cmd = os.getenv("RELAY_DAEMON_COMMAND")

        return cls(
            model_identifier=os.getenv("RELAY_DEFAULT_MODEL", defaults.model_identifier),
            config_file=_env_path("RELAY_CONFIG_FILE", defaults.config_file),
            backend_url=os.getenv("RELAY_BACKEND_URL", defaults.backend_url).rstrip("/"),
            gateway_host=os.getenv("RELAY_GATEWAY_HOST", defaults.gateway_host),
            port_range=(low, high),
            bind_retries=_env_int("RELAY_BIND_RETRIES", defaults.bind_retries),
            generate_timeout=_env_float("RELAY_GENERATE_TIMEOUT", defaults.generate_timeout),
            health_timeout=_env_float("RELAY_HEALTH_TIMEOUT", defaults.health_timeout),
            inference_timeout=_env_float("RELAY_INFERENCE_TIMEOUT", defaults.inference_timeout),
            benchmark_timeout=_env_float("RELAY_BENCHMARK_TIMEOUT", defaults.benchmark_timeout),
            pull_timeout=_env_float("RELAY_PULL_TIMEOUT", defaults.pull_timeout),
            command_timeout=_env_float("RELAY_COMMAND_TIMEOUT", defaults.command_timeout),
            settle_seconds=_env_float("RELAY_SETTLE_SECONDS", defaults.settle_seconds),
            restart_delay=_env_float("RELAY_RESTART_DELAY", defaults.restart_delay),
            stop_grace=_env_float("RELAY_STOP_GRACE", defaults.stop_grace),
            use_sudo=_env_bool("RELAY_USE_SUDO", defaults.use_sudo),
            daemon_unit=os.getenv("RELAY_DAEMON_UNIT", defaults.daemon_unit),
            daemon_command=shlex.split(daemon_cmd) if daemon_cmd else defaults.daemon_command,
            daemon_pattern=os.getenv("RELAY_DAEMON_PATTERN", defaults.daemon_pattern),
            gateway_unit=os.getenv("RELAY_GATEWAY_UNIT", defaults.gateway_unit),
            compose_dir=_env_path("RELAY_COMPOSE_DIR", defaults.compose_dir),
            compose_command=shlex.split(compose_cmd) if compose_cmd else defaults.compose_command,
            container_command=shlex.split(container_cmd) if container_cmd else defaults.container_command,
            container_daemon_unit=os.getenv("RELAY_CONTAINER_DAEMON_UNIT", defaults.container_daemon_unit),
            log_dir=_env_path("RELAY_LOG_DIR", defaults.log_dir),
            model_cache_dir=_env_path("RELAY_MODEL_CACHE_DIR", defaults.model_cache_dir),
        )

    @property
    def store(self) -> ConfigStore:
        return ConfigStore(self.config_file)

    @property
    def daemon_log(self) -> Path:
        return self.log_dir / "ollama.log"

    @property
    def gateway_log(self) -> Path:
        return self.log_dir / "relay-gateway.log"

    @property
    def gateway_url(self) -> str:
        if self.gateway_port is None:
            raise ConfigError(
                f"No {PORT_KEY} in {self.config_file}",
                hint="Run 'relayctl configure' to assign a gateway port",
            )
        return f"http://127.0.0.1:{self.gateway_port}"

    def apply_persisted(self, values: Mapping[str, str]) -> None:
        """Overlay persisted values; canonical keys win over legacy ones."""
        resolved: Dict[str, str] = {}
        for legacy, canonical in LEGACY_KEYS.items():
            if legacy in values:
                resolved[canonical] = values[legacy]
        for canonical in (MODEL_KEY, PORT_KEY):
            if canonical in values:
                resolved[canonical] = values[canonical]

        if resolved.get(MODEL_KEY):
            self.model_identifier = resolved[MODEL_KEY]
        if resolved.get(PORT_KEY):
            self.gateway_port = parse_port(resolved[PORT_KEY], source=f"{PORT_KEY} in {self.config_file}")

    def validate(self) -> None:
        low, high = self.port_range
        if not (1 <= low <= high <= 65535):
            raise ConfigError(f"Invalid port range {low}-{high}")
        if self.bind_retries < 0:
            raise ConfigError("RELAY_BIND_RETRIES must not be negative")


def load_config(path: Optional[Path] = None) -> RelayConfig:
    """Environment tunables overlaid with the persisted assignment."""
    config = RelayConfig.from_env()
    if path is not None:
        config.config_file = Path(path)
    config.apply_persisted(config.store.read())
    config.validate()
    logger.debug(
        f"Loaded config from {config.config_file}: model={config.model_identifier} "
        f"port={config.gateway_port}"
    )
    return config


def get_config() -> RelayConfig:
    """Process-wide config, loaded on first use."""
    global _config_instance
    with _config_lock:
        if _config_instance is None:
            _config_instance = load_config()
        return _config_instance


def reset_config() -> None:
    global _config_instance
    with _config_lock:
        _config_instance = None


def save_assignment(
    config: RelayConfig,
    port: Optional[int] = None,
    model: Optional[str] = None,
    append: bool = False,
) -> None:
    """
    Explicit reconfiguration: persist the port and/or model and update ``config``.

    With ``append`` the assignments are added to the end of the file, where
    they override earlier lines for the same key; otherwise they are
    rewritten in place.
    """
    updates: Dict[str, object] = {}
    if model is not None:
        updates[MODEL_KEY] = model
        config.model_identifier = model
    if port is not None:
        updates[PORT_KEY] = parse_port(str(port))
        config.gateway_port = port
    if not updates:
        return
    if append:
        for key, value in updates.items():
            config.store.append(key, value)
    else:
        config.store.write(updates)


def check_drift(config: RelayConfig, bound_port: int) -> None:
    """Raise ``ConfigDrift`` if the persisted port is not the bound one."""
    if config.gateway_port is not None and config.gateway_port != bound_port:
        raise ConfigDrift(config.gateway_port, bound_port)
