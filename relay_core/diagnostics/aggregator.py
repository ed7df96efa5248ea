"""
Diagnostics aggregator.

Composes independent checks into one ``HealthReport``:

    resources            RAM / disk / CPU load / accelerator memory
    unit:<name>          supervisor status of each managed unit
    container_daemon     init-system state of the container runtime daemon
    backend_api          backend reachability, called directly
    gateway_health       gateway GET /health
    inference            one end-to-end generation through the gateway
    config_drift         persisted gateway port vs the port actually bound
    benchmark            timed generation against the backend (optional)

Checks run concurrently, each under its own timeout. A check that raises
or times out is recorded as FAIL; the report always holds every entry and
is only assembled after all checks finish.

``run`` is read-only. Remediation (restarts, log truncation, cache
clearing) lives in separate methods that each ask a ``confirm`` callback
before acting.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

from relay_core.config import RelayConfig
from relay_core.diagnostics.report import (
    BenchmarkResult,
    CheckResult,
    CheckStatus,
    HealthReport,
)
from relay_core.diagnostics.resources import ResourceSnapshot, take_resource_snapshot
from relay_core.errors import BenchmarkFailed, ConfigDrift, RelayError
from relay_core.gateway.backend import BackendClient
from relay_core.network import listening_ports_of
from relay_core.orchestration.process import find_processes
from relay_core.orchestration.supervisor import ServiceSupervisor, UnitStatus
from relay_core.orchestration.units import InitSystem
from relay_core.utils.logs import truncate_log

logger = logging.getLogger(__name__)

BENCHMARK_PROMPT = "Write a short poem about artificial intelligence"
PROBE_PROMPT = "Hello"

HttpRequest = Callable[..., Awaitable[Tuple[int, Any]]]
Confirm = Callable[[str], bool]
CheckOutcome = Tuple[CheckResult, Any]


async def http_request(
    method: str,
    url: str,
    timeout: float,
    payload: Optional[Dict[str, Any]] = None,
) -> Tuple[int, Any]:
    """(status, decoded JSON or None) for one bounded HTTP call."""
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
        async with session.request(method, url, json=payload) as response:
            try:
                body = await response.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                body = None
            return response.status, body


def gateway_listening_ports(pattern: str) -> List[int]:
    """Ports held by processes matching the gateway pattern."""
    ports = set()
    for proc in find_processes(pattern):
        ports.update(listening_ports_of(proc.pid))
    return sorted(ports)


class DiagnosticsAggregator:
    """
    Runs every diagnostic check and assembles a ``HealthReport``.

    Args:
        config: relay configuration (timeouts, URLs, persisted port)
        supervisor: source of per-unit status and target of remediation
        backend: direct client for the inference engine
        resource_probe: returns a ``ResourceSnapshot`` (blocking, run in a thread)
        http: async ``(method, url, timeout, payload=None) -> (status, body)``
        gateway_ports: returns the ports the running gateway listens on,
            or ``None`` when no gateway process exists
        init: init-system adapter used for the container daemon check
    """

    def __init__(
        self,
        config: RelayConfig,
        supervisor: ServiceSupervisor,
        backend: BackendClient,
        resource_probe: Callable[[], ResourceSnapshot] = take_resource_snapshot,
        http: HttpRequest = http_request,
        gateway_ports: Optional[Callable[[], Optional[List[int]]]] = None,
        init: Optional[InitSystem] = None,
    ):
        self.config = config
        self.supervisor = supervisor
        self.backend = backend
        self.resource_probe = resource_probe
        self.http = http
        self.gateway_ports = gateway_ports or self._discover_gateway_ports
        self.init = init or InitSystem(use_sudo=False, timeout=config.command_timeout)

    def _discover_gateway_ports(self) -> Optional[List[int]]:
        if not find_processes(self.config.gateway_pattern):
            return None
        return gateway_listening_ports(self.config.gateway_pattern)

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    async def run(self, include_benchmark: bool = False) -> HealthReport:
        cfg = self.config
        plan: List[Tuple[str, Awaitable[CheckOutcome], float]] = [
            ("resources", self._check_resources(), 15.0),
        ]
        for name in self.supervisor.ordered_names:
            plan.append((f"unit:{name}", self._check_unit(name), cfg.command_timeout + 5.0))
        plan.append(("container_daemon", self._check_container_daemon(), cfg.command_timeout + 1.0))
        plan += [
            ("backend_api", self._check_backend(), cfg.health_timeout + 1.0),
            ("gateway_health", self._check_gateway(), cfg.health_timeout + 1.0),
            ("inference", self._check_inference(), cfg.inference_timeout + 1.0),
            ("config_drift", self._check_drift(), 15.0),
        ]
        if include_benchmark:
            plan.append(("benchmark", self._check_benchmark(), cfg.benchmark_timeout + 1.0))

        outcomes = await asyncio.gather(
            *(self._guard(name, coro, timeout) for name, coro, timeout in plan)
        )

        report = HealthReport()
        for (name, _, _), (check, payload) in zip(plan, outcomes):
            report.checks.append(check)
            if payload is None:
                continue
            if name == "resources":
                report.resources = payload
            elif name.startswith("unit:"):
                report.units[name[len("unit:"):]] = payload
            elif name == "benchmark":
                report.benchmark = payload

        logger.info(f"Diagnostics: {report.summary()}")
        return report

    async def _guard(self, name: str, coro: Awaitable[CheckOutcome], timeout: float) -> CheckOutcome:
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Check {name} timed out after {timeout:g}s")
            return CheckResult(name, CheckStatus.FAIL, f"timed out after {timeout:g}s"), None
        except RelayError as e:
            return CheckResult(name, CheckStatus.FAIL, str(e), hint=e.hint), None
        except Exception as e:
            logger.debug(f"Check {name} raised", exc_info=True)
            return CheckResult(name, CheckStatus.FAIL, f"{type(e).__name__}: {e}"), None

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def _check_resources(self) -> CheckOutcome:
        snapshot = await asyncio.to_thread(self.resource_probe)
        warnings = snapshot.warnings()
        message = (
            f"RAM {snapshot.ram_available_gb}GB free of {snapshot.ram_total_gb}GB, "
            f"disk {snapshot.disk_percent:.0f}% used, load {snapshot.cpu_load}"
        )
        if warnings:
            return CheckResult(
                "resources",
                CheckStatus.WARN,
                message,
                hint=" ".join(warnings),
                details=snapshot.to_dict(),
            ), snapshot
        return CheckResult("resources", CheckStatus.PASS, message, details=snapshot.to_dict()), snapshot

    async def _check_unit(self, name: str) -> CheckOutcome:
        status = await self.supervisor.status(name)
        check_name = f"unit:{name}"
        text = f"{name} is {status.state.value}"
        if status.detail:
            text += f" ({status.detail})"
        if status.running:
            return CheckResult(check_name, CheckStatus.PASS, text, details=status.to_dict()), status
        return CheckResult(
            check_name,
            CheckStatus.FAIL,
            text,
            hint=f"relayctl start {name}",
            details=status.to_dict(),
        ), status

    async def _check_container_daemon(self) -> CheckOutcome:
        unit = self.config.container_daemon_unit
        state = await self.init.is_active(unit)
        text = f"{unit} daemon is {state}"
        if state == "active":
            return CheckResult("container_daemon", CheckStatus.PASS, text), None
        if state == "unavailable":
            return CheckResult("container_daemon", CheckStatus.SKIPPED, "init system not available"), None
        if state in InitSystem.TRANSITIONAL:
            return CheckResult("container_daemon", CheckStatus.WARN, text), None
        return CheckResult(
            "container_daemon",
            CheckStatus.FAIL,
            text,
            hint=f"sudo systemctl start {unit}",
        ), None

    async def _check_backend(self) -> CheckOutcome:
        started = time.perf_counter()
        await self.backend.ping(timeout=self.config.health_timeout)
        latency = (time.perf_counter() - started) * 1000
        return CheckResult(
            "backend_api",
            CheckStatus.PASS,
            f"Backend API responding at {self.backend.base_url}",
            latency_ms=round(latency, 1),
        ), None

    async def _check_gateway(self) -> CheckOutcome:
        url = f"{self.config.gateway_url}/health"
        started = time.perf_counter()
        try:
            status, body = await self.http("GET", url, self.config.health_timeout)
        except (aiohttp.ClientError, OSError) as e:
            return CheckResult(
                "gateway_health",
                CheckStatus.FAIL,
                f"Gateway not responding on port {self.config.gateway_port}: {e}",
                hint="relayctl start gateway",
            ), None
        latency = round((time.perf_counter() - started) * 1000, 1)

        if status == 200:
            return CheckResult(
                "gateway_health",
                CheckStatus.PASS,
                f"Gateway responding on port {self.config.gateway_port}",
                latency_ms=latency,
                details=body if isinstance(body, dict) else {},
            ), None
        return CheckResult(
            "gateway_health",
            CheckStatus.FAIL,
            f"Gateway health returned {status}",
            hint="relayctl start inference-daemon",
            latency_ms=latency,
        ), None

    async def _check_inference(self) -> CheckOutcome:
        url = f"{self.config.gateway_url}/"
        started = time.perf_counter()
        try:
            status, body = await self.http(
                "POST", url, self.config.inference_timeout, {"prompt": PROBE_PROMPT}
            )
        except (aiohttp.ClientError, OSError) as e:
            return CheckResult(
                "inference",
                CheckStatus.FAIL,
                f"Inference request failed: {e}",
                hint="relayctl restart",
            ), None
        latency = round((time.perf_counter() - started) * 1000, 1)

        if status == 200 and isinstance(body, dict) and "response" in body:
            return CheckResult(
                "inference",
                CheckStatus.PASS,
                "Model inference test successful",
                latency_ms=latency,
                details={"model": body.get("model")},
            ), None
        return CheckResult(
            "inference",
            CheckStatus.FAIL,
            f"Model inference test failed (status {status})",
            hint=f"relayctl pull {self.config.model_identifier}",
            latency_ms=latency,
            details={"body": body},
        ), None

    async def _check_drift(self) -> CheckOutcome:
        ports = await asyncio.to_thread(self.gateway_ports)
        persisted = self.config.gateway_port

        if ports is None:
            return CheckResult("config_drift", CheckStatus.SKIPPED, "Gateway not running"), None
        if not ports:
            return CheckResult(
                "config_drift", CheckStatus.WARN, "Gateway running but not listening yet"
            ), None
        if persisted is None:
            return CheckResult(
                "config_drift",
                CheckStatus.WARN,
                f"No gateway port persisted; gateway listens on {ports[0]}",
                hint=f"relayctl configure --port {ports[0]}",
            ), None
        if persisted in ports:
            return CheckResult(
                "config_drift", CheckStatus.PASS, f"Gateway bound to configured port {persisted}"
            ), None

        drift = ConfigDrift(persisted, ports[0])
        return CheckResult(
            "config_drift",
            CheckStatus.FAIL,
            str(drift),
            hint=drift.hint,
            details={"persisted": persisted, "actual": ports},
        ), None

    async def _check_benchmark(self) -> CheckOutcome:
        result = await self.benchmark()
        message = (
            f"{result.words} words in {result.elapsed_seconds:.2f}s "
            f"({result.words_per_second:.2f} words/s"
        )
        if result.tokens_per_second is not None:
            message += f", {result.tokens_per_second:.2f} tokens/s"
        message += ")"
        return CheckResult("benchmark", CheckStatus.PASS, message, details={"preview": result.preview}), result

    async def benchmark(self, prompt: str = BENCHMARK_PROMPT) -> BenchmarkResult:
        """Timed generation against the backend."""
        model = self.config.model_identifier
        started = time.perf_counter()
        try:
            data = await self.backend.generate(model, prompt, timeout=self.config.benchmark_timeout)
        except RelayError as e:
            raise BenchmarkFailed(f"Benchmark failed: {e}") from e
        elapsed = time.perf_counter() - started

        text = data.get("response")
        if not isinstance(text, str):
            raise BenchmarkFailed(f"Benchmark failed: no response text from {model}")

        words = len(text.split())
        tokens_per_second = None
        eval_count = data.get("eval_count")
        eval_duration = data.get("eval_duration")
        if isinstance(eval_count, int) and isinstance(eval_duration, (int, float)) and eval_duration > 0:
            # eval_duration is reported in nanoseconds
            tokens_per_second = round(eval_count / (eval_duration / 1e9), 2)

        return BenchmarkResult(
            elapsed_seconds=round(elapsed, 3),
            words=words,
            words_per_second=round(words / elapsed, 2) if elapsed > 0 else 0.0,
            tokens_per_second=tokens_per_second,
            preview=text[:100],
        )

    # ------------------------------------------------------------------
    # Remediation (interactive only)
    # ------------------------------------------------------------------

    async def remediate(self, report: HealthReport, confirm: Confirm) -> List[str]:
        """Offer a restart for each unit whose status check failed, in dependency order."""
        messages = []
        for name in self.supervisor.ordered_names:
            status: Optional[UnitStatus] = report.units.get(name)
            check = report.get(f"unit:{name}")
            if check is None or check.passed:
                continue
            if status is not None and status.running:
                continue
            if not confirm(f"{name} is not running. Restart it?"):
                messages.append(f"Skipped restart of {name}")
                continue
            try:
                result = await self.supervisor.restart(name)
                messages.append(result.message)
            except RelayError as e:
                messages.append(f"{e} ({e.hint})" if e.hint else str(e))
        return messages

    def log_files(self) -> List[Path]:
        return [
            path for path in (self.config.daemon_log, self.config.gateway_log)
            if path.is_file()
        ]

    def truncate_logs(self, confirm: Confirm, keep_lines: int = 1000) -> List[str]:
        files = self.log_files()
        if not files:
            return ["No log files found"]
        size = sum(p.stat().st_size for p in files)
        if not confirm(f"Clean old logs ({size / 1024:.0f} KB)? Keeps the last {keep_lines} lines"):
            return ["Log cleanup skipped"]
        messages = []
        for path in files:
            dropped = truncate_log(path, keep_lines=keep_lines)
            messages.append(f"Cleaned {path} ({dropped} lines dropped)")
        return messages

    def clear_model_cache(self, confirm: Confirm) -> List[str]:
        cache = self.config.model_cache_dir
        if not cache.is_dir():
            return [f"No model cache at {cache}"]
        if not confirm(
            f"Clear model cache at {cache}? This will require re-downloading models"
        ):
            return ["Cache clearing skipped"]
        removed = 0
        for entry in cache.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            removed += 1
        logger.warning(f"Cleared model cache {cache} ({removed} entries)")
        return [f"Cache cleared ({removed} entries). You'll need to re-download models."]


__all__ = [
    "BENCHMARK_PROMPT",
    "DiagnosticsAggregator",
    "gateway_listening_ports",
    "http_request",
]
