"""
Process primitives for the supervisor.

- run_command: bounded external command (systemctl, docker compose)
- spawn_detached: child in its own session with output appended to a log,
  outliving the spawning call
- find_processes / signal_processes: ``pgrep -f`` / ``pkill -f`` semantics
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import psutil

logger = logging.getLogger(__name__)

EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = 124


@dataclass
class CommandResult:
    """Outcome of an external command."""
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(args: Sequence[str], timeout: float = 30.0, cwd: Optional[Path] = None) -> CommandResult:
    """
    Run a command to completion with a hard timeout.

    A missing executable yields returncode 127 and a timeout kills the child
    and yields 124, mirroring the shell, so callers only inspect the result.
    """
    argv = [str(a) for a in args]
    logger.debug(f"Running: {' '.join(argv)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        return CommandResult(argv, EXIT_NOT_FOUND, stderr=str(e))

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Command timed out after {timeout:g}s: {' '.join(argv)}")
        process.kill()
        await process.wait()
        return CommandResult(argv, EXIT_TIMEOUT, stderr=f"timed out after {timeout:g}s")

    return CommandResult(
        argv,
        process.returncode,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


def spawn_detached(
    args: Sequence[str],
    log_path: Path,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[Path] = None,
) -> int:
    """
    Launch ``args`` in a new session with stdout/stderr appended to ``log_path``.

    The child is not tracked by any event loop, so it keeps running after the
    supervisor exits. Returns the child's PID.
    """
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    with open(log_path, "ab") as log:
        process = subprocess.Popen(
            [str(a) for a in args],
            cwd=str(cwd) if cwd else None,
            env=process_env,
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )

    logger.info(f"Spawned {' '.join(str(a) for a in args)} (PID {process.pid}), log: {log_path}")
    return process.pid


def _cmdline(proc: psutil.Process) -> str:
    try:
        return " ".join(proc.info.get("cmdline") or [])
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return ""


def find_processes(pattern: str) -> List[psutil.Process]:
    """Processes whose full command line contains ``pattern``, excluding this one."""
    own = {os.getpid(), os.getppid()}
    matches = []
    for proc in psutil.process_iter(["pid", "cmdline"]):
        if proc.pid in own:
            continue
        if pattern in _cmdline(proc):
            matches.append(proc)
    return matches


def signal_processes(pattern: str, sig: int = signal.SIGTERM) -> int:
    """Send ``sig`` to every process matching ``pattern``; returns how many were signalled."""
    count = 0
    for proc in find_processes(pattern):
        try:
            proc.send_signal(sig)
            count += 1
            logger.debug(f"Sent signal {sig} to PID {proc.pid}")
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning(f"Permission denied signalling PID {proc.pid}")
    return count


__all__ = [
    "CommandResult",
    "EXIT_NOT_FOUND",
    "EXIT_TIMEOUT",
    "find_processes",
    "run_command",
    "signal_processes",
    "spawn_detached",
]
