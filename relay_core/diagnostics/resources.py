"""
Resource snapshot: memory, disk, CPU load, optional accelerator memory.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)

GB = 1024 ** 3

DISK_WARN_PERCENT = 85.0
MIN_RAM_GB = 4.0


@dataclass
class AcceleratorInfo:
    name: str
    memory_total_mb: float
    memory_used_mb: float


@dataclass
class ResourceSnapshot:
    """Point-in-time host resources."""
    ram_total: int
    ram_used: int
    ram_available: int
    disk_percent: float
    disk_free: int
    cpu_load: float
    accelerators: List[AcceleratorInfo] = field(default_factory=list)

    @property
    def ram_total_gb(self) -> float:
        return round(self.ram_total / GB, 2)

    @property
    def ram_available_gb(self) -> float:
        return round(self.ram_available / GB, 2)

    @property
    def disk_free_gb(self) -> float:
        return round(self.disk_free / GB, 2)

    def warnings(self) -> List[str]:
        issues = []
        if self.disk_percent > DISK_WARN_PERCENT:
            issues.append(f"Disk usage is high ({self.disk_percent:.0f}%). Consider cleaning up.")
        if self.ram_total_gb < MIN_RAM_GB:
            issues.append(
                f"System has {self.ram_total_gb}GB RAM; at least {MIN_RAM_GB:g}GB is recommended."
            )
        return issues

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["ram_total_gb"] = self.ram_total_gb
        data["ram_available_gb"] = self.ram_available_gb
        return data


def _query_accelerators(timeout: float = 5.0) -> List[AcceleratorInfo]:
    """NVIDIA GPUs via nvidia-smi; empty on CPU-only hosts."""
    if shutil.which("nvidia-smi") is None:
        return []
    try:
        result = subprocess.run(
            [
                "nvidia-smi",
                "--query-gpu=name,memory.total,memory.used",
                "--format=csv,noheader,nounits",
            ],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.debug(f"nvidia-smi failed: {e}")
        return []

    if result.returncode != 0:
        return []

    gpus = []
    for line in result.stdout.splitlines():
        parts = [p.strip() for p in line.split(",")]
        if len(parts) != 3:
            continue
        try:
            gpus.append(AcceleratorInfo(parts[0], float(parts[1]), float(parts[2])))
        except ValueError:
            continue
    return gpus


def take_resource_snapshot(disk_path: str = "/") -> ResourceSnapshot:
    mem = psutil.virtual_memory()
    disk = psutil.disk_usage(disk_path)
    load1, _, _ = psutil.getloadavg()

    return ResourceSnapshot(
        ram_total=mem.total,
        ram_used=mem.used,
        ram_available=mem.available,
        disk_percent=disk.percent,
        disk_free=disk.free,
        cpu_load=round(load1, 2),
        accelerators=_query_accelerators(),
    )


__all__ = ["AcceleratorInfo", "ResourceSnapshot", "take_resource_snapshot"]
