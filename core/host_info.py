"""Host CPU topology and memory capacity, queried fresh for every admission."""

import glob
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet

import psutil

from core.logger import log_event

CPUINFO_PATH = Path("/proc/cpuinfo")
NUMA_NODE_GLOB = "/sys/devices/system/node/node[0-9]*"


class HostInfoError(Exception):
    """Host information could not be read."""


@dataclass(frozen=True)
class HostCapability:
    cores: int
    sockets: int
    numa_nodes: int
    memory_mb: int
    features: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def total_cores(self) -> int:
        return self.cores

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["features"] = sorted(self.features)
        return data


class HostInfoProvider(ABC):
    """Contract: return a HostCapability or raise HostInfoError."""

    @abstractmethod
    def query(self) -> HostCapability: ...


class StaticHostInfoProvider(HostInfoProvider):
    """Reports a fixed capability. Used by tests and simulated hosts."""

    def __init__(self, capability: HostCapability) -> None:
        self.capability = capability

    def query(self) -> HostCapability:
        return self.capability


class PsutilHostInfoProvider(HostInfoProvider):
    """
    Reads the live host.

    Core and memory totals come from psutil; socket count and CPU flags
    from /proc/cpuinfo; NUMA node count from sysfs (1 when sysfs has no
    node directories, e.g. inside containers).
    """

    def __init__(self, cpuinfo_path: Path = CPUINFO_PATH, numa_glob: str = NUMA_NODE_GLOB) -> None:
        self.cpuinfo_path = cpuinfo_path
        self.numa_glob = numa_glob

    def query(self) -> HostCapability:
        try:
            cores = psutil.cpu_count(logical=False) or psutil.cpu_count(logical=True)
            memory_mb = psutil.virtual_memory().total // (1024 * 1024)
        except (OSError, RuntimeError) as e:
            log_event(f"[host] Failed to read host capacity via psutil: {e}", logging.WARNING)
            raise HostInfoError(f"failed to read host capacity: {e}") from e

        if not cores or not memory_mb:
            raise HostInfoError("psutil reported no CPU cores or no memory")

        sockets, features = self._read_cpuinfo()
        return HostCapability(
            cores=cores,
            sockets=sockets,
            numa_nodes=self._count_numa_nodes(),
            memory_mb=memory_mb,
            features=features,
        )

    def _read_cpuinfo(self) -> tuple[int, FrozenSet[str]]:
        try:
            text = self.cpuinfo_path.read_text(encoding="utf-8")
        except OSError as e:
            log_event(f"[host] Cannot read {self.cpuinfo_path}: {e}", logging.WARNING)
            raise HostInfoError(f"cannot read {self.cpuinfo_path}: {e}") from e

        physical_ids: set[str] = set()
        flags: FrozenSet[str] = frozenset()
        for line in text.splitlines():
            key, _, value = line.partition(":")
            key = key.strip()
            if key == "physical id":
                physical_ids.add(value.strip())
            elif key == "flags" and not flags:
                flags = frozenset(value.split())

        return max(len(physical_ids), 1), flags

    def _count_numa_nodes(self) -> int:
        return max(len(glob.glob(self.numa_glob)), 1)
