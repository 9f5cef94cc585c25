"""Memory usage, limits and statistics from the cgroup v1 ``memory`` controller."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields

from cgmetrics.common import parse_cgroup_param_key_value, parse_uint_from_file

# Keys of memory.stat mapped to MemoryStat attributes.
_STAT_KEYS = {
    "cache": "cache",
    "rss": "rss",
    "rss_huge": "rss_huge",
    "mapped_file": "mapped_file",
    "pgpgin": "pages_in",
    "pgpgout": "pages_out",
    "pgfault": "page_faults",
    "pgmajfault": "major_page_faults",
    "swap": "swap",
    "active_anon": "active_anon",
    "inactive_anon": "inactive_anon",
    "active_file": "active_file",
    "inactive_file": "inactive_file",
    "unevictable": "unevictable",
    "hierarchical_memory_limit": "hierarchical_memory_limit",
    "hierarchical_memsw_limit": "hierarchical_memsw_limit",
}

_COUNT_FIELDS = frozenset({"pages_in", "pages_out", "page_faults", "major_page_faults"})


@dataclass
class MemSubsystemUsage:
    """Current and peak usage in bytes."""

    bytes: int = 0
    max_bytes: int = 0

    def to_dict(self) -> dict:
        """Return the usage as a plain mapping."""
        return {"bytes": self.bytes, "max": {"bytes": self.max_bytes}}


@dataclass
class MemoryData:
    """Usage, limit and failure count for one kind of memory."""

    usage: MemSubsystemUsage = field(default_factory=MemSubsystemUsage)
    limit_bytes: int = 0
    failures: int = 0

    def to_dict(self) -> dict:
        """Return the data as a plain mapping."""
        return {
            "usage": self.usage.to_dict(),
            "limit": {"bytes": self.limit_bytes},
            "failures": self.failures,
        }


@dataclass
class MemoryStat:
    """Statistics from ``memory.stat``; sizes are in bytes."""

    cache: int = 0
    rss: int = 0
    rss_huge: int = 0
    mapped_file: int = 0
    pages_in: int = 0
    pages_out: int = 0
    page_faults: int = 0
    major_page_faults: int = 0
    swap: int = 0
    active_anon: int = 0
    inactive_anon: int = 0
    active_file: int = 0
    inactive_file: int = 0
    unevictable: int = 0
    hierarchical_memory_limit: int = 0
    hierarchical_memsw_limit: int = 0

    def to_dict(self) -> dict:
        """Return the statistics as a plain mapping."""
        result: dict = {}
        for item in fields(self):
            value = getattr(self, item.name)
            result[item.name] = value if item.name in _COUNT_FIELDS else {"bytes": value}
        return result


@dataclass
class MemorySubsystem:
    """Metrics and limits from the memory controller."""

    id: str = ""
    path: str = ""
    mem: MemoryData = field(default_factory=MemoryData)
    mem_swap: MemoryData = field(default_factory=MemoryData)
    kernel: MemoryData = field(default_factory=MemoryData)
    kernel_tcp: MemoryData = field(default_factory=MemoryData)
    stats: MemoryStat = field(default_factory=MemoryStat)

    @classmethod
    def read(cls, path: str) -> "MemorySubsystem":
        """Read the memory controller files in the cgroup directory ``path``."""
        return cls(
            mem=read_memory_data(path, "memory"),
            mem_swap=read_memory_data(path, "memory.memsw"),
            kernel=read_memory_data(path, "memory.kmem"),
            kernel_tcp=read_memory_data(path, "memory.kmem.tcp"),
            stats=read_memory_stats(path),
        )

    def to_dict(self) -> dict:
        """Return the metrics as a plain mapping."""
        result: dict = {}
        if self.id:
            result["id"] = self.id
        if self.path:
            result["path"] = self.path
        result["mem"] = self.mem.to_dict()
        result["memsw"] = self.mem_swap.to_dict()
        result["kmem"] = self.kernel.to_dict()
        result["kmem_tcp"] = self.kernel_tcp.to_dict()
        result["stats"] = self.stats.to_dict()
        return result


def _read_value(path: str, prefix: str, suffix: str) -> int:
    try:
        return parse_uint_from_file(path, prefix + suffix)
    except ValueError as err:
        raise ValueError(f"error fetching {suffix.lstrip('.')}: {err}") from err


def read_memory_data(path: str, prefix: str) -> MemoryData:
    """Read the usage, peak, limit and failure files that start with ``prefix``."""
    return MemoryData(
        usage=MemSubsystemUsage(
            bytes=_read_value(path, prefix, ".usage_in_bytes"),
            max_bytes=_read_value(path, prefix, ".max_usage_in_bytes"),
        ),
        limit_bytes=_read_value(path, prefix, ".limit_in_bytes"),
        failures=_read_value(path, prefix, ".failcnt"),
    )


def read_memory_stats(path: str) -> MemoryStat:
    """Read ``memory.stat``; a missing file yields empty statistics."""
    stats = MemoryStat()
    try:
        with open(os.path.join(path, "memory.stat"), encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except FileNotFoundError:
        return stats

    for line in lines:
        key, value = parse_cgroup_param_key_value(line)
        attribute = _STAT_KEYS.get(key)
        if attribute is not None:
            setattr(stats, attribute, value)
    return stats