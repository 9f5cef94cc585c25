"""CPU accounting metrics from the cgroup v1 ``cpuacct`` controller."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict

from cgmetrics.common import (
    CPUUsage,
    parse_cgroup_param_key_value,
    parse_uint,
    parse_uint_from_file,
)

_NANOS_PER_SECOND = 1_000_000_000


def _clock_ticks() -> int:
    try:
        ticks = os.sysconf("SC_CLK_TCK")
    except (AttributeError, ValueError, OSError):
        return 100
    return ticks if ticks > 0 else 100


_CLOCK_TICKS = _clock_ticks()


@dataclass
class CPUAccountingStats:
    """User and system CPU time reported by ``cpuacct.stat``."""

    user: CPUUsage = field(default_factory=CPUUsage)
    system: CPUUsage = field(default_factory=CPUUsage)

    def to_dict(self) -> dict:
        """Return the stats as a plain mapping."""
        return {"user": self.user.to_dict(), "system": self.system.to_dict()}


@dataclass
class CPUAccountingSubsystem:
    """Metrics from the cpuacct controller.

    Percentages are not read from the cgroup but derived later from two samples.
    """

    id: str = ""
    path: str = ""
    total: CPUUsage = field(default_factory=CPUUsage)
    usage_per_cpu: Dict[str, int] = field(default_factory=dict)
    stats: CPUAccountingStats = field(default_factory=CPUAccountingStats)

    @classmethod
    def read(cls, path: str) -> "CPUAccountingSubsystem":
        """Read the cpuacct controller files in the cgroup directory ``path``."""
        return cls(
            stats=read_cpuacct_stat(path),
            total=CPUUsage(ns=read_cpuacct_usage(path)),
            usage_per_cpu=read_cpuacct_usage_per_cpu(path),
        )

    def to_dict(self) -> dict:
        """Return the metrics as a plain mapping."""
        result: dict = {}
        if self.id:
            result["id"] = self.id
        if self.path:
            result["path"] = self.path
        result["total"] = self.total.to_dict()
        result["percpu"] = dict(self.usage_per_cpu)
        result["stats"] = self.stats.to_dict()
        return result


def read_cpuacct_stat(path: str) -> CPUAccountingStats:
    """Read ``cpuacct.stat``, converting jiffies to nanoseconds."""
    stats = CPUAccountingStats()
    try:
        with open(os.path.join(path, "cpuacct.stat"), encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except FileNotFoundError:
        return stats

    for line in lines:
        key, value = parse_cgroup_param_key_value(line)
        if key == "user":
            stats.user.ns = jiffies_to_nanos(value)
        elif key == "system":
            stats.system.ns = jiffies_to_nanos(value)
    return stats


def read_cpuacct_usage(path: str) -> int:
    """Read the total CPU time in nanoseconds from ``cpuacct.usage``."""
    return parse_uint_from_file(path, "cpuacct.usage")


def read_cpuacct_usage_per_cpu(path: str) -> Dict[str, int]:
    """Read per-CPU usage, keyed by CPU number counted from 1."""
    try:
        with open(os.path.join(path, "cpuacct.usage_percpu"), "rb") as handle:
            contents = handle.read()
    except FileNotFoundError:
        return {}

    return {
        str(number): parse_uint(usage)
        for number, usage in enumerate(contents.split(), start=1)
    }


def jiffies_to_nanos(jiffies: int) -> int:
    """Convert a count of clock ticks to nanoseconds."""
    return (jiffies * _NANOS_PER_SECOND) // _CLOCK_TICKS