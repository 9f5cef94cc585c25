"""Scheduler settings and throttling counters from the cgroup v1 ``cpu`` controller."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from cgmetrics.common import parse_cgroup_param_key_value, parse_uint_from_file


@dataclass
class CFS:
    """Completely fair scheduler settings, in microseconds."""

    period_us: int = 0
    quota_us: int = 0
    shares: int = 0

    def to_dict(self) -> dict:
        """Return the settings as a plain mapping."""
        return {
            "period": {"us": self.period_us},
            "quota": {"us": self.quota_us},
            "shares": self.shares,
        }


@dataclass
class RT:
    """Real-time scheduler settings, in microseconds."""

    period_us: int = 0
    runtime_us: int = 0

    def to_dict(self) -> dict:
        """Return the settings as a plain mapping."""
        return {
            "period": {"us": self.period_us},
            "runtime": {"us": self.runtime_us},
        }


@dataclass
class ThrottledField:
    """Time spent throttled and the number of throttled periods."""

    us: int = 0
    periods: int = 0

    def to_dict(self) -> dict:
        """Return the throttling data as a plain mapping."""
        return {"us": self.us, "periods": self.periods}


@dataclass
class CPUStats:
    """How far the cgroup's CPU usage was throttled."""

    periods: int = 0
    throttled: ThrottledField = field(default_factory=ThrottledField)

    def to_dict(self) -> dict:
        """Return the stats as a plain mapping."""
        result: dict = {}
        if self.periods:
            result["periods"] = self.periods
        result["throttled"] = self.throttled.to_dict()
        return result


@dataclass
class CPUSubsystem:
    """Metrics and limits from the cpu controller."""

    id: str = ""
    path: str = ""
    cfs: CFS = field(default_factory=CFS)
    rt: RT = field(default_factory=RT)
    stats: CPUStats = field(default_factory=CPUStats)

    @classmethod
    def read(cls, path: str) -> "CPUSubsystem":
        """Read the cpu controller files in the cgroup directory ``path``."""
        return cls(cfs=read_cfs(path), rt=read_rt(path), stats=read_cpu_stat(path))

    def to_dict(self) -> dict:
        """Return the metrics as a plain mapping."""
        result: dict = {}
        if self.id:
            result["id"] = self.id
        if self.path:
            result["path"] = self.path
        result["cfs"] = self.cfs.to_dict()
        result["rt"] = self.rt.to_dict()
        result["stats"] = self.stats.to_dict()
        return result


def read_cpu_stat(path: str) -> CPUStats:
    """Read ``cpu.stat``; a missing file yields empty stats."""
    stats = CPUStats()
    try:
        with open(os.path.join(path, "cpu.stat"), encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except FileNotFoundError:
        return stats

    for line in lines:
        key, value = parse_cgroup_param_key_value(line)
        if key == "nr_periods":
            stats.periods = value
        elif key == "nr_throttled":
            stats.throttled.periods = value
        elif key == "throttled_time":
            stats.throttled.us = value
    return stats


def read_cfs(path: str) -> CFS:
    """Read the completely fair scheduler settings."""
    return CFS(
        period_us=parse_uint_from_file(path, "cpu.cfs_period_us"),
        quota_us=parse_uint_from_file(path, "cpu.cfs_quota_us"),
        shares=parse_uint_from_file(path, "cpu.shares"),
    )


def read_rt(path: str) -> RT:
    """Read the real-time scheduler settings."""
    return RT(
        period_us=parse_uint_from_file(path, "cpu.rt_period_us"),
        runtime_us=parse_uint_from_file(path, "cpu.rt_runtime_us"),
    )