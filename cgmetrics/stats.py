"""Cgroup statistics for a process, for v1 and v2 hierarchies."""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from cgmetrics.common import CPUUsage, round_metric
from cgmetrics.v1.blkio import BlockIOSubsystem
from cgmetrics.v1.cpu import CPUSubsystem as V1CPUSubsystem
from cgmetrics.v1.cpuacct import CPUAccountingSubsystem
from cgmetrics.v1.memory import MemorySubsystem as V1MemorySubsystem
from cgmetrics.v2.cpu import CPUSubsystem as V2CPUSubsystem
from cgmetrics.v2.io import IOSubsystem
from cgmetrics.v2.memory import MemorySubsystem as V2MemorySubsystem


class CgroupsVersion(enum.IntEnum):
    """The cgroups hierarchy version a process is attached to."""

    V1 = 1
    V2 = 2


def _num_cpu() -> int:
    return os.cpu_count() or 1


def _nanos(delta: timedelta) -> int:
    return (delta.days * 86_400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1_000


def _fill_usage(current: CPUUsage, previous_ns: int, nanos: int, cpu_count: int) -> None:
    pct = (current.ns - previous_ns) / nanos
    current.pct = round_metric(pct)
    current.norm_pct = round_metric(pct / cpu_count)


def _base_dict(cg_id: str, path: str) -> dict:
    result: dict = {}
    if cg_id:
        result["id"] = cg_id
    if path:
        result["path"] = path
    return result


@dataclass
class StatsV1:
    """Metrics and limits of a process from each v1 cgroup subsystem."""

    id: str = ""
    path: str = ""
    cpu: Optional[V1CPUSubsystem] = None
    cpu_accounting: Optional[CPUAccountingSubsystem] = None
    memory: Optional[V1MemorySubsystem] = None
    block_io: Optional[BlockIOSubsystem] = None
    version: CgroupsVersion = CgroupsVersion.V1

    def cg_version(self) -> CgroupsVersion:
        """Return the cgroups version of these stats."""
        return CgroupsVersion.V1

    def format(self) -> dict:
        """Return the stats as a plain mapping, leaving out absent subsystems."""
        result = _base_dict(self.id, self.path)
        if self.cpu is not None:
            result["cpu"] = self.cpu.to_dict()
        if self.cpu_accounting is not None:
            result["cpuacct"] = self.cpu_accounting.to_dict()
        if self.memory is not None:
            result["memory"] = self.memory.to_dict()
        if self.block_io is not None:
            result["blkio"] = self.block_io.to_dict()
        result["cgroups_version"] = int(self.version)
        return result

    def fill_percentages(
        self,
        prev: Union["StatsV1", "StatsV2", None],
        cur_time: datetime,
        prev_time: datetime,
    ) -> None:
        """Derive CPU percentages from an earlier sample of the same process.

        Does nothing when ``prev`` is not v1 stats, CPU accounting is missing
        from either sample, or no time passed between the samples.
        """
        if not isinstance(prev, StatsV1):
            return
        current, previous = self.cpu_accounting, prev.cpu_accounting
        if current is None or previous is None:
            return
        nanos = _nanos(cur_time - prev_time)
        if nanos == 0:
            return

        cpu_count = len(current.usage_per_cpu) or _num_cpu()
        _fill_usage(current.total, previous.total.ns, nanos, cpu_count)
        _fill_usage(current.stats.user, previous.stats.user.ns, nanos, cpu_count)
        _fill_usage(current.stats.system, previous.stats.system.ns, nanos, cpu_count)


@dataclass
class StatsV2:
    """Metrics and limits of a process from each v2 cgroup controller."""

    id: str = ""
    path: str = ""
    cpu: Optional[V2CPUSubsystem] = None
    memory: Optional[V2MemorySubsystem] = None
    io: Optional[IOSubsystem] = None
    version: CgroupsVersion = CgroupsVersion.V2

    def cg_version(self) -> CgroupsVersion:
        """Return the cgroups version of these stats."""
        return CgroupsVersion.V2

    def format(self) -> dict:
        """Return the stats as a plain mapping, leaving out absent controllers."""
        result = _base_dict(self.id, self.path)
        if self.cpu is not None:
            result["cpu"] = self.cpu.to_dict()
        if self.memory is not None:
            result["memory"] = self.memory.to_dict()
        if self.io is not None:
            result["io"] = self.io.to_dict()
        result["cgroups_version"] = int(self.version)
        return result

    def fill_percentages(
        self,
        prev: Union["StatsV1", "StatsV2", None],
        cur_time: datetime,
        prev_time: datetime,
    ) -> None:
        """Derive CPU percentages from an earlier sample of the same process.

        Does nothing when ``prev`` is not v2 stats, CPU data is missing from
        either sample, or no time passed between the samples.
        """
        if not isinstance(prev, StatsV2):
            return
        if self.cpu is None or prev.cpu is None:
            return
        nanos = _nanos(cur_time - prev_time)
        if nanos == 0:
            return

        current, previous = self.cpu.stats, prev.cpu.stats
        cpu_count = _num_cpu()
        _fill_usage(current.usage, previous.usage.ns, nanos, cpu_count)
        _fill_usage(current.user, previous.user.ns, nanos, cpu_count)
        _fill_usage(current.system, previous.system.ns, nanos, cpu_count)