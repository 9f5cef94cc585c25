"""CPU pressure and usage counters from the unified (v2) ``cpu`` controller."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from cgmetrics.common import CPUUsage, Pressure, get_pressure, parse_cgroup_param_key_value


@dataclass
class ThrottledField:
    """Time spent throttled and the number of throttled periods."""

    us: Optional[int] = None
    periods: Optional[int] = None

    def is_zero(self) -> bool:
        """True when neither throttling counter was reported."""
        return self.us is None and self.periods is None

    def to_dict(self) -> dict:
        """Return the reported counters as a plain mapping."""
        result: dict = {}
        if self.us is not None:
            result["us"] = self.us
        if self.periods is not None:
            result["periods"] = self.periods
        return result


@dataclass
class CPUStats:
    """Counters from ``cpu.stat``.

    The throttling counters are only present when the controller is enabled.
    """

    throttled: ThrottledField = field(default_factory=ThrottledField)
    periods: Optional[int] = None
    usage: CPUUsage = field(default_factory=CPUUsage)
    user: CPUUsage = field(default_factory=CPUUsage)
    system: CPUUsage = field(default_factory=CPUUsage)

    def to_dict(self) -> dict:
        """Return the counters as a plain mapping, leaving out unreported ones."""
        result: dict = {}
        if not self.throttled.is_zero():
            result["throttled"] = self.throttled.to_dict()
        if self.periods is not None:
            result["periods"] = self.periods
        result["usage"] = self.usage.to_dict()
        result["user"] = self.user.to_dict()
        result["system"] = self.system.to_dict()
        return result


@dataclass
class CPUSubsystem:
    """Metrics from the v2 cpu controller, which merges cpu and cpuacct."""

    id: str = ""
    path: str = ""
    pressure: Dict[str, Pressure] = field(default_factory=dict)
    stats: CPUStats = field(default_factory=CPUStats)

    @classmethod
    def read(cls, path: str) -> "CPUSubsystem":
        """Read the cpu controller files in the cgroup directory ``path``.

        Systems without pressure stall information yield an empty subsystem.
        """
        try:
            pressure = get_pressure(os.path.join(path, "cpu.pressure"))
        except FileNotFoundError:
            return cls()
        except ValueError as err:
            raise ValueError(f"error fetching Pressure data: {err}") from err

        try:
            stats = read_cpu_stats(path)
        except ValueError as err:
            raise ValueError(f"error fetching CPU stat data: {err}") from err
        return cls(pressure=pressure, stats=stats)

    def to_dict(self) -> dict:
        """Return the metrics as a plain mapping."""
        result: dict = {}
        if self.id:
            result["id"] = self.id
        if self.path:
            result["path"] = self.path
        if self.pressure:
            result["pressure"] = {
                kind: value.to_dict() for kind, value in self.pressure.items()
            }
        result["stats"] = self.stats.to_dict()
        return result


def read_cpu_stats(path: str) -> CPUStats:
    """Read ``cpu.stat``; a missing file yields empty stats."""
    data = CPUStats()
    try:
        with open(os.path.join(path, "cpu.stat"), encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except FileNotFoundError:
        return data

    for line in lines:
        try:
            key, value = parse_cgroup_param_key_value(line)
        except ValueError as err:
            raise ValueError(f"error parsing cpu.stat file: {err}") from err
        if key == "usage_usec":
            data.usage.ns = value
        elif key == "user_usec":
            data.user.ns = value
        elif key == "system_usec":
            data.system.ns = value
        elif key == "nr_periods":
            data.periods = value
        elif key == "nr_throttled":
            data.throttled.periods = value
        elif key == "throttled_usec":
            data.throttled.us = value
    return data