"""Per-device I/O counters from the unified (v2) ``io`` controller."""

from __future__ import annotations

import copy
import os
import re
import stat
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from cgmetrics.common import Pressure, get_pressure

_DEVICE_RE = re.compile(r"\s*([0-9]+):([0-9]+)")
_DIGITS = re.compile(r"[0-9]+")
_UINT64_MAX = 2**64 - 1


@dataclass
class IOMetric:
    """Byte count and operation count."""

    bytes: int = 0
    ios: int = 0

    def to_dict(self) -> dict:
        """Return the metric as a plain mapping."""
        return {"bytes": self.bytes, "ios": self.ios}


@dataclass
class IOStat:
    """Read, write and discard counters for one device."""

    read: IOMetric = field(default_factory=IOMetric)
    write: IOMetric = field(default_factory=IOMetric)
    discarded: IOMetric = field(default_factory=IOMetric)

    def to_dict(self) -> dict:
        """Return the counters as a plain mapping."""
        return {
            "read": self.read.to_dict(),
            "write": self.write.to_dict(),
            "discarded": self.discarded.to_dict(),
        }


@dataclass
class IOSubsystem:
    """Metrics from the io controller, the v2 successor of blkio."""

    id: str = ""
    path: str = ""
    stats: Dict[str, IOStat] = field(default_factory=dict)
    pressure: Dict[str, Pressure] = field(default_factory=dict)

    @classmethod
    def read(cls, path: str, resolve_dev_ids: bool) -> "IOSubsystem":
        """Read ``io.stat`` and, where present, ``io.pressure`` under ``path``.

        With ``resolve_dev_ids`` the major:minor pairs are replaced by device
        names where a matching block device can be found.
        """
        try:
            stats = read_io_stats(path, resolve_dev_ids)
        except ValueError as err:
            raise ValueError(f"error getting io.stats for path {path}: {err}") from err

        pressure_path = os.path.join(path, "io.pressure")
        if not os.path.exists(pressure_path):
            return cls(stats=stats)

        try:
            pressure = get_pressure(pressure_path)
        except ValueError as err:
            raise ValueError(
                f"error fetching io.pressure for path {path}: {err}"
            ) from err
        return cls(stats=stats, pressure=pressure)

    def to_dict(self) -> dict:
        """Return the metrics as a plain mapping."""
        result: dict = {}
        if self.id:
            result["id"] = self.id
        if self.path:
            result["path"] = self.path
        result["stats"] = {dev: value.to_dict() for dev, value in self.stats.items()}
        result["pressure"] = {
            kind: value.to_dict() for kind, value in self.pressure.items()
        }
        return result


def read_io_stats(path: str, resolve_dev_ids: bool) -> Dict[str, IOStat]:
    """Read ``io.stat`` into a mapping of device to counters."""
    with open(os.path.join(path, "io.stat"), encoding="utf-8") as handle:
        lines = handle.read().splitlines()

    stats: Dict[str, IOStat] = {}
    for line in lines:
        try:
            devices, metrics, found = parse_stat_line(line, resolve_dev_ids)
        except ValueError as err:
            raise ValueError(f"error parsing line in file: {err}") from err
        if not found:
            continue
        for device in devices:
            stats[device] = copy.deepcopy(metrics)
    return stats


def _parse_counter(text: str) -> int:
    if not _DIGITS.fullmatch(text) or int(text) > _UINT64_MAX:
        raise ValueError(f"error parsing counter {text!r} in stat")
    return int(text)


def parse_stat_line(line: str, resolve_dev_ids: bool) -> Tuple[List[str], IOStat, bool]:
    """Parse one ``io.stat`` line.

    A line may list several devices sharing one set of counters, or devices
    with no counters at all. Returns the device names, the counters, and
    whether any counters were found.
    """
    devices: List[str] = []
    stats = IOStat()
    found_metrics = False

    for component in line.split(" "):
        if ":" in component:
            match = _DEVICE_RE.match(component)
            if match is None:
                raise ValueError(f"could not read device ID: {component}")
            major, minor = int(match.group(1)), int(match.group(2))

            name: Optional[str] = None
            if resolve_dev_ids:
                try:
                    name = fetch_device_name(major, minor)
                except OSError:
                    name = None
            devices.append(name if name is not None else component)
        elif "=" in component:
            found_metrics = True
            key, counter_text = component.split("=")[:2]
            counter = _parse_counter(counter_text)
            if key == "rbytes":
                stats.read.bytes = counter
            elif key == "wbytes":
                stats.write.bytes = counter
            elif key == "rios":
                stats.read.ios = counter
            elif key == "wios":
                stats.write.ios = counter
            elif key == "dbytes":
                stats.discarded.bytes = counter
            elif key == "dios":
                stats.discarded.ios = counter

    return devices, stats, found_metrics


def fetch_device_name(major: int, minor: int) -> Optional[str]:
    """Find the name of the block device in ``/dev/`` with this major:minor pair.

    Returns None when no device matches; raises OSError when ``/dev/`` cannot
    be listed or the platform is not Linux.
    """
    if not sys.platform.startswith("linux"):
        raise OSError("device name lookup is linux-only")

    try:
        entries = list(os.scandir("/dev/"))
    except OSError as err:
        raise OSError(f"error walking /dev/: {err}") from err

    found: Optional[str] = None
    for entry in entries:
        try:
            info = entry.stat(follow_symlinks=False)
        except OSError:
            continue
        if not stat.S_ISBLK(info.st_mode):
            continue
        if os.major(info.st_rdev) == major and os.minor(info.st_rdev) == minor:
            found = entry.name
    return found