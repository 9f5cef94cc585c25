"""Memory usage, limits, events and statistics from the unified (v2) ``memory`` controller."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import Optional

from cgmetrics.common import parse_cgroup_param_key_value, parse_uint, parse_uint_from_file

# (attribute, key in to_dict output, key in memory.stat)
_STAT_FIELDS = (
    ("anon", "anon", "anon"),
    ("file", "file", "file"),
    ("kernel_stack", "kernel_stack", "kernel_stack"),
    ("page_tables", "page_tables", "pagetables"),
    ("per_cpu", "per_cpu", "percpu"),
    ("sock", "sock", "sock"),
    ("shmem", "shmem", "shmem"),
    ("file_mapped", "file_mapped", "file_mapped"),
    ("file_dirty", "file_dirty", "file_dirty"),
    ("file_writeback", "file_writeback", "file_writeback"),
    ("swap_cached", "swap_cached", "swapcached"),
    ("anon_thp", "anon_thp", "anon_thp"),
    ("file_thp", "file_thp", "file_thp"),
    ("shmem_thp", "shmem_thp", "shmem_thp"),
    ("inactive_anon", "inactive_anon", "inactive_anon"),
    ("active_anon", "active_anon", "active_anon"),
    ("inactive_file", "inactive_file", "inactive_file"),
    ("active_file", "active_file", "active_file"),
    ("unevictable", "unevictable", "unevictable"),
    ("slab_reclaimable", "slab_reclaimable", "slab_reclaimable"),
    ("slab_unreclaimable", "slab_unreclaimable", "slab_unreclaimable"),
    ("slab", "slab", "slab"),
    ("workingset_refault_anon", "workingset_refault_anon", "workingset_refault_anon"),
    ("workingset_refault_file", "workingset_refault_file", "workingset_refault_file"),
    ("workingset_activate_anon", "workingset_activate_anon", "workingset_activate_anon"),
    ("workingset_activate_file", "workingset_activate_file", "workingset_activate_file"),
    ("workingset_restore_anon", "workingset_restore_anon", "workingset_restore_anon"),
    ("workingset_restore_file", "workingset_restore_file", "workingset_restore_file"),
    ("workingset_node_reclaim", "workingset_node_reclaim", "workingset_nodereclaim"),
    ("page_faults", "page_faults", "pgfault"),
    ("major_page_faults", "major_page_faults", "pgmajfault"),
    ("page_refill", "page_refill", "pgrefill"),
    ("page_scan", "page_scan", "pgscan"),
    ("page_steal", "page_steal", "pgsteal"),
    ("page_activate", "page_activate", "pgactivate"),
    ("page_deactivate", "page_deactivate", "pgdeactivate"),
    ("page_lazy_free", "page_lazy_free", "pglazyfree"),
    ("page_lazy_freed", "page_lazy_freed", "pglazyfreed"),
    ("thp_fault_alloc", "thp_fault_alloc", "thp_fault_alloc"),
    ("thp_collapse_alloc", "htp_collapse_alloc", "thp_collapse_alloc"),
)

_ATTRIBUTE_BY_STAT_KEY = {orig: attribute for attribute, _, orig in _STAT_FIELDS}
_DICT_KEY_BY_ATTRIBUTE = {attribute: key for attribute, key, _ in _STAT_FIELDS}

_BYTE_FIELDS = frozenset(
    {
        "anon", "file", "kernel_stack", "page_tables", "per_cpu", "sock", "shmem",
        "file_mapped", "file_dirty", "file_writeback", "swap_cached", "anon_thp",
        "file_thp", "shmem_thp", "inactive_anon", "active_anon", "inactive_file",
        "active_file", "unevictable", "slab_reclaimable", "slab_unreclaimable", "slab",
    }
)


@dataclass
class Events:
    """Counters from a ``*.events`` file of the memory controller."""

    low: Optional[int] = None
    high: int = 0
    max: int = 0
    oom: Optional[int] = None
    oom_kill: Optional[int] = None
    fail: Optional[int] = None

    def to_dict(self) -> dict:
        """Return the counters as a plain mapping, leaving out unreported ones."""
        result: dict = {}
        if self.low is not None:
            result["low"] = self.low
        result["high"] = self.high
        result["max"] = self.max
        for name in ("oom", "oom_kill", "fail"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        return result


@dataclass
class MemoryData:
    """Usage, protection and limits for one kind of memory.

    ``high_bytes`` and ``max_bytes`` are None when set to ``max`` (no limit).
    """

    events: Events = field(default_factory=Events)
    usage_bytes: int = 0
    low_bytes: int = 0
    high_bytes: Optional[int] = None
    max_bytes: Optional[int] = None

    def to_dict(self) -> dict:
        """Return the data as a plain mapping."""
        result: dict = {
            "events": self.events.to_dict(),
            "usage": {"bytes": self.usage_bytes},
            "low": {"bytes": self.low_bytes},
        }
        if self.high_bytes is not None:
            result["high"] = {"bytes": self.high_bytes}
        if self.max_bytes is not None:
            result["max"] = {"bytes": self.max_bytes}
        return result


@dataclass
class MemoryStat:
    """Statistics from ``memory.stat``; sizes are in bytes, the rest are counts."""

    anon: int = 0
    file: int = 0
    kernel_stack: int = 0
    page_tables: int = 0
    per_cpu: int = 0
    sock: int = 0
    shmem: int = 0
    file_mapped: int = 0
    file_dirty: int = 0
    file_writeback: int = 0
    swap_cached: int = 0
    anon_thp: int = 0
    file_thp: int = 0
    shmem_thp: int = 0
    inactive_anon: int = 0
    active_anon: int = 0
    inactive_file: int = 0
    active_file: int = 0
    unevictable: int = 0
    slab_reclaimable: int = 0
    slab_unreclaimable: int = 0
    slab: int = 0
    workingset_refault_anon: int = 0
    workingset_refault_file: int = 0
    workingset_activate_anon: int = 0
    workingset_activate_file: int = 0
    workingset_restore_anon: int = 0
    workingset_restore_file: int = 0
    workingset_node_reclaim: int = 0
    page_faults: int = 0
    major_page_faults: int = 0
    page_refill: int = 0
    page_scan: int = 0
    page_steal: int = 0
    page_activate: int = 0
    page_deactivate: int = 0
    page_lazy_free: int = 0
    page_lazy_freed: int = 0
    thp_fault_alloc: int = 0
    thp_collapse_alloc: int = 0

    def to_dict(self) -> dict:
        """Return the statistics as a plain mapping."""
        result: dict = {}
        for item in fields(self):
            value = getattr(self, item.name)
            key = _DICT_KEY_BY_ATTRIBUTE[item.name]
            result[key] = {"bytes": value} if item.name in _BYTE_FIELDS else value
        return result


@dataclass
class MemorySubsystem:
    """Metrics and limits from the v2 memory controller."""

    id: str = ""
    path: str = ""
    mem: MemoryData = field(default_factory=MemoryData)
    mem_swap: MemoryData = field(default_factory=MemoryData)
    stats: MemoryStat = field(default_factory=MemoryStat)

    @classmethod
    def read(cls, path: str) -> "MemorySubsystem":
        """Read the memory controller files in the cgroup directory ``path``."""
        try:
            mem = read_memory_data(path, "memory")
        except ValueError as err:
            raise ValueError(f"error reading memory stats: {err}") from err
        try:
            mem_swap = read_memory_data(path, "memory.swap")
        except ValueError as err:
            raise ValueError(f"error reading memory.swap stats: {err}") from err
        try:
            stats = read_memory_stat(path)
        except ValueError as err:
            raise ValueError(f"error fetching memory.stat: {err}") from err
        return cls(mem=mem, mem_swap=mem_swap, stats=stats)

    def to_dict(self) -> dict:
        """Return the metrics as a plain mapping."""
        result: dict = {}
        if self.id:
            result["id"] = self.id
        if self.path:
            result["path"] = self.path
        result["mem"] = self.mem.to_dict()
        result["memsw"] = self.mem_swap.to_dict()
        result["stats"] = self.stats.to_dict()
        return result


def read_memory_data(path: str, name: str) -> MemoryData:
    """Read the ``.low``, ``.high``, ``.max``, ``.current`` and ``.events`` files of ``name``.

    Root cgroups lack these files: when ``<name>.high`` is missing, empty
    data is returned.
    """
    if not os.path.exists(os.path.join(path, name + ".high")):
        return MemoryData()

    try:
        low = parse_uint_from_file(path, name + ".low")
    except ValueError as err:
        raise ValueError(f"error reading {name}.low file: {err}") from err
    try:
        high = max_or_value(path, name + ".high")
    except ValueError as err:
        raise ValueError(f"error parsing {name}.high file: {err}") from err
    try:
        maximum = max_or_value(path, name + ".max")
    except ValueError as err:
        raise ValueError(f"error parsing {name}.max file: {err}") from err
    try:
        current = parse_uint_from_file(path, name + ".current")
    except ValueError as err:
        raise ValueError(f"error reading {name}.current file: {err}") from err
    try:
        events = read_events_file(path, name + ".events")
    except ValueError as err:
        raise ValueError(f"error fetching events file for {name}: {err}") from err

    return MemoryData(
        events=events,
        usage_bytes=current,
        low_bytes=low,
        high_bytes=high,
        max_bytes=maximum,
    )


def read_events_file(path: str, name: str) -> Events:
    """Read a ``*.events`` file of ``key value`` lines."""
    with open(os.path.join(path, name), encoding="utf-8") as handle:
        lines = handle.read().splitlines()

    events = Events()
    for line in lines:
        try:
            key, value = parse_cgroup_param_key_value(line)
        except ValueError as err:
            raise ValueError(f"error parsing key from events: {err}") from err
        if key == "low":
            events.low = value
        elif key == "high":
            events.high = value
        elif key == "max":
            events.max = value
        elif key == "oom":
            events.oom = value
        elif key == "oom_kill":
            events.oom_kill = value
        elif key == "fail":
            events.fail = value
    return events


def max_or_value(path: str, name: str) -> Optional[int]:
    """Read a limit file; ``max`` means the limit is off and yields None."""
    with open(os.path.join(path, name), "rb") as handle:
        raw = handle.read()

    if raw.strip() == b"max":
        return None
    try:
        return parse_uint(raw)
    except ValueError as err:
        raise ValueError(f"error parsing raw value {raw!r}: {err}") from err


def read_memory_stat(path: str) -> MemoryStat:
    """Read ``memory.stat``; keys that are not tracked are checked but ignored."""
    with open(os.path.join(path, "memory.stat"), encoding="utf-8") as handle:
        lines = handle.read().splitlines()

    stats = MemoryStat()
    for line in lines:
        parts = line.split(" ", 1)
        if len(parts) != 2:
            continue
        key, raw_value = parts
        try:
            value = parse_uint(raw_value)
        except ValueError as err:
            raise ValueError(f"error parsing value {raw_value!r}: {err}") from err
        attribute = _ATTRIBUTE_BY_STAT_KEY.get(key)
        if attribute is not None:
            setattr(stats, attribute, value)
    return stats