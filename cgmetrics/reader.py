"""Reading the cgroup metrics and limits of a process.

A cgroup is a collection of processes bound to a set of limits; a subsystem
(controller) is the kernel component that applies them. Both the v1
hierarchies and the unified v2 hierarchy are handled.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple, Union

from cgmetrics.paths import (
    ControllerPath,
    HostFS,
    PathList,
    subsystem_mountpoints,
    supported_subsystems,
)
from cgmetrics.stats import CgroupsVersion, StatsV1, StatsV2
from cgmetrics.v1.blkio import BlockIOSubsystem
from cgmetrics.v1.cpu import CPUSubsystem as V1CPUSubsystem
from cgmetrics.v1.cpuacct import CPUAccountingSubsystem
from cgmetrics.v1.memory import MemorySubsystem as V1MemorySubsystem
from cgmetrics.v2.cpu import CPUSubsystem as V2CPUSubsystem
from cgmetrics.v2.io import IOSubsystem
from cgmetrics.v2.memory import MemorySubsystem as V2MemorySubsystem

log = logging.getLogger(__name__)

_V2_CACHE_TTL = 5 * 60.0

# controller name -> (StatsV1 attribute, reader, label used in error messages)
_V1_READERS: Dict[str, Tuple[str, Callable[[str], object], str]] = {
    "blkio": ("block_io", BlockIOSubsystem.read, "BlockIO"),
    "cpu": ("cpu", V1CPUSubsystem.read, "cpu"),
    "cpuacct": ("cpu_accounting", CPUAccountingSubsystem.read, "cpuacct"),
    "memory": ("memory", V1MemorySubsystem.read, "memory"),
}

_V2_READERS: Dict[str, Tuple[str, Callable[[str], object], str]] = {
    "cpu": ("cpu", V2CPUSubsystem.read, "CPU"),
    "memory": ("memory", V2MemorySubsystem.read, "Memory"),
    "io": ("io", lambda path: IOSubsystem.read(path, True), "IO"),
}


def _join(*parts: str) -> str:
    """Join path elements with '/' and clean the result, keeping absolute parts nested."""
    joined = "/".join(part for part in parts if part)
    if not joined:
        return ""
    cleaned = os.path.normpath(joined)
    while cleaned.startswith("//"):
        cleaned = cleaned[1:]
    return cleaned


def _base(path: str) -> str:
    """Return the last element of ``path``: "." when empty, "/" for the root."""
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _rewrap(message: str, err: Exception) -> Exception:
    if isinstance(err, OSError):
        return OSError(f"{message}: {err}")
    return ValueError(f"{message}: {err}")


def _common_metadata(mounts: Dict[str, ControllerPath], ignore_root: bool) -> Tuple[str, str]:
    """Return the path and ID shared by all controllers, or two empty strings."""
    path = ""
    for mount in mounts.values():
        # Root v1 controllers next to non-root ones must not hide the real ID.
        if not mount.is_v2 and ignore_root and mount.controller_path == "/":
            continue
        if not path:
            path = mount.controller_path
        elif path != mount.controller_path:
            return "", ""
    return path, _base(path)


class Reader:
    """Reads cgroup metrics and limits of processes.

    ``rootfs`` is the root filesystem to read from (``/`` when None).
    ``ignore_root_cgroups`` skips controllers whose path is ``/``.
    ``cgroups_hierarchy_override``, when not empty, replaces the cgroup paths
    listed in ``/proc/<pid>/cgroup``; set it to ``/`` inside a container.
    """

    def __init__(
        self,
        rootfs: Optional[HostFS] = None,
        ignore_root_cgroups: bool = False,
        cgroups_hierarchy_override: str = "",
    ) -> None:
        self.rootfs = rootfs if rootfs is not None else HostFS("/")
        self.ignore_root_cgroups = ignore_root_cgroups
        self.cgroups_hierarchy_override = cgroups_hierarchy_override

        subsystems = supported_subsystems(self.rootfs)
        try:
            self.mountpoints = subsystem_mountpoints(self.rootfs, subsystems)
        except (OSError, ValueError) as err:
            raise _rewrap("error finding mountpoints", err) from err

        self._v2_cache_lock = threading.Lock()
        self._v2_cache: Dict[str, Tuple[float, Dict[str, ControllerPath]]] = {}

    def _container_namespaced(self) -> bool:
        return self.rootfs._in_private_cgroup_ns() and self.rootfs.is_set()

    def _cgroup_file(self, pid: int) -> str:
        return self.rootfs.resolve(_join("/proc", str(pid), "cgroup"))

    def cgroups_version(self, pid: int) -> CgroupsVersion:
        """Report whether ``pid`` is attached to a v1 or a v2 hierarchy."""
        cg_path = self._cgroup_file(pid)
        try:
            with open(cg_path, encoding="utf-8") as handle:
                text = handle.read()
        except OSError as err:
            raise OSError(f"error reading {cg_path}: {err}") from err

        # Some distributions add an unused v2 entry next to the v1 ones.
        if "0::/" not in text:
            return CgroupsVersion.V1
        if len(text.strip().split("\n")) == 1:
            return CgroupsVersion.V2
        try:
            controllers = self._read_controller_list(text)
        except OSError as err:
            raise OSError(
                f"error fetching cgroup controller list for pid {pid}: {err}"
            ) from err
        if controllers:
            log.debug("fetching V2 controller: %r for pid %d", controllers, pid)
            return CgroupsVersion.V2
        return CgroupsVersion.V1

    def _read_controller_list(self, cgroups_file: str) -> List[str]:
        """Read ``cgroup.controllers`` of the v2 cgroup named in a cgroup file."""
        v2_loc = self.mountpoints.v2_loc
        if not v2_loc:
            return []
        cg_path = ""
        for line in cgroups_file.split("\n"):
            if "0::/" in line:
                cg_path = line.split(":")[2]
        if not cg_path:
            return []

        if self._container_namespaced():
            file_path = _join(
                v2_loc, self.mountpoints.containerized_root_mount, cg_path, "cgroup.controllers"
            )
        else:
            file_path = _join(v2_loc, cg_path, "cgroup.controllers")

        try:
            with open(file_path, encoding="utf-8") as handle:
                raw = handle.read()
        except OSError as err:
            raise OSError(
                f"error reading cgroup '{cg_path}': file {file_path}: {err}"
            ) from err
        if not raw:
            return []
        return raw.split(" ")

    def get_stats_for_pid(self, pid: int) -> Union[StatsV1, StatsV2]:
        """Return the v1 or v2 stats of ``pid``, whichever hierarchy it uses."""
        try:
            version = self.cgroups_version(pid)
        except OSError as err:
            raise OSError(f"error finding cgroup version for pid {pid}: {err}") from err
        if version == CgroupsVersion.V1:
            return self.get_v1_stats_for_process(pid)
        return self.get_v2_stats_for_process(pid)

    def _skip_root(self, controller: ControllerPath) -> bool:
        return (
            self.ignore_root_cgroups
            and controller.controller_path == "/"
            and self.cgroups_hierarchy_override != controller.controller_path
        )

    def get_v1_stats_for_process(self, pid: int) -> StatsV1:
        """Return the v1 cgroup metrics and limits of ``pid``."""
        paths = self.process_cgroup_paths(pid)
        path, cg_id = _common_metadata(paths.v1, self.ignore_root_cgroups)
        stats = StatsV1(id=cg_id, path=path, version=CgroupsVersion.V1)
        for name, controller in paths.v1.items():
            if self._skip_root(controller):
                continue
            try:
                _fill(stats, _V1_READERS, name, controller)
            except (OSError, ValueError) as err:
                raise _rewrap(f"error fetching stats for controller {name}", err) from err
        return stats

    def get_v2_stats_for_process(self, pid: int) -> StatsV2:
        """Return the v2 cgroup metrics and limits of ``pid``."""
        paths = self.process_cgroup_paths(pid)
        path, cg_id = _common_metadata(paths.v2, self.ignore_root_cgroups)
        stats = StatsV2(id=cg_id, path=path, version=CgroupsVersion.V2)
        for name, controller in paths.v2.items():
            if self._skip_root(controller):
                continue
            try:
                _fill(stats, _V2_READERS, name, controller)
            except (OSError, ValueError) as err:
                raise _rewrap(f"error fetching stats for controller {name}", err) from err
        return stats

    def process_cgroup_paths(self, pid: int) -> PathList:
        """Return the cgroups of ``pid`` with their paths relative to each mountpoint."""
        with open(self._cgroup_file(pid), encoding="utf-8") as handle:
            lines = handle.read().splitlines()

        try:
            version = self.cgroups_version(pid)
        except OSError as err:
            raise OSError(f"error finding cgroup version for pid {pid}: {err}") from err

        mounts = self.mountpoints
        result = PathList()
        for line in lines:
            # Format: hierarchy-ID:subsystem-list:cgroup-path
            fields = line.split(":")
            if len(fields) != 3:
                continue

            path = self.cgroups_hierarchy_override or fields[2]

            # In a private cgroup namespace the listed path is relative to our
            # own cgroup, so it must be placed under the container's root cgroup.
            if self._container_namespaced():
                if not mounts.containerized_root_mount:
                    log.debug(
                        "cgroup for process %d contains a relative cgroup path (%s), but no "
                        "root cgroup was found; monitoring may be incomplete",
                        pid,
                        path,
                    )
                else:
                    log.debug(
                        "using root mount %s and path %s", mounts.containerized_root_mount, path
                    )
                    path = _join(mounts.containerized_root_mount, path)

            if not line.startswith("0::/"):
                for subsystem in fields[1].split(","):
                    result.v1[subsystem] = ControllerPath(
                        controller_path=path,
                        full_path=_join(mounts.v1_mounts.get(subsystem, ""), path),
                        is_v2=False,
                    )
                continue

            # A bare v2 root next to v1 controllers, with no v2 mount: nothing to read.
            if version == CgroupsVersion.V1 and line == "0::/" and not mounts.v2_loc:
                continue

            controller_path = _join(mounts.v2_loc, path)
            if not mounts.v2_loc:
                if not self.rootfs.is_set():
                    log.debug(
                        "PID %d contains a cgroups V2 path (%s) but no V2 mountpoint was "
                        "found; mount the unified hierarchy as /sys/fs/cgroup/unified and "
                        "set the host filesystem root to monitor it",
                        pid,
                        line,
                    )
                    continue
                controller_path = self.rootfs.resolve(_join("/sys/fs/cgroup/unified", path))

            cached = self._cached_v2(controller_path)
            if cached is not None:
                result.v2 = cached
                continue

            try:
                names = sorted(os.listdir(controller_path))
            except OSError as err:
                raise OSError(
                    f"error fetching cgroupV2 controllers for cgroup location "
                    f"'{mounts.v2_loc}' and path line '{line}': {err}"
                ) from err
            # The unified hierarchy does not list controllers per pid; infer
            # them from the *.stat files in the cgroup directory.
            for name in names:
                if "stat" in name:
                    result.v2[name.removesuffix(".stat")] = ControllerPath(
                        controller_path=path, full_path=controller_path, is_v2=True
                    )
            with self._v2_cache_lock:
                self._v2_cache[controller_path] = (time.monotonic(), dict(result.v2))

        return result

    def _cached_v2(self, controller_path: str) -> Optional[Dict[str, ControllerPath]]:
        with self._v2_cache_lock:
            entry = self._v2_cache.get(controller_path)
            if entry is None:
                return None
            added, paths = entry
            if time.monotonic() - added < _V2_CACHE_TTL:
                return dict(paths)
            del self._v2_cache[controller_path]
            return None


def _fill(
    stats: Union[StatsV1, StatsV2],
    readers: Dict[str, Tuple[str, Callable[[str], object], str]],
    name: str,
    controller: ControllerPath,
) -> None:
    entry = readers.get(name)
    if entry is None:
        return
    attribute, read, label = entry
    try:
        subsystem = read(controller.full_path)
    except (OSError, ValueError) as err:
        raise _rewrap(f"error fetching {label} stats", err) from err
    subsystem.id = _base(controller.controller_path)
    subsystem.path = controller.controller_path
    setattr(stats, attribute, subsystem)


def process_cgroup_paths(hostfs: Optional[HostFS], pid: int) -> PathList:
    """Return the cgroup paths of ``pid`` using a fresh reader over ``hostfs``."""
    try:
        reader = Reader(hostfs, False)
    except (OSError, ValueError) as err:
        raise _rewrap("error creating cgroups reader", err) from err
    return reader.process_cgroup_paths(pid)