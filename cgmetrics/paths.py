"""Locating cgroup controllers: supported subsystems, mountpoints and controller paths."""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Set

log = logging.getLogger(__name__)

_PID_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class CgroupsMissingError(Exception):
    """``/proc/cgroups`` was not found: cgroups are unsupported or the rootfs is wrong."""

    def __init__(self, message: str = "cgroups not found or unsupported by OS") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class HostFS:
    """The root filesystem the cgroup files are read from.

    ``private_cgroup_ns`` overrides the detection of a private cgroup
    namespace; when None, the running environment is inspected.
    """

    root: str = "/"
    private_cgroup_ns: Optional[bool] = None

    def resolve(self, path: str) -> str:
        """Return ``path`` placed under the root filesystem."""
        if not self.root:
            return os.path.normpath(path) if path else ""
        return os.path.normpath(os.path.join(self.root, path.lstrip("/")))

    def is_set(self) -> bool:
        """True when a root other than ``/`` is in use."""
        return self.root not in ("", "/")

    def _in_private_cgroup_ns(self) -> bool:
        if self.private_cgroup_ns is not None:
            return self.private_cgroup_ns
        return is_cgroup_ns_private()


@dataclass
class Mountinfo:
    """The fields of a ``/proc/[pid]/mountinfo`` line that matter here."""

    mountpoint: str
    filesystem_type: str
    super_options: List[str]


@dataclass
class Mountpoints:
    """Where the v1 controllers and the unified v2 hierarchy are mounted."""

    v1_mounts: Dict[str, str] = field(default_factory=dict)
    v2_loc: str = ""
    containerized_root_mount: str = ""


@dataclass
class ControllerPath:
    """A controller's cgroup path and its full path on disk."""

    controller_path: str
    full_path: str
    is_v2: bool = False


@dataclass
class PathList:
    """The v1 and v2 controller paths of a process, kept apart."""

    v1: Dict[str, ControllerPath] = field(default_factory=dict)
    v2: Dict[str, ControllerPath] = field(default_factory=dict)

    def flatten(self) -> List[ControllerPath]:
        """Return all controller paths, v1 first, then v2."""
        return [*self.v1.values(), *self.v2.values()]


class _ContainerPathCache:
    """Remembers the cgroup path of the container we run in."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._path = ""

    def get(self) -> str:
        with self._lock:
            return self._path

    def set(self, path: str) -> None:
        with self._lock:
            self._path = path


_container_cgroup_path = _ContainerPathCache()


def parse_mountinfo_line(line: str) -> Mountinfo:
    """Parse one line of a mountinfo file."""
    fields_ = line.split()
    if len(fields_) < 10:
        raise ValueError(
            "invalid mountinfo line, expected at least 10 fields but got "
            f"{len(fields_)} from line='{line}'"
        )

    mountpoint = fields_[4]
    separator = next((i for i, value in enumerate(fields_) if value == "-"), 0)
    if fields_[separator] != "-":
        raise ValueError(f"invalid mountinfo line, separator ('-') not found in line='{line}'")

    after = fields_[separator + 1:]
    if len(after) < 3:
        raise ValueError(
            "invalid mountinfo line, expected at least 3 fields after separator "
            f"but got {len(after)} from line='{line}'"
        )
    return Mountinfo(
        mountpoint=mountpoint,
        filesystem_type=after[0],
        super_options=after[2].split(","),
    )


def supported_subsystems(rootfs: HostFS) -> Set[str]:
    """Return the names of the cgroup subsystems the kernel has enabled."""
    try:
        with open(rootfs.resolve("/proc/cgroups"), encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except FileNotFoundError as err:
        raise CgroupsMissingError() from err

    subsystems: Set[str] = set()
    for line in lines:
        if line.startswith("#"):
            continue
        parts = line.split()
        if not parts:
            continue
        # Subsystems disabled with the cgroup_disable boot parameter.
        if len(parts) > 3 and parts[3] == "0":
            continue
        subsystems.add(parts[0])
    return subsystems


def subsystem_mountpoints(rootfs: HostFS, subsystems: Iterable[str]) -> Mountpoints:
    """Find the mountpoint of each given v1 subsystem and of the v2 hierarchy."""
    wanted = set(subsystems)
    with open(rootfs.resolve("/proc/self/mountinfo"), encoding="utf-8") as handle:
        lines = handle.read().splitlines()

    root_prefix = rootfs.resolve("")
    mounts: Dict[str, str] = {}
    possible_v2: List[str] = []
    for raw in lines:
        line = raw.strip()
        if not line:
            continue
        mount = parse_mountinfo_line(line)

        # A mount outside our root belongs to something else.
        if not mount.mountpoint.startswith(root_prefix):
            continue

        if mount.filesystem_type == "cgroup":
            for option in mount.super_options:
                # Subsystem names sometimes appear as "name=blkio".
                name = option.split("=", 1)[-1]
                if name in wanted and name not in mounts:
                    mounts[name] = mount.mountpoint

        if mount.filesystem_type == "cgroup2":
            possible_v2.append(mount.mountpoint)

    result = Mountpoints(v1_mounts=mounts, v2_loc=get_proper_v2_path(rootfs, possible_v2))

    # Only needed when watching a host from inside a container with a private namespace.
    if result.v2_loc and rootfs.is_set() and rootfs._in_private_cgroup_ns():
        try:
            result.containerized_root_mount = guess_container_cgroup_path(
                result.v2_loc, os.getpid()
            )
        except OSError as err:
            log.debug("could not fetch cgroup path inside container: %s", err)
    return result


def is_cgroup_ns_private() -> bool:
    """True when this process runs in its own private cgroup namespace."""
    try:
        with open("/proc/self/cgroup", encoding="utf-8") as handle:
            raw = handle.read()
    except OSError as err:
        log.debug("error reading /proc/self/cgroup to detect namespace settings: %s", err)
        return False
    return raw.strip().split(":")[-1] == "/"


def _walk_files(root: str) -> Iterator[os.DirEntry]:
    """Yield the non-directory entries below ``root`` in lexical order."""
    with os.scandir(root) as iterator:
        entries = sorted(iterator, key=lambda entry: entry.name)
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from _walk_files(entry.path)
        else:
            yield entry


def guess_container_cgroup_path(v2_loc: str, pid: int) -> str:
    """Find the cgroup, relative to ``v2_loc``, whose procs file lists ``pid``.

    Returns an empty string when no cgroup lists the pid. A found path is
    cached and reused while it still lists the pid.
    """
    cached = _container_cgroup_path.get()
    if cached:
        try:
            with open(os.path.join(v2_loc, cached.lstrip("/"), "cgroup.procs"),
                      encoding="utf-8") as handle:
                if found_matching_pid_in_procs_file(pid, handle.read()):
                    return cached
        except OSError:
            pass

    found = ""
    try:
        os.lstat(v2_loc)
        for entry in _walk_files(v2_loc):
            if "procs" not in entry.name:
                continue
            try:
                with open(entry.path, encoding="utf-8") as handle:
                    data = handle.read()
            except (OSError, UnicodeDecodeError):
                continue
            if found_matching_pid_in_procs_file(pid, data):
                found = entry.path
    except OSError as err:
        raise OSError(f"error traversing paths to find cgroup: {err}") from err

    if not found:
        return ""
    relative = os.path.dirname(found).removeprefix(v2_loc)
    _container_cgroup_path.set(relative)
    return relative


def found_matching_pid_in_procs_file(pid: int, data: str) -> bool:
    """True when ``data``, a cgroup.procs file, lists ``pid``.

    A line that is not a number ends the search with False.
    """
    for raw in data.split("\n"):
        if not raw:
            continue
        text = raw.strip()
        if not _PID_RE.fullmatch(text):
            return False
        value = int(text)
        if not _INT64_MIN <= value <= _INT64_MAX:
            return False
        if value == pid:
            return True
    return False


def get_proper_v2_path(rootfs: HostFS, possible_paths: List[str]) -> str:
    """Pick the usable cgroup2 mountpoint from those found in mountinfo.

    Overlay filesystem mounts are skipped; with a host root set, mounts under
    that root are preferred. Among candidates the last one wins.
    """
    if len(possible_paths) == 1:
        return possible_paths[0]
    if not possible_paths:
        return ""

    filtered = [path for path in possible_paths if "overlay2" not in path]
    if not filtered:
        chosen = possible_paths[-1]
        log.debug("could not find correct cgroupv2 path, using one that may fail: %s", chosen)
        return chosen

    if not rootfs.is_set():
        return filtered[-1]

    root = rootfs.resolve("")
    under_root = [path for path in filtered if root in path]
    if under_root:
        return under_root[-1]
    chosen = filtered[-1]
    log.debug("no cgroup mountpoint lies under the host root; using %s", chosen)
    return chosen