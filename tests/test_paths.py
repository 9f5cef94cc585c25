import os

import pytest

from cgmetrics.paths import (
    CgroupsMissingError,
    ControllerPath,
    HostFS,
    PathList,
    found_matching_pid_in_procs_file,
    get_proper_v2_path,
    guess_container_cgroup_path,
    parse_mountinfo_line,
    subsystem_mountpoints,
    supported_subsystems,
)

OVERLAY = (
    "/hostfs/var/lib/docker/overlay2/"
    "1b570230fa3ec3679e354b0c219757c739f91d774ebc02174106488606549da0/merged/sys/fs/cgroup"
)
SESSION_520 = "/user.slice/user-1000.slice/session-520.scope"
SESSION_521 = "/user.slice/user-1000.slice/session-521.scope"
TEST_PID = 2233801

PROC_CGROUPS = """#subsys_name\thierarchy\tnum_cgroups\tenabled
cpuset\t2\t1\t1
cpu\t3\t1\t1
cpuacct\t3\t1\t1
blkio\t4\t1\t1
memory\t5\t1\t1
devices\t6\t1\t1
freezer\t7\t1\t1
net_cls\t8\t1\t1
perf_event\t9\t1\t1
net_prio\t8\t1\t1
hugetlb\t10\t1\t0
pids\t11\t1\t1
"""

MOUNTED = [
    "blkio", "cpu", "cpuacct", "cpuset", "devices",
    "freezer", "hugetlb", "memory", "perf_event",
]


def _write(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)


def _procs_tree(base, procs):
    for relative, content in procs.items():
        _write(base / relative.strip("/") / "cgroup.procs", content)


def _docker_root(tmp_path):
    root = tmp_path / "docker"
    _write(root / "proc" / "cgroups", PROC_CGROUPS)
    lines = ["25 21 0:20 / /sys/fs/cgroup/memory rw,relatime - cgroup cgroup rw,memory"]
    for number, name in enumerate(MOUNTED, start=30):
        option = f"name={name}" if name == "hugetlb" else name
        lines.append(
            f"{number} 24 0:{number} / {root}/sys/fs/cgroup/{name} "
            f"rw,nosuid,nodev,noexec,relatime shared:13 - cgroup cgroup rw,{option}"
        )
    lines.append(f"50 24 0:50 / {root}/sys/fs/cgroup/pids rw,relatime - cgroup cgroup rw,pids")
    lines.append(f"51 24 0:51 / {root}/other/cpu rw,relatime - cgroup cgroup rw,cpu")
    _write(root / "proc" / "self" / "mountinfo", "\n".join(lines) + "\n")
    return root


def test_find_matching_pid():
    data = "\n12\n13\n14\n1585724\n1585725\n1586244\n1586245\n"
    assert found_matching_pid_in_procs_file(14, data) is True
    assert found_matching_pid_in_procs_file(15, data) is False


def test_find_matching_pid_stops_at_garbage():
    assert found_matching_pid_in_procs_file(14, "abc\n14\n") is False


def test_find_cgroup_and_cache(tmp_path):
    v2_loc = tmp_path / "docker2" / "sys" / "fs" / "cgroup"
    _procs_tree(v2_loc, {"/": "1\n", SESSION_520: f"{TEST_PID}\n77\n"})

    assert guess_container_cgroup_path(str(v2_loc), TEST_PID) == SESSION_520
    # Second lookup goes through the cache.
    assert guess_container_cgroup_path(str(v2_loc), TEST_PID) == SESSION_520


def test_outdated_cache_is_replaced(tmp_path):
    first = tmp_path / "first"
    _procs_tree(first, {SESSION_521: f"{TEST_PID}\n"})
    assert guess_container_cgroup_path(str(first), TEST_PID) == SESSION_521

    second = tmp_path / "second"
    _procs_tree(second, {SESSION_521: "9\n", SESSION_520: f"{TEST_PID}\n"})
    assert guess_container_cgroup_path(str(second), TEST_PID) == SESSION_520
    assert guess_container_cgroup_path(str(second), TEST_PID) == SESSION_520


def test_find_cgroup_not_found(tmp_path):
    _procs_tree(tmp_path, {"/a.slice": "1\n2\n"})
    assert guess_container_cgroup_path(str(tmp_path), 424242) == ""


def test_find_cgroup_missing_root(tmp_path):
    with pytest.raises(OSError):
        guess_container_cgroup_path(str(tmp_path / "missing"), 424242)


def test_supported_subsystems(tmp_path):
    root = _docker_root(tmp_path)
    subsystems = supported_subsystems(HostFS(str(root)))
    assert subsystems == {
        "cpuset", "cpu", "cpuacct", "blkio", "memory", "devices",
        "freezer", "net_cls", "perf_event", "net_prio", "pids",
    }
    assert len(subsystems) == 11
    assert "hugetlb" not in subsystems


def test_supported_subsystems_cgroups_missing(tmp_path):
    with pytest.raises(CgroupsMissingError):
        supported_subsystems(HostFS(str(tmp_path / "doesnotexist")))


def test_subsystem_mountpoints(tmp_path):
    root = _docker_root(tmp_path)
    mountpoints = subsystem_mountpoints(HostFS(str(root), private_cgroup_ns=False), set(MOUNTED))
    for name in MOUNTED:
        assert mountpoints.v1_mounts[name] == f"{root}/sys/fs/cgroup/{name}"
    assert "pids" not in mountpoints.v1_mounts
    assert mountpoints.v2_loc == ""


def test_mountpoints_v2_private_namespace(tmp_path):
    root = tmp_path / "docker2"
    v2_loc = root / "sys" / "fs" / "cgroup"
    _procs_tree(v2_loc, {"/": "1\n", SESSION_520: f"{os.getpid()}\n"})
    _write(
        root / "proc" / "self" / "mountinfo",
        f"1718 1686 0:26 / {v2_loc} rw,nosuid,nodev,noexec,relatime master:4 "
        "- cgroup2 cgroup2 rw,seclabel\n",
    )
    mountpoints = subsystem_mountpoints(HostFS(str(root), private_cgroup_ns=True), set())
    assert mountpoints.v2_loc == str(v2_loc)
    assert mountpoints.containerized_root_mount == SESSION_520


def test_subsystem_mountpoints_bad_line(tmp_path):
    _write(tmp_path / "proc" / "self" / "mountinfo", "1 2 3\n")
    with pytest.raises(ValueError):
        subsystem_mountpoints(HostFS(str(tmp_path)), {"cpu"})


@pytest.mark.parametrize(
    "line",
    [
        "30 24 0:25 / /sys/fs/cgroup/blkio rw,nosuid,nodev,noexec,relatime - cgroup cgroup rw,blkio",
        "30 24 0:25 / /sys/fs/cgroup/blkio rw,nosuid,nodev,noexec,relatime shared:13 - cgroup cgroup rw,blkio",
        "30 24 0:25 / /sys/fs/cgroup/blkio rw,nosuid,nodev,noexec,relatime shared:13 master:1 - cgroup cgroup rw,blkio",
        "30 24 0:25 / /sys/fs/cgroup/blkio rw,nosuid,nodev,noexec,relatime shared:13 - cgroup cgroup rw,name=blkio",
    ],
)
def test_parse_mountinfo_line(line):
    mount = parse_mountinfo_line(line)
    assert mount.mountpoint == "/sys/fs/cgroup/blkio"
    assert mount.filesystem_type == "cgroup"
    assert len(mount.super_options) == 2


@pytest.mark.parametrize(
    "line",
    [
        "30 24 0:25 / /sys/fs/cgroup/blkio",
        "30 24 0:25 / /sys/fs/cgroup/blkio rw a b c d e",
        "30 24 0:25 / /sys/fs/cgroup/blkio rw a b c - cgroup",
    ],
)
def test_parse_mountinfo_line_errors(line):
    with pytest.raises(ValueError):
        parse_mountinfo_line(line)


@pytest.mark.parametrize(
    "root, lines, expected",
    [
        ("/hostfs", ["/sys/fs/cgroup", "/hostfs/sys/fs/cgroup", OVERLAY], "/hostfs/sys/fs/cgroup"),
        ("", ["/sys/fs/cgroup", "/hostfs/sys/fs/cgroup", OVERLAY], "/hostfs/sys/fs/cgroup"),
        ("/hostfs", ["/sys/fs/cgroup", OVERLAY, "/hostfs/sys/fs/cgroup"], "/hostfs/sys/fs/cgroup"),
        ("", ["/sys/fs/cgroup"], "/sys/fs/cgroup"),
        ("", [], ""),
        ("", [OVERLAY, OVERLAY + "/x"], OVERLAY + "/x"),
    ],
)
def test_get_proper_v2_path(root, lines, expected):
    assert get_proper_v2_path(HostFS(root), lines) == expected


def test_hostfs_resolve_and_is_set():
    assert HostFS("testdata/docker").resolve("/proc/cgroups") == "testdata/docker/proc/cgroups"
    assert HostFS("/hostfs").resolve("") == "/hostfs"
    assert HostFS("/").resolve("/proc/self/cgroup") == "/proc/self/cgroup"
    assert HostFS("/").is_set() is False
    assert HostFS("/hostfs").is_set() is True


def test_path_list_flatten():
    v1 = ControllerPath("/a", "/mnt/cpu/a")
    v2 = ControllerPath("/b", "/mnt/b", is_v2=True)
    paths = PathList(v1={"cpu": v1}, v2={"io": v2})
    assert paths.flatten() == [v1, v2]
    assert PathList().flatten() == []