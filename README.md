# cgmetrics

Read metrics and limits of Linux control groups (cgroups) for a process.
Both the v1 hierarchy (`cpu`, `cpuacct`, `memory` and `blkio` controllers)
and the v2 unified hierarchy (`cpu`, `memory` and `io` controllers) are
handled, including hybrid systems and watching a host from inside a
container through a mounted host filesystem. Host load averages are
available as well.

## Installation

```
pip install cgmetrics
```

The package has no runtime dependencies beyond the standard library.

## Reading the cgroups of a process

```python
from cgmetrics.paths import HostFS
from cgmetrics.reader import Reader

reader = Reader(HostFS("/"), ignore_root_cgroups=True, cgroups_hierarchy_override="")

version = reader.cgroups_version(1234)   # CgroupsVersion.V1 or CgroupsVersion.V2
stats = reader.get_stats_for_pid(1234)   # StatsV1 or StatsV2
print(stats.format())                    # plain nested dict
```

`Reader` arguments:

- `rootfs`: a `HostFS` naming the root filesystem to read `/proc` and the
  cgroup mounts from; `None` means `/`. With the host filesystem mounted at
  `/hostfs` inside a container, pass `HostFS("/hostfs")`. `HostFS` also takes
  `private_cgroup_ns` (`True`/`False`) to override detection of a private
  cgroup namespace.
- `ignore_root_cgroups`: skip controllers whose cgroup path is `/`.
- `cgroups_hierarchy_override`: when not empty, used instead of the paths
  listed in `/proc/<pid>/cgroup` (set it to `/` inside a container).

Other entry points:

- `reader.get_v1_stats_for_process(pid)` and
  `reader.get_v2_stats_for_process(pid)` return `StatsV1` / `StatsV2`
  directly.
- `reader.process_cgroup_paths(pid)` returns a `PathList` with `v1` and `v2`
  mappings of controller name to `ControllerPath`; `PathList.flatten()`
  lists them all.
- `cgmetrics.reader.process_cgroup_paths(hostfs, pid)` does the same with a
  fresh reader.
- `cgmetrics.paths` also offers `supported_subsystems(rootfs)`,
  `subsystem_mountpoints(rootfs, subsystems)` and `parse_mountinfo_line(line)`.

## CPU percentages

`fill_percentages` derives CPU usage from an earlier sample of the same
process. It takes `datetime` values for the time of each sample:

```python
import time
from datetime import datetime

first = reader.get_stats_for_pid(1234)
t0 = datetime.now()
time.sleep(5)
second = reader.get_stats_for_pid(1234)
second.fill_percentages(first, datetime.now(), t0)
print(second.format())
```

The results are fractions of one CPU (`pct`) and of all CPUs (`norm.pct`),
rounded to four decimals, set on the total/usage, user and system figures.
Nothing is filled when the samples are of different versions, CPU data is
missing from either, or no time passed between them.

## Reading a single controller

Each controller reader takes the directory of a cgroup:

```python
from cgmetrics.v1.cpu import CPUSubsystem as V1CPU
from cgmetrics.v1.memory import MemorySubsystem as V1Memory
from cgmetrics.v2.cpu import CPUSubsystem
from cgmetrics.v2.io import IOSubsystem
from cgmetrics.v2.memory import MemorySubsystem

cg = "/sys/fs/cgroup/system.slice/example.service"
cpu = CPUSubsystem.read(cg)
mem = MemorySubsystem.read(cg)
io = IOSubsystem.read(cg, resolve_dev_ids=False)
print(cpu.to_dict(), mem.to_dict(), io.to_dict())
```

v1 readers: `cgmetrics.v1.blkio.BlockIOSubsystem`, `cgmetrics.v1.cpu.CPUSubsystem`,
`cgmetrics.v1.cpuacct.CPUAccountingSubsystem`, `cgmetrics.v1.memory.MemorySubsystem`.
v2 readers: `cgmetrics.v2.cpu.CPUSubsystem`, `cgmetrics.v2.io.IOSubsystem`,
`cgmetrics.v2.memory.MemorySubsystem`. Pressure stall files can be read
with `cgmetrics.common.get_pressure(path)`.

## Load averages

```python
from cgmetrics.load import load

sample = load()
print(sample.averages(), sample.normalized_averages())
```

`normalized_averages()` divides by the number of CPUs.

## Errors

- A missing `/proc/cgroups` raises `cgmetrics.paths.CgroupsMissingError`.
- Malformed `key value` lines raise `cgmetrics.common.InvalidFormatError`
  (a `ValueError`); other unparsable values raise `ValueError`.
- File problems are raised as `OSError` and its subclasses.

## What it does not do

This is a library only: there is no command-line tool, no polling loop and
no shipping of metrics anywhere. Callers sample, store and report the
results themselves. Controllers other than those listed above (for example
`cpuset`, `pids`, `hugetlb`) are located but not read.

## Running the tests

```
pip install -e .[test]
pytest
```