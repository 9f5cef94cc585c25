import os
from datetime import datetime, timedelta

import pytest

from cgmetrics.common import CPUUsage
from cgmetrics.stats import CgroupsVersion, StatsV1, StatsV2
from cgmetrics.v1.cpuacct import CPUAccountingStats, CPUAccountingSubsystem
from cgmetrics.v2.cpu import CPUStats, CPUSubsystem
from cgmetrics.v2.io import IOMetric, IOStat, IOSubsystem

T0 = datetime(2024, 1, 1, 12, 0, 0)
T1 = T0 + timedelta(seconds=1)
T2 = T0 + timedelta(seconds=2)
SECOND_NS = 1_000_000_000


def _v1(total, user, system, per_cpu=None):
    accounting = CPUAccountingSubsystem(
        total=CPUUsage(ns=total),
        usage_per_cpu=dict(per_cpu or {}),
        stats=CPUAccountingStats(user=CPUUsage(ns=user), system=CPUUsage(ns=system)),
    )
    return StatsV1(cpu_accounting=accounting)


def _v2(usage, user, system):
    stats = CPUStats(usage=CPUUsage(ns=usage), user=CPUUsage(ns=user), system=CPUUsage(ns=system))
    return StatsV2(cpu=CPUSubsystem(stats=stats))


PER_CPU = {"1": 10, "2": 20}


def test_v1_fill_full_second():
    prev = _v1(0, 0, 0, PER_CPU)
    cur = _v1(SECOND_NS, 600_000_000, 400_000_000, PER_CPU)
    cur.fill_percentages(prev, T1, T0)
    acct = cur.cpu_accounting
    assert acct.total.pct == pytest.approx(1.0)
    assert acct.total.norm_pct * 2 == pytest.approx(acct.total.pct)
    assert acct.stats.user.pct + acct.stats.system.pct == pytest.approx(acct.total.pct)
    assert acct.stats.user.norm_pct * 2 == pytest.approx(acct.stats.user.pct)


def test_v1_longer_window_halves_pct():
    prev = _v1(0, 0, 0, PER_CPU)
    one = _v1(SECOND_NS, SECOND_NS, 0, PER_CPU)
    two = _v1(SECOND_NS, SECOND_NS, 0, PER_CPU)
    one.fill_percentages(prev, T1, T0)
    two.fill_percentages(prev, T2, T0)
    assert two.cpu_accounting.total.pct * 2 == pytest.approx(one.cpu_accounting.total.pct)
    assert two.cpu_accounting.stats.system.pct == 0


def test_v1_without_per_cpu_uses_host_cpu_count():
    prev = _v1(0, 0, 0)
    cur = _v1(SECOND_NS, 0, 0)
    cur.fill_percentages(prev, T1, T0)
    acct = cur.cpu_accounting
    assert acct.total.norm_pct * (os.cpu_count() or 1) == pytest.approx(acct.total.pct, abs=1e-3)


@pytest.mark.parametrize("prev", [None, StatsV2(), StatsV1()])
def test_v1_fill_ignores_unusable_previous(prev):
    cur = _v1(SECOND_NS, 0, 0, PER_CPU)
    cur.fill_percentages(prev, T1, T0)
    assert cur.cpu_accounting.total.pct is None
    assert cur.cpu_accounting.total.norm_pct is None


def test_v1_fill_no_elapsed_time_leaves_values_unset():
    cur = _v1(SECOND_NS, 0, 0, PER_CPU)
    cur.fill_percentages(_v1(0, 0, 0, PER_CPU), T0, T0)
    assert cur.cpu_accounting.total.pct is None


def test_v2_fill():
    prev = _v2(0, 0, 0)
    cur = _v2(SECOND_NS, 700_000_000, 300_000_000)
    cur.fill_percentages(prev, T1, T0)
    stats = cur.cpu.stats
    assert stats.usage.pct == pytest.approx(1.0)
    assert stats.user.pct + stats.system.pct == pytest.approx(stats.usage.pct)
    assert stats.usage.norm_pct * (os.cpu_count() or 1) == pytest.approx(stats.usage.pct, abs=1e-3)


@pytest.mark.parametrize("prev", [None, StatsV1(), StatsV2()])
def test_v2_fill_ignores_unusable_previous(prev):
    cur = _v2(SECOND_NS, 0, 0)
    cur.fill_percentages(prev, T1, T0)
    assert cur.cpu.stats.usage.pct is None


def test_v1_format():
    stats = _v1(SECOND_NS, 0, 0, PER_CPU)
    stats.id = "abc"
    result = stats.format()
    assert stats.cg_version() == CgroupsVersion.V1
    assert result["cgroups_version"] == 1
    assert result["id"] == "abc"
    assert "path" not in result
    assert "cpu" not in result
    assert result["cpuacct"]["total"]["ns"] == SECOND_NS
    assert result["cpuacct"]["percpu"] == PER_CPU


def test_v1_format_includes_filled_percentages():
    cur = _v1(SECOND_NS, 0, 0, PER_CPU)
    cur.fill_percentages(_v1(0, 0, 0, PER_CPU), T1, T0)
    total = cur.format()["cpuacct"]["total"]
    assert total["pct"] == cur.cpu_accounting.total.pct
    assert total["norm"]["pct"] == cur.cpu_accounting.total.norm_pct


def test_v2_format():
    io = IOSubsystem(stats={"8:0": IOStat(read=IOMetric(bytes=512, ios=3))})
    stats = StatsV2(path="/system.slice", io=io)
    result = stats.format()
    assert stats.cg_version() == CgroupsVersion.V2
    assert result["cgroups_version"] == 2
    assert result["path"] == "/system.slice"
    assert result["io"]["stats"]["8:0"]["read"] == {"bytes": 512, "ios": 3}
    assert "cpu" not in result and "memory" not in result