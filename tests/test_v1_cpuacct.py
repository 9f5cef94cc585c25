import pytest

from cgmetrics.common import InvalidFormatError
from cgmetrics.v1 import cpuacct
from cgmetrics.v1.cpuacct import (
    CPUAccountingSubsystem,
    jiffies_to_nanos,
    read_cpuacct_stat,
    read_cpuacct_usage,
    read_cpuacct_usage_per_cpu,
)

PER_CPU = {"1": 0x62FCDE13C, "2": 0x565F2FCAA, "3": 0x5A8736EA1, "4": 0x51B92AC82}


@pytest.fixture(autouse=True)
def fixed_clock_ticks(monkeypatch):
    monkeypatch.setattr(cpuacct, "_CLOCK_TICKS", 100)


@pytest.fixture
def cpuacct_dir(tmp_path):
    (tmp_path / "cpuacct.stat").write_text("user 6195\nsystem 773\n")
    (tmp_path / "cpuacct.usage").write_text("95996653175\n")
    per_cpu = " ".join(str(value) for value in PER_CPU.values())
    (tmp_path / "cpuacct.usage_percpu").write_text(per_cpu + " \n")
    return str(tmp_path)


def test_cpu_accounting_stats(cpuacct_dir):
    stats = read_cpuacct_stat(cpuacct_dir)
    assert stats.user.ns == 61950000000
    assert stats.system.ns == 7730000000


def test_cpuacct_usage(cpuacct_dir):
    assert read_cpuacct_usage(cpuacct_dir) == 95996653175


def test_cpuacct_usage_per_cpu(cpuacct_dir):
    assert read_cpuacct_usage_per_cpu(cpuacct_dir) == PER_CPU


def test_cpu_accounting_subsystem_read(cpuacct_dir):
    acct = CPUAccountingSubsystem.read(cpuacct_dir)
    assert acct.stats.user.ns == 61950000000
    assert acct.total.ns == 95996653175
    assert len(acct.usage_per_cpu) == 4


def test_cpu_accounting_subsystem_to_dict(cpuacct_dir):
    acct = CPUAccountingSubsystem.read(cpuacct_dir)
    data = acct.to_dict()
    assert data["total"] == {"ns": 95996653175}
    assert data["percpu"] == PER_CPU
    assert data["stats"] == {"user": {"ns": 61950000000}, "system": {"ns": 7730000000}}
    assert "id" not in data


def test_jiffies_to_nanos():
    assert jiffies_to_nanos(1) == 10_000_000
    assert jiffies_to_nanos(0) == 0


def test_missing_files(tmp_path):
    acct = CPUAccountingSubsystem.read(str(tmp_path))
    assert acct.total.ns == 0
    assert acct.usage_per_cpu == {}
    assert acct.stats.user.ns == 0


def test_malformed_stat_raises(tmp_path):
    (tmp_path / "cpuacct.stat").write_text("user\n")
    with pytest.raises(InvalidFormatError):
        read_cpuacct_stat(str(tmp_path))


def test_bad_per_cpu_value_raises(tmp_path):
    (tmp_path / "cpuacct.usage_percpu").write_text("12 abc\n")
    with pytest.raises(ValueError):
        read_cpuacct_usage_per_cpu(str(tmp_path))