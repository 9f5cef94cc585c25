"""Block I/O throttling metrics from the cgroup v1 ``blkio`` controller."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from cgmetrics.common import InvalidFormatError, parse_uint

_FIELD_SPLIT = re.compile(r"[\s:]+")
_DIGITS = re.compile(r"[0-9]+")
_UINT64_MAX = 2**64 - 1


@dataclass(frozen=True)
class DeviceID:
    """A Linux block device identified by its major and minor numbers."""

    major: int
    minor: int


@dataclass
class BlkioValue:
    """One value from a blkio file, tied to a device and optionally an operation."""

    device_id: DeviceID
    operation: str
    value: int


@dataclass
class OperationValues:
    """I/O values split by read, write, sync and async operations."""

    read: int = 0
    write: int = 0
    async_: int = 0
    sync: int = 0


@dataclass
class ThrottleDevice:
    """Throttle limits and counters for a single device."""

    device_id: DeviceID
    read_limit_bps: int = 0
    write_limit_bps: int = 0
    read_limit_iops: int = 0
    write_limit_iops: int = 0
    bytes: OperationValues = field(default_factory=OperationValues)
    ios: OperationValues = field(default_factory=OperationValues)


@dataclass
class TotalIOs:
    """Byte and operation totals."""

    bytes: int = 0
    ios: int = 0

    def to_dict(self) -> dict:
        """Return the non-zero totals as a plain mapping."""
        result: dict = {}
        if self.bytes:
            result["bytes"] = self.bytes
        if self.ios:
            result["ios"] = self.ios
        return result


@dataclass
class BlockIOSubsystem:
    """Metrics from the blkio controller, summed over all devices."""

    id: str = ""
    path: str = ""
    total: TotalIOs = field(default_factory=TotalIOs)
    reads: TotalIOs = field(default_factory=TotalIOs)
    writes: TotalIOs = field(default_factory=TotalIOs)

    @classmethod
    def read(cls, path: str) -> "BlockIOSubsystem":
        """Read blkio metrics from the cgroup directory at ``path``."""
        return blkio_throttle(path)

    def to_dict(self) -> dict:
        """Return the metrics as a plain mapping."""
        result: dict = {}
        if self.id:
            result["id"] = self.id
        if self.path:
            result["path"] = self.path
        result["total"] = self.total.to_dict()
        result["reads"] = self.reads.to_dict()
        result["writes"] = self.writes.to_dict()
        return result


def blkio_throttle(path: str) -> BlockIOSubsystem:
    """Read the throttling policy files under ``path`` and sum them per direction."""
    devices: Dict[DeviceID, ThrottleDevice] = {}

    def device(device_id: DeviceID) -> ThrottleDevice:
        if device_id not in devices:
            devices[device_id] = ThrottleDevice(device_id=device_id)
        return devices[device_id]

    for device_id, ops in collect_op_values(
        read_blkio_values(path, "blkio.throttle.io_service_bytes")
    ).items():
        device(device_id).bytes = ops

    for device_id, ops in collect_op_values(
        read_blkio_values(path, "blkio.throttle.io_serviced")
    ).items():
        device(device_id).ios = ops

    limits = (
        ("blkio.throttle.read_bps_device", "read_limit_bps"),
        ("blkio.throttle.write_bps_device", "write_limit_bps"),
        ("blkio.throttle.read_iops_device", "read_limit_iops"),
        ("blkio.throttle.write_iops_device", "write_limit_iops"),
    )
    for filename, attribute in limits:
        for value in read_blkio_values(path, filename):
            setattr(device(value.device_id), attribute, value.value)

    blkio = BlockIOSubsystem()
    for dev in devices.values():
        blkio.total.bytes += dev.bytes.read + dev.bytes.write
        blkio.total.ios += dev.ios.read + dev.ios.write
        blkio.reads.bytes += dev.bytes.read
        blkio.reads.ios += dev.ios.read
        blkio.writes.bytes += dev.bytes.write
        blkio.writes.ios += dev.ios.write
    return blkio


def collect_op_values(values: Iterable[BlkioValue]) -> Dict[DeviceID, OperationValues]:
    """Group per-operation values into one OperationValues per device."""
    result: Dict[DeviceID, OperationValues] = {}
    for value in values:
        ops = result.setdefault(value.device_id, OperationValues())
        if value.operation == "read":
            ops.read = value.value
        elif value.operation == "write":
            ops.write = value.value
        elif value.operation == "async":
            ops.async_ = value.value
        elif value.operation == "sync":
            ops.sync = value.value
    return result


def read_blkio_values(*args: str) -> List[BlkioValue]:
    """Read the device lines of a blkio file; a missing file yields no values."""
    try:
        with open(os.path.join(*args), encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except FileNotFoundError:
        return []

    values = []
    for line in lines:
        stripped = line.strip()
        if not stripped or not stripped[0].isdigit():
            continue
        values.append(parse_blkio_value(line))
    return values


def _parse_strict_uint(text: str) -> int:
    if not _DIGITS.fullmatch(text) or int(text) > _UINT64_MAX:
        raise ValueError(f"invalid unsigned integer: {text!r}")
    return int(text)


def parse_blkio_value(line: str) -> BlkioValue:
    """Parse a line such as ``253:1 Async 1638912`` or ``1:2 10088``."""
    fields = [part for part in _FIELD_SPLIT.split(line) if part]
    if len(fields) not in (3, 4):
        raise InvalidFormatError()

    major = _parse_strict_uint(fields[0])
    minor = _parse_strict_uint(fields[1])
    if len(fields) == 3:
        operation = ""
        value = parse_uint(fields[2])
    else:
        operation = fields[2].lower()
        value = parse_uint(fields[3])
    return BlkioValue(device_id=DeviceID(major, minor), operation=operation, value=value)