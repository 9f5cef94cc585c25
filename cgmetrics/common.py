"""Shared helpers for reading cgroup controller files."""

from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

_UINT64_MAX = 2**64 - 1
_UNSIGNED_RE = re.compile(r"[0-9]+")
_NEGATIVE_RE = re.compile(r"-[0-9]+")
_PRESSURE_RE = re.compile(
    r"(\S+)\s+avg10=(\S+)\s+avg60=(\S+)\s+avg300=(\S+)\s+total=([0-9]+)"
)


class InvalidFormatError(ValueError):
    """A line did not hold a well-formed key/value pair."""

    def __init__(self, message: str = "error invalid key/value format") -> None:
        super().__init__(message)


@dataclass
class CPUUsage:
    """CPU time in nanoseconds, with optional derived percentages."""

    ns: int = 0
    pct: Optional[float] = None
    norm_pct: Optional[float] = None

    def to_dict(self) -> dict:
        """Return the usage as a plain mapping, leaving out unset percentages."""
        result: dict = {"ns": self.ns}
        if self.pct is not None:
            result["pct"] = self.pct
        if self.norm_pct is not None:
            result["norm"] = {"pct": self.norm_pct}
        return result


@dataclass
class Pressure:
    """Pressure stall averages over 10, 60 and 300 seconds plus total stall time."""

    ten: float = 0.0
    sixty: float = 0.0
    three_hundred: float = 0.0
    total: Optional[int] = None

    def is_zero(self) -> bool:
        """Pressure data is absent when no total was recorded."""
        return self.total is None

    def to_dict(self) -> dict:
        """Return the pressure data as a plain mapping."""
        result: dict = {
            "10": {"pct": self.ten},
            "60": {"pct": self.sixty},
            "300": {"pct": self.three_hundred},
        }
        if self.total is not None:
            result["total"] = self.total
        return result


def get_pressure(path: str) -> Dict[str, Pressure]:
    """Read a ``*.pressure`` file into a mapping keyed by stall kind ("some", "full")."""
    with open(path, encoding="utf-8") as handle:
        lines = handle.read().splitlines()

    pressure: Dict[str, Pressure] = {}
    for line in lines:
        match = _PRESSURE_RE.match(line.lstrip())
        if match is None:
            raise ValueError(f"error scanning file: {path}: malformed line {line!r}")
        kind, ten, sixty, three_hundred, total = match.groups()
        try:
            pressure[kind] = Pressure(
                ten=float(ten),
                sixty=float(sixty),
                three_hundred=float(three_hundred),
                total=int(total),
            )
        except ValueError as err:
            raise ValueError(f"error scanning file: {path}: {err}") from err
    return pressure


def parse_uint_from_file(*args: str) -> int:
    """Read a single unsigned value from a file; a missing file yields 0."""
    try:
        with open(os.path.join(*args), "rb") as handle:
            raw = handle.read()
    except FileNotFoundError:
        return 0
    return parse_uint(raw)


def parse_uint(value: Union[bytes, str]) -> int:
    """Parse an unsigned 64-bit integer, turning negative values into 0."""
    text = value.decode() if isinstance(value, bytes) else value
    text = text.strip()
    if _UNSIGNED_RE.fullmatch(text):
        number = int(text)
        if number <= _UINT64_MAX:
            return number
        raise ValueError(f"value out of range: {text!r}")
    if _NEGATIVE_RE.fullmatch(text) and int(text) < 0:
        return 0
    raise ValueError(f"invalid unsigned integer: {text!r}")


def parse_cgroup_param_key_value(text: str) -> Tuple[str, int]:
    """Split a ``key value`` line into its key and unsigned value."""
    parts = text.split()
    if len(parts) != 2:
        raise InvalidFormatError()
    try:
        value = parse_uint(parts[1])
    except ValueError as err:
        raise ValueError(
            f"unable to convert param value ({parts[1]!r}) to uint64: {err}"
        ) from err
    return parts[0], value


def round_metric(value: float) -> float:
    """Round a metric to four decimal places, halves going up."""
    scale = 10**4
    return math.floor(value * scale + 0.5) / scale