"""System load averages over the last 1, 5 and 15 minutes."""

from __future__ import annotations

import os
from dataclasses import dataclass

from cgmetrics.common import round_metric


def _num_cpu() -> int:
    return os.cpu_count() or 1


@dataclass(frozen=True)
class LoadAverages:
    """Load averages of the last 1, 5 and 15 minutes."""

    one_minute: float
    five_minute: float
    fifteen_minute: float


@dataclass(frozen=True)
class LoadMetrics:
    """A sample of the host's load averages."""

    one: float
    five: float
    fifteen: float

    def averages(self) -> LoadAverages:
        """Return the load averages, which range from 0 to the CPU count."""
        return LoadAverages(
            one_minute=round_metric(self.one),
            five_minute=round_metric(self.five),
            fifteen_minute=round_metric(self.fifteen),
        )

    def normalized_averages(self) -> LoadAverages:
        """Return the load averages divided by the CPU count, ranging from 0 to 1."""
        cpus = _num_cpu()
        return LoadAverages(
            one_minute=round_metric(self.one / cpus),
            five_minute=round_metric(self.five / cpus),
            fifteen_minute=round_metric(self.fifteen / cpus),
        )


def load() -> LoadMetrics:
    """Sample the current load averages; raises OSError where unavailable."""
    one, five, fifteen = os.getloadavg()
    return LoadMetrics(one=one, five=five, fifteen=fifteen)