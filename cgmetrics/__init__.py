"""Read Linux cgroup v1 and v2 metrics and limits for processes, and host load averages."""

__version__ = "0.1.0"