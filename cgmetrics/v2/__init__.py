"""Readers for the cgroup v2 unified hierarchy: cpu, io and memory."""