"""Readers for the cgroup v1 controllers: blkio, cpu, cpuacct and memory."""