"""Host resource stats reported to the orchestrator, collected via psutil."""

import os

import psutil


def get_memory_stats() -> dict:
    mem = psutil.virtual_memory()
    return {
        "totalMemoryKB": mem.total // 1024,
        "freeMemoryKB": mem.free // 1024,
        "availableMemoryKB": mem.available // 1024,
    }


def get_disk_stats(path: str = "/") -> dict:
    disk = psutil.disk_usage(path)
    mb = 1024 * 1024
    return {
        "totalDiskMB": disk.total // mb,
        "usedDiskMB": disk.used // mb,
        "availableDiskMB": disk.free // mb,
    }


def get_cpu_stats() -> dict:
    return {
        "numCPUs": psutil.cpu_count() or 1,
        "loadAvgs": list(os.getloadavg()) if hasattr(os, "getloadavg") else [],
    }


def get_nic_stats() -> dict:
    counters = psutil.net_io_counters()
    return {
        "bytesReceived": counters.bytes_recv,
        "bytesSent": counters.bytes_sent,
        "packetsReceived": counters.packets_recv,
        "packetsSent": counters.packets_sent,
    }


def collect_stats() -> dict:
    """All stats keyed the way the registration body expects them."""
    return {
        "memoryStats": get_memory_stats(),
        "diskStats": get_disk_stats(),
        "cpuStats": get_cpu_stats(),
        "nicStats": get_nic_stats(),
    }
