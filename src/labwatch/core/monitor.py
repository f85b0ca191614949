"""Host resource sampling via psutil for services running on this machine."""

from __future__ import annotations

import logging

import psutil

from labwatch.models.enums import MetricType
from labwatch.models.runtime import ServiceTarget

logger = logging.getLogger("labwatch.monitor")

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "0.0.0.0"})


def is_local_target(target: ServiceTarget) -> bool:
    """True when the target resolves to the monitoring host itself."""
    host, _ = target.resolve_endpoint()
    return host.lower() in LOCAL_HOSTS


def capture_host_usage(
    cpu_interval: float | None = None, disk_path: str = "/"
) -> dict[MetricType, float] | None:
    """Sample CPU, memory and disk utilisation (percent). Returns None if unavailable."""
    try:
        cpu = psutil.cpu_percent(interval=cpu_interval)
        memory = psutil.virtual_memory().percent
        disk = psutil.disk_usage(disk_path).percent
    except (psutil.Error, OSError):
        logger.warning("Host usage sampling failed", exc_info=True)
        return None

    return {
        MetricType.CPU_USAGE: round(cpu, 1),
        MetricType.MEMORY_USAGE: round(memory, 1),
        MetricType.DISK_USAGE: round(disk, 1),
    }
