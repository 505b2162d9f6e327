"""
Resource metrics for the health report.

Collects CPU and memory usage of the supervisor itself and of the gateway
process tree, plus the size of the skills directory.
"""

import logging
import os
import time
from pathlib import Path

import psutil

from .process import ProcessSupervisor

logger = logging.getLogger(__name__)


def get_directory_size(path: str) -> float:
    """Get total size of a directory in MB."""
    total = 0
    try:
        for dirpath, dirnames, filenames in os.walk(path):
            for filename in filenames:
                filepath = os.path.join(dirpath, filename)
                try:
                    total += os.path.getsize(filepath)
                except (OSError, FileNotFoundError):
                    pass
    except (OSError, PermissionError):
        pass
    return total / 1024 / 1024  # Convert to MB


class ResourceMonitor:
    """Reports resource usage of the supervisor and its gateway."""

    def __init__(self, supervisor: ProcessSupervisor, skills_dir: Path):
        self._supervisor = supervisor
        self._skills_dir = Path(skills_dir)
        self._self = psutil.Process(os.getpid())

    def supervisor_metrics(self) -> dict:
        """Uptime and memory of this process."""
        with self._self.oneshot():
            memory = self._self.memory_info()
            uptime = time.time() - self._self.create_time()
        return {
            "pid": self._self.pid,
            "uptime_seconds": round(uptime, 1),
            "memory": {
                "rss_mb": round(memory.rss / 1024 / 1024, 1),
                "vms_mb": round(memory.vms / 1024 / 1024, 1),
            },
        }

    def gateway_metrics(self) -> dict:
        """Current resource usage of the gateway and its children."""
        result = self._supervisor.info()
        result.update({"cpu_percent": 0.0, "memory_mb": 0.0, "child_processes": 0})

        pid = self._supervisor.pid
        if pid:
            try:
                proc = psutil.Process(pid)
                cpu_percent = proc.cpu_percent(interval=0.1)
                memory_mb = proc.memory_info().rss / 1024 / 1024

                # Include children
                child_count = 0
                try:
                    children = proc.children(recursive=True)
                    child_count = len(children)
                    for child in children:
                        cpu_percent += child.cpu_percent(interval=0.1)
                        memory_mb += child.memory_info().rss / 1024 / 1024
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    pass

                result.update({
                    "cpu_percent": round(cpu_percent, 1),
                    "memory_mb": round(memory_mb, 1),
                    "child_processes": child_count,
                })

            except psutil.NoSuchProcess:
                logger.warning(f"Gateway process {pid} no longer exists")
            except psutil.AccessDenied:
                logger.warning(f"Access denied for gateway process {pid}")

        return result

    def skills_metrics(self) -> dict:
        return {
            "path": str(self._skills_dir),
            "exists": self._skills_dir.is_dir(),
            "disk_mb": round(get_directory_size(str(self._skills_dir)), 2),
        }
