"""Memory usage sampling attached to progress events."""

import os
from dataclasses import dataclass
from typing import Any

import psutil

MB = 1024 * 1024


@dataclass
class MemoryUsage:
    """Memory figures in megabytes."""

    rss_mb: float
    system_free_mb: float
    peak_rss_mb: float
    min_system_free_mb: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "rss_mb": round(self.rss_mb, 1),
            "system_free_mb": round(self.system_free_mb, 1),
            "peak_rss_mb": round(self.peak_rss_mb, 1),
            "min_system_free_mb": round(self.min_system_free_mb, 1),
        }


class MemoryMonitor:
    """Tracks current and peak memory of the server process over a job."""

    def __init__(self, pid: int | None = None):
        self._process = psutil.Process(pid or os.getpid())
        self._peak_rss_mb = 0.0
        self._min_free_mb: float | None = None

    def sample(self) -> MemoryUsage:
        rss_mb = self._process.memory_info().rss / MB
        free_mb = psutil.virtual_memory().available / MB
        self._peak_rss_mb = max(self._peak_rss_mb, rss_mb)
        self._min_free_mb = free_mb if self._min_free_mb is None else min(self._min_free_mb, free_mb)
        return MemoryUsage(
            rss_mb=rss_mb,
            system_free_mb=free_mb,
            peak_rss_mb=self._peak_rss_mb,
            min_system_free_mb=self._min_free_mb,
        )
