"""
Resident-memory monitoring for long training runs.

Training subsamples its training split when the process's resident set size
crosses a threshold (500 MiB by default), and the streaming passes force a
collection after releasing large structures. Readings come from psutil.
"""

from __future__ import annotations

import gc
import logging

import psutil

logger = logging.getLogger(__name__)

MEMORY_THRESHOLD_BYTES = 500 * 1024 * 1024


def format_bytes(size: float) -> str:
    """``1536`` -> ``"1.50 KiB"``."""
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(value) < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} GiB"


class MemoryMonitor:
    def __init__(self, threshold_bytes: int = MEMORY_THRESHOLD_BYTES) -> None:
        self.threshold_bytes = int(threshold_bytes)
        self._process = psutil.Process()

    def rss(self) -> int:
        """Current resident set size of this process, in bytes."""
        return self._process.memory_info().rss

    def under_pressure(self) -> bool:
        return self.rss() > self.threshold_bytes

    def collect(self, reason: str = "") -> int:
        """Force a garbage collection and log how much resident memory it gave back."""
        before = self.rss()
        collected = gc.collect()
        after = self.rss()
        logger.debug(
            "gc%s: %d objects, rss %s -> %s",
            f" ({reason})" if reason else "",
            collected,
            format_bytes(before),
            format_bytes(after),
        )
        return collected
