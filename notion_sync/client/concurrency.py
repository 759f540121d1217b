"""
Adaptive request concurrency.

The number of parallel requests is derived from the host's free memory,
its load average and the latency the client has been observing.
"""

import logging
import os
from collections import deque

import psutil

logger = logging.getLogger(__name__)

MB = 1024 * 1024
HIGH_LATENCY_SECONDS = 2.0


def timeout_for(limit: int) -> float:
    """Per-request timeout in seconds for a given concurrency limit."""
    if limit > 8:
        return 45.0
    if limit <= 3:
        return 20.0
    return 30.0


class AdaptiveConcurrency:
    """Computes the concurrency limit for the API client."""

    def __init__(self, base: int = 5, ceiling: int = 10, enabled: bool = True) -> None:
        self.base = base
        self.ceiling = max(1, ceiling)
        self.enabled = enabled
        self.current = self._clamp(base)
        self._latencies: deque[float] = deque(maxlen=20)

    def _clamp(self, value: int) -> int:
        return max(1, min(self.ceiling, value))

    def available_memory_mb(self) -> float:
        return psutil.virtual_memory().available / MB

    def load_average(self) -> float:
        try:
            return os.getloadavg()[0]
        except (OSError, AttributeError):
            # Not available on this platform; treat as moderate load
            return 1.0

    def record_latency(self, seconds: float) -> None:
        self._latencies.append(seconds)

    @property
    def average_latency(self) -> float:
        if not self._latencies:
            return 0.0
        return sum(self._latencies) / len(self._latencies)

    def calculate(self) -> int:
        """Recompute and return the current limit."""
        if not self.enabled:
            self.current = self._clamp(self.base)
            return self.current

        limit = self.base
        memory_mb = self.available_memory_mb()
        load = self.load_average()

        if memory_mb > 512:
            limit = limit * 2
        elif memory_mb > 256:
            limit = int(limit * 1.5)

        if load < 1.0:
            limit = int(limit * 1.2)
        elif load > 2.0:
            limit = max(3, int(limit * 0.7))

        if self.average_latency > HIGH_LATENCY_SECONDS:
            limit = max(3, int(limit * 0.8))

        limit = self._clamp(limit)
        if limit != self.current:
            logger.info(
                "Concurrency %d -> %d (memory %.0fMB, load %.2f, latency %.2fs)",
                self.current,
                limit,
                memory_mb,
                load,
                self.average_latency,
            )
        self.current = limit
        return limit

    @property
    def timeout(self) -> float:
        return timeout_for(self.current)
