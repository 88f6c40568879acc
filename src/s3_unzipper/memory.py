"""
Process memory circuit breaker.

One breaker lives for the life of the Lambda execution environment and is
shared by every archive processed in it. The pipeline asks it for permission
(`checkpoint`) at fixed points; once usage crosses the trip threshold the
breaker stays open until an explicit `reset` finds usage back below the
warning threshold.
"""

import gc
import logging
import time
from functools import lru_cache
from typing import Any, Callable, Optional

import psutil

from .exceptions import MemoryLimitExceededError
from .models import MemorySample

logger = logging.getLogger(__name__)

DEFAULT_MEMORY_LIMIT_BYTES = 1024 * 1024 * 1024


def _process_rss() -> int:
    return psutil.Process().memory_info().rss


class MemoryCircuitBreaker:
    """
    Sticky memory guard.

    Usage is the process resident set size as a percentage of
    *memory_limit_bytes* (the Lambda memory size by default). Sampling is
    rate-limited to one reading per *check_interval* seconds; in between,
    `checkpoint` answers from the last reading.
    """

    def __init__(
        self,
        warning_threshold: float = 70.0,
        trip_threshold: float = 80.0,
        check_interval: float = 1.0,
        memory_limit_bytes: int = DEFAULT_MEMORY_LIMIT_BYTES,
        sampler: Optional[Callable[[], int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not 0 < warning_threshold < trip_threshold <= 100:
            raise ValueError("thresholds must satisfy 0 < warning < trip <= 100")
        self.warning_threshold = warning_threshold
        self.trip_threshold = trip_threshold
        self.check_interval = check_interval
        self.memory_limit_bytes = memory_limit_bytes
        self._sampler = sampler or _process_rss
        self._clock = clock
        self._tripped = False
        self._last_check: Optional[float] = None
        self._last_sample: Optional[MemorySample] = None

    @property
    def tripped(self) -> bool:
        return self._tripped

    @property
    def last_sample(self) -> Optional[MemorySample]:
        return self._last_sample

    def sample(self) -> MemorySample:
        used = self._sampler()
        usage = used / self.memory_limit_bytes * 100
        self._last_sample = MemorySample(
            used_bytes=used,
            total_bytes=self.memory_limit_bytes,
            usage_percentage=round(usage, 2),
        )
        return self._last_sample

    def checkpoint(self, tag: str) -> bool:
        """Return True if work may proceed at *tag*."""
        now = self._clock()
        if self._last_check is not None and now - self._last_check < self.check_interval:
            return not self._tripped
        self._last_check = now

        current = self.sample()
        if current.usage_percentage >= self.trip_threshold:
            if not self._tripped:
                logger.error(
                    "Memory circuit breaker tripped",
                    extra={
                        "tag": tag,
                        "usage_percentage": current.usage_percentage,
                        "used_mb": round(current.used_bytes / 1_048_576, 1),
                        "trip_threshold": self.trip_threshold,
                    },
                )
            self._tripped = True
        elif current.usage_percentage >= self.warning_threshold:
            logger.warning(
                "Memory usage above warning threshold",
                extra={
                    "tag": tag,
                    "usage_percentage": current.usage_percentage,
                    "warning_threshold": self.warning_threshold,
                },
            )
        return not self._tripped

    def reset(self) -> bool:
        """Close the breaker, but only if a fresh sample is below the warning threshold."""
        current = self.sample()
        self._last_check = self._clock()
        if current.usage_percentage < self.warning_threshold:
            if self._tripped:
                logger.info(
                    "Memory circuit breaker reset",
                    extra={"usage_percentage": current.usage_percentage},
                )
            self._tripped = False
            return True
        logger.warning(
            "Memory circuit breaker reset refused",
            extra={
                "usage_percentage": current.usage_percentage,
                "warning_threshold": self.warning_threshold,
            },
        )
        return False

    def request_gc(self, tag: str) -> int:
        """Run a collection between entries and return the bytes it freed (may be 0)."""
        before = self._sampler()
        collected = gc.collect()
        freed = max(before - self._sampler(), 0)
        logger.debug(
            "Garbage collection requested",
            extra={"tag": tag, "objects_collected": collected, "freed_bytes": freed},
        )
        return freed


def require_headroom(breaker: MemoryCircuitBreaker, tag: str) -> None:
    """Raise MemoryLimitExceededError when the breaker refuses work at *tag*."""
    if not breaker.checkpoint(tag):
        sample = breaker.last_sample
        raise MemoryLimitExceededError(
            tag,
            context={"usage_percentage": sample.usage_percentage if sample else None},
        )


@lru_cache(maxsize=1)
def get_memory_breaker(config: Any) -> MemoryCircuitBreaker:
    """
    The process-wide breaker, created on first use.

    Cached the same way as the configuration, so every caller in the
    execution environment shares one trip state.
    """
    logger.info("Creating memory circuit breaker")
    return MemoryCircuitBreaker(
        warning_threshold=config.memory_warning_threshold,
        trip_threshold=config.memory_trip_threshold,
        check_interval=config.memory_check_interval_seconds,
        memory_limit_bytes=config.max_memory_bytes,
    )
