"""
Request guard for ERD validation.

Caps how much validation work the process accepts: a rolling per-minute
request window, the size of a single ERD, the number of validations in
flight, and overall system memory pressure (via psutil).

Usage:
    from core.validators import ValidationRateLimiter

    limiter = ValidationRateLimiter()
    with limiter.validation_context().check(content) as ctx:
        if not ctx.allowed:
            return error_response(429, ctx.reason)
        report = service.parse_and_validate(content)
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

import psutil

from constants import ValidationGuardConfig

logger = logging.getLogger(__name__)

GuardDecision = Tuple[bool, str]

WINDOW_SECONDS = 60.0


def system_memory_percent() -> float:
    """Current system-wide memory usage in percent."""
    return psutil.virtual_memory().percent


class ValidationRateLimiter:
    """
    Admission control for validation requests.

    Each ``check_*`` method returns ``(allowed, reason)``.
    ``check_validation_allowed`` runs them in order (rate, size, memory,
    concurrency) and counts the first refusal under its kind.
    """

    def __init__(
        self,
        requests_per_minute: int = ValidationGuardConfig.REQUESTS_PER_MINUTE,
        max_content_size_mb: float = ValidationGuardConfig.MAX_CONTENT_SIZE_MB,
        max_concurrent: int = ValidationGuardConfig.MAX_CONCURRENT,
        max_memory_percent: float = ValidationGuardConfig.MAX_MEMORY_PERCENT,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
        memory_reader: Callable[[], float] = system_memory_percent,
    ):
        self.requests_per_minute = requests_per_minute
        self.max_content_size_mb = max_content_size_mb
        self.max_concurrent = max_concurrent
        self.max_memory_percent = max_memory_percent
        self.enabled = enabled

        self._clock = clock
        self._memory_reader = memory_reader
        self._lock = threading.Lock()
        self._window: Deque[float] = deque()
        self._in_flight = 0
        self._accepted = 0
        self._rejections: Dict[str, int] = {"rate": 0, "size": 0, "memory": 0, "concurrent": 0}

    def _trim_window(self) -> None:
        cutoff = self._clock() - WINDOW_SECONDS
        while self._window and self._window[0] <= cutoff:
            self._window.popleft()

    def _memory_percent(self) -> float:
        try:
            return float(self._memory_reader())
        except (OSError, RuntimeError) as e:
            logger.debug(f"Memory reading failed, skipping memory guard: {e}")
            return 0.0

    @staticmethod
    def content_size_mb(content: str) -> float:
        return len(content.encode("utf-8")) / (1024 * 1024)

    def check_rate_limit(self) -> GuardDecision:
        if not self.enabled:
            return True, "Rate limiting disabled"
        with self._lock:
            self._trim_window()
            if len(self._window) >= self.requests_per_minute:
                retry_in = WINDOW_SECONDS - (self._clock() - self._window[0])
                return False, f"Too many validation requests. Retry in {max(retry_in, 0):.1f} seconds"
        return True, "Within rate limit"

    def check_content_size(self, content: str) -> GuardDecision:
        if not self.enabled:
            return True, "Size limiting disabled"
        size_mb = self.content_size_mb(content)
        if size_mb > self.max_content_size_mb:
            return False, f"ERD is {size_mb:.2f} MB, larger than the {self.max_content_size_mb} MB limit"
        return True, f"Content size OK ({size_mb:.2f} MB)"

    def check_memory(self) -> GuardDecision:
        if not self.enabled:
            return True, "Memory limiting disabled"
        percent = self._memory_percent()
        if percent > self.max_memory_percent:
            return False, f"Server memory usage at {percent:.1f}% (limit {self.max_memory_percent}%). Retry later"
        return True, f"Memory OK ({percent:.1f}%)"

    def check_concurrent(self) -> GuardDecision:
        if not self.enabled:
            return True, "Concurrency limiting disabled"
        with self._lock:
            if self._in_flight >= self.max_concurrent:
                return False, f"{self.max_concurrent} validations already running. Retry later"
            return True, f"Concurrent OK ({self._in_flight}/{self.max_concurrent})"

    def check_validation_allowed(self, content: str) -> GuardDecision:
        checks = (
            ("rate", self.check_rate_limit),
            ("size", lambda: self.check_content_size(content)),
            ("memory", self.check_memory),
            ("concurrent", self.check_concurrent),
        )
        for kind, check in checks:
            allowed, reason = check()
            if not allowed:
                with self._lock:
                    self._rejections[kind] += 1
                logger.warning(f"Validation refused ({kind}): {reason}")
                return False, reason
        return True, "Validation allowed"

    def record_validation_start(self) -> None:
        with self._lock:
            self._window.append(self._clock())
            self._in_flight += 1
            self._accepted += 1

    def record_validation_end(self) -> None:
        with self._lock:
            self._in_flight = max(0, self._in_flight - 1)

    def validation_context(self) -> "ValidationContext":
        return ValidationContext(self)

    def get_statistics(self) -> dict:
        with self._lock:
            self._trim_window()
            stats = {
                "enabled": self.enabled,
                "requestsPerMinute": self.requests_per_minute,
                "maxContentSizeMb": self.max_content_size_mb,
                "maxConcurrent": self.max_concurrent,
                "maxMemoryPercent": self.max_memory_percent,
                "requestsInWindow": len(self._window),
                "inFlight": self._in_flight,
                "totalValidations": self._accepted,
                "rejected": dict(self._rejections),
            }
        stats["memoryPercent"] = self._memory_percent()
        return stats

    def reset(self) -> None:
        """Forget the request window and in-flight count."""
        with self._lock:
            self._window.clear()
            self._in_flight = 0

    def reset_statistics(self) -> None:
        with self._lock:
            self._accepted = 0
            for kind in self._rejections:
                self._rejections[kind] = 0


class ValidationContext:
    """
    Scope one validation against a limiter.

    ``check`` decides admission; entering the context records the start only
    when admitted, and leaving it always releases what was recorded.
    """

    def __init__(self, limiter: ValidationRateLimiter):
        self.limiter = limiter
        self.allowed = False
        self.reason = ""
        self._recorded = False

    def check(self, content: str) -> "ValidationContext":
        self.allowed, self.reason = self.limiter.check_validation_allowed(content)
        return self

    def __enter__(self) -> "ValidationContext":
        if self.allowed:
            self.limiter.record_validation_start()
            self._recorded = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> Optional[bool]:
        if self._recorded:
            self.limiter.record_validation_end()
            self._recorded = False
        return None
