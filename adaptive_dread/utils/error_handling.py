"""
Circuit breaker and error aggregation for generation service calls.
"""

import functools
import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Optional

from adaptive_dread.errors import GenerationServiceError

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5  # consecutive failures before opening
    reset_timeout: float = 60.0  # seconds open before a trial call is let through


class CircuitBreaker:
    """Stops calling the generation service after repeated failures."""

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self.failures = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, or half-open
        self.lock = threading.Lock()

    def can_execute(self) -> bool:
        with self.lock:
            if self.state == "closed":
                return True
            if self.state == "open":
                if self._clock() - (self.last_failure_time or 0.0) >= self.config.reset_timeout:
                    self.state = "half-open"
                    logger.info(f"Circuit breaker {self.name} half-open, allowing a trial call")
                    return True
                return False
            return True

    def record_success(self) -> None:
        with self.lock:
            if self.state != "closed":
                logger.info(f"Circuit breaker {self.name} closed")
            self.failures = 0
            self.state = "closed"

    def record_failure(self) -> None:
        with self.lock:
            self.failures += 1
            self.last_failure_time = self._clock()
            if self.state == "half-open" or self.failures >= self.config.failure_threshold:
                if self.state != "open":
                    logger.warning(f"Circuit breaker {self.name} opened after {self.failures} failures")
                self.state = "open"

    def snapshot(self) -> Dict[str, Any]:
        return {"state": self.state, "failures": self.failures, "last_failure": self.last_failure_time}


class ErrorAggregator:
    """Counts errors by type and keeps the most recent samples of each."""

    def __init__(self, sample_size: int = 10, reset_interval: float = 3600.0):
        self.sample_size = sample_size
        self.reset_interval = reset_interval
        self.error_counts: Dict[str, int] = defaultdict(int)
        self.error_samples: Dict[str, Deque[Dict[str, Any]]] = defaultdict(
            lambda: deque(maxlen=self.sample_size)
        )
        self.last_reset = time.time()
        self.lock = threading.Lock()

    def record_error(self, error_type: str, error_message: str, context: Optional[Dict[str, Any]] = None) -> None:
        with self.lock:
            now = time.time()
            if now - self.last_reset > self.reset_interval:
                self.error_counts.clear()
                self.error_samples.clear()
                self.last_reset = now

            self.error_counts[error_type] += 1
            self.error_samples[error_type].append({
                "timestamp": datetime.now().isoformat(),
                "message": error_message,
                "context": context or {},
            })

    def get_error_stats(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "counts": dict(self.error_counts),
                "samples": {k: list(v) for k, v in self.error_samples.items()},
                "last_reset": datetime.fromtimestamp(self.last_reset).isoformat(),
            }


error_aggregator = ErrorAggregator()


def guarded_by(breaker: CircuitBreaker):
    """
    Decorator for async generation calls: refuses with GenerationServiceError
    while ``breaker`` is open and records every outcome.
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            if not breaker.can_execute():
                raise GenerationServiceError(f"Circuit breaker {breaker.name} is open")
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                breaker.record_failure()
                error_aggregator.record_error(type(e).__name__, str(e), {"service": breaker.name})
                raise
            breaker.record_success()
            return result
        return wrapper
    return decorator


def get_error_stats() -> Dict[str, Any]:
    return error_aggregator.get_error_stats()
