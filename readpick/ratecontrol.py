from __future__ import annotations

import random
import threading
import time
from abc import ABC, abstractmethod

RETRYABLE_STATUS = frozenset({429, 502, 503, 504})


class BaseRetryPolicy(ABC):
    @abstractmethod
    def should_retry(self, status_code: int | None) -> bool:
        raise NotImplementedError

    @abstractmethod
    def wait_before_retry(self, attempt: int) -> None:
        raise NotImplementedError

    def handle_response(self, status_code: int) -> None:
        pass


class ExponentialBackoff(BaseRetryPolicy):
    """Backoff for transient failures: ``status_code=None`` stands for no response at all."""

    def __init__(
        self,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        jitter_ratio: float = 0.5,
        retry_on: frozenset[int] = RETRYABLE_STATUS,
    ) -> None:
        if base_delay < 0 or max_delay < 0:
            raise ValueError("base_delay and max_delay must be >= 0")

        self.base_delay = float(base_delay)
        self.max_delay = float(max_delay)
        self.jitter_ratio = float(jitter_ratio)
        self.retry_on = retry_on
        self._lock = threading.Lock()
        self._random = random.Random()
        self._consecutive_failures = 0

        # Injectable for testing
        self._sleep = time.sleep

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def should_retry(self, status_code: int | None) -> bool:
        return status_code is None or status_code in self.retry_on or status_code >= 500

    def delay_for(self, attempt: int) -> float:
        base = min(self.base_delay * (2 ** max(0, attempt)), self.max_delay)
        with self._lock:
            jitter = base * self.jitter_ratio * self._random.random()
        return base + jitter

    def wait_before_retry(self, attempt: int) -> None:
        delay = self.delay_for(attempt)
        if delay > 0:
            self._sleep(delay)

    def handle_response(self, status_code: int) -> None:
        with self._lock:
            if self.should_retry(status_code):
                self._consecutive_failures += 1
            elif 200 <= status_code < 400:
                self._consecutive_failures = 0


class NoRetry(BaseRetryPolicy):
    def should_retry(self, status_code: int | None) -> bool:
        return False

    def wait_before_retry(self, attempt: int) -> None:
        pass
