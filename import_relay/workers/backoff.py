"""
Import Relay - Poll Backoff

Exponential backoff with jitter for broker-level errors seen while
polling (broker down, transport failures, authentication errors).

Message-level retries do not use this: those run on a fixed interval
configured by RETRY_BACKOFF_SECONDS.

Usage:
    from import_relay.workers.backoff import BackoffState

    backoff = BackoffState()

    msg = consumer.poll(1.0)
    if msg.error():
        time.sleep(backoff.record_failure())
    else:
        backoff.record_success()
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Optional

INITIAL_BACKOFF_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 30.0
BACKOFF_MULTIPLIER = 2.0
BACKOFF_JITTER = 0.1  # +/- 10%

# Consecutive poll errors before the worker reports itself unhealthy
UNHEALTHY_THRESHOLD = 10


@dataclass
class BackoffState:
    """
    Backoff bookkeeping for one worker's poll loop.

    Attributes:
        initial_delay: Delay after the first failure.
        max_delay: Upper bound of the delay.
        consecutive_failures: Failures since the last successful poll.
        total_failures: Failures since creation, kept for the shutdown report.
        last_failure_time: Monotonic timestamp of the last failure.
    """

    initial_delay: float = INITIAL_BACKOFF_SECONDS
    max_delay: float = MAX_BACKOFF_SECONDS
    consecutive_failures: int = 0
    total_failures: int = 0
    last_failure_time: Optional[float] = None

    def next_delay(self) -> float:
        """Delay for the current failure count, without jitter."""
        if self.consecutive_failures == 0:
            return 0.0
        return min(
            self.initial_delay * (BACKOFF_MULTIPLIER ** (self.consecutive_failures - 1)),
            self.max_delay,
        )

    def record_failure(self) -> float:
        """
        Record a poll error.

        Returns:
            Seconds to wait before polling again.
        """
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_failure_time = time.monotonic()

        delay = self.next_delay()
        jitter = delay * BACKOFF_JITTER * random.uniform(-1.0, 1.0)
        return max(self.initial_delay, min(delay + jitter, self.max_delay))

    def record_success(self) -> None:
        """Reset the consecutive count. total_failures is preserved."""
        self.consecutive_failures = 0

    def is_unhealthy(self, threshold: int = UNHEALTHY_THRESHOLD) -> bool:
        return self.consecutive_failures >= threshold

    @property
    def time_since_last_failure(self) -> Optional[float]:
        if self.last_failure_time is None:
            return None
        return time.monotonic() - self.last_failure_time
