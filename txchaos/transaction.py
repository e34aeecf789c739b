"""Transaction wrapper with retry and per-attempt timing.

Runs a unit of work inside one store transaction and re-runs it from scratch
when the store signals a retryable conflict. Every attempt is timed,
including attempts that are rolled back, so callers can tell one slow commit
apart from a commit that needed several attempts.

Key types (public):
- AttemptStatus: Outcome of a single attempt
- BackoffPolicy: Exponential backoff with jitter between attempts (frozen)
- TransactionWrapper: execute(unit_of_work, on_durations) entry point
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, List, Optional, TypeVar

import numpy as np

from txchaos.errors import RetryableConflictError, RetryLimitExceededError
from txchaos.store import Store

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AttemptStatus(Enum):
    """Outcome of one transaction attempt."""
    COMMITTED = auto()
    RETRIED = auto()
    FAILED = auto()


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff between retries.

    delay = base_ms * multiplier^(retry - 1), capped at max_ms, then scaled
    by a random factor in [1 - jitter, 1 + jitter].
    """
    enabled: bool = True
    base_ms: float = 5.0
    multiplier: float = 2.0
    max_ms: float = 1000.0
    jitter: float = 0.1

    def delay_ms(self, retry_number: int, rng: np.random.RandomState) -> float:
        """Backoff time in milliseconds for a 1-indexed retry number."""
        if not self.enabled:
            return 0.0

        backoff = self.base_ms * (self.multiplier ** (retry_number - 1))
        backoff = min(backoff, self.max_ms)

        if self.jitter > 0:
            backoff *= 1.0 + rng.uniform(-self.jitter, self.jitter)

        return max(0.0, backoff)


NO_BACKOFF = BackoffPolicy(enabled=False)


# ---------------------------------------------------------------------------
# Wrapper
# ---------------------------------------------------------------------------

class TransactionWrapper:
    """Executes units of work in store transactions, retrying on conflict.

    The unit of work may be invoked more than once and must reset any local
    state (such as an observation buffer) at the start of each invocation.

    Only RetryableConflictError is retried. Everything else, including
    OptimisticLockError, rolls the transaction back and propagates.

    Args:
        store: Source of thread-bound transactions.
        max_retries: Retry bound after the first attempt; None retries forever.
        backoff: Delay policy between attempts.
    """

    def __init__(
        self,
        store: Store,
        max_retries: Optional[int] = 30,
        backoff: BackoffPolicy = NO_BACKOFF,
        seed: Optional[int] = None,
    ):
        if max_retries is not None and max_retries < 0:
            raise ValueError(f"max_retries must be >= 0 or None, got {max_retries}")
        self._store = store
        self._max_retries = max_retries
        self._backoff = backoff
        self._rng = np.random.RandomState(seed)
        self._rng_lock = threading.Lock()

    @property
    def store(self) -> Store:
        return self._store

    @property
    def max_retries(self) -> Optional[int]:
        return self._max_retries

    def execute(
        self,
        unit_of_work: Callable[[], T],
        on_durations: Callable[[List[float]], None],
    ) -> T:
        """Run unit_of_work until it commits or fails non-retryably.

        Attempt durations (seconds, attempt order) are passed to on_durations
        exactly once, whether the call commits or raises.
        """
        durations: List[float] = []
        attempt = 0
        try:
            while True:
                attempt += 1
                status = AttemptStatus.FAILED
                start = time.perf_counter()
                try:
                    with self._store.transaction():
                        result = unit_of_work()
                    status = AttemptStatus.COMMITTED
                    return result
                except RetryableConflictError as e:
                    status = AttemptStatus.RETRIED
                    if self._max_retries is not None and attempt > self._max_retries:
                        raise RetryLimitExceededError(attempt) from e
                    logger.debug(f"Attempt {attempt} rolled back on conflict: {e}")
                finally:
                    durations.append(time.perf_counter() - start)
                    if status is AttemptStatus.FAILED:
                        logger.debug(f"Attempt {attempt} failed")

                self._sleep_before_retry(attempt)
        finally:
            on_durations(durations)

    def _sleep_before_retry(self, retry_number: int) -> None:
        with self._rng_lock:
            delay_ms = self._backoff.delay_ms(retry_number, self._rng)
        if delay_ms > 0:
            logger.debug(f"Backing off for {delay_ms:.1f}ms (retry {retry_number})")
            time.sleep(delay_ms / 1000.0)
