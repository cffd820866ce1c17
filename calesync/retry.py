from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from calesync.errors import RateLimitedError, SyncError


logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.2


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    base_delay: float
    multiplier: float
    max_attempts: int
    max_delay: float

    def delay_for(self, retry_index: int) -> float:
        """Backoff before retry number ``retry_index`` (0-based), without jitter."""
        return min(self.base_delay * (self.multiplier ** retry_index), self.max_delay)


POLICIES: dict[str, RetryPolicy] = {
    "default": RetryPolicy("default", base_delay=1.0, multiplier=2.0, max_attempts=5, max_delay=30.0),
    "aggressive": RetryPolicy("aggressive", base_delay=0.5, multiplier=2.0, max_attempts=6, max_delay=10.0),
    "conservative": RetryPolicy("conservative", base_delay=5.0, multiplier=3.0, max_attempts=3, max_delay=60.0),
}


def get_policy(name: str | RetryPolicy) -> RetryPolicy:
    if isinstance(name, RetryPolicy):
        return name
    try:
        return POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown retry policy: {name}") from None


@dataclass
class RetryStats:
    retry_count: int = 0
    total_wait_seconds: float = 0.0
    rate_limited: bool = False

    def merge(self, other: "RetryStats") -> None:
        self.retry_count += other.retry_count
        self.total_wait_seconds += other.total_wait_seconds
        self.rate_limited = self.rate_limited or other.rate_limited


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, SyncError) and exc.retryable


class _Flight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Any = None
        self.error: BaseException | None = None
        self.stats = RetryStats()


class RetryExecutor:
    """Runs operations with backoff, one retry sequence per logical key.

    A second caller arriving while a key is in flight does not issue its own
    request: it waits for the running sequence and receives the same result or
    the same exception.
    """

    def __init__(
        self,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._flights: dict[str, _Flight] = {}

    def _jittered(self, delay: float) -> float:
        return delay * self._rng.uniform(1.0 - JITTER_RATIO, 1.0 + JITTER_RATIO)

    def _wait_strategy(self, policy: RetryPolicy) -> Callable[[RetryCallState], float]:
        def wait(retry_state: RetryCallState) -> float:
            delay = self._jittered(policy.delay_for(retry_state.attempt_number - 1))
            outcome = retry_state.outcome
            exc = outcome.exception() if outcome is not None else None
            if isinstance(exc, RateLimitedError) and exc.retry_after:
                delay = max(delay, float(exc.retry_after))
            return delay

        return wait

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._flights

    def execute(
        self,
        key: str,
        operation: Callable[[], T],
        *,
        policy: str | RetryPolicy = "default",
        stats: RetryStats | None = None,
    ) -> T:
        resolved = get_policy(policy)
        with self._lock:
            flight = self._flights.get(key)
            owner = flight is None
            if owner:
                flight = _Flight()
                self._flights[key] = flight

        if not owner:
            flight.done.wait()
            if stats is not None:
                stats.merge(flight.stats)
            if flight.error is not None:
                raise flight.error
            return flight.result

        try:
            flight.result = self._run(key, operation, resolved, flight.stats)
        except BaseException as exc:
            flight.error = exc
            raise
        finally:
            with self._lock:
                self._flights.pop(key, None)
            flight.done.set()
            if stats is not None:
                stats.merge(flight.stats)
        return flight.result

    def _run(self, key: str, operation: Callable[[], T], policy: RetryPolicy, stats: RetryStats) -> T:
        def before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            exc = outcome.exception() if outcome is not None else None
            wait_seconds = retry_state.next_action.sleep if retry_state.next_action else 0.0
            stats.retry_count += 1
            stats.total_wait_seconds += wait_seconds
            if isinstance(exc, RateLimitedError):
                stats.rate_limited = True
            logger.warning(
                "Retrying %s after %s (attempt %d/%d, waiting %.2fs)",
                key,
                type(exc).__name__,
                retry_state.attempt_number,
                policy.max_attempts,
                wait_seconds,
            )

        retrying = Retrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=self._wait_strategy(policy),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
        return retrying(operation)
