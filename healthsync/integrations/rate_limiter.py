"""Per-bucket token-bucket admission control with error-driven backoff.

A bucket is keyed by provider and endpoint class (``"fitbit-api"``,
``"fitbit-token"``).  Tokens refill continuously; once the bucket runs dry a
caller is suspended for just long enough to earn the missing tokens, plus any
backoff delay accumulated from recent provider errors.

One ``RateLimiter`` instance is shared by every adapter in the process.  All
state lives on the instance, so tests construct their own limiter with a fake
clock and a fake sleep.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from healthsync.integrations.errors import RateLimitExceeded

logger = logging.getLogger("healthsync.integrations.rate_limiter")

DEFAULT_MAX_WAIT_ATTEMPTS = 10


@dataclass(frozen=True)
class BucketLimit:
    """Static limits for one bucket.

    Attributes:
        capacity:        Maximum tokens (requests) per window.
        window_seconds:  Length of the refill window.
        error_threshold: Errors needed before backoff starts (None = never).
        initial_delay:   First backoff delay in seconds.
        max_delay:       Ceiling for the doubled backoff delay.
    """

    capacity: int
    window_seconds: float
    error_threshold: int | None = None
    initial_delay: float = 0.0
    max_delay: float = 0.0


#: Applied (with a warning) to any bucket that was never configured.
DEFAULT_BUCKET_LIMIT = BucketLimit(capacity=100, window_seconds=60.0)


@dataclass
class _BucketState:
    limit: BucketLimit
    tokens: float
    updated_at: float
    error_count: int = 0
    backoff_delay: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class RateLimiter:
    """Token-bucket rate limiter shared across concurrent sync tasks.

    Usage::

        limiter = RateLimiter(config.rate_limits.buckets)
        await limiter.consume("fitbit-api")
        ...
        limiter.record_error("fitbit-api")   # after a failed call
        limiter.reset_error_count("fitbit-api")  # after a clean sync
    """

    def __init__(
        self,
        limits: dict[str, BucketLimit] | None = None,
        *,
        default_limit: BucketLimit = DEFAULT_BUCKET_LIMIT,
        max_wait_attempts: int = DEFAULT_MAX_WAIT_ATTEMPTS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the limiter.

        Args:
            limits:            Bucket name → BucketLimit.
            default_limit:     Used for buckets missing from ``limits``.
            max_wait_attempts: Waits allowed per ``consume`` before giving up.
            clock:             Monotonic clock in seconds.
            sleep:             Coroutine used to suspend callers.
        """
        self._limits: dict[str, BucketLimit] = dict(limits or {})
        self._default_limit = default_limit
        self._max_wait_attempts = max_wait_attempts
        self._clock = clock
        self._sleep = sleep
        self._buckets: dict[str, _BucketState] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def configure(self, bucket: str, limit: BucketLimit) -> None:
        """Set (or replace) the limits for ``bucket`` and reset its state."""
        self._limits[bucket] = limit
        self._buckets.pop(bucket, None)

    async def consume(self, bucket: str, cost: int = 1) -> float:
        """Take ``cost`` tokens from ``bucket``, waiting if necessary.

        Args:
            bucket: Bucket name.
            cost:   Tokens required by this call.

        Returns:
            Total seconds the caller was suspended.

        Raises:
            RateLimitExceeded: If the tokens are still missing after
                ``max_wait_attempts`` waits.
        """
        state = self._state(bucket)
        if cost > state.limit.capacity:
            raise ValueError(
                f"cost {cost} exceeds capacity {state.limit.capacity} of '{bucket}'"
            )

        waited = 0.0
        async with state.lock:
            for _ in range(self._max_wait_attempts + 1):
                self._refill(state)
                if state.tokens >= cost:
                    state.tokens -= cost
                    return waited

                wait = self._wait_seconds(state, cost) + state.backoff_delay
                logger.debug(
                    "Rate limit on '%s': waiting %.3fs (tokens=%.2f, backoff=%.3fs)",
                    bucket, wait, state.tokens, state.backoff_delay,
                )
                await self._sleep(wait)
                waited += wait

        raise RateLimitExceeded(bucket, self._max_wait_attempts)

    def record_error(self, bucket: str) -> None:
        """Count a failed call; start or double the backoff past the threshold."""
        state = self._state(bucket)
        limit = state.limit
        state.error_count += 1

        if limit.error_threshold is None or state.error_count < limit.error_threshold:
            return

        if state.backoff_delay <= 0:
            state.backoff_delay = limit.initial_delay
        else:
            state.backoff_delay = min(state.backoff_delay * 2, limit.max_delay)

        logger.warning(
            "Backoff for '%s' is now %.3fs after %d errors",
            bucket, state.backoff_delay, state.error_count,
        )

    def reset_error_count(self, bucket: str) -> None:
        state = self._buckets.get(bucket)
        if state is None:
            return
        state.error_count = 0
        state.backoff_delay = 0.0

    def error_count(self, bucket: str) -> int:
        state = self._buckets.get(bucket)
        return state.error_count if state else 0

    def backoff_delay(self, bucket: str) -> float:
        state = self._buckets.get(bucket)
        return state.backoff_delay if state else 0.0

    def available_tokens(self, bucket: str) -> float:
        state = self._state(bucket)
        self._refill(state)
        return state.tokens

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _state(self, bucket: str) -> _BucketState:
        state = self._buckets.get(bucket)
        if state is None:
            limit = self._limits.get(bucket)
            if limit is None:
                logger.warning(
                    "No rate limit configured for '%s'; using default %d/%ss",
                    bucket, self._default_limit.capacity, self._default_limit.window_seconds,
                )
                limit = self._default_limit
                self._limits[bucket] = limit
            state = _BucketState(
                limit=limit, tokens=float(limit.capacity), updated_at=self._clock()
            )
            self._buckets[bucket] = state
        return state

    def _refill(self, state: _BucketState) -> None:
        now = self._clock()
        elapsed = max(0.0, now - state.updated_at)
        limit = state.limit
        state.tokens = min(
            float(limit.capacity),
            state.tokens + elapsed / limit.window_seconds * limit.capacity,
        )
        state.updated_at = now

    @staticmethod
    def _wait_seconds(state: _BucketState, cost: int) -> float:
        # Rounded up to the next whole millisecond.
        limit = state.limit
        per_token_ms = limit.window_seconds * 1000 / limit.capacity
        return math.ceil(per_token_ms * (cost - state.tokens)) / 1000
