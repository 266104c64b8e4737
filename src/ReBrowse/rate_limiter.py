"""Per-provider rate-limit gating and retry with exponential backoff."""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping, TypeVar

from ReBrowse.errors import RateLimitError, ReBrowseError
from ReBrowse.models import Record

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RateLimitState(Record):
    provider: str
    limit: int | None = None
    remaining: int | None = None
    reset_at: float | None = None
    blocked_until: float | None = None
    consecutive_failures: int = 0
    retry_after_seconds: int = 0


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, val in headers.items():
        if key.lower() == lowered:
            return val
    return None


def _int_header(headers: Mapping[str, str], name: str) -> int | None:
    value = _header(headers, name)
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


class RateLimiter:
    """Gate provider calls on known quota and retry transient failures.

    While a provider is blocked (after a 429 or when its quota headers reach
    zero) every call fails fast with :class:`RateLimitError` and no network
    request is made. Retryable errors are retried up to ``max_attempts``
    times with a delay of ``min(max_delay, base_delay * 2**attempt)`` plus
    jitter; delays never decrease within one call.

    Args:
        max_attempts: Total attempts per call, including the first.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for any single delay.
        jitter: Fraction of the delay added or removed at random.
        clock: Wall-clock time source (quota reset headers are epoch seconds).
        sleep: Blocking sleep, injectable for tests.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.1,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.clock = clock
        self.sleep = sleep
        self.rng = rng
        self._lock = threading.Lock()
        self._states: dict[str, RateLimitState] = {}

    def _state(self, provider: str) -> RateLimitState:
        state = self._states.get(provider)
        if state is None:
            state = self._states[provider] = RateLimitState(provider=provider)
        return state

    def call(self, provider: str, fn: Callable[[], T]) -> T:
        """Run *fn* under the provider's budget, retrying transient errors."""
        previous_delay = 0.0
        attempt = 0
        while True:
            self.check(provider)
            try:
                result = fn()
            except RateLimitError as exc:
                self.block(provider, exc.retry_after_seconds)
                raise
            except ReBrowseError as exc:
                self._record_failure(provider)
                if not exc.retryable or attempt + 1 >= self.max_attempts:
                    raise
                delay = self.backoff_delay(attempt, previous_delay)
                logger.info(
                    "%s request failed (%s); retry %d/%d in %.2fs",
                    provider,
                    exc.code,
                    attempt + 1,
                    self.max_attempts - 1,
                    delay,
                )
                self.sleep(delay)
                previous_delay = delay
                attempt += 1
                continue
            self._record_success(provider)
            return result

    def check(self, provider: str) -> None:
        """Raise RateLimitError if *provider* is currently blocked."""
        with self._lock:
            state = self._state(provider)
            blocked_until = state.blocked_until
            if blocked_until is None:
                return
            remaining = blocked_until - self.clock()
            if remaining <= 0:
                state.blocked_until = None
                return
        raise RateLimitError(math.ceil(remaining))

    def block(self, provider: str, retry_after_seconds: float) -> None:
        until = self.clock() + max(0.0, retry_after_seconds)
        with self._lock:
            state = self._state(provider)
            if state.blocked_until is None or until > state.blocked_until:
                state.blocked_until = until
        logger.warning("%s rate limited for %ds", provider, int(retry_after_seconds))

    def update_from_headers(self, provider: str, headers: Mapping[str, str]) -> None:
        """Track quota from ``X-RateLimit-*`` headers; block when exhausted."""
        limit = _int_header(headers, "X-RateLimit-Limit")
        remaining = _int_header(headers, "X-RateLimit-Remaining")
        reset_at = _int_header(headers, "X-RateLimit-Reset")
        if remaining is None:
            return

        with self._lock:
            state = self._state(provider)
            state.limit = limit if limit is not None else state.limit
            state.remaining = remaining
            state.reset_at = float(reset_at) if reset_at is not None else state.reset_at
        if remaining == 0 and reset_at is not None:
            self.block(provider, reset_at - self.clock())

    def backoff_delay(self, attempt: int, previous: float = 0.0) -> float:
        """Delay before retry number ``attempt + 1`` (0-based *attempt*)."""
        base = min(self.max_delay, self.base_delay * (2 ** attempt))
        spread = base * self.jitter * (2 * self.rng() - 1)
        delay = min(self.max_delay, max(0.0, base + spread))
        return max(delay, previous)

    def state(self, provider: str) -> RateLimitState:
        with self._lock:
            state = self._state(provider)
            retry_after = 0
            if state.blocked_until is not None:
                retry_after = max(0, math.ceil(state.blocked_until - self.clock()))
            return RateLimitState(
                provider=provider,
                limit=state.limit,
                remaining=state.remaining,
                reset_at=state.reset_at,
                blocked_until=state.blocked_until,
                consecutive_failures=state.consecutive_failures,
                retry_after_seconds=retry_after,
            )

    def reset(self, provider: str) -> None:
        with self._lock:
            self._states.pop(provider, None)

    def _record_failure(self, provider: str) -> None:
        with self._lock:
            self._state(provider).consecutive_failures += 1

    def _record_success(self, provider: str) -> None:
        with self._lock:
            self._state(provider).consecutive_failures = 0
