"""Bounded retry with per-attempt timeout and linear backoff.

Every network call in the package goes through :class:`RetryExecutor`.
Each attempt races the action against ``timeout_seconds``; a timed-out
attempt is cancelled.  Failures are classified (see
``quote_feed.errors``) and, unless it was the final attempt, followed by a
sleep of ``attempt * backoff_seconds``.  Exhaustion is reported as a value,
never raised.

Usage::

    executor = RetryExecutor()
    outcome = await executor.execute(lambda: client.get(url), RetryPolicy(max_attempts=3))
    if outcome.ok:
        response = outcome.value
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, Generic, Optional, TypeVar

from quote_feed.errors import ClassifiedError, ErrorKind, classify_exception

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_ALL_KINDS: FrozenSet[ErrorKind] = frozenset(ErrorKind)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one logical call.

    Parameters
    ----------
    max_attempts:
        Attempts before giving up. Must be >= 1. Default 3.
    timeout_seconds:
        Wall-clock cap for a single attempt. Must be > 0. Default 8.
    backoff_seconds:
        Linear backoff unit; the pause after attempt ``n`` is
        ``n * backoff_seconds``. Must be >= 0. Default 1.
    retry_on:
        Error kinds that are worth another attempt. Default: all.
    name:
        Label used in log lines.
    """

    max_attempts: int = 3
    timeout_seconds: float = 8.0
    backoff_seconds: float = 1.0
    retry_on: FrozenSet[ErrorKind] = field(default=_ALL_KINDS)
    name: str = "call"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {self.timeout_seconds}")
        if self.backoff_seconds < 0:
            raise ValueError(f"backoff_seconds must be >= 0, got {self.backoff_seconds}")

    def backoff_after(self, attempt: int) -> float:
        return attempt * self.backoff_seconds

    @property
    def wall_clock_bound(self) -> float:
        """Upper bound on total time spent in :meth:`RetryExecutor.execute`."""
        return self.max_attempts * (self.timeout_seconds + self.backoff_seconds * self.max_attempts)


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    value: Optional[T] = None
    error: Optional[ClassifiedError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the classified error as an exception."""
        if self.error is not None:
            raise self.error.to_exception()
        return self.value  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class RetryExecutor:
    """Runs async actions under a :class:`RetryPolicy`.

    ``sleep`` is injectable so tests can run backoff without waiting.
    """

    def __init__(self, sleep: Callable[[float], Awaitable[None]] | None = None) -> None:
        self._sleep = sleep or asyncio.sleep

    async def execute(
        self,
        action: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
    ) -> RetryOutcome[T]:
        policy = policy or RetryPolicy()
        last_error: ClassifiedError | None = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                value = await asyncio.wait_for(action(), timeout=policy.timeout_seconds)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                last_error = ClassifiedError(
                    ErrorKind.TIMEOUT,
                    f"{policy.name} exceeded {policy.timeout_seconds:.1f}s",
                )
            except Exception as exc:
                last_error = classify_exception(exc)
            else:
                if attempt > 1:
                    LOGGER.info("%s succeeded attempt=%d/%d", policy.name, attempt, policy.max_attempts)
                return RetryOutcome(value=value, attempts=attempt)

            LOGGER.warning(
                "%s failed attempt=%d/%d kind=%s status=%s: %s",
                policy.name,
                attempt,
                policy.max_attempts,
                last_error.kind.value,
                last_error.status,
                last_error.message,
            )
            if last_error.kind not in policy.retry_on:
                return RetryOutcome(error=last_error, attempts=attempt)
            if attempt < policy.max_attempts:
                delay = policy.backoff_after(attempt)
                if delay > 0:
                    await self._sleep(delay)

        return RetryOutcome(error=last_error, attempts=policy.max_attempts)
