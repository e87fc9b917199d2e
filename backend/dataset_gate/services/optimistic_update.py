"""Optimistic concurrency over version-tagged objects.

Read version -> compute -> conditional write -> on mismatch, back off and
start again from a fresh read.

WHY RANDOMIZED BACKOFF:
- Competing redeemers that lost the same race would otherwise retry in
  lockstep and collide again
- Bounds are small (tens of ms); contention is a handful of requests

WHY RETRY ON TIMEOUT:
- A timed-out conditional write may or may not have been applied
- Re-reading shows which: if it was applied, the version tag moved and
  the retry recomputes from the new state instead of overwriting it with
  a stale count (the cap still holds; at worst one use is charged twice)
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from dataset_gate.core.config import Settings
from dataset_gate.providers.errors import PreconditionFailedError, StoreUnavailableError

__all__ = ["RetryPolicy", "UpdateConflictError", "update_with_retry"]

logger = structlog.get_logger()

S = TypeVar("S")

_RETRYABLE = (PreconditionFailedError, StoreUnavailableError)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and jitter bounds for conditional writes.

    Attributes:
        max_attempts: Maximum conditional writes (including the first).
        backoff_min_ms: Lower bound of the randomized pause between attempts.
        backoff_max_ms: Upper bound of the randomized pause between attempts.
    """

    max_attempts: int = 5
    backoff_min_ms: int = 40
    backoff_max_ms: int = 180

    @classmethod
    def from_settings(cls, config: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=config.cas_max_attempts,
            backoff_min_ms=config.cas_backoff_min_ms,
            backoff_max_ms=config.cas_backoff_max_ms,
        )

    def backoff_seconds(self) -> float:
        return random.uniform(self.backoff_min_ms, self.backoff_max_ms) / 1000


class UpdateConflictError(Exception):
    """Every attempt lost the race (or timed out).

    Attributes:
        attempts: Number of conditional writes attempted.
        last_error: Error raised by the final attempt.
    """

    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(f"Conditional update failed after {attempts} attempts")
        self.attempts = attempts
        self.last_error = last_error


async def update_with_retry(
    load: Callable[[], Awaitable[S]],
    mutate: Callable[[S], S],
    write: Callable[[S, S], Awaitable[None]],
    policy: RetryPolicy,
    *,
    initial: S | None = None,
    log_context: dict[str, str] | None = None,
) -> S:
    """Apply mutate to the current state with a conditional write, retrying.

    Args:
        load: Reads the current state including its version tag.
        mutate: Computes the next state. May raise to abort (e.g. the state
            no longer permits the change); such errors propagate unchanged.
        write: Conditionally writes (current, next); must raise
            PreconditionFailedError when the version tag no longer matches.
        policy: Attempt budget and backoff bounds.
        initial: Already-loaded state for the first attempt (skips one read).
        log_context: Extra keyword context for retry log events.

    Returns:
        The state as written.

    Raises:
        UpdateConflictError: If every attempt failed with a precondition
            failure or store timeout.
    """
    context = log_context or {}
    last_error: Exception | None = None

    for attempt in range(policy.max_attempts):
        if attempt == 0 and initial is not None:
            current = initial
        else:
            current = await load()

        proposed = mutate(current)
        try:
            await write(current, proposed)
            return proposed
        except _RETRYABLE as e:
            last_error = e

        if attempt + 1 == policy.max_attempts:
            break

        delay = policy.backoff_seconds()
        logger.info(
            "conditional_write_retry",
            attempt=attempt + 1,
            max_attempts=policy.max_attempts,
            reason=type(last_error).__name__,
            delay_ms=round(delay * 1000),
            **context,
        )
        await asyncio.sleep(delay)

    if last_error is None:
        raise RuntimeError("Retry loop exited without error or result")
    raise UpdateConflictError(policy.max_attempts, last_error)
