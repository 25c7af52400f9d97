from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from taskmcp_core.errors import is_retryable_error
from taskmcp_core.logging import log_warning

T = TypeVar("T")

RetryPredicate = Callable[[BaseException], bool]

_logger = structlog.stdlib.get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget, backoff boundaries and the caller's retry predicate.

    Attributes:
        max_retries: Retries allowed after the first attempt.
        initial_delay: Seconds before the first retry.
        max_delay: Upper bound in seconds for any single delay.
        should_retry: Decides whether a failure may be retried at all.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    should_retry: RetryPredicate = field(default=is_retryable_error, compare=False)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.max_delay < 0:
            raise ValueError("max_delay must be >= 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")

    @property
    def attempts(self) -> int:
        """Total attempts including the first one."""
        return self.max_retries + 1


AUTH_RETRY_POLICY = RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=10.0)
TASK_RETRY_POLICY = RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=15.0)
BULK_RETRY_POLICY = RetryPolicy(max_retries=2, initial_delay=2.0, max_delay=30.0)


def build_interruptible_sleep(
    stop_event: asyncio.Event,
) -> Callable[[float], Awaitable[None]]:
    """Build an async sleep that exits early when shutdown is requested."""

    async def _interruptible_sleep(delay: float) -> None:
        if stop_event.is_set():
            return

        bounded_delay = max(delay, 0.0)
        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=bounded_delay)

    return _interruptible_sleep


def _log_before_sleep(state: RetryCallState) -> None:
    outcome = state.outcome
    error = None if outcome is None else outcome.exception()
    delay = 0.0 if state.next_action is None else state.next_action.sleep
    log_warning(
        _logger,
        "retry.scheduled",
        attempt=state.attempt_number,
        delay_seconds=round(delay, 3),
        error_type=type(error).__name__,
        error=str(error),
    )


def build_exponential_jitter_retrying(
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = _log_before_sleep,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` with exponential jitter backoff.

    Delays grow as ``initial_delay * 2 ** (attempt - 1)`` plus up to 10%
    jitter of ``initial_delay``, capped at ``max_delay``.
    """
    options: dict[str, Any] = {
        "retry": retry_if_exception(policy.should_retry),
        "wait": wait_exponential_jitter(
            initial=policy.initial_delay,
            max=policy.max_delay,
            jitter=policy.initial_delay * 0.1,
        ),
        "stop": stop_after_attempt(policy.attempts),
        "before_sleep": before_sleep,
        "reraise": reraise,
    }
    if sleep is not None:
        options["sleep"] = sleep
    return AsyncRetrying(**options)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    stop_event: asyncio.Event | None = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Failures rejected by ``policy.should_retry`` are raised immediately. Once
    retries are exhausted the last observed error is re-raised unchanged.
    Never apply a permissive predicate to non-idempotent operations; use
    ``taskmcp_core.errors.is_safe_to_resend`` for those.
    """
    resolved_policy = RetryPolicy() if policy is None else policy
    sleep = None if stop_event is None else build_interruptible_sleep(stop_event)
    retrying = build_exponential_jitter_retrying(policy=resolved_policy, sleep=sleep)

    async for attempt in retrying:
        with attempt:
            return await operation()

    raise RuntimeError("retry loop exited unexpectedly.")
