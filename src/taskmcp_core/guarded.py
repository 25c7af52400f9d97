"""Retry-around-breaker composition for calls to the remote task API."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import replace
from enum import StrEnum
from typing import TypeVar

from taskmcp_core.circuit_breaker import CircuitBreakerRegistry, CircuitOpenError
from taskmcp_core.retry import RetryPolicy, with_retry

T = TypeVar("T")


class BreakerName(StrEnum):
    """Dependency families that get their own circuit breaker."""

    TASK_CREATE = "task-api-task-create"
    TASK_UPDATE = "task-api-task-update"
    TASK_DELETE = "task-api-task-delete"
    TASK_ASSIGNEES = "task-api-task-assignees"
    BULK_OPERATIONS = "task-api-bulk-operations"


def _skip_open_circuit(policy: RetryPolicy) -> RetryPolicy:
    predicate = policy.should_retry

    def _should_retry(error: BaseException) -> bool:
        if isinstance(error, CircuitOpenError):
            return False
        return predicate(error)

    return replace(policy, should_retry=_should_retry)


async def guarded_call(
    registry: CircuitBreakerRegistry,
    name: str,
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    stop_event: asyncio.Event | None = None,
) -> T:
    """Run ``operation`` behind breaker ``name`` with retries around it.

    Every attempt passes through the breaker, so repeated failures trip it.
    A ``CircuitOpenError`` is raised straight away instead of being retried.
    """
    breaker = registry.get_breaker(name)
    resolved_policy = _skip_open_circuit(RetryPolicy() if policy is None else policy)
    return await with_retry(
        lambda: breaker.execute(operation),
        resolved_policy,
        stop_event=stop_event,
    )
