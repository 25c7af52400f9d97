"""Bulk task handlers built on the batch processor, breakers and retries.

Each handler reports partial success instead of failing the whole request:
callers get the items that went through, the ids that did not, and why.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Hashable, Mapping, Sequence
from dataclasses import dataclass, replace
from enum import StrEnum
from types import MappingProxyType
from typing import Generic, Protocol, TypeVar

import structlog

from taskmcp_core.batch import (
    HIGH_THROUGHPUT_OPTIONS,
    RATE_LIMITED_OPTIONS,
    BatchMetrics,
    BatchOptions,
    BatchProcessor,
)
from taskmcp_core.circuit_breaker import CircuitBreakerRegistry, CircuitOpenError
from taskmcp_core.errors import is_retryable_error, is_safe_to_resend
from taskmcp_core.guarded import BreakerName, guarded_call
from taskmcp_core.logging import bound_log_context, log_info, log_warning
from taskmcp_core.retry import (
    AUTH_RETRY_POLICY,
    BULK_RETRY_POLICY,
    TASK_RETRY_POLICY,
    RetryPolicy,
    RetryPredicate,
)

T = TypeVar("T")
R = TypeVar("R")

MAX_BULK_ITEMS = 1000

_logger = structlog.stdlib.get_logger(__name__)


class TaskApi(Protocol):
    """Task API surface used by the bulk handlers."""

    async def create_task(
        self, project_id: int, payload: dict[str, object]
    ) -> dict[str, object]: ...

    async def update_task(
        self, task_id: int, payload: dict[str, object]
    ) -> dict[str, object]: ...

    async def bulk_update_tasks(
        self, task_ids: Sequence[int], payload: dict[str, object]
    ) -> list[dict[str, object]]: ...

    async def delete_task(self, task_id: int) -> None: ...

    async def assign_users(
        self, task_id: int, user_ids: Sequence[int]
    ) -> dict[str, object]: ...

    async def remove_assignee(self, task_id: int, user_id: int) -> None: ...


class BulkOperation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ASSIGN = "assign"
    UNASSIGN = "unassign"


# Operations missing here run on the default processor.
BULK_BATCH_OPTIONS: Mapping[BulkOperation, BatchOptions] = MappingProxyType(
    {
        BulkOperation.CREATE: HIGH_THROUGHPUT_OPTIONS,
        BulkOperation.DELETE: RATE_LIMITED_OPTIONS,
    }
)

# Breakers missing here use the handler-wide retry policy.
BULK_RETRY_POLICIES: Mapping[str, RetryPolicy] = MappingProxyType(
    {
        BreakerName.TASK_ASSIGNEES: AUTH_RETRY_POLICY,
        BreakerName.BULK_OPERATIONS: TASK_RETRY_POLICY,
    }
)


def build_bulk_processors(
    options: Mapping[BulkOperation, BatchOptions] = BULK_BATCH_OPTIONS,
) -> dict[BulkOperation, BatchProcessor]:
    """Build one processor per operation from ``options``."""
    return {operation: BatchProcessor(opts) for operation, opts in options.items()}


def _shared_payload(
    updates: Sequence[tuple[int, dict[str, object]]],
) -> dict[str, object] | None:
    if len(updates) < 2:
        return None
    first = updates[0][1]
    if not first or any(payload != first for _, payload in updates[1:]):
        return None
    return first


@dataclass(frozen=True)
class BulkItemError:
    """Why one item of a bulk request failed.

    ``details`` carries the breaker name and retry hint when the item was
    refused by an open circuit.
    """

    item_id: Hashable
    error_type: str
    message: str
    details: dict[str, object] | None = None


@dataclass(frozen=True)
class BulkOperationSummary(Generic[R]):
    """Partial-success report for one bulk request."""

    operation: BulkOperation
    total: int
    succeeded: list[R]
    failed: list[BulkItemError]
    metrics: BatchMetrics

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def failed_ids(self) -> list[Hashable]:
        return [error.item_id for error in self.failed]

    @property
    def partial(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)


class BulkTaskOperations:
    """Multi-task create/update/delete and multi-user assignment.

    Updates are idempotent and retried on any transient or auth failure.
    Creates, deletes and assignee changes are only resent when the request
    provably had no effect on the server.

    ``processors`` and ``retry_policies`` override the default processor and
    retry policy per operation and per breaker respectively.
    """

    def __init__(
        self,
        *,
        api: TaskApi,
        registry: CircuitBreakerRegistry,
        processor: BatchProcessor | None = None,
        processors: Mapping[BulkOperation, BatchProcessor] | None = None,
        retry_policy: RetryPolicy | None = None,
        retry_policies: Mapping[str, RetryPolicy] | None = None,
        max_items: int = MAX_BULK_ITEMS,
    ) -> None:
        self._api = api
        self._registry = registry
        self._processor = BatchProcessor() if processor is None else processor
        self._processors = dict(processors) if processors is not None else {}
        self._retry_policy = BULK_RETRY_POLICY if retry_policy is None else retry_policy
        self._retry_policies = (
            dict(retry_policies) if retry_policies is not None else {}
        )
        self._max_items = max_items

    def processor_for(self, operation: BulkOperation) -> BatchProcessor:
        return self._processors.get(operation, self._processor)

    def retry_policy_for(self, breaker_name: str) -> RetryPolicy:
        return self._retry_policies.get(breaker_name, self._retry_policy)

    async def create_tasks(
        self, project_id: int, payloads: Sequence[dict[str, object]]
    ) -> BulkOperationSummary[dict[str, object]]:
        """Create one task per payload; failures are keyed by payload index."""

        async def _create(item: tuple[int, dict[str, object]]) -> dict[str, object]:
            return await self._api.create_task(project_id, item[1])

        return await self._run(
            BulkOperation.CREATE,
            BreakerName.TASK_CREATE,
            list(enumerate(payloads)),
            _create,
            item_id=lambda item: item[0],
            should_retry=is_safe_to_resend,
        )

    async def update_tasks(
        self, updates: Sequence[tuple[int, dict[str, object]]]
    ) -> BulkOperationSummary[dict[str, object]]:
        """Apply ``(task_id, payload)`` updates.

        When every update carries the same payload the server's bulk endpoint
        is tried first. If that call fails, or the tasks it returns do not
        match the request, each task is updated on its own.
        """
        items = list(updates)
        self._check_size(BulkOperation.UPDATE, len(items))

        payload = _shared_payload(items)
        if payload is not None:
            task_ids = [task_id for task_id, _ in items]
            summary = await self._bulk_update(task_ids, payload)
            if summary is not None:
                return summary

        async def _update(item: tuple[int, dict[str, object]]) -> dict[str, object]:
            return await self._api.update_task(item[0], item[1])

        return await self._run(
            BulkOperation.UPDATE,
            BreakerName.TASK_UPDATE,
            items,
            _update,
            item_id=lambda item: item[0],
            should_retry=is_retryable_error,
        )

    async def delete_tasks(self, task_ids: Sequence[int]) -> BulkOperationSummary[int]:
        async def _delete(task_id: int) -> int:
            await self._api.delete_task(task_id)
            return task_id

        return await self._run(
            BulkOperation.DELETE,
            BreakerName.TASK_DELETE,
            list(task_ids),
            _delete,
            item_id=lambda task_id: task_id,
            should_retry=is_safe_to_resend,
        )

    async def assign_users(
        self, task_ids: Sequence[int], user_ids: Sequence[int]
    ) -> BulkOperationSummary[int]:
        """Assign every user in ``user_ids`` to every task in ``task_ids``."""
        if not user_ids:
            raise ValueError("user_ids must not be empty")
        users = list(user_ids)

        async def _assign(task_id: int) -> int:
            await self._api.assign_users(task_id, users)
            return task_id

        return await self._run(
            BulkOperation.ASSIGN,
            BreakerName.TASK_ASSIGNEES,
            list(task_ids),
            _assign,
            item_id=lambda task_id: task_id,
            should_retry=is_safe_to_resend,
        )

    async def remove_assignee(
        self, task_ids: Sequence[int], user_id: int
    ) -> BulkOperationSummary[int]:
        async def _remove(task_id: int) -> int:
            await self._api.remove_assignee(task_id, user_id)
            return task_id

        return await self._run(
            BulkOperation.UNASSIGN,
            BreakerName.TASK_ASSIGNEES,
            list(task_ids),
            _remove,
            item_id=lambda task_id: task_id,
            should_retry=is_safe_to_resend,
        )

    def _check_size(self, operation: BulkOperation, count: int) -> None:
        if count > self._max_items:
            raise ValueError(
                f"bulk {operation} size {count} exceeds maximum of {self._max_items}"
            )

    async def _bulk_update(
        self, task_ids: list[int], payload: dict[str, object]
    ) -> BulkOperationSummary[dict[str, object]] | None:
        breaker_name = BreakerName.BULK_OPERATIONS
        policy = replace(
            self.retry_policy_for(breaker_name), should_retry=is_retryable_error
        )
        started = time.monotonic()
        try:
            with bound_log_context(
                bulk_operation=str(BulkOperation.UPDATE), breaker=str(breaker_name)
            ):
                tasks = await guarded_call(
                    self._registry,
                    breaker_name,
                    lambda: self._api.bulk_update_tasks(task_ids, payload),
                    policy,
                )
        except Exception as exc:
            log_warning(
                _logger,
                "bulk.update_fallback",
                total=len(task_ids),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

        if {task.get("id") for task in tasks} != set(task_ids):
            log_warning(
                _logger,
                "bulk.update_fallback",
                total=len(task_ids),
                error_type="UnexpectedBulkResponse",
                error="returned tasks do not match the requested ids",
            )
            return None

        duration = time.monotonic() - started
        count = len(task_ids)
        metrics = BatchMetrics(
            total_items=count,
            total_batches=1,
            total_duration=duration,
            average_batch_duration=duration,
            successful_operations=count,
            failed_operations=0,
            operations_per_second=count / duration if duration > 0 else 0.0,
            peak_concurrency=1,
        )
        log_info(
            _logger,
            "bulk.completed",
            operation=str(BulkOperation.UPDATE),
            total=count,
            bulk_endpoint=True,
        )
        return BulkOperationSummary(
            operation=BulkOperation.UPDATE,
            total=count,
            succeeded=tasks,
            failed=[],
            metrics=metrics,
        )

    async def _run(
        self,
        operation: BulkOperation,
        breaker_name: str,
        items: list[T],
        call: Callable[[T], Awaitable[R]],
        *,
        item_id: Callable[[T], Hashable],
        should_retry: RetryPredicate,
    ) -> BulkOperationSummary[R]:
        self._check_size(operation, len(items))
        policy = replace(self.retry_policy_for(breaker_name), should_retry=should_retry)
        processor = self.processor_for(operation)

        async def _guarded(item: T) -> R:
            return await guarded_call(
                self._registry, breaker_name, lambda: call(item), policy
            )

        with bound_log_context(
            bulk_operation=str(operation), breaker=str(breaker_name)
        ):
            result = await processor.process_batches(items, _guarded)
        failed = [
            BulkItemError(
                item_id=item_id(failure.original_item),
                error_type=type(failure.error).__name__,
                message=str(failure.error),
                details=(
                    failure.error.as_details()
                    if isinstance(failure.error, CircuitOpenError)
                    else None
                ),
            )
            for failure in result.failed
        ]
        summary = BulkOperationSummary(
            operation=operation,
            total=len(items),
            succeeded=result.successful,
            failed=failed,
            metrics=result.metrics,
        )

        if failed:
            log_warning(
                _logger,
                "bulk.completed_with_failures",
                operation=str(operation),
                total=summary.total,
                succeeded=summary.succeeded_count,
                failed=summary.failed_count,
                failed_ids=summary.failed_ids,
            )
        else:
            log_info(
                _logger,
                "bulk.completed",
                operation=str(operation),
                total=summary.total,
            )
        return summary
