from __future__ import annotations

from dataclasses import dataclass
from types import TracebackType

import httpx

from taskmcp_core.batch import BatchProcessor
from taskmcp_core.bulk import (
    BULK_RETRY_POLICIES,
    BulkTaskOperations,
    build_bulk_processors,
)
from taskmcp_core.circuit_breaker import CallStatsListener, CircuitBreakerRegistry
from taskmcp_core.client import TaskApiClient
from taskmcp_core.logging import configure_structlog
from taskmcp_core.settings import ResilienceSettings


@dataclass
class TaskRuntime:
    """Process-scoped wiring shared by every tool handler.

    ``processor`` and the settings retry policy serve bulk operations that
    have no preset. Creates and deletes get their own batch presets. Assignee
    changes and the bulk update endpoint get their own retry policies.
    """

    settings: ResilienceSettings
    registry: CircuitBreakerRegistry
    call_stats: CallStatsListener
    processor: BatchProcessor
    http_client: httpx.AsyncClient
    api: TaskApiClient
    bulk: BulkTaskOperations
    _owns_http_client: bool = True

    @classmethod
    def build(
        cls,
        settings: ResilienceSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
        configure_logging: bool = True,
    ) -> TaskRuntime:
        """Build the runtime once at startup.

        Args:
            settings: Loaded environment settings.
            http_client: Optional pre-built client; the runtime then leaves
                closing it to the caller.
            configure_logging: Configure structlog from ``settings.log_level``.
        """
        if configure_logging:
            configure_structlog(
                log_level=settings.log_level, service_name=settings.service_name
            )

        owns_http_client = http_client is None
        client = httpx.AsyncClient() if http_client is None else http_client
        call_stats = CallStatsListener()
        registry = CircuitBreakerRegistry(
            default_config=settings.breaker_config(), listeners=[call_stats]
        )
        processor = BatchProcessor(settings.batch_options())
        api = TaskApiClient(
            client=client,
            base_url=settings.api_url,
            token=settings.api_token,
        )
        bulk = BulkTaskOperations(
            api=api,
            registry=registry,
            processor=processor,
            processors=build_bulk_processors(),
            retry_policy=settings.retry_policy(),
            retry_policies=BULK_RETRY_POLICIES,
        )
        return cls(
            settings=settings,
            registry=registry,
            call_stats=call_stats,
            processor=processor,
            http_client=client,
            api=api,
            bulk=bulk,
            _owns_http_client=owns_http_client,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> TaskRuntime:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.aclose()
