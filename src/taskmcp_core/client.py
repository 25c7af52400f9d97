from __future__ import annotations

from collections.abc import Sequence
from typing import cast

import httpx

from taskmcp_core.errors import TransientError

RETRY_STATUSES = {408, 429, 500, 502, 503, 504}
AUTH_STATUSES = {401, 403}


class TaskApiError(RuntimeError):
    """Base exception for remote task API failures."""

    def __init__(
        self,
        message: str,
        http_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        """Initialize request-error metadata.

        Args:
            message: Human-readable error message.
            http_status: Optional HTTP status returned by the API.
            response_body: Optional response payload text.
        """
        super().__init__(message)
        self.http_status = http_status
        self.response_body = response_body


class TaskApiTransientError(TaskApiError, TransientError):
    """Raised for retryable task API failures."""


class TaskApiAuthError(TaskApiError):
    """Raised when the API rejects the session credentials."""


class TaskApiNotFoundError(TaskApiError):
    """Raised when the addressed task, project or user does not exist."""


class TaskApiClient:
    """Thin async wrapper over the task API REST endpoints.

    Every method performs exactly one HTTP request; retries and circuit
    breaking are layered on by callers.
    """

    def __init__(self, *, client: httpx.AsyncClient, base_url: str, token: str) -> None:
        """Create a client bound to one API base URL.

        Args:
            client: Shared async HTTP client.
            base_url: API root, for example ``https://tasks.example.com/api/v1``.
            token: Bearer token sent with every request.
        """
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"}

    async def create_task(
        self, project_id: int, payload: dict[str, object]
    ) -> dict[str, object]:
        """Create one task in ``project_id``."""
        response = await self._request(
            "PUT", f"/projects/{project_id}/tasks", json=payload
        )
        return self._parse_json_object(response)

    async def get_task(self, task_id: int) -> dict[str, object]:
        response = await self._request("GET", f"/tasks/{task_id}")
        return self._parse_json_object(response)

    async def update_task(
        self, task_id: int, payload: dict[str, object]
    ) -> dict[str, object]:
        """Update fields of one task."""
        response = await self._request("POST", f"/tasks/{task_id}", json=payload)
        return self._parse_json_object(response)

    async def bulk_update_tasks(
        self, task_ids: Sequence[int], payload: dict[str, object]
    ) -> list[dict[str, object]]:
        """Apply the same field values to several tasks in one request.

        Returns the updated tasks as reported by the server.
        """
        response = await self._request(
            "POST", "/tasks/bulk", json={**payload, "task_ids": list(task_ids)}
        )
        return self._parse_json_object_list(response)

    async def delete_task(self, task_id: int) -> None:
        await self._request("DELETE", f"/tasks/{task_id}")

    async def assign_users(
        self, task_id: int, user_ids: Sequence[int]
    ) -> dict[str, object]:
        """Add several assignees to one task in a single request."""
        response = await self._request(
            "PUT",
            f"/tasks/{task_id}/assignees/bulk",
            json={"assignees": [{"id": user_id} for user_id in user_ids]},
        )
        return self._parse_json_object(response)

    async def remove_assignee(self, task_id: int, user_id: int) -> None:
        await self._request("DELETE", f"/tasks/{task_id}/assignees/{user_id}")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, object] | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(
                method, url, json=json, headers=self._headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._raise_for_http_status(exc)
        except httpx.RequestError as exc:
            raise TaskApiTransientError(str(exc) or type(exc).__name__) from exc
        return response

    @staticmethod
    def _raise_for_http_status(exc: httpx.HTTPStatusError) -> None:
        status = exc.response.status_code
        response_body = exc.response.text
        message = f"{exc.request.method} {exc.request.url.path} failed (HTTP {status})."
        if status in RETRY_STATUSES:
            raise TaskApiTransientError(
                message,
                http_status=status,
                response_body=response_body,
            ) from exc
        if status in AUTH_STATUSES:
            raise TaskApiAuthError(
                message,
                http_status=status,
                response_body=response_body,
            ) from exc
        if status == 404:
            raise TaskApiNotFoundError(
                message,
                http_status=status,
                response_body=response_body,
            ) from exc
        raise TaskApiError(
            message,
            http_status=status,
            response_body=response_body,
        ) from exc

    @staticmethod
    def _parse_json_object(response: httpx.Response) -> dict[str, object]:
        try:
            response_data = response.json()
        except ValueError as exc:
            raise TaskApiError(
                "Task API response is not valid JSON.",
                http_status=response.status_code,
                response_body=response.text,
            ) from exc

        if not isinstance(response_data, dict):
            raise TaskApiError(
                "Task API response is not a JSON object.",
                http_status=response.status_code,
                response_body=response.text,
            )
        return cast(dict[str, object], response_data)

    @staticmethod
    def _parse_json_object_list(response: httpx.Response) -> list[dict[str, object]]:
        try:
            response_data = response.json()
        except ValueError as exc:
            raise TaskApiError(
                "Task API response is not valid JSON.",
                http_status=response.status_code,
                response_body=response.text,
            ) from exc

        if not isinstance(response_data, list) or not all(
            isinstance(entry, dict) for entry in response_data
        ):
            raise TaskApiError(
                "Task API response is not a JSON array of objects.",
                http_status=response.status_code,
                response_body=response.text,
            )
        return cast(list[dict[str, object]], response_data)
