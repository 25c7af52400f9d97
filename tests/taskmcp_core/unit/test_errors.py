import httpx
import pytest

from taskmcp_core.errors import (
    TransientError,
    is_authentication_error,
    is_request_not_sent,
    is_retryable_error,
    is_safe_to_resend,
    is_transient_error,
)


class _StatusError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


def _http_status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://tasks.example.com/api/v1/tasks/1")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("failed", request=request, response=response)


@pytest.mark.parametrize(
    "message",
    [
        "Unauthorized",
        "forbidden!",
        "Unauthorized request",
        "Access forbidden",
        "Authentication failed for user",
        "invalid token supplied",
        "Token expired at 10:00",
        "access denied",
        "AUTH_REQUIRED",
        "401 from upstream",
        "Error: 403",
    ],
)
def test_authentication_error_matches_messages(message: str) -> None:
    assert is_authentication_error(RuntimeError(message)) is True


@pytest.mark.parametrize(
    "message",
    [
        "Task not found",
        "the token field is required for forbidden fruit entries",
        "response contained 4011 rows",
    ],
)
def test_authentication_error_ignores_unrelated_messages(message: str) -> None:
    assert is_authentication_error(RuntimeError(message)) is False


@pytest.mark.parametrize("status", [401, 403])
def test_authentication_error_uses_status_attributes(status: int) -> None:
    assert is_authentication_error(_StatusError("nope", status)) is True
    assert is_authentication_error(_http_status_error(status)) is True


def test_authentication_error_ignores_other_statuses() -> None:
    assert is_authentication_error(_StatusError("nope", 404)) is False
    assert is_authentication_error(_http_status_error(500)) is False


@pytest.mark.parametrize(
    "error",
    [
        TransientError("upstream hiccup"),
        httpx.ReadTimeout("read timed out"),
        httpx.ConnectError("refused"),
        RuntimeError("ETIMEDOUT"),
        RuntimeError("socket hang up"),
        RuntimeError("Network is unreachable"),
        OSError("Connection reset by peer"),
    ],
)
def test_transient_error_classification(error: BaseException) -> None:
    assert is_transient_error(error) is True
    assert is_retryable_error(error) is True


@pytest.mark.parametrize(
    "error",
    [
        ValueError("bad input"),
        KeyError("id"),
        RuntimeError("Task not found"),
    ],
)
def test_non_retryable_errors(error: BaseException) -> None:
    assert is_transient_error(error) is False
    assert is_retryable_error(error) is False


def test_retryable_error_includes_authentication_failures() -> None:
    assert is_retryable_error(RuntimeError("Unauthorized")) is True


def test_request_not_sent_follows_cause_chain() -> None:
    cause = httpx.ConnectError("refused")
    wrapper = TransientError("POST /tasks failed")
    wrapper.__cause__ = cause

    assert is_request_not_sent(cause) is True
    assert is_request_not_sent(wrapper) is True
    assert is_request_not_sent(httpx.ConnectTimeout("slow")) is True


def test_request_not_sent_rejects_errors_after_send() -> None:
    wrapper = TransientError("POST /tasks failed")
    wrapper.__cause__ = httpx.ReadTimeout("no response")

    assert is_request_not_sent(wrapper) is False
    assert is_request_not_sent(RuntimeError("timeout")) is False


def test_safe_to_resend_allows_unsent_and_auth_rejected_requests() -> None:
    assert is_safe_to_resend(httpx.ConnectError("refused")) is True
    assert is_safe_to_resend(_StatusError("nope", 401)) is True
    assert is_safe_to_resend(httpx.ReadTimeout("no response")) is False
    assert is_safe_to_resend(_StatusError("boom", 503)) is False
