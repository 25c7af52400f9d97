"""Shared error types and failure classification for taskmcp_core."""

from __future__ import annotations

import re

import httpx

_AUTH_STATUSES = frozenset({401, 403})
_AUTH_MESSAGE_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^unauthorized[!.]*$",
        r"^forbidden[!.]*$",
        r"^unauthorized\s+\w+[!.]*$",
        r"^forbidden\s+\w+[!.]*$",
        r"^\w+\s+forbidden[!.]*$",
        r"^\w+\s+unauthorized[!.]*$",
        r"\bauthentication\s+failed\b",
        r"\bauthentication\s+required\b",
        r"\bnot\s+authenticated\b",
        r"\binvalid\s+token\b",
        r"\btoken\s+invalid\b",
        r"\btoken\s+expired\b",
        r"\baccess\s+denied\b",
        r"\bauth\s+failed\b",
        r"\bauth_required\b",
        r"\btoken_invalid\b",
        r"^401\b",
        r"^403\b",
        r"\berror:\s*401\b",
        r"\berror:\s*403\b",
    )
)
_TRANSIENT_MESSAGE_MARKERS = (
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "connection reset",
    "socket hang up",
    "socket closed",
    "network",
)


class TransientError(RuntimeError):
    """Generic retry-safe transient dependency failure."""


def _status_of(error: BaseException) -> int | None:
    for attribute in ("status_code", "http_status", "status"):
        value = getattr(error, attribute, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def is_authentication_error(error: BaseException) -> bool:
    """Return true when ``error`` signals a 401/403-class auth failure."""
    if _status_of(error) in _AUTH_STATUSES:
        return True
    message = str(error).strip()
    return any(pattern.search(message) for pattern in _AUTH_MESSAGE_PATTERNS)


def is_transient_error(error: BaseException) -> bool:
    """Return true for timeouts, dropped connections and similar blips."""
    if isinstance(error, (TransientError, httpx.TransportError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS)


def is_retryable_error(error: BaseException) -> bool:
    """Default retry predicate: authentication-class or transient failures."""
    return is_authentication_error(error) or is_transient_error(error)


def is_request_not_sent(error: BaseException) -> bool:
    """Return true only when the request provably never reached the server.

    This is the sole predicate that is safe for non-idempotent operations.
    A wrapped cause (``raise ... from exc``) is inspected as well.
    """
    current: BaseException | None = error
    while current is not None:
        if isinstance(current, (httpx.ConnectError, httpx.ConnectTimeout)):
            return True
        current = current.__cause__
    return False


def is_safe_to_resend(error: BaseException) -> bool:
    """Retry predicate for non-idempotent calls such as create or delete.

    True only when the server cannot have applied the request: it never
    arrived, or it was turned away at authentication.
    """
    return is_request_not_sent(error) or is_authentication_error(error)
