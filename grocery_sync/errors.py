"""Typed API errors and HTTP failure classification.

Every failure leaving the transport is an ``ApiError`` carrying exactly one
``ErrorKind``. Layers above the transport (refresh gate, retry policy,
mutation orchestrator) branch on ``kind`` only and never look at raw status
codes again.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

import httpx

NETWORK_ERROR_MESSAGE = "Network error. Please check your connection."
SESSION_EXPIRED_MESSAGE = "Authentication expired. Please log in again."


class ErrorKind(StrEnum):
    """Failure categories surfaced to callers."""

    NETWORK = "network"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


_STATUS_KINDS: dict[int, ErrorKind] = {
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    409: ErrorKind.CONFLICT,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMITED,
}


class ApiError(Exception):
    """A normalized API failure.

    Attributes:
        message: Human-readable description.
        kind: The failure category.
        status_code: HTTP status, when a response was received.
        code: Machine-readable error code from the response body, if any.
        payload: Parsed response body, if any.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        status_code: int | None = None,
        code: str | None = None,
        payload: Any = None,
    ) -> None:
        """Initialize the error.

        Args:
            message: Human-readable description.
            kind: The failure category.
            status_code: HTTP status, when a response was received.
            code: Machine-readable error code, if any.
            payload: Parsed response body, if any.
        """
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.code = code
        self.payload = payload

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value!r}, "
            f"status_code={self.status_code!r}, message={self.message!r})"
        )


class SessionExpiredError(ApiError):
    """Raised to every waiting caller when the session cannot be refreshed."""

    def __init__(self, message: str = SESSION_EXPIRED_MESSAGE) -> None:
        """Initialize with the shared session-expired message.

        Args:
            message: Human-readable description.
        """
        super().__init__(message, kind=ErrorKind.UNAUTHORIZED, code="SESSION_EXPIRED")


def classify_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code to an error kind.

    Args:
        status_code: HTTP response status.

    Returns:
        The matching ErrorKind (UNKNOWN for unlisted statuses).
    """
    if status_code >= 500:
        return ErrorKind.SERVER
    return _STATUS_KINDS.get(status_code, ErrorKind.UNKNOWN)


def error_from_response(response: httpx.Response) -> ApiError:
    """Build an ApiError from a failed HTTP response.

    Reads ``message`` (or ``detail``) and ``code`` from a JSON body when
    present; falls back to the reason phrase otherwise.

    Args:
        response: The non-2xx response.

    Returns:
        ApiError classified by status code.
    """
    payload = _parse_body(response)
    message = ""
    code = None
    if isinstance(payload, dict):
        message = _message_from_body(payload)
        raw_code = payload.get("code")
        code = str(raw_code) if raw_code is not None else None
    if not message:
        message = response.reason_phrase or f"HTTP {response.status_code}"
    return ApiError(
        message,
        kind=classify_status(response.status_code),
        status_code=response.status_code,
        code=code,
        payload=payload,
    )


def _parse_body(response: httpx.Response) -> Any:
    """Parse a response body as JSON, falling back to text.

    Args:
        response: HTTP response.

    Returns:
        Parsed JSON, the raw text, or None for an empty body.
    """
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _message_from_body(body: dict[str, Any]) -> str:
    """Extract a message from an error body.

    FastAPI-style validation errors put a list under ``detail``; the first
    entry's ``msg`` is used in that case.

    Args:
        body: Parsed JSON error body.

    Returns:
        The message, or an empty string.
    """
    message = body.get("message") or body.get("detail")
    if isinstance(message, list) and message:
        first = message[0]
        if isinstance(first, dict):
            return str(first.get("msg", first))
        return str(first)
    return str(message) if message else ""
