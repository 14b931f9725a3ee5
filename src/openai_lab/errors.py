"""Error taxonomy for API exchanges and orchestration conditions.

Transport failures are normalized exactly once, at the client boundary,
into an :class:`APIError` carrying one :class:`ErrorKind`.  Orchestration
conditions are never raised across the public API; they travel as the
``condition`` of a failed ``SendResult``.
"""

from __future__ import annotations

import asyncio
import enum
from typing import Any

import httpx


class ErrorKind(str, enum.Enum):
    NETWORK = "network"
    AUTH = "auth"
    VALIDATION = "validation"
    SERVER = "server"
    UNKNOWN = "unknown"


class Condition(str, enum.Enum):
    """Orchestration-level failure conditions."""

    NO_SESSION = "no-session"
    ALREADY_PROCESSING = "already-processing"
    RETRY_EXHAUSTED = "retry-exhausted"
    NOT_AN_ASSISTANT_MESSAGE = "not-an-assistant-message"
    NO_PRIOR_USER_TURN = "no-prior-user-turn"
    NOT_FOUND = "not-found"
    CANCELLED = "cancelled"


class APIError(Exception):
    """A normalized transport or server failure."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status: int | None = None,
        code: str = "",
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.code = code or (str(status) if status is not None else "")
        self.details = details

    def __repr__(self) -> str:
        return (
            f"APIError(kind={self.kind.value!r}, status={self.status!r}, "
            f"message={self.message!r})"
        )


class ExchangeCancelled(Exception):
    """Raised when an in-flight exchange is aborted via its token."""

    def __init__(self, request_id: str = "") -> None:
        super().__init__(f"Exchange {request_id or '<anonymous>'} was cancelled")
        self.request_id = request_id


def _body_message(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    err = data.get("error")
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    if isinstance(err, str) and err:
        return err
    if data.get("message"):
        return str(data["message"])
    return None


def _response_body(response: httpx.Response) -> Any:
    try:
        response.read()
    except (httpx.HTTPError, RuntimeError):
        # Stream already consumed or closed
        return None
    try:
        return response.json()
    except ValueError:
        return response.text or None


def from_response(response: httpx.Response) -> APIError:
    """Classify a non-2xx HTTP response."""
    status = response.status_code
    data = _response_body(response)
    body_msg = _body_message(data)

    if status in (401, 403):
        return APIError(
            ErrorKind.AUTH,
            "Invalid API key or insufficient permissions",
            status=status,
            details=data,
        )
    if status == 400:
        return APIError(
            ErrorKind.VALIDATION,
            body_msg or "Invalid request parameters",
            status=status,
            details=data,
        )
    if status >= 500:
        return APIError(
            ErrorKind.SERVER,
            "Server error, please try again later",
            status=status,
            details=data,
        )
    return APIError(
        ErrorKind.UNKNOWN,
        body_msg or f"Unexpected HTTP status {status}",
        status=status,
        details=data,
    )


def normalize_error(exc: BaseException) -> APIError:
    """Map any exception raised during an exchange to an :class:`APIError`.

    Order: no response -> network; 401/403 -> auth; 400 -> validation;
    >=500 -> server; anything else -> unknown.
    """
    if isinstance(exc, APIError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return from_response(exc.response)
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return APIError(
            ErrorKind.NETWORK,
            "Request timeout",
            code="TIMEOUT",
        )
    if isinstance(exc, httpx.TransportError):
        return APIError(
            ErrorKind.NETWORK,
            "Network error - please check your connection and API endpoint",
            code="NETWORK_ERROR",
            details=str(exc),
        )
    return APIError(
        ErrorKind.UNKNOWN,
        str(exc) or "An unknown error occurred",
        code="UNKNOWN_ERROR",
    )
