"""Error taxonomy shared by every command.

Two error types cross module boundaries:
- UpstreamError: raised by the transport for any non-2xx Notion response,
  tagged with a StatusClass so callers never branch on raw status codes.
- CliError: the single user-visible failure, rendered into the error envelope.
"""

from enum import Enum
from typing import Any, Optional

import httpx


class ErrorCode(str, Enum):
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RETRYABLE_UPSTREAM = "retryable_upstream"
    AUTH_OR_CONFIG = "auth_or_config"
    INTERNAL_ERROR = "internal_error"


EXIT_CODE_BY_ERROR = {
    ErrorCode.INVALID_INPUT: 2,
    ErrorCode.NOT_FOUND: 3,
    ErrorCode.CONFLICT: 4,
    ErrorCode.RETRYABLE_UPSTREAM: 5,
    ErrorCode.AUTH_OR_CONFIG: 6,
    ErrorCode.INTERNAL_ERROR: 1,
}


class CliError(Exception):
    """A structured, user-visible failure."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        retryable: bool = False,
        details: Any = None,
    ):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.retryable = retryable
        self.details = details

    def to_dict(self) -> dict:
        payload: dict = {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload

    def __repr__(self) -> str:
        return f"CliError({self.code.value!r}, {self.message!r})"


# =============================================================================
# Upstream (Notion API) errors
# =============================================================================

class StatusClass(str, Enum):
    CLIENT_ERROR = "client_error"
    AUTH_ERROR = "auth_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"


# 5xx statuses that mean "upstream unavailable" rather than "upstream broke"
UNAVAILABLE_STATUSES = {502, 503, 504}


def classify_status(status: int) -> StatusClass:
    """Map an HTTP status to its StatusClass."""
    if status == 429:
        return StatusClass.RATE_LIMITED
    if status in (401, 403):
        return StatusClass.AUTH_ERROR
    if status == 404:
        return StatusClass.NOT_FOUND
    if status == 409:
        return StatusClass.CONFLICT
    if status >= 500:
        return StatusClass.SERVER_ERROR
    return StatusClass.CLIENT_ERROR


def _parse_retry_after(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class UpstreamError(Exception):
    """A non-2xx response from the Notion API."""

    def __init__(
        self,
        status: int,
        status_class: StatusClass,
        message: str = "",
        code: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message or f"HTTP {status}")
        self.status = status
        self.status_class = status_class
        self.message = message
        self.code = code
        self.retry_after = retry_after

    def __str__(self) -> str:
        return f"HTTP {self.status} {self.code or self.status_class.value}: {self.message}"

    @property
    def is_transient(self) -> bool:
        """Whether the transport may retry this failure."""
        if self.status_class is StatusClass.RATE_LIMITED:
            return True
        return self.status in UNAVAILABLE_STATUSES

    @classmethod
    def from_status(
        cls,
        status: int,
        message: str = "",
        code: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> "UpstreamError":
        return cls(
            status=status,
            status_class=classify_status(status),
            message=message,
            code=code,
            retry_after=retry_after,
        )

    @classmethod
    def from_response(cls, response: httpx.Response) -> "UpstreamError":
        """Build from an httpx response, reading Notion's error body if present."""
        code = None
        message = ""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code")
            message = body.get("message") or ""
        if not message:
            message = response.text[:300]
        return cls.from_status(
            response.status_code,
            message=message,
            code=code,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )

    def to_details(self) -> dict:
        details: dict = {"status": self.status, "status_class": self.status_class.value}
        if self.code:
            details["upstream_code"] = self.code
        if self.message:
            details["upstream_message"] = self.message
        return details


_CLI_ERROR_BY_STATUS_CLASS = {
    StatusClass.CLIENT_ERROR: (
        ErrorCode.INVALID_INPUT, "Upstream rejected the request as invalid.", False),
    StatusClass.AUTH_ERROR: (
        ErrorCode.AUTH_OR_CONFIG,
        "Authentication failed. Check the API token and integration permissions.", False),
    StatusClass.NOT_FOUND: (
        ErrorCode.NOT_FOUND, "Requested Notion resource was not found.", False),
    StatusClass.CONFLICT: (
        ErrorCode.CONFLICT, "Upstream rejected the request due to a conflict.", False),
    StatusClass.RATE_LIMITED: (
        ErrorCode.RETRYABLE_UPSTREAM, "Notion API is rate limiting requests.", True),
    StatusClass.SERVER_ERROR: (
        ErrorCode.RETRYABLE_UPSTREAM, "Notion API is temporarily unavailable.", True),
}


def to_cli_error(error: BaseException) -> CliError:
    """Normalize any exception into a CliError."""
    if isinstance(error, CliError):
        return error

    if isinstance(error, UpstreamError):
        code, message, retryable = _CLI_ERROR_BY_STATUS_CLASS[error.status_class]
        return CliError(code, message, retryable=retryable, details=error.to_details())

    if isinstance(error, httpx.TimeoutException):
        return CliError(
            ErrorCode.RETRYABLE_UPSTREAM,
            "Request to Notion API timed out.",
            retryable=True,
            details={"error": type(error).__name__},
        )

    if isinstance(error, httpx.TransportError):
        return CliError(
            ErrorCode.RETRYABLE_UPSTREAM,
            f"Could not reach Notion API: {error}",
            retryable=True,
            details={"error": type(error).__name__},
        )

    return CliError(
        ErrorCode.INTERNAL_ERROR,
        str(error) or "Unexpected error.",
        details={"error": type(error).__name__},
    )
