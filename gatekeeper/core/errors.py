"""Application-level exception types.

This module defines the error taxonomy shared by the admission engine, its
storage adapters and the HTTP layer, enabling consistent degradation,
logging and API responses.

Propagation policy:
- Infrastructure failures (StoreUnavailableError) are absorbed by services,
  which degrade to "allow" rather than failing the request.
- Validation failures propagate unchanged to the caller.
- Configuration failures are fatal at startup.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    code: str
    message: str
    hint: str
    field: str
    store: str
    operation: str
    entity_type: str
    http_status: int
    retry_after: int
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when a block/unblock request or other input is malformed."""


class AuthenticationAppError(AppError):
    """Raised when a bearer credential cannot be verified."""


class ConfigurationError(AppError):
    """Raised at startup when thresholds or limits are missing/invalid."""


class InvalidIdentityError(AppError):
    """Raised when an IP address or CIDR range is structurally invalid."""


class StoreUnavailableError(AppError):
    """Raised by storage adapters when the backing service is unreachable."""


@dataclass
class AdmissionDeniedError(AppError):
    """Raised by the HTTP layer when the admission engine denies a request.

    Attributes:
        status_code: 403 for deny-listed addresses, 429 for throttling/blocks.
        retry_after: Seconds the client should wait before retrying.
        headers: Rate limit headers to attach to the error response.
    """

    status_code: int = 429
    retry_after: int | None = None
    headers: dict[str, str] = field(default_factory=dict)
