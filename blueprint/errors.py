# blueprint/errors.py
"""
Typed errors for the model gateway and the export pipeline.

Gateway errors carry `retryable` so the retry loop never inspects messages.
Export errors carry an `E_*` code that the API returns verbatim.

Usage:
    try:
        text = gateway.generate(...)
    except GatewayError as e:
        if e.retryable: ...
"""

import datetime
from typing import Any, Dict, List, Optional

# Error codes returned in API bodies
E_VALIDATION = "E_VALIDATION"
E_NOT_FOUND = "E_NOT_FOUND"
E_FETCH = "E_FETCH"
E_GENERATION = "E_GENERATION"
E_SIZE_LIMIT = "E_SIZE_LIMIT"
E_STORAGE = "E_STORAGE"
E_INTERNAL = "E_INTERNAL"


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------
class GatewayError(Exception):
    """Base class for every error surfaced by the model gateway."""

    code = "MODEL_ERROR"
    retryable = True

    def __init__(self, message: str, detail: Any = None) -> None:
        super().__init__(message)
        self.detail = detail


class RateLimitedError(GatewayError):
    code = "RATE_LIMIT"
    retryable = True

    def __init__(self, message: str, reset_at: Optional[datetime.datetime] = None,
                 retry_after: Optional[float] = None, detail: Any = None) -> None:
        super().__init__(message, detail)
        self.reset_at = reset_at
        self.retry_after = retry_after


class GatewayTimeoutError(GatewayError):
    code = "TIMEOUT"
    retryable = True


class InvalidCredentialsError(GatewayError):
    code = "INVALID_API_KEY"
    retryable = False


class ProviderValidationError(GatewayError):
    code = "VALIDATION_ERROR"
    retryable = False


class ProviderError(GatewayError):
    """Generic provider failure. `status` is the HTTP status when the provider returned one."""

    code = "MODEL_ERROR"

    def __init__(self, message: str, status: Optional[int] = None,
                 retryable: bool = True, detail: Any = None) -> None:
        super().__init__(message, detail)
        self.status = status
        self.retryable = retryable


def error_for_status(status: Optional[int], message: str, detail: Any = None,
                     retry_after: Optional[float] = None) -> GatewayError:
    """Classify an HTTP-class provider failure."""
    if status in (401, 403):
        return InvalidCredentialsError(message or "Invalid API key", detail)
    if status == 429:
        return RateLimitedError(message or "Provider rate limit exceeded",
                                retry_after=retry_after, detail=detail)
    if status is not None and status >= 500:
        return ProviderError(message, status=status, retryable=True, detail=detail)
    if status is not None and 400 <= status < 500:
        return ProviderValidationError(message, detail)
    return ProviderError(message, status=status, retryable=True, detail=detail)


# ---------------------------------------------------------------------------
# Export pipeline
# ---------------------------------------------------------------------------
class ExportError(Exception):
    code = E_INTERNAL

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"status": "error", "error_code": self.code, "message": self.message}


class ExportValidationError(ExportError):
    """Request rejected before any ExportRecord exists."""

    code = E_VALIDATION

    def __init__(self, message: str, errors: Optional[List[str]] = None,
                 warnings: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]
        self.warnings = warnings or []

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["details"] = {"errors": self.errors, "warnings": self.warnings}
        return body


class SessionNotFoundError(ExportError):
    code = E_NOT_FOUND

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found or access denied")
        self.resource_type = resource_type
        self.identifier = identifier


class GenerationError(ExportError):
    code = E_GENERATION


class SizeLimitError(GenerationError):
    code = E_SIZE_LIMIT


class StorageError(ExportError):
    code = E_STORAGE


class FetchError(ExportError):
    """Session data could not be loaded; raised before any ExportRecord exists."""

    code = E_FETCH
