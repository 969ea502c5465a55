from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


class AppError(Exception):
    """Base for errors that map onto an HTTP status and a JSON error body."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {"success": False, "error": self.message}

    def headers(self) -> dict[str, str]:
        return {}


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"

    def __init__(self, errors: list[FieldError]) -> None:
        super().__init__("; ".join(f"{e.field}: {e.message}" for e in errors) or None)
        self.errors = errors

    def to_payload(self) -> dict[str, Any]:
        return {"success": False, "errors": [asdict(e) for e in self.errors]}


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class RateLimitExceeded(AppError):
    status_code = 429
    default_message = "Too many requests, please try again later."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    def to_payload(self) -> dict[str, Any]:
        return {"success": False, "error": self.message, "retryAfter": self.retry_after}

    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class PayloadTooLarge(AppError):
    status_code = 413
    default_message = "Request body too large"


class InternalError(AppError):
    """Unexpected failure. The caller only ever sees the generic message."""

    status_code = 500

    def __init__(self) -> None:
        super().__init__(self.default_message)
