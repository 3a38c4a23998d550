"""
Error taxonomy for the learning engine.

Philosophy:
- Validation and not-found errors surface immediately and are never retried
- External-service errors are retried by the caller that owns the retry budget
- Rate limits are a distinct external error so callers can back off longer
"""

from __future__ import annotations

from typing import Any


class AvesError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API/CLI error output."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(AvesError):
    """Malformed input (review quality, generated payload, bounding box)."""


class NotFoundError(AvesError):
    """Unknown term or annotation."""


class ConflictError(AvesError):
    """Concurrent update collision or invalid state transition."""


class ExternalServiceError(AvesError):
    """Generation service failed; content is unavailable, retry later."""


class RateLimitError(ExternalServiceError):
    """Upstream quota exceeded."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.retry_after = retry_after
        if retry_after is not None:
            self.details.setdefault("retry_after", retry_after)
