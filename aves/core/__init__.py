from .clock import utcnow
from .errors import (
    AvesError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from .locks import KeyedLocks

__all__ = [
    "AvesError",
    "ConflictError",
    "ExternalServiceError",
    "KeyedLocks",
    "NotFoundError",
    "RateLimitError",
    "ValidationError",
    "utcnow",
]
