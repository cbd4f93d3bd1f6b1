"""Failure taxonomy for CRM calls."""

from __future__ import annotations


class CrmError(RuntimeError):
    """Base exception for CRM client failures."""

    def __init__(self, message: str, *, status_code: int | None = None, operation: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation


class CrmTransientError(CrmError):
    """Raised for failures that may succeed on retry (timeouts, 429, 5xx)."""


class CrmPermanentError(CrmError):
    """Raised when the CRM rejects a request and retrying cannot help."""


class CrmNotFoundError(CrmPermanentError):
    """Raised when the referenced CRM resource does not exist."""


def is_retryable(error: BaseException) -> bool:
    """Return whether a failure should be retried by the sync queue."""

    if isinstance(error, CrmPermanentError):
        return False
    return isinstance(error, (CrmTransientError, TimeoutError, ConnectionError))


__all__ = [
    "CrmError",
    "CrmNotFoundError",
    "CrmPermanentError",
    "CrmTransientError",
    "is_retryable",
]
