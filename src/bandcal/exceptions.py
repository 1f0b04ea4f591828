"""
Error taxonomy for the availability core.

Store errors describe what went wrong at the backend boundary; the
remaining errors describe what the core could not do for its caller.
Each carries a short machine-readable ``code`` and optional ``details``
so view code can pick a user-facing message without string matching.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BandcalError(Exception):
    """Base exception for all availability-core errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class StoreError(BandcalError):
    """Base error for backend request failures."""


class StoreAuthError(StoreError):
    """Raised when the backend rejects authentication."""


class StoreNotFoundError(StoreError):
    """Raised when a backend resource (or bandmate token) is not found."""


class StoreConnectionError(StoreError):
    """Raised when the backend cannot be reached."""


class StoreRequestError(StoreError):
    """Raised for non-auth backend errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


class TransientFetchError(BandcalError):
    """Raised when a read failed; the next poll or verification attempt retries it."""


class PersistError(BandcalError):
    """Raised when one or more writes failed; unsaved edits are kept."""


class VerificationTimeout(BandcalError):
    """Raised when writes reported success but could not be read back in time."""


class DegradedAggregation(BandcalError):
    """Raised by callers that refuse to show availability without bandmate input."""
