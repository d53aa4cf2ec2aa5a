"""
Custom exceptions for the cheque intake pipeline.
"""
from typing import Any, Dict, Optional


class ChequeIntakeException(Exception):
    """Base exception for all cheque intake errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception.

        Args:
            message: Error message
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ChequeIntakeException):
    """Raised when input shape, size or type is invalid. Never retried."""
    pass


class ConversionError(ChequeIntakeException):
    """Raised when an uploaded artifact cannot be normalized to an image."""
    pass


class ExtractionError(ChequeIntakeException):
    """Raised when the recognition gateway call fails."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message, details)
        self.retryable = retryable


class InvalidTransition(ChequeIntakeException):
    """Raised when a session or transaction status change is not allowed."""
    pass


class NotFoundError(ChequeIntakeException):
    """Raised when a session or transaction does not exist."""
    pass


class PersistenceError(ChequeIntakeException):
    """Raised when committing to the ledger fails."""
    pass


class ConfigurationError(ChequeIntakeException):
    """Raised when configuration is invalid."""
    pass
