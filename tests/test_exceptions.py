"""
Unit tests for custom exceptions.
"""
from core.exceptions import (
    ChequeIntakeException,
    ConfigurationError,
    ConversionError,
    ExtractionError,
    InvalidTransition,
    NotFoundError,
    PersistenceError,
    ValidationError,
)


def test_base_exception():
    """Test base exception class."""
    exc = ChequeIntakeException("Test error", details={"key": "value"})
    assert str(exc) == "Test error"
    assert exc.message == "Test error"
    assert exc.details == {"key": "value"}


def test_exception_hierarchy():
    """Test exception inheritance."""
    for cls in (
        ValidationError,
        ConversionError,
        ExtractionError,
        InvalidTransition,
        NotFoundError,
        PersistenceError,
        ConfigurationError,
    ):
        assert issubclass(cls, ChequeIntakeException)


def test_exception_with_details():
    """Test exception with details dictionary."""
    details = {"session_key": "abc", "state": "failed"}
    exc = PersistenceError("Commit failed", details=details)
    assert exc.message == "Commit failed"
    assert exc.details["session_key"] == "abc"
    assert exc.details["state"] == "failed"


def test_exception_without_details():
    """Test exception without details."""
    exc = InvalidTransition("cancelled")
    assert exc.message == "cancelled"
    assert exc.details == {}


def test_extraction_error_retryable_flag():
    assert ExtractionError("timeout", retryable=True).retryable is True
    assert ExtractionError("bad json").retryable is False
