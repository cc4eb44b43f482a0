"""
Custom exceptions for the SMS expense pipeline.

Ingestion errors are raised back to the caller. Classifier and store errors
are caught by the message processor and recorded on the raw message.
"""
from typing import Any, Dict, Optional


class ExpenseTrackerException(Exception):
    """Base exception for all expense pipeline errors."""

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


class AuthError(ExpenseTrackerException):
    """Raised when no authenticated caller identity is present."""
    pass


class IdentityMismatchError(ExpenseTrackerException):
    """Raised when the caller-supplied uid differs from the verified identity."""
    pass


class ValidationError(ExpenseTrackerException):
    """Raised when input or transaction data fails validation."""
    pass


class ConfigurationError(ExpenseTrackerException):
    """Raised when configuration is invalid."""
    pass


class StoreError(ExpenseTrackerException):
    """Raised when the message or expense store cannot be read or written."""
    pass


class DataNotFoundError(ExpenseTrackerException):
    """Raised when a requested record does not exist."""
    pass


class LLMError(ExpenseTrackerException):
    """Base class for classification service failures."""
    pass


class ClassifierTransportError(LLMError):
    """Network error, timeout or non-2xx response from the classifier."""
    pass


class EmptyResponseError(LLMError):
    """Classifier answered but the response carried no content."""
    pass


class SchemaParseError(LLMError):
    """Classifier content is not a parseable JSON object."""
    pass


class SchemaValidationError(LLMError):
    """Classifier flagged a transaction but omitted required fields."""
    pass
