"""
errors.py - Exception hierarchy.

Document-level failures propagate as OptimizerError subclasses; page-level
failures are absorbed by the scheduler.
"""

from enum import Enum
from typing import Optional


class OptimizerError(Exception):
    """Base exception for the optimizer."""
    pass


class AccessDeniedError(OptimizerError):
    """Raised when the source or destination cannot be accessed."""
    pass


class InvalidInputError(OptimizerError):
    """Raised for malformed, empty or unsupported input."""

    def __init__(self, message: str, reason: str = "malformed"):
        super().__init__(message)
        self.reason = reason


class EncryptedInputError(OptimizerError):
    """Raised when the input PDF needs a password."""
    pass


class ResourceKind(Enum):
    MEMORY = "memory"
    FILE_TOO_LARGE = "file_too_large"
    TIMEOUT = "timeout"


class ResourceExhaustedError(OptimizerError):
    """Raised when memory, size or time limits are hit."""

    def __init__(self, kind: ResourceKind, message: Optional[str] = None):
        super().__init__(message or f"Resource exhausted: {kind.value}")
        self.kind = kind


class PageFailureError(OptimizerError):
    """Raised when a single page cannot be processed."""

    def __init__(self, index: int, message: Optional[str] = None):
        super().__init__(message or f"Page {index} failed")
        self.index = index


class CompressionCancelled(OptimizerError):
    """Raised when a cancellation request is observed."""
    pass


class UnknownError(OptimizerError):
    """Wraps an unexpected exception."""

    def __init__(self, cause: BaseException):
        super().__init__(f"Unexpected failure: {cause}")
        self.cause = cause
