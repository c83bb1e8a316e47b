"""
Custom exception classes and error handling utilities.
"""

from typing import Optional, Dict, Any
import traceback


class BatchEngineError(Exception):
    """Base exception for all batch engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransientError(BatchEngineError):
    """Failure expected to succeed if the identical call is retried."""
    pass


class DeadlineExceededError(TransientError):
    """Raised by an execution function when its own deadline expires."""
    pass


class RateLimitedError(TransientError):
    """Remote service asked the caller to slow down."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.retry_after = retry_after


class PermanentError(BatchEngineError):
    """Failure that will not go away no matter how often it is retried."""
    pass


class BatchFatalError(BatchEngineError):
    """Failure before any item started; the whole batch is aborted."""
    pass


class BatchCancelledError(BatchEngineError):
    """Raised when a wait is pre-empted by cancellation."""
    pass


class CheckpointError(BatchEngineError):
    """Exception raised during checkpoint operations."""
    pass


class StorageError(BatchEngineError):
    """Exception raised by a key/value storage backend."""
    pass


class ConfigurationError(BatchEngineError):
    """Exception raised for configuration-related issues."""
    pass


class ValidationError(BatchEngineError):
    """Exception raised for data validation failures."""
    pass


def handle_error(
    error: Exception,
    logger,
    context: Optional[Dict[str, Any]] = None,
    reraise: bool = True
) -> None:
    """
    Handle and log errors with context information.

    Args:
        error: The exception that occurred
        logger: Logger instance to use for logging
        context: Additional context information
        reraise: Whether to reraise the exception after logging
    """
    error_context = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        **(context or {})
    }

    if isinstance(error, BatchEngineError):
        error_context.update(error.details)

    logger.error(f"Error occurred: {error_context}")
    logger.debug(traceback.format_exc())

    if reraise:
        raise error
