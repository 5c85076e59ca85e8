from abc import ABC


class CounterError(ABC, Exception):
    """Base class for all errors raised by docseq.

    Duplicate-key conflicts between concurrent counter upserts are retried
    internally and never reach callers as a CounterError.
    """


class ConfigurationError(CounterError):
    """Raised when counter options are invalid. Fatal at setup time."""


class SchemaError(CounterError):
    """Raised when the target schema cannot host the counter field."""


class StorageError(CounterError):
    """Raised when a call to the underlying database fails."""

    def __init__(self, message: str = "Storage operation failed") -> None:
        super().__init__(message)


class NotFoundError(CounterError):
    """Raised when a requested record is not found."""

    def __init__(self, message: str = "Document not found") -> None:
        super().__init__(message)


class ValidationError(CounterError):
    """Raised when a record does not satisfy its schema."""
