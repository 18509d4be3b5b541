# src/s3_migration/exceptions.py
"""Custom exceptions for the s3-migration application."""

from typing import Optional


class MigrationError(Exception):
    """Base exception for all application-specific errors."""

    pass


class ConfigError(MigrationError):
    """Raised for invalid command-line or environment configuration."""

    pass


class PreconditionFailedError(MigrationError):
    """Raised when a resource we do not own is not in a usable state."""

    pass


class ConfigurationNotFoundError(MigrationError):
    """Raised when a caller-supplied inventory configuration does not exist."""

    pass


class ManifestNotFoundError(MigrationError):
    """Raised when no inventory manifest appeared within the retry budget."""

    pass


class MalformedManifestError(MigrationError):
    """Raised when an inventory manifest document cannot be parsed."""

    pass


class InvalidSchemaError(MigrationError):
    """Raised when an inventory file schema cannot satisfy a filter request."""

    pass


class StreamClosedError(MigrationError):
    """Raised when reading from a select stream that already reported its end."""

    pass


class RemoteServiceError(MigrationError):
    """Raised when a call to S3 or S3 Control fails."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        """
        Initialize the error.

        Args:
            operation (str): The name of the API operation that failed.
            cause (BaseException, optional): The underlying botocore error.
        """
        message: str = f"{operation} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation: str = operation
        self.cause: Optional[BaseException] = cause


class ThresholdNotMetError(MigrationError):
    """Raised when copy jobs finish below the required success ratio."""

    def __init__(self, achieved: float, required: float, scope: str = "overall") -> None:
        super().__init__(
            f"Job(s) completed but the {scope} success ratio {achieved:.4f} "
            f"is below the required {required:.4f}"
        )
        self.achieved: float = achieved
        self.required: float = required
        self.scope: str = scope


class JobFailedError(MigrationError):
    """Raised when a copy job fails or is cancelled before reporting any task."""

    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(
            f"Job '{job_id}' finished with status '{status}' without running any task"
        )
        self.job_id: str = job_id
        self.status: str = status


class MigrationCancelledError(MigrationError):
    """Raised when a shutdown signal interrupts a sleep or a remote call."""

    pass
