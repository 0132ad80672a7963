"""
Exception hierarchy for the partition lookup service.

Wraps Cassandra/Scylla driver exceptions with context so callers can tell
fatal failures (connect, schema, seeding) from request-scoped ones (lookups)
and from transient ones that are safe to retry.
"""

import logging
from typing import Any

from cassandra import (
    AlreadyExists,
    AuthenticationFailed,
    CoordinationFailure,
    InvalidRequest,
    OperationTimedOut,
    ReadTimeout,
    Unauthorized,
    Unavailable,
    WriteTimeout,
)
from cassandra.cluster import NoHostAvailable
from cassandra.connection import ConnectionException

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """
    Base exception for store errors.

    Wraps the underlying driver exception with a human-readable message
    and logs itself with full context. Retriable errors log at WARNING
    without a traceback; the caller reports the final failure.
    """

    retriable: bool = False

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message)
        self.original_error = original_error
        self.message = message

        level = logging.WARNING if self.retriable else logging.ERROR
        if original_error:
            logger.log(
                level,
                f"{self.__class__.__name__}: {message}",
                exc_info=None if self.retriable else original_error,
                extra={
                    "error_type": type(original_error).__name__,
                    "error_message": str(original_error)
                }
            )
        else:
            logger.log(level, f"{self.__class__.__name__}: {message}")

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message} (caused by {type(self.original_error).__name__}: {self.original_error})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, original_error={self.original_error!r})"


class StoreConnectionError(StoreError):
    """
    Raised when no contact point accepts a connection.

    Fatal: the service cannot serve traffic without a session. Check:
    - Network connectivity
    - Cluster status
    - Contact points, port and protocol version
    """

    def __init__(self, message: str = "Failed to connect to cluster", original_error: Exception | None = None):
        super().__init__(message, original_error)


class StoreSchemaError(StoreError):
    """Raised when keyspace/table creation or a seed insert fails. Fatal."""

    def __init__(self, message: str, original_error: Exception | None = None, statement: str | None = None):
        self.statement = statement
        super().__init__(message, original_error)


class StoreQueryError(StoreError):
    """
    Raised when a lookup fails.

    Request-scoped: reported to the caller in the error envelope, the
    process keeps serving.
    """

    def __init__(self, message: str, original_error: Exception | None = None, operation: str | None = None):
        self.operation = operation
        if operation:
            message = f"{message} [operation: {operation}]"
        super().__init__(message, original_error)


class StoreTimeoutError(StoreQueryError):
    """
    Raised when a statement or a request deadline times out.

    Transient; the read path retries these with backoff.
    """

    retriable = True

    def __init__(
        self,
        message: str = "Operation timed out",
        original_error: Exception | None = None,
        operation: str | None = None,
        timeout_seconds: float | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        if timeout_seconds:
            message = f"{message} (timeout={timeout_seconds}s)"
        super().__init__(message, original_error, operation)


class StoreUnavailableError(StoreQueryError):
    """
    Raised when not enough replicas (or no hosts at all) are alive.

    Transient; usually seen during node restarts or leader elections.
    """

    retriable = True

    def __init__(
        self,
        message: str = "Required replicas unavailable",
        original_error: Exception | None = None,
        operation: str | None = None,
        consistency_level: str | None = None,
        required_replicas: int | None = None,
        alive_replicas: int | None = None,
    ):
        self.consistency_level = consistency_level
        self.required_replicas = required_replicas
        self.alive_replicas = alive_replicas

        details = []
        if consistency_level:
            details.append(f"consistency={consistency_level}")
        if required_replicas is not None and alive_replicas is not None:
            details.append(f"required={required_replicas}, alive={alive_replicas}")
        if details:
            message = f"{message} ({', '.join(details)})"

        super().__init__(message, original_error, operation)


class ConfigurationError(Exception):
    """Raised when the environment holds a malformed configuration value."""

    def __init__(self, message: str, variable: str | None = None, value: Any = None):
        self.variable = variable
        self.value = value
        if variable:
            message = f"Invalid value for {variable}={value!r}: {message}"
        super().__init__(message)


def translate_driver_error(error: Exception, operation: str, timeout_seconds: float | None = None) -> StoreQueryError:
    """
    Map a driver exception raised on the read path onto the store hierarchy.

    Args:
        error: Exception raised by the driver (or by the cursor)
        operation: Logical operation name, e.g. "search"
        timeout_seconds: Statement timeout, for context in timeout errors

    Returns:
        A StoreQueryError (or retriable subclass) wrapping ``error``
    """
    if isinstance(error, StoreQueryError):
        return error

    if isinstance(error, (OperationTimedOut, ReadTimeout, WriteTimeout)):
        return StoreTimeoutError(
            "Statement timed out",
            original_error=error,
            operation=operation,
            timeout_seconds=timeout_seconds,
        )

    if isinstance(error, Unavailable):
        consistency = getattr(error, "consistency", None)
        return StoreUnavailableError(
            original_error=error,
            operation=operation,
            consistency_level=str(consistency) if consistency is not None else None,
            required_replicas=getattr(error, "required_replicas", None),
            alive_replicas=getattr(error, "alive_replicas", None),
        )

    if isinstance(error, (NoHostAvailable, ConnectionException)):
        return StoreUnavailableError(
            "No hosts available",
            original_error=error,
            operation=operation,
        )

    if isinstance(error, CoordinationFailure):
        return StoreQueryError("Coordinator failed to complete the request", error, operation)

    if isinstance(error, (Unauthorized, AuthenticationFailed)):
        return StoreQueryError("Not authorized", error, operation)

    if isinstance(error, InvalidRequest):
        return StoreQueryError("Invalid query", error, operation)

    if isinstance(error, AlreadyExists):
        return StoreQueryError("Object already exists", error, operation)

    return StoreQueryError("Query failed", error, operation)
