"""
Storage error taxonomy.

SQL and constraint errors raised by sqlite3 (IntegrityError, OperationalError, ...)
are not wrapped; they reach the caller unchanged.
"""


class StorageError(RuntimeError):
    """Base class for errors raised by the storage gateway itself."""


class ConfigurationError(StorageError):
    pass


class OpenError(StorageError):
    pass


class PingError(StorageError):
    pass


class NotInitializedError(StorageError):
    def __init__(self, message: str = "db not initialized") -> None:
        super().__init__(message)


class OperationTimeoutError(StorageError, TimeoutError):
    """The operation exceeded its budget. Safe to retry; the gateway never does."""


class NoRowsError(StorageError):
    def __init__(self, message: str = "no rows in result set") -> None:
        super().__init__(message)


class TransactionStateError(StorageError):
    pass
