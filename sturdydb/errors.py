"""Exceptions raised by the connection layer."""

from __future__ import annotations


class SturdyDBError(RuntimeError):
    """Base class for errors raised by sturdydb itself."""


class NotConnectedError(SturdyDBError):
    """Raised when an operation needs a live connection and there is none."""


class ConnectionFailedError(SturdyDBError):
    """Raised when the driver cannot open a connection.

    The message is redacted: it never contains the connection password.
    """

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransactionStateError(SturdyDBError):
    """Raised when the server went away while a transaction was active."""


class NoActiveTransactionError(SturdyDBError):
    """Raised by commit/rollback without a matching begin."""


class RetryExhaustedError(SturdyDBError):
    """Raised when every attempt of a call failed with a transient error."""

    def __init__(self, operation: str, attempts: int) -> None:
        super().__init__(f"Max number of retries exceeded for '{operation}' ({attempts} attempts)")
        self.operation = operation
        self.attempts = attempts


class InvalidStateError(SturdyDBError):
    """Raised when a statement is used before any SQL text was prepared."""


__all__ = [
    "ConnectionFailedError",
    "InvalidStateError",
    "NoActiveTransactionError",
    "NotConnectedError",
    "RetryExhaustedError",
    "SturdyDBError",
    "TransactionStateError",
]
