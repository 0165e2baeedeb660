"""Driver protocol the connection layer is written against."""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from .models import ConnectionTarget

MAX_ATTEMPTS = 3

StatementArgs = Sequence[Any] | Mapping[str, Any]


class DriverErrorCode(IntEnum):
    """Stable error codes drivers report (MySQL client numbering)."""

    UNKNOWN = 0
    ACCESS_DENIED = 1045
    DUPLICATE_ENTRY = 1062
    SYNTAX_ERROR = 1064
    DEADLOCK = 1213
    CONNECTION_FAILED = 2002
    SERVER_GONE_AWAY = 2006


class DriverError(Exception):
    """Error raised by a driver, carrying a machine-readable code."""

    def __init__(
        self,
        code: DriverErrorCode,
        message: str,
        *,
        sqlstate: str | None = None,
    ) -> None:
        super().__init__(f"{int(code)} {message}")
        self.code = code
        self.message = message
        self.sqlstate = sqlstate


def is_connection_lost(exc: BaseException) -> bool:
    """Whether ``exc`` means the server closed the session (idle timeout)."""

    return isinstance(exc, DriverError) and exc.code is DriverErrorCode.SERVER_GONE_AWAY


@runtime_checkable
class DriverStatement(Protocol):
    """Prepared statement or buffered result set owned by a driver."""

    def execute(self, args: StatementArgs = ()) -> bool:
        """Run the statement with bound arguments."""

    def fetch(self) -> tuple[Any, ...] | None:
        """Return the next row, or None once exhausted."""

    def fetch_all(self) -> list[tuple[Any, ...]]:
        """Return every remaining row."""

    def fetch_column(self, index: int = 0) -> Any:
        """Return one column of the next row, or None once exhausted."""

    def row_count(self) -> int:
        """Rows affected or returned by the last execution."""

    def column_count(self) -> int:
        """Number of columns in the result set."""

    def column_names(self) -> tuple[str, ...]:
        """Names of the result set columns."""


@runtime_checkable
class DriverConnection(Protocol):
    """One physical connection opened by a driver."""

    def exec(self, sql: str) -> int:
        """Run raw SQL and return the number of affected rows."""

    def query(self, sql: str) -> DriverStatement:
        """Run raw SQL and return its result set."""

    def prepare(self, sql: str, options: Mapping[str, Any]) -> DriverStatement:
        """Prepare ``sql`` on this connection."""

    def begin(self) -> None:
        """Start a (flat) transaction."""

    def commit(self) -> None:
        """Commit the current transaction."""

    def rollback(self) -> None:
        """Roll back the current transaction."""

    def set_attribute(self, key: str, value: Any) -> None:
        """Set a session attribute on this connection."""

    def get_attribute(self, key: str) -> Any:
        """Read back a session attribute."""

    def connection_id(self) -> str:
        """Server-side identifier of this session."""

    def close(self) -> None:
        """Close the physical connection."""


@runtime_checkable
class Driver(Protocol):
    """Factory for physical connections."""

    def open(self, target: ConnectionTarget, options: Mapping[str, Any]) -> DriverConnection:
        """Open a new physical connection to ``target``."""


__all__ = [
    "Driver",
    "DriverConnection",
    "DriverError",
    "DriverErrorCode",
    "DriverStatement",
    "MAX_ATTEMPTS",
    "StatementArgs",
    "is_connection_lost",
]
