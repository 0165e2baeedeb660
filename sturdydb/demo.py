"""In-memory driver that simulates a server with idle-timeout sessions."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from .driver import DriverError, DriverErrorCode, StatementArgs
from .models import ConnectionTarget

GONE_AWAY_MESSAGE = "MySQL server has gone away"

ResultPresets = Mapping[str, Sequence[Mapping[str, Any]]]

DEMO_RESULTS: ResultPresets = {
    "SELECT id, email FROM accounts": (
        {"id": 1, "email": "alice@example.com"},
        {"id": 2, "email": "bob@example.com"},
    ),
    "SELECT id, total FROM orders WHERE account_id = ?": (
        {"id": 10, "total": 42},
    ),
}


def _normalize(sql: str) -> str:
    return " ".join(sql.split()).rstrip(";")


class DemoDriver:
    """Driver stub whose sessions can be expired or made to fail on demand."""

    def __init__(self, results: ResultPresets | None = None) -> None:
        sources = DEMO_RESULTS if results is None else results
        self._results: dict[str, tuple[tuple[str, ...], list[tuple[Any, ...]]]] = {
            _normalize(sql): self._to_rows(rows) for sql, rows in sources.items()
        }
        self._failures: list[tuple[str, DriverErrorCode]] = []
        self._next_id = 1
        self.connections: list[DemoConnection] = []
        self.refuse_connections = False

    def open(self, target: ConnectionTarget, options: Mapping[str, Any]) -> DemoConnection:
        if self.refuse_connections:
            raise DriverError(
                DriverErrorCode.CONNECTION_FAILED,
                f"Can't connect to server on '{target.describe()}'",
            )
        connection = DemoConnection(self, str(self._next_id), options)
        self._next_id += 1
        self.connections.append(connection)
        return connection

    @property
    def current(self) -> DemoConnection | None:
        """Most recently opened connection."""

        return self.connections[-1] if self.connections else None

    def expire_sessions(self) -> None:
        """Drop every open session, as the server does after its idle timeout."""

        for connection in self.connections:
            connection.alive = False

    def fail(self, sql: str, *, times: int = 1, code: DriverErrorCode = DriverErrorCode.SERVER_GONE_AWAY) -> None:
        """Make the next ``times`` runs of ``sql`` fail with ``code``."""

        self._failures.extend((_normalize(sql), code) for _ in range(times))

    def _take_failure(self, sql: str) -> DriverErrorCode | None:
        key = _normalize(sql)
        for index, (pending, code) in enumerate(self._failures):
            if pending == key:
                del self._failures[index]
                return code
        return None

    def _rows_for(self, sql: str, connection: DemoConnection) -> tuple[tuple[str, ...], list[tuple[Any, ...]]]:
        key = _normalize(sql)
        upper = key.upper()
        if upper == "SELECT 1":
            return ("1",), [(1,)]
        if upper == "SELECT CONNECTION_ID()":
            return ("CONNECTION_ID()",), [(connection.id,)]
        if upper == "SELECT DATABASE()":
            return ("DATABASE()",), [(connection.database,)]
        columns, rows = self._results.get(key, ((), []))
        return columns, list(rows)

    @staticmethod
    def _to_rows(rows: Sequence[Mapping[str, Any]]) -> tuple[tuple[str, ...], list[tuple[Any, ...]]]:
        columns: tuple[str, ...] = tuple(rows[0]) if rows else ()
        return columns, [tuple(row[column] for column in columns) for row in rows]


class DemoConnection:
    """One simulated session."""

    def __init__(self, driver: DemoDriver, ident: str, options: Mapping[str, Any]) -> None:
        self._driver = driver
        self.id = ident
        self.options = dict(options)
        self.alive = True
        self.attributes: dict[str, Any] = {}
        self.database: str | None = None
        self.in_transaction = False
        self.savepoints: list[str] = []
        self.log: list[str] = []

    def exec(self, sql: str) -> int:
        self._run(sql)
        return 0

    def query(self, sql: str) -> DemoStatement:
        self._run(sql)
        statement = DemoStatement(self, sql)
        statement.load(*self._driver._rows_for(sql, self))
        return statement

    def prepare(self, sql: str, options: Mapping[str, Any]) -> DemoStatement:
        self._ensure_alive()
        self.log.append(f"PREPARE {sql}")
        return DemoStatement(self, sql, options)

    def begin(self) -> None:
        self._run("BEGIN")
        if self.in_transaction:
            raise DriverError(DriverErrorCode.UNKNOWN, "There is already an active transaction")
        self.in_transaction = True

    def commit(self) -> None:
        self._end("COMMIT")

    def rollback(self) -> None:
        self._end("ROLLBACK")

    def set_attribute(self, key: str, value: Any) -> None:
        self._ensure_alive()
        self.attributes[key] = value

    def get_attribute(self, key: str) -> Any:
        self._ensure_alive()
        return self.attributes.get(key)

    def connection_id(self) -> str:
        self._ensure_alive()
        return self.id

    def close(self) -> None:
        self.alive = False

    def _run(self, sql: str) -> None:
        self._ensure_alive()
        code = self._driver._take_failure(sql)
        if code is DriverErrorCode.SERVER_GONE_AWAY:
            self.alive = False
            raise DriverError(code, GONE_AWAY_MESSAGE)
        if code is not None:
            raise DriverError(code, f"Simulated failure for '{sql}'")
        self.log.append(sql)
        self._apply(sql)

    def _ensure_alive(self) -> None:
        if not self.alive:
            raise DriverError(DriverErrorCode.SERVER_GONE_AWAY, GONE_AWAY_MESSAGE)

    def _apply(self, sql: str) -> None:
        words = _normalize(sql).split()
        head = " ".join(words[:3]).upper()
        if words and words[0].upper() == "USE" and len(words) > 1:
            self.database = words[1].strip("`")
        elif head.startswith("SAVEPOINT") and len(words) > 1:
            self.savepoints.append(words[1])
        elif head.startswith("RELEASE SAVEPOINT") and len(words) > 2:
            del self.savepoints[self._savepoint_index(words[2]) :]
        elif head.startswith("ROLLBACK TO SAVEPOINT") and len(words) > 3:
            del self.savepoints[self._savepoint_index(words[3]) + 1 :]

    def _savepoint_index(self, name: str) -> int:
        try:
            return self.savepoints.index(name)
        except ValueError:
            raise DriverError(DriverErrorCode.UNKNOWN, f"SAVEPOINT {name} does not exist") from None

    def _end(self, sql: str) -> None:
        self._run(sql)
        if not self.in_transaction:
            raise DriverError(DriverErrorCode.UNKNOWN, "There is no active transaction")
        self.in_transaction = False
        self.savepoints.clear()


class DemoStatement:
    """Prepared statement or result set on a :class:`DemoConnection`."""

    def __init__(self, connection: DemoConnection, sql: str, options: Mapping[str, Any] | None = None) -> None:
        self._connection = connection
        self.sql = sql
        self.options = dict(options or {})
        self.executions: list[StatementArgs] = []
        self.load((), [])

    def load(self, columns: tuple[str, ...], rows: list[tuple[Any, ...]]) -> None:
        self._columns = columns
        self._rows = rows
        self._cursor = 0

    def execute(self, args: StatementArgs = ()) -> bool:
        self._connection._run(self.sql)
        self.executions.append(args)
        self.load(*self._connection._driver._rows_for(self.sql, self._connection))
        return True

    def fetch(self) -> tuple[Any, ...] | None:
        if self._cursor >= len(self._rows):
            return None
        row = self._rows[self._cursor]
        self._cursor += 1
        return row

    def fetch_all(self) -> list[tuple[Any, ...]]:
        rows = self._rows[self._cursor :]
        self._cursor = len(self._rows)
        return rows

    def fetch_column(self, index: int = 0) -> Any:
        row = self.fetch()
        return None if row is None else row[index]

    def row_count(self) -> int:
        return len(self._rows)

    def column_count(self) -> int:
        return len(self._columns)

    def column_names(self) -> tuple[str, ...]:
        return self._columns


__all__ = [
    "DEMO_RESULTS",
    "DemoConnection",
    "DemoDriver",
    "DemoStatement",
    "GONE_AWAY_MESSAGE",
]
