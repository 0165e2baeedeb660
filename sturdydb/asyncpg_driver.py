"""PostgreSQL driver built on asyncpg, exposed through a blocking API."""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Coroutine, Mapping, Sequence, TypeVar

import asyncpg

from .driver import DriverError, DriverErrorCode, StatementArgs
from .models import ConnectionTarget

T = TypeVar("T")

# idle_in_transaction_session_timeout, admin/crash shutdown, idle_session_timeout
_SESSION_LOST_SQLSTATES = frozenset({"25P03", "57P01", "57P02", "57P05"})
_AUTH_SQLSTATES = frozenset({"28000", "28P01"})
_SQLSTATE_CODES: Mapping[str, DriverErrorCode] = {
    "23505": DriverErrorCode.DUPLICATE_ENTRY,
    "42601": DriverErrorCode.SYNTAX_ERROR,
    "40P01": DriverErrorCode.DEADLOCK,
}


def translate_error(exc: BaseException, *, connecting: bool = False, closed: bool = False) -> DriverError:
    """Map an asyncpg/socket failure onto a structured :class:`DriverError`."""

    if isinstance(exc, DriverError):
        return exc
    sqlstate = getattr(exc, "sqlstate", None)
    message = str(exc) or exc.__class__.__name__
    if connecting:
        code = (
            DriverErrorCode.ACCESS_DENIED
            if sqlstate in _AUTH_SQLSTATES
            else DriverErrorCode.CONNECTION_FAILED
        )
    elif (
        closed
        or isinstance(exc, ConnectionError)
        or (sqlstate is not None and (sqlstate.startswith("08") or sqlstate in _SESSION_LOST_SQLSTATES))
    ):
        code = DriverErrorCode.SERVER_GONE_AWAY
    else:
        code = _SQLSTATE_CODES.get(sqlstate or "", DriverErrorCode.UNKNOWN)
    return DriverError(code, message, sqlstate=sqlstate)


class AsyncpgDriver:
    """Opens asyncpg connections and drives them from a private event loop."""

    def __init__(self, *, connect_timeout: float = 5.0) -> None:
        self._connect_timeout = connect_timeout
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name="sturdydb-asyncpg-driver",
            daemon=True,
        )
        self._loop_thread.start()

    def open(self, target: ConnectionTarget, options: Mapping[str, Any]) -> AsyncpgConnection:
        conn = self.run(self._connect(self._connect_kwargs(target, options)))
        return AsyncpgConnection(self, conn)

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """Block until ``coro`` finishes on the driver loop."""

        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    def shutdown(self) -> None:
        """Stop the background event loop."""

        if not self._loop.is_running():  # pragma: no cover - defensive
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._loop_thread.join(timeout=1)

    def __del__(self) -> None:  # pragma: no cover - best effort cleanup
        try:
            self.shutdown()
        except Exception:
            pass

    async def _connect(self, kwargs: dict[str, object]) -> Any:
        try:
            return await asyncpg.connect(**kwargs)
        except Exception as exc:
            # Not chained: connect errors may echo the DSN and its password.
            raise translate_error(exc, connecting=True) from None

    def _connect_kwargs(self, target: ConnectionTarget, options: Mapping[str, Any]) -> dict[str, object]:
        kwargs: dict[str, object] = {}
        if target.dsn:
            kwargs["dsn"] = target.dsn
        else:
            kwargs["host"] = target.host or "localhost"
            if target.port is not None:
                kwargs["port"] = target.port
            if target.database:
                kwargs["database"] = target.database
        if target.user:
            kwargs["user"] = target.user
        if target.password:
            kwargs["password"] = target.password
        kwargs.update(options)
        kwargs.setdefault("timeout", self._connect_timeout)
        return kwargs


class AsyncpgConnection:
    """Blocking view of one asyncpg connection."""

    def __init__(self, driver: AsyncpgDriver, conn: Any) -> None:
        self._driver = driver
        self._conn = conn

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        return self._driver.run(self._guard(coro))

    def exec(self, sql: str) -> int:
        return _affected_rows(self.run(self._conn.execute(sql)))

    def query(self, sql: str) -> AsyncpgResult:
        return AsyncpgResult(*self.run(self._query(sql)))

    def prepare(self, sql: str, options: Mapping[str, Any]) -> AsyncpgStatement:
        return AsyncpgStatement(self, self.run(self._conn.prepare(sql, **options)))

    def begin(self) -> None:
        self.run(self._conn.execute("BEGIN"))

    def commit(self) -> None:
        self.run(self._conn.execute("COMMIT"))

    def rollback(self) -> None:
        self.run(self._conn.execute("ROLLBACK"))

    def set_attribute(self, key: str, value: Any) -> None:
        self.run(self._conn.execute("SELECT set_config($1, $2, false)", key, _setting_value(value)))

    def get_attribute(self, key: str) -> Any:
        return self.run(self._conn.fetchval("SELECT current_setting($1)", key))

    def connection_id(self) -> str:
        return str(self.run(self._conn.fetchval("SELECT pg_backend_pid()")))

    def close(self) -> None:
        self.run(self._conn.close())

    async def _query(self, sql: str) -> tuple[list[Any], str]:
        # A prepared statement exposes the command tag (row count for DML).
        prepared = await self._conn.prepare(sql)
        records = await prepared.fetch()
        return records, prepared.get_statusmsg() or ""

    async def _guard(self, coro: Coroutine[Any, Any, T]) -> T:
        try:
            return await coro
        except Exception as exc:
            raise translate_error(exc, closed=self._conn.is_closed()) from exc


class AsyncpgResult:
    """Buffered result set."""

    def __init__(self, records: Sequence[Any] = (), status: str = "") -> None:
        self._load(records, status)

    def execute(self, args: StatementArgs = ()) -> bool:
        raise DriverError(DriverErrorCode.UNKNOWN, "A result set cannot be executed; prepare the SQL instead.")

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
        return self._row_count

    def column_count(self) -> int:
        return len(self.column_names())

    def column_names(self) -> tuple[str, ...]:
        return self._columns

    def _load(self, records: Sequence[Any], status: str) -> None:
        columns: tuple[str, ...] = ()
        rows: list[tuple[Any, ...]] = []
        for record in records:
            if not columns:
                columns = tuple(str(key) for key in record.keys())
            rows.append(tuple(record[key] for key in columns))
        self._columns = columns
        self._rows = rows
        self._cursor = 0
        self._row_count = len(rows) if rows or not status else _affected_rows(status)


class AsyncpgStatement(AsyncpgResult):
    """asyncpg prepared statement; rows are buffered on execute."""

    def __init__(self, connection: AsyncpgConnection, prepared: Any) -> None:
        super().__init__()
        self._connection = connection
        self._prepared = prepared

    def execute(self, args: StatementArgs = ()) -> bool:
        if isinstance(args, Mapping):
            raise TypeError("asyncpg statements take positional ($1, $2, ...) arguments only.")
        records, status = self._connection.run(self._fetch(tuple(args)))
        self._load(records, status)
        return True

    def column_names(self) -> tuple[str, ...]:
        return tuple(attribute.name for attribute in self._prepared.get_attributes())

    async def _fetch(self, args: tuple[Any, ...]) -> tuple[list[Any], str]:
        records = await self._prepared.fetch(*args)
        return records, self._prepared.get_statusmsg() or ""


def _affected_rows(status: str) -> int:
    """Row count from a command tag such as ``INSERT 0 3`` or ``UPDATE 2``."""

    parts = (status or "").split()
    if parts and parts[-1].isdigit():
        return int(parts[-1])
    return 0


def _setting_value(value: Any) -> str:
    if isinstance(value, bool):
        return "on" if value else "off"
    return str(value)


__all__ = [
    "AsyncpgConnection",
    "AsyncpgDriver",
    "AsyncpgResult",
    "AsyncpgStatement",
    "translate_error",
]
