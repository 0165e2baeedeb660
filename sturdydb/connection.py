"""Connection handle that survives idle-timeout disconnects.

The handle owns exactly one physical driver connection at a time. It records
every attribute set on it so an equivalent connection can be rebuilt, counts
nested transactions (emulated with savepoints on top of the driver's flat
transactions) and wraps pass-through driver calls in a bounded retry loop
that reconnects when the server has gone away.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping

from .asyncpg_driver import AsyncpgDriver
from .config import ProfileConfig
from .driver import (
    MAX_ATTEMPTS,
    Driver,
    DriverConnection,
    DriverError,
    DriverErrorCode,
    DriverStatement,
    is_connection_lost,
)
from .errors import (
    ConnectionFailedError,
    NoActiveTransactionError,
    NotConnectedError,
    RetryExhaustedError,
    TransactionStateError,
)
from .models import ConnectionTarget
from .statement import StatementHandle

LOG = logging.getLogger(__name__)

DEFAULT_OPTIONS: Mapping[str, Any] = MappingProxyType({"autoreconnect": True})

PING_SQL = "SELECT 1"

# Driver calls that may be retried after an automatic reconnect.
_OPERATIONS: Mapping[str, Callable[..., Any]] = MappingProxyType(
    {
        "exec": lambda conn, sql: conn.exec(sql),
        "query": lambda conn, sql: conn.query(sql),
        "prepare": lambda conn, sql, options: conn.prepare(sql, options),
        "begin": lambda conn: conn.begin(),
        "get_attribute": lambda conn, key: conn.get_attribute(key),
    }
)


class ConnectionHandle:
    """One logical database session, kept alive across physical reconnects."""

    def __init__(
        self,
        driver: Driver,
        target: ConnectionTarget,
        driver_options: Mapping[str, Any] | None = None,
        options: Mapping[str, Any] | None = None,
        *,
        lazy: bool = False,
    ) -> None:
        policy = dict(DEFAULT_OPTIONS)
        for key, value in (options or {}).items():
            if key not in DEFAULT_OPTIONS:
                raise ValueError(f"Unknown connection option '{key}'.")
            policy[key] = value
        self._driver = driver
        self._target = target
        self._driver_options: Mapping[str, Any] = MappingProxyType(dict(driver_options or {}))
        self._autoreconnect = bool(policy["autoreconnect"])
        self._connection: DriverConnection | None = None
        self._attributes: dict[str, Any] = {}
        self._transaction_depth = 0
        self._last_use = ""
        self._owns_driver = False
        if not lazy:
            self.connect()

    @classmethod
    def from_profile(
        cls,
        profile: ProfileConfig,
        driver: Driver | None = None,
        *,
        lazy: bool = False,
    ) -> ConnectionHandle:
        """Build a handle from a configured profile (asyncpg by default)."""

        if driver is not None:
            return cls(driver, profile.to_target(), profile.driver_options, profile.policy_options(), lazy=lazy)
        # The handle owns a driver it created and shuts it down on exit.
        owned = AsyncpgDriver()
        try:
            handle = cls(owned, profile.to_target(), profile.driver_options, profile.policy_options(), lazy=lazy)
        except BaseException:
            owned.shutdown()
            raise
        handle._owns_driver = True
        return handle

    @property
    def target(self) -> ConnectionTarget:
        return self._target

    @property
    def driver_options(self) -> Mapping[str, Any]:
        return self._driver_options

    @property
    def autoreconnect(self) -> bool:
        return self._autoreconnect

    @property
    def attributes(self) -> Mapping[str, Any]:
        """Attributes replayed onto every new physical connection."""

        return MappingProxyType(self._attributes)

    @property
    def last_selected_database(self) -> str:
        return self._last_use

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @property
    def raw_connection(self) -> DriverConnection | None:
        """The live driver connection; replaced on every reconnect."""

        return self._connection

    def __enter__(self) -> ConnectionHandle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()
        if self._owns_driver:
            self._driver.shutdown()  # type: ignore[attr-defined]

    def __repr__(self) -> str:
        return (
            f"ConnectionHandle({self._target.describe()!r}, "
            f"connected={self.is_connected}, transactions={self._transaction_depth})"
        )

    # Connection lifecycle -------------------------------------------------

    def connect(self) -> ConnectionHandle:
        """Open a new physical connection and replay recorded attributes.

        A previous connection is not closed; call :meth:`disconnect` first
        for a clean handover.
        """

        try:
            connection = self._driver.open(self._target, self._driver_options)
        except DriverError as exc:
            label = self._target.describe()
            LOG.error("Connection failed", extra={"target": label, "code": int(exc.code)})
            # Not chained: the driver error may carry the password.
            raise ConnectionFailedError(
                f"Failed to connect to '{label}': {self._target.redact(str(exc))}",
                code=int(exc.code),
            ) from None
        self._connection = connection
        self._transaction_depth = 0
        for key, value in self._attributes.items():
            connection.set_attribute(key, value)
        LOG.debug("Connected", extra={"target": self._target.describe()})
        return self

    def disconnect(self) -> ConnectionHandle:
        """Drop the physical connection. Always succeeds."""

        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                connection.close()
            except Exception:  # pragma: no cover - best effort, the session may already be gone
                LOG.debug("Ignoring error while closing connection", exc_info=True)
        return self

    def reconnect(self) -> ConnectionHandle:
        """Explicitly reconnect. The last ``USE`` statement is not replayed."""

        self.disconnect()
        return self.connect()

    def auto_reconnect(self) -> ConnectionHandle:
        """Reconnect after the server went away (used by the retry machinery).

        Refuses while a transaction is active: its state died with the old
        session and cannot be rebuilt on a new one.
        """

        if self._transaction_depth > 0:
            LOG.error(
                "Server went away during an active transaction",
                extra={"target": self._target.describe(), "transactions": self._transaction_depth},
            )
            raise TransactionStateError(
                f"{int(DriverErrorCode.SERVER_GONE_AWAY)} server has gone away during an active "
                f"transaction ({self._transaction_depth} level(s) lost)."
            )
        LOG.warning("Server went away, reconnecting", extra={"target": self._target.describe()})
        self.disconnect()
        self.connect()
        if self._last_use:
            self._live().exec(self._last_use)
        return self

    # Attributes and health ------------------------------------------------

    def set_attribute(self, key: str, value: Any) -> ConnectionHandle:
        """Record an attribute and apply it to the live connection, if any."""

        self._attributes[key] = value
        if self._connection is not None:
            self._connection.set_attribute(key, value)
        return self

    def get_attribute(self, key: str) -> Any:
        return self.invoke_with_retry("get_attribute", key)

    def ping(self) -> bool:
        """Return whether the connection is alive. Never reconnects or raises."""

        if self._connection is None:
            return False
        try:
            self._connection.query(PING_SQL)
        except Exception:
            LOG.debug("Ping failed", exc_info=True)
            return False
        return True

    def get_connection_id(self) -> str | None:
        """Server-side session id, or None when disconnected or timed out."""

        if self._connection is None:
            return None
        try:
            return self._connection.connection_id()
        except DriverError:
            return None

    # Retrying pass-through ------------------------------------------------

    def invoke_with_retry(self, operation: str, *args: Any) -> Any:
        """Call a driver operation, reconnecting when the server went away.

        Only the "server has gone away" error is retried, and only when
        autoreconnect is enabled; every other driver error is re-raised as is.
        """

        if self._connection is None:
            raise NotConnectedError("Not connected to the database.")
        try:
            call = _OPERATIONS[operation]
        except KeyError:
            raise ValueError(f"Unsupported driver operation '{operation}'.") from None
        if operation in ("exec", "query") and args and str(args[0]).startswith("USE "):
            self._last_use = args[0]

        last_error: DriverError | None = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                return call(self._live(), *args)
            except DriverError as exc:
                if not (self._autoreconnect and is_connection_lost(exc)):
                    raise
                last_error = exc
                LOG.warning(
                    "Connection lost during %s (attempt %d/%d)",
                    operation,
                    attempt,
                    MAX_ATTEMPTS,
                    extra={"target": self._target.describe()},
                )
                self.auto_reconnect()
        LOG.error("Giving up on %s after %d attempts", operation, MAX_ATTEMPTS)
        raise RetryExhaustedError(operation, MAX_ATTEMPTS) from last_error

    def exec(self, sql: str) -> int:
        """Run raw SQL, returning the affected row count."""

        return self.invoke_with_retry("exec", sql)

    def query(self, sql: str) -> DriverStatement:
        """Run raw SQL, returning the driver's result set."""

        return self.invoke_with_retry("query", sql)

    def prepare(self, sql: str, driver_options: Mapping[str, Any] | None = None) -> StatementHandle:
        """Prepare a statement that re-prepares itself after reconnects."""

        return StatementHandle(self, sql, driver_options)

    # Nested transactions --------------------------------------------------

    def get_active_transaction_count(self) -> int:
        return self._transaction_depth

    def begin_transaction(self) -> ConnectionHandle:
        """Begin a transaction, or a savepoint when one is already active."""

        if self._transaction_depth == 0:
            # Nothing to lose yet, so this may reconnect.
            self.invoke_with_retry("begin")
        else:
            self._live().exec(f"SAVEPOINT T{self._transaction_depth}")
        self._transaction_depth += 1
        return self

    def commit(self) -> bool:
        """Commit the innermost transaction (releases its savepoint if nested).

        Never reconnects: a timed-out session has already lost the
        transaction, so the failure must reach the caller.
        """

        if self._transaction_depth == 0:
            raise NoActiveTransactionError("Commit failed, no active transaction.")
        connection = self._live()
        self._transaction_depth -= 1
        if self._transaction_depth == 0:
            connection.commit()
        else:
            connection.exec(f"RELEASE SAVEPOINT T{self._transaction_depth}")
        return True

    def rollback(self) -> bool:
        """Roll back the innermost transaction (to its savepoint if nested).

        Never reconnects, for the same reason as :meth:`commit`.
        """

        if self._transaction_depth == 0:
            raise NoActiveTransactionError("Rollback failed, no active transaction.")
        connection = self._live()
        self._transaction_depth -= 1
        if self._transaction_depth == 0:
            connection.rollback()
        else:
            connection.exec(f"ROLLBACK TO SAVEPOINT T{self._transaction_depth}")
        return True

    @contextmanager
    def transaction(self) -> Iterator[ConnectionHandle]:
        """Run a block in a (possibly nested) transaction."""

        self.begin_transaction()
        try:
            yield self
        except Exception:
            self.rollback()
            raise
        self.commit()

    def _live(self) -> DriverConnection:
        if self._connection is None:
            raise NotConnectedError("Not connected to the database.")
        return self._connection


__all__ = ["ConnectionHandle", "DEFAULT_OPTIONS", "PING_SQL"]
