"""Prepared statement wrapper that survives reconnects."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterator, Mapping

from .driver import MAX_ATTEMPTS, DriverError, DriverStatement, StatementArgs, is_connection_lost
from .errors import InvalidStateError, RetryExhaustedError

if TYPE_CHECKING:
    from .connection import ConnectionHandle

LOG = logging.getLogger(__name__)


class StatementHandle:
    """A prepared statement bound to a :class:`ConnectionHandle`.

    Driver statements stay bound to the physical connection they were
    prepared on, so replacing the connection does not repair them. Each
    handle therefore detects the lost session itself and prepares a fresh
    driver statement before retrying.
    """

    def __init__(
        self,
        connection: ConnectionHandle,
        statement: str,
        driver_options: Mapping[str, Any] | None = None,
    ) -> None:
        self._connection = connection
        self._statement = statement
        self._driver_options: Mapping[str, Any] = MappingProxyType(dict(driver_options or {}))
        self._prepared: DriverStatement | None = None
        self.prepare()

    @property
    def connection(self) -> ConnectionHandle:
        return self._connection

    @property
    def statement(self) -> str:
        return self._statement

    @property
    def driver_options(self) -> Mapping[str, Any]:
        return self._driver_options

    def __repr__(self) -> str:
        return f"StatementHandle({self._statement!r})"

    def prepare(self) -> None:
        """(Re-)prepare the statement on the current physical connection."""

        # Drivers may prepare client-side without talking to the server, in
        # which case a dead session would go unnoticed here.
        if not self._connection.ping():
            self._connection.auto_reconnect()
        self._prepared = self._connection.invoke_with_retry(
            "prepare", self._statement, self._driver_options
        )

    def execute(self, args: StatementArgs = ()) -> bool:
        """Execute with bound ``args``, re-preparing after a lost session."""

        last_error: DriverError | None = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                return self._driver_statement().execute(args)
            except DriverError as exc:
                if not is_connection_lost(exc):
                    raise
                last_error = exc
                LOG.warning(
                    "Statement lost its connection (attempt %d/%d), re-preparing",
                    attempt,
                    MAX_ATTEMPTS,
                    extra={"statement": self._statement},
                )
                self.prepare()
        LOG.error("Giving up on statement after %d attempts", MAX_ATTEMPTS, extra={"statement": self._statement})
        raise RetryExhaustedError("execute", MAX_ATTEMPTS) from last_error

    def fetch(self) -> tuple[Any, ...] | None:
        return self._driver_statement().fetch()

    def fetch_all(self) -> list[tuple[Any, ...]]:
        return self._driver_statement().fetch_all()

    def fetch_column(self, index: int = 0) -> Any:
        return self._driver_statement().fetch_column(index)

    def row_count(self) -> int:
        return self._driver_statement().row_count()

    def column_count(self) -> int:
        return self._driver_statement().column_count()

    def column_names(self) -> tuple[str, ...]:
        return self._driver_statement().column_names()

    def __iter__(self) -> Iterator[tuple[Any, ...]]:
        while (row := self.fetch()) is not None:
            yield row

    def _driver_statement(self) -> DriverStatement:
        if not self._statement or self._prepared is None:
            raise InvalidStateError("No statement prepared.")
        return self._prepared


__all__ = ["StatementHandle"]
