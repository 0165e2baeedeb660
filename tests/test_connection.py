"""Tests for the reconnecting connection handle."""

from __future__ import annotations

from typing import Any, Mapping

import pytest

from sturdydb.connection import ConnectionHandle
from sturdydb.demo import DemoDriver
from sturdydb.driver import DriverError, DriverErrorCode
from sturdydb.errors import (
    ConnectionFailedError,
    NoActiveTransactionError,
    NotConnectedError,
    RetryExhaustedError,
    TransactionStateError,
)
from sturdydb.models import ConnectionTarget

ACCOUNTS_SQL = "SELECT id, email FROM accounts"
ACCOUNT_ROWS = [(1, "alice@example.com"), (2, "bob@example.com")]
TARGET = ConnectionTarget(host="db.internal", database="app", user="app", password="s3cret")


@pytest.fixture
def driver() -> DemoDriver:
    return DemoDriver()


@pytest.fixture
def db(driver: DemoDriver) -> ConnectionHandle:
    return ConnectionHandle(driver, TARGET, {"charset": "utf8mb4"})


def test_constructor_connects_with_driver_options(driver: DemoDriver, db: ConnectionHandle) -> None:
    assert db.is_connected is True
    assert db.autoreconnect is True
    assert db.raw_connection is driver.current
    assert driver.current.options == {"charset": "utf8mb4"}


def test_lazy_handle_waits_for_connect(driver: DemoDriver) -> None:
    db = ConnectionHandle(driver, TARGET, lazy=True)

    assert db.is_connected is False
    assert driver.connections == []
    db.connect()
    assert db.is_connected is True


def test_unknown_policy_option_is_rejected(driver: DemoDriver) -> None:
    with pytest.raises(ValueError):
        ConnectionHandle(driver, TARGET, options={"autoreconect": False})


def test_attributes_survive_reconnects(driver: DemoDriver, db: ConnectionHandle) -> None:
    db.set_attribute("sql_mode", "STRICT").set_attribute("time_zone", "+00:00")
    db.set_attribute("sql_mode", "ANSI")

    db.reconnect()
    assert db.get_attribute("sql_mode") == "ANSI"
    assert db.get_attribute("time_zone") == "+00:00"

    driver.expire_sessions()
    db.exec("UPDATE accounts SET active = 1")

    assert len(driver.connections) == 3
    assert driver.current.attributes == {"sql_mode": "ANSI", "time_zone": "+00:00"}
    assert list(db.attributes) == ["sql_mode", "time_zone"]


def test_attribute_set_while_disconnected_is_applied_on_connect(driver: DemoDriver, db: ConnectionHandle) -> None:
    db.disconnect()
    db.set_attribute("autocommit", False)
    db.connect()

    assert driver.current.attributes == {"autocommit": False}


@pytest.mark.parametrize("depth", [1, 2, 5])
def test_nested_commits_walk_depth_back_to_zero(db: ConnectionHandle, depth: int) -> None:
    for level in range(depth):
        db.begin_transaction()
        assert db.get_active_transaction_count() == level + 1
    for level in range(depth, 0, -1):
        assert db.get_active_transaction_count() == level
        assert db.commit() is True
    assert db.get_active_transaction_count() == 0


@pytest.mark.parametrize("depth", [1, 3])
def test_nested_rollbacks_walk_depth_back_to_zero(db: ConnectionHandle, depth: int) -> None:
    for _ in range(depth):
        db.begin_transaction()
    for level in range(depth, 0, -1):
        assert db.get_active_transaction_count() == level
        assert db.rollback() is True
    assert db.get_active_transaction_count() == 0


def test_nested_transactions_use_savepoints(driver: DemoDriver, db: ConnectionHandle) -> None:
    db.begin_transaction().begin_transaction().begin_transaction()
    db.commit()
    db.rollback()
    db.commit()

    assert driver.current.log == [
        "BEGIN",
        "SAVEPOINT T1",
        "SAVEPOINT T2",
        "RELEASE SAVEPOINT T2",
        "ROLLBACK TO SAVEPOINT T1",
        "COMMIT",
    ]
    assert driver.current.in_transaction is False


@pytest.mark.parametrize("method", ["commit", "rollback"])
def test_commit_or_rollback_without_transaction_fails(
    driver: DemoDriver, db: ConnectionHandle, method: str
) -> None:
    with pytest.raises(NoActiveTransactionError):
        getattr(db, method)()

    assert db.get_active_transaction_count() == 0
    assert driver.current.log == []


def test_transaction_context_commits_or_rolls_back(driver: DemoDriver, db: ConnectionHandle) -> None:
    with db.transaction():
        db.exec("INSERT INTO accounts VALUES (3)")

    with pytest.raises(RuntimeError):
        with db.transaction():
            with db.transaction():
                raise RuntimeError("boom")

    assert db.get_active_transaction_count() == 0
    assert driver.current.log[-4:] == ["BEGIN", "SAVEPOINT T1", "ROLLBACK TO SAVEPOINT T1", "ROLLBACK"]
    assert driver.current.log[:3] == ["BEGIN", "INSERT INTO accounts VALUES (3)", "COMMIT"]


def test_query_survives_server_gone_away(driver: DemoDriver, db: ConnectionHandle) -> None:
    driver.fail(ACCOUNTS_SQL)

    result = db.query(ACCOUNTS_SQL)

    assert result.fetch_all() == ACCOUNT_ROWS
    assert len(driver.connections) == 2
    assert driver.connections[0].alive is False


def test_gone_away_during_transaction_is_fatal(driver: DemoDriver, db: ConnectionHandle) -> None:
    db.begin_transaction().begin_transaction()
    driver.fail("UPDATE accounts SET active = 0")

    with pytest.raises(TransactionStateError):
        db.exec("UPDATE accounts SET active = 0")

    assert db.get_active_transaction_count() == 2
    assert len(driver.connections) == 1


def test_begin_transaction_may_reconnect(driver: DemoDriver, db: ConnectionHandle) -> None:
    driver.expire_sessions()

    db.begin_transaction()

    assert len(driver.connections) == 2
    assert driver.current.in_transaction is True
    assert db.get_active_transaction_count() == 1


def test_commit_after_timeout_surfaces_error(driver: DemoDriver, db: ConnectionHandle) -> None:
    db.begin_transaction()
    driver.expire_sessions()

    with pytest.raises(DriverError) as excinfo:
        db.commit()

    assert excinfo.value.code is DriverErrorCode.SERVER_GONE_AWAY
    assert len(driver.connections) == 1


def test_three_transient_failures_exhaust_retries(driver: DemoDriver, db: ConnectionHandle) -> None:
    driver.fail(ACCOUNTS_SQL, times=3)

    with pytest.raises(RetryExhaustedError) as excinfo:
        db.query(ACCOUNTS_SQL)

    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.__cause__, DriverError)
    assert len(driver.connections) == 4


def test_two_transient_failures_still_succeed(driver: DemoDriver, db: ConnectionHandle) -> None:
    driver.fail(ACCOUNTS_SQL, times=2)

    assert db.query(ACCOUNTS_SQL).row_count() == 2


def test_other_driver_errors_propagate_untouched(driver: DemoDriver, db: ConnectionHandle) -> None:
    driver.fail("INSERT INTO accounts VALUES (1)", code=DriverErrorCode.DUPLICATE_ENTRY)

    with pytest.raises(DriverError) as excinfo:
        db.exec("INSERT INTO accounts VALUES (1)")

    assert excinfo.value.code is DriverErrorCode.DUPLICATE_ENTRY
    assert len(driver.connections) == 1


def test_disabled_autoreconnect_propagates_gone_away(driver: DemoDriver) -> None:
    db = ConnectionHandle(driver, TARGET, options={"autoreconnect": False})
    driver.fail(ACCOUNTS_SQL)

    with pytest.raises(DriverError) as excinfo:
        db.query(ACCOUNTS_SQL)

    assert excinfo.value.code is DriverErrorCode.SERVER_GONE_AWAY
    assert len(driver.connections) == 1


def test_selected_database_is_restored_after_auto_reconnect(driver: DemoDriver, db: ConnectionHandle) -> None:
    db.exec("USE shop")
    driver.expire_sessions()

    db.exec("DELETE FROM carts")

    assert db.last_selected_database == "USE shop"
    assert driver.current.database == "shop"
    assert driver.current.log == ["USE shop", "DELETE FROM carts"]


def test_explicit_reconnect_does_not_restore_database(driver: DemoDriver, db: ConnectionHandle) -> None:
    db.query("USE shop")

    db.reconnect()

    assert driver.current.database is None


def test_connect_while_connected_leaves_previous_connection_open(driver: DemoDriver, db: ConnectionHandle) -> None:
    db.begin_transaction()

    db.connect()

    assert len(driver.connections) == 2
    assert driver.connections[0].alive is True
    assert db.raw_connection is driver.connections[1]
    assert db.get_active_transaction_count() == 0


def test_reconnect_resets_transaction_depth(db: ConnectionHandle) -> None:
    db.begin_transaction().begin_transaction()

    db.reconnect()

    assert db.get_active_transaction_count() == 0


def test_operations_need_a_connection(db: ConnectionHandle) -> None:
    db.disconnect()

    with pytest.raises(NotConnectedError):
        db.exec("SELECT 1")
    with pytest.raises(NotConnectedError):
        db.query("SELECT 1")


def test_unsupported_operation_is_rejected(db: ConnectionHandle) -> None:
    with pytest.raises(ValueError):
        db.invoke_with_retry("drop_everything")


def test_ping_reports_liveness_without_reconnecting(driver: DemoDriver, db: ConnectionHandle) -> None:
    assert db.ping() is True

    driver.expire_sessions()
    assert db.ping() is False
    assert len(driver.connections) == 1

    db.disconnect()
    assert db.ping() is False


def test_connection_id_tracks_physical_connection(driver: DemoDriver, db: ConnectionHandle) -> None:
    assert db.get_connection_id() == "1"

    db.reconnect()
    assert db.get_connection_id() == "2"

    driver.expire_sessions()
    assert db.get_connection_id() is None

    db.disconnect()
    assert db.get_connection_id() is None


def test_context_manager_disconnects(driver: DemoDriver) -> None:
    with ConnectionHandle(driver, TARGET) as db:
        assert db.ping() is True

    assert db.is_connected is False
    assert driver.current.alive is False


class _LeakyDriver:
    """Driver whose error message echoes the password."""

    def open(self, target: ConnectionTarget, options: Mapping[str, Any]) -> Any:
        raise DriverError(
            DriverErrorCode.ACCESS_DENIED,
            f"Access denied for user '{target.user}' (password '{target.password}')",
        )


def test_connect_failure_hides_password() -> None:
    with pytest.raises(ConnectionFailedError) as excinfo:
        ConnectionHandle(_LeakyDriver(), TARGET)

    message = str(excinfo.value)
    assert "s3cret" not in message
    assert "***" in message
    assert excinfo.value.code == DriverErrorCode.ACCESS_DENIED
    assert excinfo.value.__cause__ is None
    assert excinfo.value.__suppress_context__ is True


def test_refused_auto_reconnect_surfaces_connection_error(driver: DemoDriver, db: ConnectionHandle) -> None:
    driver.expire_sessions()
    driver.refuse_connections = True

    with pytest.raises(ConnectionFailedError):
        db.exec("SELECT 1")


def test_repr_omits_password(db: ConnectionHandle) -> None:
    assert "s3cret" not in repr(db)
    assert "app@db.internal/app" in repr(db)
