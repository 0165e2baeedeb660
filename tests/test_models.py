"""Tests for connection targets and secret redaction."""

from __future__ import annotations

from sturdydb.driver import DriverError, DriverErrorCode, is_connection_lost
from sturdydb.models import ConnectionTarget


def test_repr_hides_password() -> None:
    target = ConnectionTarget(host="db", user="app", password="s3cret")

    assert "s3cret" not in repr(target)


def test_redact_covers_dsn_password() -> None:
    target = ConnectionTarget(dsn="postgresql://app:hunter2@db:5432/app", password="s3cret")

    assert target.secrets() == ("s3cret", "hunter2")
    assert target.redact("hunter2 and s3cret") == "*** and ***"
    assert target.describe() == "postgresql://app:***@db:5432/app"


def test_describe_without_dsn() -> None:
    assert ConnectionTarget().describe() == "localhost"
    assert ConnectionTarget(host="db", port=5432, database="app", user="app").describe() == "app@db:5432/app"


def test_only_gone_away_counts_as_connection_lost() -> None:
    assert is_connection_lost(DriverError(DriverErrorCode.SERVER_GONE_AWAY, "MySQL server has gone away"))
    assert not is_connection_lost(DriverError(DriverErrorCode.DEADLOCK, "Deadlock found"))
    assert not is_connection_lost(RuntimeError("2006 MySQL server has gone away"))
    assert str(DriverError(DriverErrorCode.SERVER_GONE_AWAY, "gone")) == "2006 gone"
