"""Resilient single-connection database layer.

Survives idle-timeout disconnects, emulates nested transactions with
savepoints and re-prepares statements after a reconnect.
"""

from .asyncpg_driver import AsyncpgDriver
from .config import ProfileConfig, SturdyConfig, load_config
from .connection import ConnectionHandle
from .demo import DemoDriver
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
    InvalidStateError,
    NoActiveTransactionError,
    NotConnectedError,
    RetryExhaustedError,
    SturdyDBError,
    TransactionStateError,
)
from .models import ConnectionTarget
from .statement import StatementHandle

__version__ = "0.1.0"

__all__ = [
    "AsyncpgDriver",
    "ConnectionFailedError",
    "ConnectionHandle",
    "ConnectionTarget",
    "DemoDriver",
    "Driver",
    "DriverConnection",
    "DriverError",
    "DriverErrorCode",
    "DriverStatement",
    "InvalidStateError",
    "MAX_ATTEMPTS",
    "NoActiveTransactionError",
    "NotConnectedError",
    "ProfileConfig",
    "RetryExhaustedError",
    "StatementHandle",
    "SturdyConfig",
    "SturdyDBError",
    "TransactionStateError",
    "is_connection_lost",
    "load_config",
]
