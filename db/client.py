"""Postgres gateway for srtd.

One DatabaseGateway owns one lazily created psycopg_pool.ConnectionPool.
Connections run in autocommit mode; each template is executed inside its
own explicit transaction, serialised per template name by an advisory lock.
SQL is sent without parameters so multi-statement templates use the simple
query protocol.
"""

import atexit
import logging
import signal
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import psycopg
from psycopg_pool import ConnectionPool, PoolTimeout

from db.errors import ErrorType, classify_error_type, get_error_hint

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_CONNECT_TIMEOUT = 5
DEFAULT_POOL_SIZE = 10

# Every gateway with an open pool, closed on interpreter exit or SIGTERM
_open_gateways: set["DatabaseGateway"] = set()
_registry_lock = threading.Lock()
_handlers_installed = False


class DatabaseConnectionError(Exception):
    """Raised when no connection could be established after all attempts."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


@dataclass
class DatabaseError:
    """A failed statement, with what Postgres told us about it."""

    message: str
    code: str | None = None
    hint: str | None = None
    detail: str | None = None
    error_type: ErrorType = "unknown"


@dataclass
class ExecutionResult:
    rows: list[tuple[Any, ...]] = field(default_factory=list)
    error: DatabaseError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class PoolStats:
    total: int
    active: int
    idle: int


class DatabaseGateway:
    """Connection pool plus per-template execution against one database."""

    def __init__(
        self,
        conninfo: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
        max_size: int = DEFAULT_POOL_SIZE,
    ) -> None:
        self.conninfo = conninfo
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.connect_timeout = connect_timeout
        self.max_size = max_size
        self._pool: ConnectionPool | None = None
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._pool is not None

    def connect(self, silent: bool = True) -> ConnectionPool:
        """Return the open pool, creating it on first use.

        Tries up to max_attempts times, sleeping retry_delay between attempts.

        Raises:
            DatabaseConnectionError: If every attempt failed.
        """
        with self._lock:
            if self._pool is not None:
                return self._pool

            last_error: Exception | None = None
            for attempt in range(1, self.max_attempts + 1):
                pool = ConnectionPool(
                    self.conninfo,
                    min_size=1,
                    max_size=self.max_size,
                    open=False,
                    name="srtd",
                    kwargs={"autocommit": True, "connect_timeout": self.connect_timeout},
                )
                try:
                    pool.open(wait=True, timeout=self.connect_timeout)
                except (PoolTimeout, psycopg.Error) as e:
                    pool.close()
                    last_error = e
                    log = logger.debug if silent else logger.warning
                    log("Connection attempt %d/%d failed: %s", attempt, self.max_attempts, e)
                    if attempt < self.max_attempts:
                        time.sleep(self.retry_delay)
                    continue

                self._pool = pool
                with _registry_lock:
                    _open_gateways.add(self)
                logger.debug("Connected to database on attempt %d", attempt)
                return pool

            raise DatabaseConnectionError(
                f"Could not connect to database after {self.max_attempts} attempts: {last_error}",
                attempts=self.max_attempts,
            ) from last_error

    def execute(self, sql: str, template_name: str) -> ExecutionResult:
        """Run one template's SQL in its own transaction.

        Statement failures come back as ExecutionResult.error.

        Raises:
            DatabaseConnectionError: If the pool could not be opened.
        """
        pool = self.connect()
        try:
            with pool.connection(timeout=self.connect_timeout) as conn:
                with conn.transaction():
                    conn.execute("SET TRANSACTION ISOLATION LEVEL READ COMMITTED")
                    conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (template_name,))
                    cur = conn.execute(sql)
                    rows = cur.fetchall() if cur.description else []
        except PoolTimeout as e:
            message = f"Connection pool exhausted: {e}"
            logger.warning("%s: %s", template_name, message)
            return ExecutionResult(
                error=DatabaseError(
                    message=message,
                    hint=get_error_hint(None, message),
                    error_type="pool_exhausted",
                )
            )
        except psycopg.Error as e:
            error = database_error_from(e)
            logger.debug("%s failed [%s]: %s", template_name, error.code, error.message)
            return ExecutionResult(error=error)

        return ExecutionResult(rows=rows)

    def test_connection(self) -> bool:
        """True if a trivial query succeeds. Never raises."""
        try:
            pool = self.connect()
            with pool.connection(timeout=self.connect_timeout) as conn:
                conn.execute("SELECT 1")
        except (DatabaseConnectionError, PoolTimeout, psycopg.Error) as e:
            logger.debug("Connection test failed: %s", e)
            return False
        return True

    def stats(self) -> PoolStats:
        if self._pool is None:
            return PoolStats(total=0, active=0, idle=0)
        raw = self._pool.get_stats()
        total = raw.get("pool_size", 0)
        idle = raw.get("pool_available", 0)
        return PoolStats(total=total, active=max(total - idle, 0), idle=idle)

    def disconnect(self) -> None:
        """Close the pool. Safe to call more than once."""
        with self._lock:
            pool, self._pool = self._pool, None
        with _registry_lock:
            _open_gateways.discard(self)
        if pool is not None:
            pool.close()
            logger.debug("Closed database pool")


def database_error_from(error: psycopg.Error) -> DatabaseError:
    diag = error.diag
    message = diag.message_primary or str(error) or type(error).__name__
    code = error.sqlstate
    return DatabaseError(
        message=message,
        code=code,
        hint=get_error_hint(code, message) or diag.message_hint,
        detail=diag.message_detail,
        error_type=classify_error_type(code, message),
    )


def close_all() -> int:
    """Close every open gateway.

    Returns:
        Number of gateways closed.
    """
    with _registry_lock:
        gateways = list(_open_gateways)

    for gateway in gateways:
        try:
            gateway.disconnect()
        except Exception:
            logger.exception("Error closing database pool")
    return len(gateways)


def _handle_sigterm(signum: int, frame: Any) -> None:
    close_all()
    raise SystemExit(128 + signum)


def install_shutdown_handlers() -> None:
    """Close pools at exit and on SIGTERM. Must be called from the main thread."""
    global _handlers_installed
    if _handlers_installed:
        return
    atexit.register(close_all)
    signal.signal(signal.SIGTERM, _handle_sigterm)
    _handlers_installed = True
