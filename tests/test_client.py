"""Tests for db/client.py — the Postgres gateway.

Uses a mocked psycopg_pool.ConnectionPool; no database required.
"""

import signal
from unittest.mock import MagicMock, call, patch

import psycopg
import pytest
from psycopg_pool import PoolTimeout

from db import client
from db.client import DatabaseConnectionError, DatabaseGateway, close_all
from db.errors import ERROR_HINTS


def _mock_pool(open_error: Exception | None = None) -> MagicMock:
    pool = MagicMock()
    if open_error is not None:
        pool.open.side_effect = open_error
    conn = MagicMock()
    pool.connection.return_value.__enter__.return_value = conn
    return pool


def _conn(pool: MagicMock) -> MagicMock:
    return pool.connection.return_value.__enter__.return_value


@pytest.fixture()
def gateway():
    gw = DatabaseGateway("postgresql://localhost/test", retry_delay=0)
    yield gw
    gw.disconnect()


class TestConnect:
    def test_retries_then_raises(self, gateway: DatabaseGateway) -> None:
        pools = [_mock_pool(PoolTimeout("no server")) for _ in range(3)]
        with patch("db.client.ConnectionPool", side_effect=pools) as pool_cls:
            with pytest.raises(DatabaseConnectionError) as exc_info:
                gateway.connect()

        assert pool_cls.call_count == 3
        assert exc_info.value.attempts == 3
        assert "after 3 attempts" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, PoolTimeout)
        for pool in pools:
            pool.close.assert_called_once()
        assert gateway.connected is False

    def test_succeeds_on_second_attempt(self, gateway: DatabaseGateway) -> None:
        pools = [_mock_pool(PoolTimeout("not yet")), _mock_pool()]
        with patch("db.client.ConnectionPool", side_effect=pools):
            assert gateway.connect() is pools[1]
        assert gateway.connected is True

    def test_pool_reused(self, gateway: DatabaseGateway) -> None:
        with patch("db.client.ConnectionPool", return_value=_mock_pool()) as pool_cls:
            first = gateway.connect()
            second = gateway.connect()
        assert first is second
        pool_cls.assert_called_once()

    def test_pool_options(self, gateway: DatabaseGateway) -> None:
        with patch("db.client.ConnectionPool", return_value=_mock_pool()) as pool_cls:
            gateway.connect()
        args, kwargs = pool_cls.call_args
        assert args == ("postgresql://localhost/test",)
        assert kwargs["open"] is False
        assert kwargs["kwargs"]["autocommit"] is True


class TestExecute:
    def test_runs_in_transaction_with_lock(self, gateway: DatabaseGateway) -> None:
        pool = _mock_pool()
        conn = _conn(pool)
        cursor = MagicMock()
        cursor.description = [("x",)]
        cursor.fetchall.return_value = [(1,)]
        conn.execute.return_value = cursor

        with patch("db.client.ConnectionPool", return_value=pool):
            result = gateway.execute("select 1;", "audit")

        assert result.ok
        assert result.rows == [(1,)]
        conn.transaction.assert_called_once()
        assert conn.execute.call_args_list == [
            call("SET TRANSACTION ISOLATION LEVEL READ COMMITTED"),
            call("SELECT pg_advisory_xact_lock(hashtext(%s))", ("audit",)),
            call("select 1;"),
        ]

    def test_statement_error_is_data(self, gateway: DatabaseGateway) -> None:
        pool = _mock_pool()
        _conn(pool).execute.side_effect = [
            MagicMock(),
            MagicMock(),
            psycopg.errors.UndefinedTable('relation "users" does not exist'),
        ]

        with patch("db.client.ConnectionPool", return_value=pool):
            result = gateway.execute("select * from users;", "report")

        assert not result.ok
        assert result.error is not None
        assert result.error.code == "42P01"
        assert result.error.hint == ERROR_HINTS["42P01"]
        assert result.error.error_type == "syntax"
        assert "users" in result.error.message

    def test_pool_exhausted_is_data(self, gateway: DatabaseGateway) -> None:
        pool = _mock_pool()
        pool.connection.side_effect = PoolTimeout("couldn't get a connection after 5 sec")

        with patch("db.client.ConnectionPool", return_value=pool):
            result = gateway.execute("select 1;", "audit")

        assert result.error is not None
        assert result.error.error_type == "pool_exhausted"

    def test_connection_failure_raises(self, gateway: DatabaseGateway) -> None:
        pools = [_mock_pool(PoolTimeout("down")) for _ in range(3)]
        with patch("db.client.ConnectionPool", side_effect=pools):
            with pytest.raises(DatabaseConnectionError):
                gateway.execute("select 1;", "audit")


class TestTestConnection:
    def test_false_when_unreachable(self, gateway: DatabaseGateway) -> None:
        pools = [_mock_pool(PoolTimeout("down")) for _ in range(3)]
        with patch("db.client.ConnectionPool", side_effect=pools):
            assert gateway.test_connection() is False

    def test_false_on_query_error(self, gateway: DatabaseGateway) -> None:
        pool = _mock_pool()
        _conn(pool).execute.side_effect = psycopg.OperationalError("server closed")
        with patch("db.client.ConnectionPool", return_value=pool):
            assert gateway.test_connection() is False

    def test_true_when_reachable(self, gateway: DatabaseGateway) -> None:
        pool = _mock_pool()
        with patch("db.client.ConnectionPool", return_value=pool):
            assert gateway.test_connection() is True
        _conn(pool).execute.assert_called_once_with("SELECT 1")


class TestLifecycle:
    def test_stats_without_pool(self, gateway: DatabaseGateway) -> None:
        stats = gateway.stats()
        assert (stats.total, stats.active, stats.idle) == (0, 0, 0)

    def test_stats_from_pool(self, gateway: DatabaseGateway) -> None:
        pool = _mock_pool()
        pool.get_stats.return_value = {"pool_size": 4, "pool_available": 1}
        with patch("db.client.ConnectionPool", return_value=pool):
            gateway.connect()
        stats = gateway.stats()
        assert (stats.total, stats.active, stats.idle) == (4, 3, 1)

    def test_disconnect_idempotent(self, gateway: DatabaseGateway) -> None:
        pool = _mock_pool()
        with patch("db.client.ConnectionPool", return_value=pool):
            gateway.connect()
        gateway.disconnect()
        gateway.disconnect()
        pool.close.assert_called_once()
        assert gateway.connected is False

    def test_close_all(self) -> None:
        gateways = [DatabaseGateway("postgresql://localhost/a", retry_delay=0) for _ in range(2)]
        pools = [_mock_pool(), _mock_pool()]
        with patch("db.client.ConnectionPool", side_effect=pools):
            for gw in gateways:
                gw.connect()

        assert close_all() == 2
        for pool in pools:
            pool.close.assert_called_once()
        assert close_all() == 0

    def test_install_shutdown_handlers_once(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(client, "_handlers_installed", False)
        with patch("db.client.atexit.register") as register, patch(
            "db.client.signal.signal"
        ) as set_handler:
            client.install_shutdown_handlers()
            client.install_shutdown_handlers()

        register.assert_called_once_with(close_all)
        set_handler.assert_called_once_with(signal.SIGTERM, client._handle_sigterm)
