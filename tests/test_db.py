"""Tests for calsync.db pool wiring and calsync.migrations config."""

from __future__ import annotations

import pytest

import calsync.db as db_module
from calsync.config import DatabaseConfig
from calsync.db import SyncDatabase, should_retry_with_ssl_disable
from calsync.migrations import ALEMBIC_DIR, build_alembic_config

pytestmark = pytest.mark.unit

_UPGRADE_LOST = ConnectionError("unexpected connection_lost() call")


class TestSslRetry:
    def test_retries_on_upgrade_connection_loss(self):
        assert should_retry_with_ssl_disable(_UPGRADE_LOST, None)

    def test_no_retry_when_ssl_configured(self):
        assert not should_retry_with_ssl_disable(_UPGRADE_LOST, "require")

    def test_no_retry_for_other_errors(self):
        assert not should_retry_with_ssl_disable(ConnectionError("refused"), None)
        wrong_type = ValueError("unexpected connection_lost() call")
        assert not should_retry_with_ssl_disable(wrong_type, None)


class _FakePool:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class _FakeConnection:
    def __init__(self, exists: bool) -> None:
        self.exists = exists
        self.executed: list[str] = []
        self.closed = False

    async def fetchval(self, query: str, *args):
        return 1 if self.exists else None

    async def execute(self, query: str) -> None:
        self.executed.append(query)

    async def close(self) -> None:
        self.closed = True


class TestSyncDatabase:
    async def test_connect_pins_schema_and_pool_size(self, monkeypatch):
        calls = []
        pool = _FakePool()

        async def _create_pool(**kwargs):
            calls.append(kwargs)
            return pool

        monkeypatch.setattr(db_module.asyncpg, "create_pool", _create_pool)
        config = DatabaseConfig(name="cal", schema="sync", min_pool_size=1, max_pool_size=3)
        db = SyncDatabase(config)

        assert await db.connect() is pool

        [kwargs] = calls
        assert kwargs["database"] == "cal"
        assert (kwargs["min_size"], kwargs["max_size"]) == (1, 3)
        assert kwargs["server_settings"] == {"search_path": "sync,public"}
        assert "ssl" not in kwargs

        await db.close()
        assert pool.closed
        assert db.pool is None

    async def test_connect_retries_without_tls(self, monkeypatch):
        calls = []

        async def _create_pool(**kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                raise _UPGRADE_LOST
            return _FakePool()

        monkeypatch.setattr(db_module.asyncpg, "create_pool", _create_pool)

        await SyncDatabase(DatabaseConfig(name="cal")).connect()

        assert [call.get("ssl") for call in calls] == [None, "disable"]

    async def test_configured_ssl_is_not_downgraded(self, monkeypatch):
        async def _create_pool(**kwargs):
            raise _UPGRADE_LOST

        monkeypatch.setattr(db_module.asyncpg, "create_pool", _create_pool)

        with pytest.raises(ConnectionError):
            await SyncDatabase(DatabaseConfig(name="cal", ssl="require")).connect()

    @pytest.mark.parametrize(("exists", "created"), [(False, True), (True, False)])
    async def test_provision_creates_missing_database(self, monkeypatch, exists, created):
        conn = _FakeConnection(exists)
        targets = []

        async def _connect(**kwargs):
            targets.append(kwargs["database"])
            return conn

        monkeypatch.setattr(db_module.asyncpg, "connect", _connect)

        assert await SyncDatabase(DatabaseConfig(name='cal"x')).provision() is created

        assert targets == ["postgres"]
        assert conn.closed
        expected = ['CREATE DATABASE "cal""x" TEMPLATE template0'] if created else []
        assert conn.executed == expected


class TestAlembicConfig:
    def test_points_at_calsync_chain(self):
        config = build_alembic_config("postgresql://u:p%40ss@h:5432/cal")

        assert config.get_main_option("script_location") == str(ALEMBIC_DIR)
        assert config.get_main_option("version_locations") == str(
            ALEMBIC_DIR / "versions" / "calsync"
        )
        assert config.get_main_option("sqlalchemy.url") == "postgresql://u:p%40ss@h:5432/cal"
        assert config.get_main_option("calsync.target_schema") is None

    def test_target_schema(self):
        config = build_alembic_config("postgresql://u:p@h:5432/cal", target_schema="sync")
        assert config.get_main_option("calsync.target_schema") == "sync"
        assert config.get_main_option("version_table_schema") == "sync"

    def test_invalid_target_schema(self):
        with pytest.raises(ValueError, match="Invalid migration schema name"):
            build_alembic_config("postgresql://u:p@h:5432/cal", target_schema="1bad")
