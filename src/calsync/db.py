"""PostgreSQL provisioning and the asyncpg pool behind PostgresSyncStore."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import asyncpg

from calsync.config import DatabaseConfig

logger = logging.getLogger(__name__)

_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"
_MAINTENANCE_DB = "postgres"

T = TypeVar("T")


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """Return True when a server without TLS dropped asyncpg's STARTTLS attempt."""
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


class SyncDatabase:
    """Opens the calsync database described by a :class:`DatabaseConfig`."""

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config
        self.pool: asyncpg.Pool | None = None

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.config.host,
            "port": self.config.port,
            "user": self.config.user,
            "password": self.config.password,
            "database": database,
        }
        if self.config.ssl is not None:
            kwargs["ssl"] = self.config.ssl
        return kwargs

    async def _with_ssl_fallback(
        self, opener: Callable[..., Awaitable[T]], kwargs: dict[str, Any]
    ) -> T:
        try:
            return await opener(**kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.config.ssl):
                raise
            logger.info("PostgreSQL at %s refused TLS; retrying without it", self.config.host)
            return await opener(**{**kwargs, "ssl": "disable"})

    async def provision(self) -> bool:
        """Create the calsync database when missing; return True if it was created."""
        name = self.config.name
        conn = await self._with_ssl_fallback(
            asyncpg.connect, self._connect_kwargs(_MAINTENANCE_DB)
        )
        try:
            if await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", name):
                logger.debug("Database %s already exists", name)
                return False
            # CREATE DATABASE takes no bind parameters.
            quoted = name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Created database %s", name)
            return True
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        """Open the pool, pinned to the configured schema through ``search_path``."""
        kwargs = self._connect_kwargs(self.config.name)
        kwargs["min_size"] = self.config.min_pool_size
        kwargs["max_size"] = self.config.max_pool_size
        if self.config.schema is not None:
            kwargs["server_settings"] = {"search_path": f"{self.config.schema},public"}
        self.pool = await self._with_ssl_fallback(asyncpg.create_pool, kwargs)
        logger.info("Connection pool open for %s", self.config.name)
        return self.pool

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
