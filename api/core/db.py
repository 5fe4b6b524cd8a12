"""
Connection pool manager (asyncpg).

`PoolManager` owns the process's only pool. It is constructed explicitly at
startup (see `api/main.py`), handed to the migrator, the user repository
and the health reporter, and closed on shutdown.

SQL parameter style:
- asyncpg uses positional placeholders: $1, $2, $3, ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)


class PoolError(RuntimeError):
    code = "pool_error"


class AcquireTimeout(PoolError):
    code = "acquire_timeout"


class ConnectFailure(PoolError):
    code = "connect_failure"


# Errors that mean "the transport is gone or never came up".
CONNECT_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.InvalidAuthorizationSpecificationError,
    asyncpg.InvalidCatalogNameError,
)

# Anything the server says while a connection is being opened or checked
# out, e.g. TooManyConnectionsError or CannotConnectNowError.
OPEN_ERRORS: tuple[type[BaseException], ...] = CONNECT_ERRORS + (asyncpg.PostgresError,)


@dataclass(frozen=True)
class PoolConfig:
    database_url: str
    max_connections: int = 10
    min_connections: int = 1
    connect_timeout: float = 5.0
    idle_timeout: float = 300.0
    acquire_timeout: float = 30.0

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ValueError("database_url is empty.")
        if self.max_connections < 1:
            raise ValueError("max_connections must be >= 1.")
        if not 0 <= self.min_connections <= self.max_connections:
            raise ValueError("min_connections must be between 0 and max_connections.")
        for name in ("connect_timeout", "idle_timeout", "acquire_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0.")


@dataclass(frozen=True)
class PoolStats:
    size: int
    idle: int
    max_size: int
    min_size: int


PoolFactory = Callable[..., Awaitable[Any]]


class PoolManager:
    """
    Bounded set of live connections with timeout-bounded acquisition.

    `acquire` is the only way to get a connection. It yields the connection
    exclusively to one caller and always returns it to the pool, including
    when the body raises or the calling task is cancelled.
    """

    def __init__(self, config: PoolConfig, *, pool_factory: PoolFactory | None = None) -> None:
        self.config = config
        self._pool_factory = pool_factory or asyncpg.create_pool
        self._pool: Any = None

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    async def open(self) -> None:
        if self._pool is not None:
            return None
        cfg = self.config
        try:
            self._pool = await asyncio.wait_for(
                self._pool_factory(
                    dsn=cfg.database_url,
                    min_size=cfg.min_connections,
                    max_size=cfg.max_connections,
                    max_inactive_connection_lifetime=cfg.idle_timeout,
                    timeout=cfg.connect_timeout,
                ),
                timeout=cfg.connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ConnectFailure(
                f"Timed out connecting to database after {cfg.connect_timeout}s."
            ) from exc
        except OPEN_ERRORS as exc:
            raise ConnectFailure("Could not connect to database.") from exc
        logger.info(
            "pool_opened min=%s max=%s acquire_timeout=%s idle_timeout=%s",
            cfg.min_connections,
            cfg.max_connections,
            cfg.acquire_timeout,
            cfg.idle_timeout,
        )

    async def close(self) -> None:
        if self._pool is None:
            return None
        pool, self._pool = self._pool, None
        await pool.close()
        logger.info("pool_closed")

    async def __aenter__(self) -> PoolManager:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _require_pool(self) -> Any:
        if self._pool is None:
            raise ConnectFailure("DB pool is not open.")
        return self._pool

    @asynccontextmanager
    async def acquire(self, timeout: float | None = None) -> AsyncIterator[asyncpg.Connection]:
        pool = self._require_pool()
        wait = self.config.acquire_timeout if timeout is None else timeout
        try:
            conn = await pool.acquire(timeout=wait)
        except asyncio.TimeoutError as exc:
            logger.warning("pool_acquire_timeout timeout=%s", wait)
            raise AcquireTimeout(f"No database connection available within {wait}s.") from exc
        except OPEN_ERRORS as exc:
            raise ConnectFailure("Could not open a database connection.") from exc

        failed = False
        try:
            yield conn
        except BaseException:
            failed = True
            raise
        finally:
            try:
                await pool.release(conn)
            except Exception:
                if not failed:
                    raise
                # The body's error wins; the release failure is only logged.
                logger.exception("pool_release_failed")

    async def probe(self, timeout: float | None = None) -> None:
        """
        Acquire and immediately release a connection. Runs no SQL.
        """
        async with self.acquire(timeout) as conn:
            if conn.is_closed():
                raise ConnectFailure("Pooled connection is closed.")

    async def ping(self, timeout: float | None = None) -> None:
        """
        Trivial store round trip. Touches no table.
        """
        async with self.acquire(timeout) as conn:
            try:
                await conn.execute("SELECT 1")
            except OPEN_ERRORS as exc:
                raise ConnectFailure("Database did not answer.") from exc

    def stats(self) -> PoolStats:
        pool = self._require_pool()
        return PoolStats(
            size=pool.get_size(),
            idle=pool.get_idle_size(),
            max_size=pool.get_max_size(),
            min_size=pool.get_min_size(),
        )
