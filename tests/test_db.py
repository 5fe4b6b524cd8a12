from __future__ import annotations

import asyncio
from typing import Any

import asyncpg
import pytest

from conftest import FakeConnection, FakePool, make_config, open_manager
from core.db import AcquireTimeout, ConnectFailure, PoolConfig, PoolManager

pytestmark = pytest.mark.anyio


def test_pool_config_defaults() -> None:
    cfg = PoolConfig(database_url="postgresql://localhost/db")
    assert cfg.max_connections == 10
    assert cfg.min_connections == 1
    assert cfg.connect_timeout == 5.0
    assert cfg.idle_timeout == 300.0
    assert cfg.acquire_timeout == 30.0


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_connections": 0},
        {"min_connections": 3, "max_connections": 2},
        {"min_connections": -1},
        {"acquire_timeout": 0},
        {"connect_timeout": -1.0},
        {"database_url": ""},
    ],
)
def test_pool_config_rejects_bad_values(overrides: dict[str, Any]) -> None:
    with pytest.raises(ValueError):
        make_config(**overrides)


async def test_open_passes_pool_settings() -> None:
    captured: dict[str, Any] = {}
    fake = FakePool()

    async def factory(**kwargs: Any) -> FakePool:
        captured.update(kwargs)
        return fake

    manager = PoolManager(make_config(max_connections=7, min_connections=2, idle_timeout=42.0), pool_factory=factory)
    await manager.open()
    await manager.open()

    assert captured["min_size"] == 2
    assert captured["max_size"] == 7
    assert captured["max_inactive_connection_lifetime"] == 42.0
    assert captured["timeout"] == 1.0
    assert manager.is_open

    await manager.close()
    await manager.close()
    assert fake.closed
    assert not manager.is_open


async def test_open_refused_is_connect_failure() -> None:
    async def factory(**kwargs: Any) -> FakePool:
        raise ConnectionRefusedError("refused")

    manager = PoolManager(make_config(), pool_factory=factory)
    with pytest.raises(ConnectFailure):
        await manager.open()
    assert not manager.is_open


async def test_open_times_out_as_connect_failure() -> None:
    async def factory(**kwargs: Any) -> FakePool:
        await asyncio.sleep(5)
        return FakePool()

    manager = PoolManager(make_config(connect_timeout=0.05), pool_factory=factory)
    with pytest.raises(ConnectFailure):
        await manager.open()


async def test_acquire_before_open_fails() -> None:
    manager = PoolManager(make_config())
    with pytest.raises(ConnectFailure):
        async with manager.acquire():
            pass


async def test_acquire_releases_on_error() -> None:
    fake = FakePool()
    manager = await open_manager(fake)

    with pytest.raises(ZeroDivisionError):
        async with manager.acquire():
            raise ZeroDivisionError

    assert fake.acquired == 1
    assert fake.released == 1
    assert manager.stats().idle == 2


async def test_acquire_releases_on_cancellation() -> None:
    fake = FakePool()
    manager = await open_manager(fake)
    entered = asyncio.Event()

    async def hold() -> None:
        async with manager.acquire():
            entered.set()
            await asyncio.sleep(10)

    task = asyncio.create_task(hold())
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert fake.released == 1
    assert fake.checked_out == 0


async def test_exhausted_pool_times_out() -> None:
    fake = FakePool(max_size=2)
    manager = await open_manager(fake, acquire_timeout=0.05)
    release = asyncio.Event()

    async def occupy() -> str:
        try:
            async with manager.acquire():
                await release.wait()
            return "ok"
        except AcquireTimeout:
            return "timeout"

    tasks = [asyncio.create_task(occupy()) for _ in range(3)]
    await asyncio.sleep(0.2)
    release.set()
    results = await asyncio.gather(*tasks)

    assert results.count("timeout") >= 1
    assert results.count("ok") == 2
    assert fake.checked_out == 0


async def test_acquire_transport_error_is_connect_failure() -> None:
    fake = FakePool(acquire_error=OSError("network down"))
    manager = await open_manager(fake)
    with pytest.raises(ConnectFailure):
        async with manager.acquire():
            pass


async def test_probe_runs_no_sql() -> None:
    conn = FakeConnection()
    fake = FakePool(conn)
    manager = await open_manager(fake)

    await manager.probe()

    assert conn.calls == []
    assert fake.released == 1


async def test_probe_fails_on_closed_connection() -> None:
    conn = FakeConnection()
    conn.closed = True
    manager = await open_manager(FakePool(conn))
    with pytest.raises(ConnectFailure):
        await manager.probe()


async def test_ping_selects_one() -> None:
    conn = FakeConnection()
    manager = await open_manager(FakePool(conn))
    await manager.ping()
    assert conn.calls == [("SELECT 1", ())]


async def test_context_manager_closes_pool() -> None:
    fake = FakePool()

    async def factory(**kwargs: Any) -> FakePool:
        return fake

    async with PoolManager(make_config(), pool_factory=factory) as manager:
        assert manager.stats().max_size == 2
    assert fake.closed


@pytest.mark.parametrize(
    "error",
    [
        asyncpg.TooManyConnectionsError("sorry, too many clients already"),
        asyncpg.CannotConnectNowError("the database system is starting up"),
    ],
)
async def test_server_refusal_on_acquire_is_connect_failure(error: Exception) -> None:
    manager = await open_manager(FakePool(acquire_error=error))
    with pytest.raises(ConnectFailure) as excinfo:
        async with manager.acquire():
            pass
    assert excinfo.value.__cause__ is error


async def test_server_refusal_on_open_is_connect_failure() -> None:
    async def factory(**kwargs: Any) -> FakePool:
        raise asyncpg.TooManyConnectionsError("sorry, too many clients already")

    with pytest.raises(ConnectFailure):
        await PoolManager(make_config(), pool_factory=factory).open()


async def test_body_error_wins_over_release_error() -> None:
    fake = FakePool(release_error=OSError("socket closed"))
    manager = await open_manager(fake)

    with pytest.raises(ZeroDivisionError):
        async with manager.acquire():
            raise ZeroDivisionError

    assert fake.released == 1


async def test_release_error_surfaces_when_body_succeeds() -> None:
    manager = await open_manager(FakePool(release_error=OSError("socket closed")))
    with pytest.raises(OSError):
        async with manager.acquire():
            pass
