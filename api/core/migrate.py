"""
Versioned SQL schema migrations.

Scripts live in `migrations/` and are named `<version>_<name>.sql`, e.g.
`001_initial_schema.sql`. Each pending script runs in its own transaction
together with the insert of its `schema_migrations` row, so a crash leaves
either both or neither.

`apply_pending` must be awaited before the service takes traffic. Any
failure is fatal: the caller aborts startup.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path

import asyncpg

from .db import CONNECT_ERRORS, PoolError, PoolManager

logger = logging.getLogger(__name__)

# Failures while reading or writing bookkeeping; all become MigrationError.
_STORE_ERRORS: tuple[type[BaseException], ...] = (PoolError, asyncpg.PostgresError, *CONNECT_ERRORS)

_FILENAME_RE = re.compile(r"^(?P<version>\d+)_(?P<name>[A-Za-z0-9_\-]+)\.sql$")

BOOKKEEPING_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version BIGINT PRIMARY KEY,
    name TEXT NOT NULL,
    checksum TEXT NOT NULL,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


class MigrationError(RuntimeError):
    def __init__(self, version: int | None, cause: str) -> None:
        self.version = version
        self.cause = cause
        label = f"migration {version}" if version is not None else "migrations"
        super().__init__(f"{label} failed: {cause}")


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()


def load_migrations(directory: Path) -> list[Migration]:
    """
    Read and order every `*.sql` script in `directory`.
    """
    if not directory.is_dir():
        raise MigrationError(None, f"migrations directory not found: {directory}")

    by_version: dict[int, Migration] = {}
    for path in sorted(directory.glob("*.sql")):
        match = _FILENAME_RE.match(path.name)
        if match is None:
            raise MigrationError(None, f"malformed migration filename: {path.name}")
        version = int(match.group("version"))
        if version in by_version:
            raise MigrationError(version, f"duplicate migration version in {path.name}")
        by_version[version] = Migration(
            version=version,
            name=match.group("name").replace("_", " "),
            sql=path.read_text(encoding="utf-8"),
        )
    return [by_version[v] for v in sorted(by_version)]


class Migrator:
    def __init__(self, migrations: list[Migration]) -> None:
        self.migrations = sorted(migrations, key=lambda m: m.version)

    @classmethod
    def from_directory(cls, directory: Path) -> Migrator:
        return cls(load_migrations(directory))

    async def _applied_checksums(self, conn: asyncpg.Connection) -> dict[int, str]:
        await conn.execute(BOOKKEEPING_SQL)
        rows = await conn.fetch("SELECT version, checksum FROM schema_migrations ORDER BY version")
        return {int(r["version"]): str(r["checksum"]) for r in rows}

    def _verify(self, applied: dict[int, str]) -> list[Migration]:
        """
        Check recorded versions against the scripts on disk and return
        the migrations still to run.
        """
        known = {m.version: m for m in self.migrations}
        for version, checksum in applied.items():
            migration = known.get(version)
            if migration is None:
                raise MigrationError(version, "applied migration is missing from disk")
            if migration.checksum != checksum:
                raise MigrationError(version, "applied migration was modified after it ran")
        return [m for m in self.migrations if m.version not in applied]

    async def applied(self, pool: PoolManager) -> list[int]:
        try:
            async with pool.acquire() as conn:
                return sorted(await self._applied_checksums(conn))
        except _STORE_ERRORS as exc:
            raise MigrationError(None, str(exc)) from exc

    async def current_version(self, pool: PoolManager) -> int | None:
        versions = await self.applied(pool)
        return versions[-1] if versions else None

    async def pending(self, pool: PoolManager) -> list[Migration]:
        try:
            async with pool.acquire() as conn:
                return self._verify(await self._applied_checksums(conn))
        except _STORE_ERRORS as exc:
            raise MigrationError(None, str(exc)) from exc

    async def apply_pending(self, pool: PoolManager) -> int:
        """
        Apply every pending migration in ascending version order.
        Returns how many were applied (0 when already up to date).
        """
        try:
            async with pool.acquire() as conn:
                todo = self._verify(await self._applied_checksums(conn))
                for migration in todo:
                    await self._apply_one(conn, migration)
        except _STORE_ERRORS as exc:
            raise MigrationError(None, str(exc)) from exc

        if todo:
            logger.info("migrations_complete applied=%s version=%s", len(todo), todo[-1].version)
        else:
            logger.info("migrations_up_to_date")
        return len(todo)

    async def _apply_one(self, conn: asyncpg.Connection, migration: Migration) -> None:
        logger.info("migration_apply version=%s name=%s", migration.version, migration.name)
        try:
            async with conn.transaction():
                await conn.execute(migration.sql)
                await conn.execute(
                    """
                    INSERT INTO schema_migrations (version, name, checksum)
                    VALUES ($1, $2, $3)
                    """,
                    migration.version,
                    migration.name,
                    migration.checksum,
                )
        except (asyncpg.PostgresError, *CONNECT_ERRORS) as exc:
            logger.error("migration_failed version=%s error=%s", migration.version, type(exc).__name__)
            raise MigrationError(migration.version, str(exc)) from exc
