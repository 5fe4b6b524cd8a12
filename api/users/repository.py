"""
User persistence.

This module is where user-related SQL lives. Every public method borrows
exactly one pooled connection for its duration and maps asyncpg / pool
failures onto the `RepoError` family below. Nothing asyncpg-specific
leaves this module.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import asyncpg

from core.db import CONNECT_ERRORS, PoolError, PoolManager

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255
MAX_EMAIL_LENGTH = 255
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 100
# users.id is SERIAL (int4).
MAX_USER_ID = 2**31 - 1

_COLUMNS = "id, name, email, created_at, updated_at"


class RepoError(RuntimeError):
    code = "repo_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(RepoError):
    code = "not_found"


class Conflict(RepoError):
    code = "conflict"


class Invalid(RepoError):
    code = "invalid"


class Unavailable(RepoError):
    code = "unavailable"


_INVALID_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.CheckViolationError,
    asyncpg.NotNullViolationError,
    asyncpg.StringDataRightTruncationError,
    asyncpg.exceptions.DataError,
)


@dataclass(frozen=True)
class User:
    id: int
    name: str
    email: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Any) -> User:
        return cls(
            id=int(row["id"]),
            name=str(row["name"]),
            email=str(row["email"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def _clean_name(name: Any) -> str:
    if not isinstance(name, str):
        raise Invalid("name must be a string.")
    name = name.strip()
    if not name:
        raise Invalid("name must not be empty.")
    if len(name) > MAX_NAME_LENGTH:
        raise Invalid(f"name must be at most {MAX_NAME_LENGTH} characters.")
    return name


def _clean_email(email: Any) -> str:
    if not isinstance(email, str):
        raise Invalid("email must be a string.")
    email = email.strip()
    if not email:
        raise Invalid("email must not be empty.")
    if len(email) > MAX_EMAIL_LENGTH:
        raise Invalid(f"email must be at most {MAX_EMAIL_LENGTH} characters.")
    local, sep, domain = email.partition("@")
    if not sep or not local or not domain:
        raise Invalid("email must look like user@domain.")
    return email


def _check_id(user_id: Any) -> int:
    if isinstance(user_id, bool) or not isinstance(user_id, int):
        raise Invalid("id must be an integer.")
    if not 1 <= user_id <= MAX_USER_ID:
        raise NotFound(f"User {user_id} not found.")
    return user_id


class UserRepository:
    def __init__(self, pool: PoolManager) -> None:
        self.pool = pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except RepoError:
            raise
        except PoolError as exc:
            raise Unavailable("Database is temporarily unavailable.") from exc
        except asyncpg.UniqueViolationError as exc:
            raise Conflict("A user with this email already exists.") from exc
        except _INVALID_ERRORS as exc:
            raise Invalid("Value rejected by the database.") from exc
        except asyncio.TimeoutError as exc:
            raise Unavailable("Database did not answer in time.") from exc
        except CONNECT_ERRORS as exc:
            raise Unavailable("Lost connection to the database.") from exc
        except asyncpg.PostgresError as exc:
            logger.exception("user_store_error sqlstate=%s", getattr(exc, "sqlstate", None))
            raise Unavailable("Database error.") from exc

    async def create(self, name: str, email: str) -> User:
        name = _clean_name(name)
        email = _clean_email(email)
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO users (name, email)
                VALUES ($1, $2)
                RETURNING {_COLUMNS}
                """,
                name,
                email,
            )
        if row is None:
            raise Unavailable("Failed to create user.")
        user = User.from_row(row)
        logger.info("user_created id=%s", user.id)
        return user

    async def get(self, user_id: int) -> User:
        user_id = _check_id(user_id)
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_COLUMNS}
                FROM users
                WHERE id = $1
                """,
                user_id,
            )
        if row is None:
            raise NotFound(f"User {user_id} not found.")
        return User.from_row(row)

    async def list(self, limit: int = DEFAULT_LIST_LIMIT, offset: int = 0) -> list[User]:
        """
        Most recently created first. `limit` is capped at MAX_LIST_LIMIT.
        """
        for label, value in (("limit", limit), ("offset", offset)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise Invalid(f"{label} must be an integer.")
            if value < 0:
                raise Invalid(f"{label} must be >= 0.")
        limit = min(limit, MAX_LIST_LIMIT)

        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS}
                FROM users
                ORDER BY created_at DESC, id DESC
                LIMIT $1
                OFFSET $2
                """,
                limit,
                offset,
            )
        return [User.from_row(r) for r in rows]

    async def count(self) -> int:
        async with self._connection() as conn:
            total = await conn.fetchval("SELECT count(*) FROM users")
        return int(total or 0)

    async def update(self, user_id: int, *, name: str | None = None, email: str | None = None) -> User:
        """
        Partial update. Fields left as None keep their stored value;
        `updated_at` is advanced by the table trigger.
        """
        user_id = _check_id(user_id)
        if name is None and email is None:
            raise Invalid("Provide at least one of name, email.")
        if name is not None:
            name = _clean_name(name)
        if email is not None:
            email = _clean_email(email)

        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE users
                SET name = COALESCE($2, name),
                    email = COALESCE($3, email)
                WHERE id = $1
                RETURNING {_COLUMNS}
                """,
                user_id,
                name,
                email,
            )
        if row is None:
            raise NotFound(f"User {user_id} not found.")
        logger.info("user_updated id=%s", user_id)
        return User.from_row(row)

    async def delete(self, user_id: int) -> None:
        user_id = _check_id(user_id)
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                DELETE FROM users
                WHERE id = $1
                RETURNING id
                """,
                user_id,
            )
        if row is None:
            raise NotFound(f"User {user_id} not found.")
        logger.info("user_deleted id=%s", user_id)
