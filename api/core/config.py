"""
Environment configuration.

Everything is read from process environment variables. Blank or
unparsable numeric values fall back to their defaults so a typo in an
optional knob never prevents startup; only `DATABASE_URL` is required.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .db import PoolConfig


class ConfigError(RuntimeError):
    pass


DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _sanitize_database_url(url: str) -> str:
    # asyncpg rejects some libpq-only parameters.
    parts = urlsplit(url)
    if not parts.query:
        return url

    params = [(k, v) for (k, v) in parse_qsl(parts.query, keep_blank_values=True) if k != "sslmode"]
    query = urlencode(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def database_url() -> str:
    url = os.environ.get("DATABASE_URL", "").strip()
    if not url:
        raise ConfigError("DATABASE_URL is not set.")
    return _sanitize_database_url(url)


def load_pool_config() -> PoolConfig:
    try:
        return PoolConfig(
            database_url=database_url(),
            max_connections=_env_int("DB_MAX_CONNECTIONS", 10),
            min_connections=_env_int("DB_MIN_CONNECTIONS", 1),
            connect_timeout=_env_float("DB_CONNECT_TIMEOUT_SECS", 5.0),
            idle_timeout=_env_float("DB_IDLE_TIMEOUT_SECS", 300.0),
            acquire_timeout=_env_float("DB_ACQUIRE_TIMEOUT_SECS", 30.0),
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


@dataclass(frozen=True)
class Settings:
    pool: PoolConfig
    host: str = "0.0.0.0"
    port: int = 3000
    health_timeout: float = 2.0
    health_degraded_after: float = 0.5
    migrations_dir: Path = DEFAULT_MIGRATIONS_DIR
    log_level: str = "info"


def load_settings() -> Settings:
    migrations_dir = os.environ.get("MIGRATIONS_DIR", "").strip()
    return Settings(
        pool=load_pool_config(),
        host=os.environ.get("SERVER_HOST", "0.0.0.0").strip() or "0.0.0.0",
        port=_env_int("SERVER_PORT", 3000),
        health_timeout=_env_float("HEALTH_TIMEOUT_SECS", 2.0),
        health_degraded_after=_env_float("HEALTH_DEGRADED_AFTER_SECS", 0.5),
        migrations_dir=Path(migrations_dir) if migrations_dir else DEFAULT_MIGRATIONS_DIR,
        log_level=os.environ.get("LOG_LEVEL", "info").strip() or "info",
    )
