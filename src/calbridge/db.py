"""PostgreSQL connection parameters and the asyncpg pool owner.

Connection parameters resolve from ``DATABASE_URL`` when set, otherwise from
the ``POSTGRES_*`` variables; the ``[database]`` config section overrides
either.  When no ``sslmode`` was configured and the server drops the
connection during the STARTTLS upgrade, pool creation is retried once with
``ssl="disable"``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlparse

import asyncpg

if TYPE_CHECKING:
    from calbridge.config import DatabaseConfig

logger = logging.getLogger(__name__)

SSL_MODES = frozenset({"disable", "prefer", "allow", "require", "verify-ca", "verify-full"})
_STARTTLS_DROPPED = "unexpected connection_lost() call"

_DEFAULT_NAME = "calbridge"
_DEFAULT_PORT = 5432


def parse_ssl_mode(raw: str | None) -> str | None:
    """Lower-cased libpq ``sslmode``, or None when blank or unrecognised."""
    mode = (raw or "").strip().lower()
    if not mode:
        return None
    if mode not in SSL_MODES:
        logger.warning("Ignoring unknown PostgreSQL sslmode: %s", raw)
        return None
    return mode


@dataclass(frozen=True)
class ConnectionParams:
    """Resolved connection target before config-file overrides."""

    host: str = "localhost"
    port: int = _DEFAULT_PORT
    user: str = _DEFAULT_NAME
    password: str = _DEFAULT_NAME
    database: str = _DEFAULT_NAME
    ssl: str | None = None

    def __repr__(self) -> str:
        return (
            f"ConnectionParams(host={self.host!r}, port={self.port!r}, user={self.user!r}, "
            f"password=<REDACTED>, database={self.database!r}, ssl={self.ssl!r})"
        )

    @classmethod
    def from_url(cls, url: str) -> ConnectionParams:
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        return cls(
            host=parsed.hostname or "localhost",
            port=parsed.port or _DEFAULT_PORT,
            user=parsed.username or _DEFAULT_NAME,
            password=parsed.password or _DEFAULT_NAME,
            database=parsed.path.lstrip("/") or _DEFAULT_NAME,
            ssl=parse_ssl_mode(query.get("sslmode", [None])[0]),
        )


def db_params_from_env(environ: dict[str, str] | None = None) -> ConnectionParams:
    """Connection params from the environment; ``DATABASE_URL`` wins."""
    env = os.environ if environ is None else environ
    url = env.get("DATABASE_URL")
    if url:
        return ConnectionParams.from_url(url)
    return ConnectionParams(
        host=env.get("POSTGRES_HOST", "localhost"),
        port=int(env.get("POSTGRES_PORT", str(_DEFAULT_PORT))),
        user=env.get("POSTGRES_USER", _DEFAULT_NAME),
        password=env.get("POSTGRES_PASSWORD", _DEFAULT_NAME),
        database=env.get("POSTGRES_DB", _DEFAULT_NAME),
        ssl=parse_ssl_mode(env.get("POSTGRES_SSLMODE")),
    )


def is_starttls_drop(exc: BaseException, configured_ssl: str | None) -> bool:
    """True when pool creation failed on a dropped STARTTLS upgrade with sslmode unset."""
    if configured_ssl is not None or not isinstance(exc, ConnectionError):
        return False
    return _STARTTLS_DROPPED in str(exc)


class Database:
    """Owns the service's asyncpg pool for one :class:`DatabaseConfig`."""

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config
        self.pool: asyncpg.Pool | None = None

    def __repr__(self) -> str:
        state = "open" if self.pool is not None else "closed"
        return f"Database({self.config!r}, pool={state})"

    def pool_options(self, *, ssl: str | None = None) -> dict[str, Any]:
        cfg = self.config
        options: dict[str, Any] = {
            "host": cfg.host,
            "port": cfg.port,
            "user": cfg.user,
            "password": cfg.password,
            "database": cfg.name,
            "min_size": cfg.min_pool_size,
            "max_size": cfg.max_pool_size,
        }
        mode = ssl or cfg.ssl
        if mode is not None:
            options["ssl"] = mode
        return options

    async def connect(self) -> asyncpg.Pool:
        """Open the pool; a second call returns the existing one."""
        if self.pool is not None:
            return self.pool
        try:
            self.pool = await asyncpg.create_pool(**self.pool_options())
        except ConnectionError as exc:
            if not is_starttls_drop(exc, self.config.ssl):
                raise
            logger.info(
                "PostgreSQL dropped the SSL upgrade; reconnecting with ssl=disable: host=%s",
                self.config.host,
            )
            self.pool = await asyncpg.create_pool(**self.pool_options(ssl="disable"))
        logger.info(
            "Database pool open: database=%s host=%s size=%d..%d",
            self.config.name,
            self.config.host,
            self.config.min_pool_size,
            self.config.max_pool_size,
        )
        return self.pool

    async def close(self) -> None:
        pool, self.pool = self.pool, None
        if pool is None:
            return
        await pool.close()
        logger.info("Database pool closed: database=%s", self.config.name)
