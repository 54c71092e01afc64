"""PostgreSQL connection helpers with resilient pooling."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import psycopg
from psycopg.conninfo import make_conninfo
from psycopg_pool import ConnectionPool

from db.postgres import mask_dsn as _mask_dsn
from db.postgres import normalize_dsn as _normalize_dsn

log = logging.getLogger("core.db.postgres")

_DEFAULT_POOL_RECYCLE = 300
_DEFAULT_STATEMENT_TIMEOUT = 15_000
_DEFAULT_KEEPALIVES_IDLE = 30
_DEFAULT_KEEPALIVES_INTERVAL = 10
_DEFAULT_KEEPALIVES_COUNT = 3


def normalize_dsn(raw: str) -> str:
    """Expose the shared DSN normaliser."""

    return _normalize_dsn(raw)


def mask_dsn(dsn: str) -> str:
    """Expose the shared DSN masker."""

    return _mask_dsn(dsn)


def ensure_conninfo(raw_dsn: str, *, application_name: Optional[str] = None) -> str:
    """Append keepalive and timeout parameters to a PostgreSQL DSN."""

    base = normalize_dsn(raw_dsn)
    conn_kwargs: Dict[str, Any] = {
        "keepalives": 1,
        "keepalives_idle": _DEFAULT_KEEPALIVES_IDLE,
        "keepalives_interval": _DEFAULT_KEEPALIVES_INTERVAL,
        "keepalives_count": _DEFAULT_KEEPALIVES_COUNT,
        "options": f"-c statement_timeout={_DEFAULT_STATEMENT_TIMEOUT}",
    }
    if application_name:
        conn_kwargs["application_name"] = application_name
    return make_conninfo(base, **conn_kwargs)


class ResilientConnectionPool(ConnectionPool):
    """A psycopg connection pool that discards closed connections."""

    def getconn(self, timeout: Optional[float] = None) -> psycopg.Connection[Any]:  # type: ignore[override]
        while True:
            conn = super().getconn(timeout=timeout)
            if getattr(conn, "closed", False):
                super().putconn(conn)
                continue
            return conn


def create_connection_pool(
    raw_dsn: str,
    *,
    application_name: str = "lime-ledger",
    min_size: int = 1,
    max_size: int = 10,
    max_idle: float = 30.0,
    timeout: float = 10.0,
    max_lifetime: Optional[float] = None,
) -> ResilientConnectionPool:
    """Create and open a :class:`ResilientConnectionPool` with sensible defaults."""

    conninfo = ensure_conninfo(raw_dsn, application_name=application_name)
    lifetime = max_lifetime or _DEFAULT_POOL_RECYCLE
    pool = ResilientConnectionPool(
        conninfo=conninfo,
        min_size=min_size,
        max_size=max(max_size, min_size),
        max_idle=max_idle,
        timeout=timeout,
        max_lifetime=lifetime,
        kwargs={"autocommit": False},
        open=False,
    )
    pool.open(wait=True, timeout=timeout)
    log.info(
        "ledger.pool.started",
        extra={
            "meta": {
                "dsn": mask_dsn(conninfo),
                "min_size": min_size,
                "max_size": max_size,
                "max_idle": max_idle,
                "recycle": lifetime,
            }
        },
    )
    return pool
