"""Retry helpers for transient PostgreSQL errors."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, TypeVar

import psycopg
from psycopg import errors as pg_errors

from core.errors import DependencyUnavailableError

T = TypeVar("T")

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})

RETRYABLE_MESSAGES = (
    "SSL connection has been closed unexpectedly",
    "Connection reset by peer",
    "server closed the connection unexpectedly",
    "terminating connection due to administrator command",
    "couldn't get a connection",
)


def is_retryable_db_error(exc: BaseException) -> bool:
    """Connection drops, pool timeouts and serialization conflicts are transient."""

    if isinstance(
        exc, (pg_errors.TransactionRollback, pg_errors.SerializationFailure, pg_errors.DeadlockDetected)
    ):
        return True
    if not isinstance(exc, psycopg.Error):
        return False
    if getattr(exc, "sqlstate", None) in RETRYABLE_SQLSTATES:
        return True
    if not isinstance(exc, psycopg.OperationalError):
        return False
    message = str(exc)
    if any(fragment in message for fragment in RETRYABLE_MESSAGES):
        return True
    return getattr(exc, "sqlstate", None) is None


def with_db_retries(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    backoff: float = 0.2,
    logger: Optional[logging.Logger] = None,
    context: Optional[Dict[str, Any]] = None,
    event: str = "ledger.db",
) -> T:
    """Execute ``fn`` retrying on transient PostgreSQL failures.

    Non-retryable errors propagate unchanged. When every attempt fails with a
    transient error the last one is wrapped in :class:`DependencyUnavailableError`.
    """

    context_meta: Dict[str, Any] = dict(context or {})
    attempts = max(int(attempts), 1)
    for attempt in range(1, attempts + 1):
        try:
            result = fn()
        except Exception as exc:
            if not is_retryable_db_error(exc):
                raise
            meta = {"attempt": attempt, "error": str(exc), **context_meta}
            if attempt == attempts:
                if logger:
                    logger.error(f"{event}.retry_giveup", extra={"meta": meta})
                raise DependencyUnavailableError(
                    "ledger store is unavailable", context={"op": context_meta.get("op")}
                ) from exc
            if logger:
                logger.warning(f"{event}.retry", extra={"meta": meta})
            time.sleep(min(backoff * attempt, 1.0))
            continue
        if logger and attempt > 1:
            logger.info(f"{event}.retry_ok", extra={"meta": {"attempt": attempt, **context_meta}})
        return result
    raise RuntimeError("with_db_retries exhausted without result")  # pragma: no cover


__all__ = ["RETRYABLE_MESSAGES", "RETRYABLE_SQLSTATES", "is_retryable_db_error", "with_db_retries"]
