import logging
import sys
from datetime import datetime
from pathlib import Path

import psycopg
import pytest
from psycopg import errors as pg_errors

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.db.retry import is_retryable_db_error, with_db_retries
from core.errors import DependencyUnavailableError, SessionAlreadyActive


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    monkeypatch.setattr("core.db.retry.time.sleep", lambda _: None)


def test_with_db_retries_success_after_retry(caplog):
    attempts = {"value": 0}

    def flaky() -> str:
        attempts["value"] += 1
        if attempts["value"] == 1:
            raise psycopg.OperationalError("SSL connection has been closed unexpectedly")
        return "ok"

    logger = logging.getLogger("test.db_retry")
    caplog.set_level(logging.INFO, logger="test.db_retry")

    result = with_db_retries(
        flaky,
        attempts=3,
        backoff=0.0,
        logger=logger,
        context={"op": "test"},
    )

    assert result == "ok"
    messages = [record.getMessage() for record in caplog.records if record.name == "test.db_retry"]
    assert "ledger.db.retry" in messages
    assert "ledger.db.retry_ok" in messages
    assert attempts["value"] == 2


def test_with_db_retries_gives_up_with_dependency_error(caplog):
    calls = {"value": 0}

    def down() -> None:
        calls["value"] += 1
        raise psycopg.OperationalError("Connection reset by peer")

    logger = logging.getLogger("test.db_retry")
    caplog.set_level(logging.INFO, logger="test.db_retry")

    with pytest.raises(DependencyUnavailableError) as excinfo:
        with_db_retries(down, attempts=3, logger=logger, context={"op": "down"})

    assert calls["value"] == 3
    assert isinstance(excinfo.value.__cause__, psycopg.OperationalError)
    assert excinfo.value.context == {"op": "down"}
    messages = [record.getMessage() for record in caplog.records if record.name == "test.db_retry"]
    assert messages.count("ledger.db.retry") == 2
    assert "ledger.db.retry_giveup" in messages


def test_with_db_retries_does_not_retry_domain_errors():
    calls = {"value": 0}

    def conflict() -> None:
        calls["value"] += 1
        raise SessionAlreadyActive("u1", datetime(2024, 1, 1))

    with pytest.raises(SessionAlreadyActive):
        with_db_retries(conflict, attempts=3)
    assert calls["value"] == 1


def test_is_retryable_db_error_classification():
    assert is_retryable_db_error(psycopg.OperationalError("server closed the connection unexpectedly"))
    assert is_retryable_db_error(pg_errors.SerializationFailure("could not serialize access"))
    assert not is_retryable_db_error(pg_errors.UniqueViolation("duplicate key"))
    assert not is_retryable_db_error(ValueError("nope"))


@pytest.mark.parametrize(
    "error",
    [
        pg_errors.DeadlockDetected("deadlock detected"),
        pg_errors.SerializationFailure("could not serialize access due to concurrent update"),
    ],
)
def test_lock_conflicts_are_retried(error, caplog):
    calls = {"value": 0}

    def contended() -> str:
        calls["value"] += 1
        if calls["value"] == 1:
            raise error
        return "ok"

    logger = logging.getLogger("test.db_retry")
    caplog.set_level(logging.INFO, logger="test.db_retry")

    assert with_db_retries(contended, attempts=3, logger=logger, context={"op": "lock"}) == "ok"
    assert calls["value"] == 2
    messages = [record.getMessage() for record in caplog.records if record.name == "test.db_retry"]
    assert "ledger.db.retry_ok" in messages
    assert is_retryable_db_error(error)
