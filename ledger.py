# -*- coding: utf-8 -*-
"""Persistent storage for user ledgers with all-or-nothing units of work."""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar

import psycopg
from psycopg.errors import UniqueViolation

from core.db.postgres import ResilientConnectionPool, create_connection_pool, mask_dsn, normalize_dsn
from core.db.retry import with_db_retries
from core.errors import (
    ConflictError,
    ConflictOrNotFound,
    DependencyUnavailableError,
    IntegrityError,
    InvalidPatch,
    UserNotFound,
)
from crypto_box import CryptoBox
from ledger_models import UserLedger, ensure_aware, new_user_ledger, utcnow
from logging_utils import build_log_extra
from metrics import observe_transaction
from rewards import generate_referral_code

log = logging.getLogger(__name__)

T = TypeVar("T")

_CODE_ATTEMPTS = 5

# Document keys that ``atomic_field_update`` may match on and replace.
ATOMIC_FIELDS: Mapping[str, str] = {
    "balance": "balance",
    "xp": "xp",
    "level": "level",
    "attemptsCounter": "attempts",
}


class ReferralLookupTaken(ConflictError):
    """Another record already owns the lookup key of a freshly generated code."""

    kind = "referral_code_taken"

    def __init__(self, user_id: str):
        super().__init__("referral code already issued", context={"user_id": user_id})


class LedgerUnit:
    """Reads and staged writes of one unit of work.

    Backends commit every write staged through a unit together, or none of
    them when the unit raises.
    """

    box: CryptoBox

    def get(self, user_id: str, *, for_update: bool = True) -> Optional[UserLedger]:
        raise NotImplementedError

    def insert(self, ledger: UserLedger) -> bool:
        """Stage a new record; ``False`` when ``user_id`` already exists."""

        raise NotImplementedError

    def save(self, ledger: UserLedger) -> None:
        raise NotImplementedError

    def find_by_referral_lookup(
        self, lookup: str, *, for_update: bool = True
    ) -> Optional[UserLedger]:
        raise NotImplementedError

    # ------------------------------------------------------------------
    #   Shared helpers
    # ------------------------------------------------------------------
    def require(self, user_id: str, *, for_update: bool = True) -> UserLedger:
        ledger = self.get(user_id, for_update=for_update)
        if ledger is None:
            raise UserNotFound(user_id)
        return ledger

    def get_or_create(
        self,
        user_id: str,
        now: datetime,
        *,
        code_factory: Callable[[], str] = generate_referral_code,
    ) -> Tuple[UserLedger, bool]:
        existing = self.get(user_id)
        if existing is not None:
            return existing, False
        for attempt in range(1, _CODE_ATTEMPTS + 1):
            candidate = new_user_ledger(user_id, code_factory(), self.box, now)
            try:
                inserted = self.insert(candidate)
            except ReferralLookupTaken:
                log.warning(
                    "ledger.user.code_collision",
                    **build_log_extra(user_id=user_id, attempt=attempt),
                )
                continue
            created = self.get(user_id)
            if created is None:  # pragma: no cover - insert and read share the unit
                raise IntegrityError(f"record for {user_id} vanished after insert")
            if inserted:
                log.info("ledger.user.created", **build_log_extra(user_id=user_id))
            return created, inserted
        raise IntegrityError(
            "could not allocate a unique referral code", context={"user_id": user_id}
        )

    def _encode(self, ledger: UserLedger) -> Dict[str, Any]:
        ledger.validate()
        return ledger.to_document(self.box)

    def _decode(self, document: Any) -> UserLedger:
        if isinstance(document, (str, bytes)):
            document = json.loads(document)
        return UserLedger.from_document(document, self.box)


# ----------------------------------------------------------------------
#   PostgreSQL backend
# ----------------------------------------------------------------------
class _PostgresUnit(LedgerUnit):
    _SELECT = "SELECT document FROM user_ledgers WHERE user_id = %s"
    _SELECT_BY_LOOKUP = "SELECT document FROM user_ledgers WHERE referral_lookup = %s"

    def __init__(self, conn: psycopg.Connection, cur: psycopg.Cursor[Any], box: CryptoBox):
        self._conn = conn
        self._cur = cur
        self.box = box

    def _fetch(self, sql: str, params: Tuple[Any, ...], for_update: bool) -> Optional[UserLedger]:
        if for_update:
            sql += " FOR UPDATE"
        self._cur.execute(sql, params)
        row = self._cur.fetchone()
        if not row:
            return None
        return self._decode(row[0])

    def get(self, user_id: str, *, for_update: bool = True) -> Optional[UserLedger]:
        return self._fetch(self._SELECT, (user_id,), for_update)

    def find_by_referral_lookup(
        self, lookup: str, *, for_update: bool = True
    ) -> Optional[UserLedger]:
        return self._fetch(self._SELECT_BY_LOOKUP, (lookup,), for_update)

    @staticmethod
    def _row(ledger: UserLedger, document: Dict[str, Any]) -> Tuple[Any, ...]:
        session_started = ledger.session.started_at if ledger.session else None
        return (
            ledger.referral.lookup,
            ledger.referral.referrer_id,
            session_started,
            json.dumps(document, ensure_ascii=False, sort_keys=True),
            ensure_aware(ledger.last_update),
        )

    def insert(self, ledger: UserLedger) -> bool:
        document = self._encode(ledger)
        lookup, referrer_id, session_started, payload, updated_at = self._row(ledger, document)
        try:
            # savepoint: a lookup clash must not abort the enclosing unit
            with self._conn.transaction():
                self._cur.execute(
                    """
                    INSERT INTO user_ledgers
                        (user_id, referral_lookup, referrer_id, session_started_at,
                         document, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s)
                    ON CONFLICT (user_id) DO NOTHING
                    RETURNING user_id
                    """,
                    (
                        ledger.user_id,
                        lookup,
                        referrer_id,
                        session_started,
                        payload,
                        ensure_aware(ledger.created_at),
                        updated_at,
                    ),
                )
                row = self._cur.fetchone()
        except UniqueViolation as exc:
            raise ReferralLookupTaken(ledger.user_id) from exc
        return bool(row)

    def save(self, ledger: UserLedger) -> None:
        document = self._encode(ledger)
        lookup, referrer_id, session_started, payload, updated_at = self._row(ledger, document)
        self._cur.execute(
            """
            UPDATE user_ledgers
               SET referral_lookup = %s,
                   referrer_id = %s,
                   session_started_at = %s,
                   document = %s::jsonb,
                   updated_at = %s
             WHERE user_id = %s
            """,
            (lookup, referrer_id, session_started, payload, updated_at, ledger.user_id),
        )
        if getattr(self._cur, "rowcount", 1) == 0:
            raise UserNotFound(ledger.user_id)


class _PostgresLedgerStorage:
    """Ledger records in PostgreSQL, one row per user with a JSONB document."""

    def __init__(
        self,
        dsn: str,
        box: CryptoBox,
        *,
        pool_min: int = 1,
        pool_max: int = 10,
        pool_max_idle: int = 30,
        retries: int = 3,
    ):
        if not dsn:
            raise RuntimeError("DATABASE_URL is required for ledger storage")
        self._dsn = normalize_dsn(dsn)
        self.box = box
        self.log = log
        self._pool: Optional[ResilientConnectionPool] = None
        self._pool_lock = threading.RLock()
        self._pool_min = max(int(pool_min), 1)
        self._pool_max = max(int(pool_max), self._pool_min)
        self._pool_max_idle = max(int(pool_max_idle), 0)
        self._default_retries = max(int(retries), 1)

    # ------------------------------------------------------------------
    #   Lifecycle helpers
    # ------------------------------------------------------------------
    def _connect(self) -> ResilientConnectionPool:
        pool = create_connection_pool(
            self._dsn,
            min_size=self._pool_min,
            max_size=self._pool_max,
            max_idle=float(self._pool_max_idle),
        )
        try:
            with pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        except Exception:
            try:
                pool.close()
            except Exception:  # pragma: no cover - best effort cleanup
                self.log.warning("ledger.pool.close_failed", exc_info=True)
            raise
        return pool

    def start(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                return
            try:
                self._pool = with_db_retries(
                    self._connect,
                    attempts=self._default_retries,
                    backoff=0.2,
                    logger=self.log,
                    context={"op": "connect"},
                    event="ledger.db",
                )
            except psycopg.Error as exc:
                self.log.error(
                    "ledger.db.connect_failed",
                    **build_log_extra(dsn=mask_dsn(self._dsn), error=str(exc)),
                )
                raise DependencyUnavailableError(
                    "ledger store is unavailable", context={"op": "connect"}
                ) from exc
        self.log.info("ledger.db.connected", **build_log_extra(dsn=mask_dsn(self._dsn)))
        try:
            self._prepare()
        except Exception:
            self.stop()
            raise

    def stop(self) -> None:
        with self._pool_lock:
            pool = self._pool
            self._pool = None
        if not pool:
            return
        try:
            pool.close()
        except Exception as exc:  # pragma: no cover - defensive
            self.log.warning("ledger.pool.close_failed", **build_log_extra(error=str(exc)))
        else:
            self.log.info("ledger.pool.closed")

    def _ensure_pool(self) -> ResilientConnectionPool:
        if self._pool is None:
            self.start()
        if self._pool is None:
            raise RuntimeError("Postgres connection pool is not available")
        return self._pool

    def _with_connection(
        self,
        fn: Callable[[psycopg.Connection], T],
        *,
        op: str,
        retries: Optional[int] = None,
        **ctx: Any,
    ) -> T:
        def attempt() -> T:
            pool = self._ensure_pool()
            with pool.connection() as conn:
                return fn(conn)

        return with_db_retries(
            attempt,
            attempts=retries or self._default_retries,
            backoff=0.2,
            logger=self.log,
            context={"op": op, **ctx},
            event="ledger.db",
        )

    def _prepare(self) -> None:
        ddl_ledgers = """
        CREATE TABLE IF NOT EXISTS user_ledgers (
            user_id TEXT PRIMARY KEY,
            referral_lookup TEXT NOT NULL UNIQUE,
            referrer_id TEXT REFERENCES user_ledgers(user_id),
            session_started_at TIMESTAMPTZ,
            document JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CHECK (referrer_id IS NULL OR referrer_id <> user_id)
        )
        """

        ddl_sessions_idx = """
        CREATE INDEX IF NOT EXISTS idx_user_ledgers_session_started
            ON user_ledgers(session_started_at)
         WHERE session_started_at IS NOT NULL
        """

        ddl_referrer_idx = """
        CREATE INDEX IF NOT EXISTS idx_user_ledgers_referrer
            ON user_ledgers(referrer_id)
        """

        def operation(conn: psycopg.Connection) -> None:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(ddl_ledgers)
                    cur.execute(ddl_sessions_idx)
                    cur.execute(ddl_referrer_idx)

        self._with_connection(operation, op="prepare")

    # ------------------------------------------------------------------
    #   Public API
    # ------------------------------------------------------------------
    def ping(self) -> bool:
        def operation(conn: psycopg.Connection) -> None:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()

        try:
            self._with_connection(operation, op="ping", retries=1)
            return True
        except Exception:
            log.exception("ledger.ping.failed")
            return False

    def run_bulk(self, fns: Sequence[Callable[[LedgerUnit], Any]], *, op: str, **ctx: Any) -> List[Any]:
        def operation(conn: psycopg.Connection) -> List[Any]:
            with conn.transaction():
                with conn.cursor() as cur:
                    unit = _PostgresUnit(conn, cur, self.box)
                    return [fn(unit) for fn in fns]

        return self._with_connection(operation, op=op, **ctx)

    def stale_sessions(self, cutoff: datetime) -> List[str]:
        def operation(conn: psycopg.Connection) -> List[str]:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        SELECT user_id FROM user_ledgers
                         WHERE session_started_at IS NOT NULL
                           AND session_started_at <= %s
                         ORDER BY session_started_at ASC
                        """,
                        (ensure_aware(cutoff),),
                    )
                    return [str(row[0]) for row in cur.fetchall()]

        return self._with_connection(operation, op="stale_sessions")


# ----------------------------------------------------------------------
#   In-memory backend
# ----------------------------------------------------------------------
class _MemoryUnit(LedgerUnit):
    def __init__(self, storage: "_MemoryLedgerStorage"):
        self._storage = storage
        self.box = storage.box
        self._staged: Dict[str, Dict[str, Any]] = {}

    def _document(self, user_id: str) -> Optional[Dict[str, Any]]:
        if user_id in self._staged:
            return self._staged[user_id]
        return self._storage._docs.get(user_id)

    def _owner_of(self, lookup: str) -> Optional[str]:
        for user_id, document in self._staged.items():
            if document["referral"]["lookup"] == lookup:
                return user_id
        owner = self._storage._lookups.get(lookup)
        if owner is None or owner in self._staged:
            return None
        return owner

    def get(self, user_id: str, *, for_update: bool = True) -> Optional[UserLedger]:
        document = self._document(user_id)
        if document is None:
            return None
        return self._decode(copy.deepcopy(document))

    def find_by_referral_lookup(
        self, lookup: str, *, for_update: bool = True
    ) -> Optional[UserLedger]:
        owner = self._owner_of(lookup)
        return self.get(owner) if owner is not None else None

    def insert(self, ledger: UserLedger) -> bool:
        if self._document(ledger.user_id) is not None:
            return False
        owner = self._owner_of(ledger.referral.lookup)
        if owner is not None:
            raise ReferralLookupTaken(ledger.user_id)
        self._staged[ledger.user_id] = copy.deepcopy(self._encode(ledger))
        return True

    def save(self, ledger: UserLedger) -> None:
        if self._document(ledger.user_id) is None:
            raise UserNotFound(ledger.user_id)
        owner = self._owner_of(ledger.referral.lookup)
        if owner is not None and owner != ledger.user_id:
            raise ReferralLookupTaken(ledger.user_id)
        self._staged[ledger.user_id] = copy.deepcopy(self._encode(ledger))

    def commit(self) -> None:
        for user_id, document in self._staged.items():
            previous = self._storage._docs.get(user_id)
            if previous is not None:
                self._storage._lookups.pop(previous["referral"]["lookup"], None)
            self._storage._docs[user_id] = document
            self._storage._lookups[document["referral"]["lookup"]] = user_id
        self._staged = {}


class _MemoryLedgerStorage:
    """In-memory ledger for tests and environments without Postgres.

    Units of work run one at a time under a re-entrant lock; staged
    documents reach the shared maps only when the unit returns.
    """

    def __init__(self, box: CryptoBox) -> None:
        self.box = box
        self._lock = threading.RLock()
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._lookups: Dict[str, str] = {}

    def ping(self) -> bool:
        return True

    def start(self) -> None:  # pragma: no cover - memory backend is eager
        return

    def stop(self) -> None:  # pragma: no cover - memory backend is eager
        return

    def run_bulk(self, fns: Sequence[Callable[[LedgerUnit], Any]], *, op: str, **ctx: Any) -> List[Any]:
        with self._lock:
            unit = _MemoryUnit(self)
            results = [fn(unit) for fn in fns]
            unit.commit()
            return results

    def stale_sessions(self, cutoff: datetime) -> List[str]:
        limit = ensure_aware(cutoff)
        with self._lock:
            candidates = []
            for user_id, document in self._docs.items():
                session = document.get("session")
                if not session:
                    continue
                started = datetime.fromisoformat(session["startedAt"])
                if ensure_aware(started) <= limit:
                    candidates.append((started, user_id))
        return [user_id for _, user_id in sorted(candidates)]

    def raw_document(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Stored form of one record, as written to the backing map."""

        with self._lock:
            document = self._docs.get(user_id)
            return copy.deepcopy(document) if document is not None else None


# ----------------------------------------------------------------------
#   Facade
# ----------------------------------------------------------------------
class LedgerStorage:
    """Facade that selects the ledger backend and coordinates units of work."""

    def __init__(
        self,
        box: CryptoBox,
        *,
        dsn: Optional[str] = None,
        backend: str = "postgres",
        pool_min: int = 1,
        pool_max: int = 10,
        pool_max_idle: int = 30,
        retries: int = 3,
    ) -> None:
        backend = (backend or "postgres").lower()
        self.backend = backend
        self.box = box

        if backend == "memory":
            self._impl: Any = _MemoryLedgerStorage(box)
            self._started = True
        elif backend == "postgres":
            if not dsn:
                raise RuntimeError("DATABASE_URL must be set for persistent ledger storage")
            self._impl = _PostgresLedgerStorage(
                dsn,
                box,
                pool_min=pool_min,
                pool_max=pool_max,
                pool_max_idle=pool_max_idle,
                retries=retries,
            )
            self._started = False
        else:
            raise RuntimeError(f"unknown ledger backend '{backend}'")

    @classmethod
    def from_settings(cls, settings: Any, box: CryptoBox) -> "LedgerStorage":
        return cls(
            box,
            dsn=settings.DATABASE_URL or None,
            backend=settings.LEDGER_BACKEND,
            pool_min=settings.PG_POOL_MIN,
            pool_max=settings.PG_POOL_MAX,
            pool_max_idle=settings.PG_POOL_MAX_IDLE,
            retries=settings.DB_RETRY_ATTEMPTS,
        )

    @property
    def backend_name(self) -> str:
        return self.backend

    def start(self) -> None:
        self._impl.start()
        self._started = True

    def stop(self) -> None:
        try:
            self._impl.stop()
        finally:
            self._started = False

    def _ensure_started(self) -> None:
        if not self._started:
            self.start()

    def ping(self) -> bool:
        try:
            self._ensure_started()
        except DependencyUnavailableError:
            log.warning("ledger.ping.unavailable", **build_log_extra(backend=self.backend))
            return False
        return bool(self._impl.ping())

    # ------------------------------------------------------------------
    #   Units of work
    # ------------------------------------------------------------------
    def run_bulk(
        self, fns: Sequence[Callable[[LedgerUnit], Any]], *, op: str = "bulk", **ctx: Any
    ) -> List[Any]:
        """Run several units of work as one; all of them commit or none does."""

        self._ensure_started()
        started = time.perf_counter()
        try:
            return self._impl.run_bulk(list(fns), op=op, **ctx)
        finally:
            observe_transaction(op, time.perf_counter() - started)

    def run_in_transaction(self, fn: Callable[[LedgerUnit], T], *, op: str = "unit", **ctx: Any) -> T:
        """Run ``fn`` against a consistent snapshot; its writes commit only if it returns."""

        return self.run_bulk([fn], op=op, **ctx)[0]

    def atomic_field_update(
        self,
        user_id: str,
        expected: Optional[Mapping[str, Any]],
        patch: Mapping[str, Any],
        *,
        now: Optional[datetime] = None,
    ) -> UserLedger:
        """Replace scalar fields of one record when every ``expected`` value matches.

        Fails with :class:`ConflictOrNotFound` when the record is absent or a
        predicate does not hold.
        """

        unknown = sorted(set(patch) - set(ATOMIC_FIELDS)) + sorted(
            set(expected or {}) - set(ATOMIC_FIELDS)
        )
        if unknown:
            raise InvalidPatch(
                f"fields not updatable atomically: {', '.join(unknown)}", field=unknown[0]
            )
        moment = now or utcnow()

        def unit_of_work(unit: LedgerUnit) -> UserLedger:
            ledger = unit.get(user_id)
            if ledger is None:
                raise ConflictOrNotFound(
                    f"user {user_id} not found", context={"user_id": user_id}
                )
            for key, value in (expected or {}).items():
                current = getattr(ledger, ATOMIC_FIELDS[key])
                if current != value:
                    raise ConflictOrNotFound(
                        f"{key} predicate failed",
                        context={"user_id": user_id, "field": key, "current": current, "expected": value},
                    )
            updated = ledger.copy()
            for key, value in patch.items():
                setattr(updated, ATOMIC_FIELDS[key], value)
            updated.touch(moment)
            unit.save(updated)
            return updated

        return self.run_in_transaction(
            unit_of_work, op="atomic_field_update", user_id=user_id
        )

    # ------------------------------------------------------------------
    #   Entity access
    # ------------------------------------------------------------------
    def find(self, user_id: str) -> Optional[UserLedger]:
        return self.run_in_transaction(
            lambda unit: unit.get(user_id, for_update=False), op="find", user_id=user_id
        )

    def upsert(self, ledger: UserLedger) -> UserLedger:
        def unit_of_work(unit: LedgerUnit) -> UserLedger:
            if not unit.insert(ledger):
                unit.save(ledger)
            return ledger

        return self.run_in_transaction(unit_of_work, op="upsert", user_id=ledger.user_id)

    def stale_sessions(self, cutoff: datetime) -> List[str]:
        self._ensure_started()
        return self._impl.stale_sessions(cutoff)


__all__ = [
    "ATOMIC_FIELDS",
    "LedgerStorage",
    "LedgerUnit",
    "ReferralLookupTaken",
]
