"""Prometheus metrics helpers shared by the ledger service and its web adapter."""
from __future__ import annotations

import os
import time
from typing import Iterable

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

REGISTRY = CollectorRegistry()

_ENV = (os.getenv("APP_ENV") or "prod").strip() or "prod"

ledger_sessions_started_total = Counter(
    "ledger_sessions_started_total",
    "Farming sessions opened",
    labelnames=("env",),
    registry=REGISTRY,
)

ledger_sessions_settled_total = Counter(
    "ledger_sessions_settled_total",
    "Completed farming sessions folded into balances",
    labelnames=("trigger", "env"),
    registry=REGISTRY,
)

ledger_daily_claims_total = Counter(
    "ledger_daily_claims_total",
    "Daily reward claims grouped by reward day",
    labelnames=("reward_day", "env"),
    registry=REGISTRY,
)

ledger_referrals_applied_total = Counter(
    "ledger_referrals_applied_total",
    "Referral codes successfully attached",
    labelnames=("env",),
    registry=REGISTRY,
)

ledger_integrity_failures_total = Counter(
    "ledger_integrity_failures_total",
    "Sealed fields that failed authentication on read",
    labelnames=("field",),
    registry=REGISTRY,
)

ledger_errors_total = Counter(
    "ledger_errors_total",
    "Failed ledger actions grouped by error kind",
    labelnames=("action", "kind"),
    registry=REGISTRY,
)

ledger_txn_seconds = Histogram(
    "ledger_txn_seconds",
    "Duration of ledger units of work",
    labelnames=("op",),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=REGISTRY,
)

process_uptime_seconds = Gauge(
    "process_uptime_seconds",
    "Process uptime in seconds",
    registry=REGISTRY,
)

_START_TIME = time.time()


def observe_transaction(op: str, seconds: float) -> None:
    ledger_txn_seconds.labels(op=op).observe(max(0.0, seconds))


def record_session_started() -> None:
    ledger_sessions_started_total.labels(env=_ENV).inc()


def record_session_settled(trigger: str) -> None:
    ledger_sessions_settled_total.labels(trigger=trigger, env=_ENV).inc()


def record_daily_claim(reward_day: int) -> None:
    ledger_daily_claims_total.labels(reward_day=str(reward_day), env=_ENV).inc()


def record_referral_applied() -> None:
    ledger_referrals_applied_total.labels(env=_ENV).inc()


def record_integrity_failure(field: str) -> None:
    ledger_integrity_failures_total.labels(field=field).inc()


def record_error(action: str, kind: str) -> None:
    ledger_errors_total.labels(action=action, kind=kind).inc()


def render_metrics() -> bytes:
    """Return the current metrics payload in Prometheus text format."""

    process_uptime_seconds.set(max(0.0, time.time() - _START_TIME))
    return generate_latest(REGISTRY)


__all__: Iterable[str] = [
    "REGISTRY",
    "ledger_daily_claims_total",
    "ledger_errors_total",
    "ledger_integrity_failures_total",
    "ledger_referrals_applied_total",
    "ledger_sessions_settled_total",
    "ledger_sessions_started_total",
    "ledger_txn_seconds",
    "observe_transaction",
    "process_uptime_seconds",
    "record_daily_claim",
    "record_error",
    "record_integrity_failure",
    "record_referral_applied",
    "record_session_settled",
    "record_session_started",
    "render_metrics",
]
