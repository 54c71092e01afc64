# -*- coding: utf-8 -*-
"""Time-proportional farming accrual.

Everything here is a pure function of ``(ledger, now, rules)``. Callers capture
``now`` once per logical operation and pass the same value through settlement,
projection and achievement evaluation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from core.errors import SessionAlreadyActive
from ledger_models import FarmingSession, UserLedger, ensure_aware, format_timestamp
from logging_utils import build_log_extra

log = logging.getLogger(__name__)

MILLIONAIRE_THRESHOLD = 1_000_000
SPEED_DEMON_LEVEL = 5


@dataclass(frozen=True)
class FarmingRules:
    """Reward constants shared by every code path."""

    session_duration: float
    total_reward: float
    xp_ratio: float = 0.1
    referral_rate: float = 0.10
    millionaire_threshold: float = MILLIONAIRE_THRESHOLD
    speed_demon_level: int = SPEED_DEMON_LEVEL

    def __post_init__(self) -> None:
        if self.session_duration <= 0:
            raise ValueError("session_duration must be positive")
        if self.total_reward <= 0:
            raise ValueError("total_reward must be positive")
        if self.xp_ratio < 0 or not 0 <= self.referral_rate <= 1:
            raise ValueError("xp_ratio must be >= 0 and referral_rate within [0, 1]")

    @property
    def rate(self) -> float:
        return self.total_reward / self.session_duration

    @classmethod
    def from_settings(cls, settings: Any) -> "FarmingRules":
        return cls(
            session_duration=float(settings.FARMING_DURATION_SEC),
            total_reward=float(settings.FARMING_TOTAL_REWARD),
            xp_ratio=float(settings.FARMING_XP_RATIO),
            referral_rate=float(settings.REFERRAL_RATE),
        )


@dataclass(frozen=True)
class Settlement:
    """Outcome of observing an active session at one instant."""

    completed: bool
    started_at: datetime
    elapsed: float
    remaining_time: float
    progress: float
    earned: float
    earned_xp: float
    current_balance: float
    current_xp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": self.completed,
            "startedAt": format_timestamp(self.started_at),
            "elapsed": self.elapsed,
            "remainingTime": self.remaining_time,
            "progress": self.progress,
            "earned": self.earned,
            "earnedXp": self.earned_xp,
            "currentBalance": self.current_balance,
            "currentXp": self.current_xp,
        }


def elapsed_seconds(started_at: datetime, now: datetime) -> float:
    elapsed = (ensure_aware(now) - ensure_aware(started_at)).total_seconds()
    return max(elapsed, 0.0)


def earned_for(elapsed: float, rules: FarmingRules) -> float:
    """Reward accrued after ``elapsed`` seconds, exact at the boundary."""

    if elapsed >= rules.session_duration:
        return rules.total_reward
    if elapsed <= 0:
        return 0.0
    return rules.total_reward * (elapsed / rules.session_duration)


def project(ledger: UserLedger, now: datetime, rules: FarmingRules) -> Optional[Settlement]:
    """Describe the active session at ``now`` without touching the ledger."""

    session = ledger.session
    if session is None:
        return None
    if ensure_aware(session.started_at) > ensure_aware(now):
        log.warning(
            "farming.session.future_start",
            **build_log_extra(user_id=ledger.user_id, started_at=session.started_at, now=now),
        )
    elapsed = elapsed_seconds(session.started_at, now)
    completed = elapsed >= rules.session_duration
    earned = earned_for(elapsed, rules)
    earned_xp = earned * rules.xp_ratio
    if completed:
        progress = 1.0
        remaining = 0.0
    else:
        progress = elapsed / rules.session_duration
        remaining = rules.session_duration - elapsed
    return Settlement(
        completed=completed,
        started_at=session.started_at,
        elapsed=min(elapsed, rules.session_duration),
        remaining_time=remaining,
        progress=progress,
        earned=earned,
        earned_xp=earned_xp,
        current_balance=ledger.balance + earned,
        current_xp=ledger.xp + earned_xp,
    )


def evaluate_achievements(ledger: UserLedger, rules: FarmingRules) -> bool:
    """Raise achievement flags the ledger now qualifies for; never lowers one."""

    flags = ledger.achievements
    changed = False
    if not flags.first_farm and ledger.farming_count >= 1:
        flags.first_farm = True
        changed = True
    if not flags.millionaire and ledger.balance >= rules.millionaire_threshold:
        flags.millionaire = True
        changed = True
    if not flags.speed_demon and ledger.level >= rules.speed_demon_level:
        flags.speed_demon = True
        changed = True
    return changed


def settle(
    ledger: UserLedger, now: datetime, rules: FarmingRules
) -> Tuple[UserLedger, Optional[Settlement]]:
    """Fold a completed session into the ledger.

    Returns the ledger unchanged with ``None`` when idle, unchanged with an
    in-progress projection while the session runs, and an updated copy with
    the completed settlement once ``elapsed >= session_duration``.
    """

    settlement = project(ledger, now, rules)
    if settlement is None or not settlement.completed:
        return ledger, settlement

    updated = ledger.copy()
    updated.balance = ledger.balance + settlement.earned
    updated.xp = ledger.xp + settlement.earned_xp
    updated.session = None
    updated.farming_count = ledger.farming_count + 1
    evaluate_achievements(updated, rules)
    updated.touch(now)
    return updated, settlement


def start_session(ledger: UserLedger, now: datetime) -> UserLedger:
    """Open a session at ``now``; the ledger must already be settled."""

    if ledger.session is not None:
        raise SessionAlreadyActive(ledger.user_id, ledger.session.started_at)
    updated = ledger.copy()
    updated.session = FarmingSession(started_at=ensure_aware(now))
    updated.sessions_started = ledger.sessions_started + 1
    updated.touch(now)
    return updated


__all__ = [
    "FarmingRules",
    "Settlement",
    "earned_for",
    "elapsed_seconds",
    "evaluate_achievements",
    "project",
    "settle",
    "start_session",
]
