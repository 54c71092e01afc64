# -*- coding: utf-8 -*-
"""User ledger record and its persisted document form."""

from __future__ import annotations

import copy
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from core.errors import IntegrityError, InvalidUserId, ValidationError
from crypto_box import CryptoBox
from logging_utils import build_log_extra
from metrics import record_integrity_failure

log = logging.getLogger(__name__)

MAX_ATTEMPTS = 100
USER_ID_MAX_LENGTH = 64
REFERRAL_CODE_LENGTH = 8

REFERRAL_CODE_FIELD = "referral.code"
REFERRAL_EARNINGS_FIELD = "referral.earnings"

_USER_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    try:
        return ensure_aware(datetime.fromisoformat(str(value)))
    except ValueError as exc:
        raise IntegrityError(f"stored timestamp is malformed: {value!r}") from exc


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_aware(value).isoformat()


def validate_user_id(user_id: Any) -> str:
    text = str(user_id or "").strip()
    if not text or len(text) > USER_ID_MAX_LENGTH or not _USER_ID_RE.match(text):
        raise InvalidUserId(
            "user id must be 1-64 characters of letters, digits, '_' or '-'",
            field="userId",
            attempted=str(user_id)[:USER_ID_MAX_LENGTH] if user_id is not None else None,
        )
    return text


@dataclass
class FarmingSession:
    started_at: datetime


@dataclass
class DailyRewardState:
    last_claimed_at: Optional[datetime] = None
    current_streak: int = 0
    max_streak: int = 0


@dataclass
class ReferredUser:
    user_id: str
    joined_at: datetime
    earnings: float = 0.0


@dataclass
class ReferralState:
    """Referral data; ``code`` and ``total_earnings`` are sealed at rest.

    A value that failed verification on read is ``None`` and its stored
    envelope is kept untouched so a later write does not destroy it.
    """

    code: Optional[str]
    lookup: str
    referrer_id: Optional[str] = None
    referred_users: List[ReferredUser] = field(default_factory=list)
    total_earnings: Optional[float] = 0.0
    sealed_code: Optional[Dict[str, str]] = field(default=None, repr=False)
    sealed_earnings: Optional[Dict[str, str]] = field(default=None, repr=False)
    earnings_dirty: bool = field(default=False, repr=False)

    def find_referred(self, user_id: str) -> Optional[ReferredUser]:
        for entry in self.referred_users:
            if entry.user_id == user_id:
                return entry
        return None


@dataclass
class Achievements:
    first_farm: bool = False
    speed_demon: bool = False
    millionaire: bool = False

    def as_dict(self) -> Dict[str, bool]:
        return {
            "firstFarm": self.first_farm,
            "speedDemon": self.speed_demon,
            "millionaire": self.millionaire,
        }


ACHIEVEMENT_KEYS = {
    "firstFarm": "first_farm",
    "speedDemon": "speed_demon",
    "millionaire": "millionaire",
}


@dataclass
class UserLedger:
    user_id: str
    referral: ReferralState
    balance: float = 0.0
    xp: float = 0.0
    level: int = 1
    farming_count: int = 0
    sessions_started: int = 0
    session: Optional[FarmingSession] = None
    attempts: int = 0
    daily_reward: DailyRewardState = field(default_factory=DailyRewardState)
    achievements: Achievements = field(default_factory=Achievements)
    created_at: datetime = field(default_factory=utcnow)
    last_update: datetime = field(default_factory=utcnow)

    @property
    def farming_active(self) -> bool:
        return self.session is not None

    def copy(self) -> "UserLedger":
        return copy.deepcopy(self)

    def touch(self, now: datetime) -> None:
        self.last_update = ensure_aware(now)

    def validate(self) -> None:
        """Reject any state that breaks the record invariants."""

        for name in ("balance", "xp"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise ValidationError(f"{name} must be a number", field=name, attempted=value)
            if not math.isfinite(value) or value < 0:
                raise ValidationError(
                    f"{name} must be a finite, non-negative number",
                    field=name,
                    attempted=value,
                )
        if not isinstance(self.level, int) or isinstance(self.level, bool) or self.level < 1:
            raise ValidationError("level must be an integer >= 1", field="level", attempted=self.level)
        if (
            not isinstance(self.attempts, int)
            or isinstance(self.attempts, bool)
            or not 0 <= self.attempts <= MAX_ATTEMPTS
        ):
            raise ValidationError(
                f"attempts must be an integer between 0 and {MAX_ATTEMPTS}",
                field="attemptsCounter",
                attempted=self.attempts,
            )
        if self.farming_count < 0 or self.sessions_started < 0:
            raise ValidationError("farming counters must not be negative", field="farmingCount")
        if self.daily_reward.current_streak < 0 or self.daily_reward.max_streak < 0:
            raise ValidationError("streaks must not be negative", field="dailyReward")
        if self.referral.referrer_id == self.user_id:
            raise ValidationError("a user cannot refer itself", field="referral.referrerId")

    # ------------------------------------------------------------------
    #   Persistence
    # ------------------------------------------------------------------
    def to_document(self, box: CryptoBox) -> Dict[str, Any]:
        """Return the persisted form; sensitive fields are sealed, never plaintext."""

        referral = self.referral
        if referral.sealed_code is not None:
            sealed_code = referral.sealed_code
        elif referral.code is not None:
            sealed_code = box.seal(referral.code, context=REFERRAL_CODE_FIELD).to_dict()
        else:
            raise IntegrityError("referral code is missing and cannot be sealed")

        if referral.total_earnings is not None and (
            referral.earnings_dirty or referral.sealed_earnings is None
        ):
            sealed_earnings = box.seal(
                repr(float(referral.total_earnings)), context=REFERRAL_EARNINGS_FIELD
            ).to_dict()
        else:
            sealed_earnings = referral.sealed_earnings

        session = None
        if self.session is not None:
            session = {"startedAt": format_timestamp(self.session.started_at)}

        return {
            "userId": self.user_id,
            "balance": float(self.balance),
            "xp": float(self.xp),
            "level": int(self.level),
            "farmingCount": int(self.farming_count),
            "sessionsStarted": int(self.sessions_started),
            "session": session,
            "attemptsCounter": int(self.attempts),
            "dailyReward": {
                "lastClaimedAt": format_timestamp(self.daily_reward.last_claimed_at),
                "currentStreak": int(self.daily_reward.current_streak),
                "maxStreak": int(self.daily_reward.max_streak),
            },
            "referral": {
                "code": sealed_code,
                "lookup": referral.lookup,
                "referrerId": referral.referrer_id,
                "referredUsers": [
                    {
                        "userId": entry.user_id,
                        "joinedAt": format_timestamp(entry.joined_at),
                        "earnings": float(entry.earnings),
                    }
                    for entry in referral.referred_users
                ],
                "earnings": sealed_earnings,
            },
            "achievements": self.achievements.as_dict(),
            "createdAt": format_timestamp(self.created_at),
            "lastUpdate": format_timestamp(self.last_update),
        }

    @classmethod
    def from_document(cls, doc: Mapping[str, Any], box: CryptoBox) -> "UserLedger":
        user_id = str(doc["userId"])
        referral_doc = dict(doc.get("referral") or {})
        sealed_code = referral_doc.get("code")
        sealed_earnings = referral_doc.get("earnings")

        code: Optional[str] = None
        if sealed_code:
            try:
                code = box.open(sealed_code, context=REFERRAL_CODE_FIELD)
            except IntegrityError:
                log.error(
                    "crypto.integrity_failed",
                    **build_log_extra(user_id=user_id, field=REFERRAL_CODE_FIELD),
                )
                record_integrity_failure(REFERRAL_CODE_FIELD)

        total_earnings: Optional[float] = 0.0
        if sealed_earnings:
            try:
                total_earnings = float(box.open(sealed_earnings, context=REFERRAL_EARNINGS_FIELD))
            except (IntegrityError, ValueError):
                log.error(
                    "crypto.integrity_failed",
                    **build_log_extra(user_id=user_id, field=REFERRAL_EARNINGS_FIELD),
                )
                record_integrity_failure(REFERRAL_EARNINGS_FIELD)
                total_earnings = None

        session_doc = doc.get("session")
        session = None
        if session_doc and session_doc.get("startedAt"):
            started_at = parse_timestamp(session_doc["startedAt"])
            if started_at is not None:
                session = FarmingSession(started_at=started_at)

        daily_doc = doc.get("dailyReward") or {}
        achievements_doc = doc.get("achievements") or {}
        now = utcnow()

        return cls(
            user_id=user_id,
            balance=float(doc.get("balance", 0.0)),
            xp=float(doc.get("xp", 0.0)),
            level=int(doc.get("level", 1)),
            farming_count=int(doc.get("farmingCount", 0)),
            sessions_started=int(doc.get("sessionsStarted", 0)),
            session=session,
            attempts=int(doc.get("attemptsCounter", 0)),
            daily_reward=DailyRewardState(
                last_claimed_at=parse_timestamp(daily_doc.get("lastClaimedAt")),
                current_streak=int(daily_doc.get("currentStreak", 0)),
                max_streak=int(daily_doc.get("maxStreak", 0)),
            ),
            referral=ReferralState(
                code=code,
                lookup=str(referral_doc.get("lookup") or ""),
                referrer_id=referral_doc.get("referrerId"),
                referred_users=[
                    ReferredUser(
                        user_id=str(entry["userId"]),
                        joined_at=parse_timestamp(entry.get("joinedAt")) or now,
                        earnings=float(entry.get("earnings", 0.0)),
                    )
                    for entry in referral_doc.get("referredUsers") or []
                ],
                total_earnings=total_earnings,
                sealed_code=dict(sealed_code) if sealed_code else None,
                sealed_earnings=dict(sealed_earnings) if sealed_earnings else None,
            ),
            achievements=Achievements(
                first_farm=bool(achievements_doc.get("firstFarm", False)),
                speed_demon=bool(achievements_doc.get("speedDemon", False)),
                millionaire=bool(achievements_doc.get("millionaire", False)),
            ),
            created_at=parse_timestamp(doc.get("createdAt")) or now,
            last_update=parse_timestamp(doc.get("lastUpdate")) or now,
        )


def new_user_ledger(user_id: str, code: str, box: CryptoBox, now: datetime) -> UserLedger:
    """Fresh record with zero balances and the given referral code."""

    now = ensure_aware(now)
    return UserLedger(
        user_id=validate_user_id(user_id),
        referral=ReferralState(code=code, lookup=box.lookup_key(code)),
        created_at=now,
        last_update=now,
    )


__all__ = [
    "ACHIEVEMENT_KEYS",
    "Achievements",
    "DailyRewardState",
    "FarmingSession",
    "MAX_ATTEMPTS",
    "REFERRAL_CODE_FIELD",
    "REFERRAL_CODE_LENGTH",
    "REFERRAL_EARNINGS_FIELD",
    "ReferralState",
    "ReferredUser",
    "UserLedger",
    "ensure_aware",
    "format_timestamp",
    "new_user_ledger",
    "parse_timestamp",
    "utcnow",
    "validate_user_id",
]
