# -*- coding: utf-8 -*-
"""Daily streak rewards, referral bookkeeping and attempts validation."""

from __future__ import annotations

import logging
import math
import secrets
import string
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, timezone, tzinfo
from typing import Any, Dict, Optional, Tuple

from core.errors import (
    AlreadyClaimedToday,
    AlreadyReferred,
    InvalidAttempts,
    ReferralCycle,
    SelfReferral,
)
from ledger_models import (
    MAX_ATTEMPTS,
    REFERRAL_CODE_LENGTH,
    ReferredUser,
    UserLedger,
    ensure_aware,
    format_timestamp,
)
from logging_utils import build_log_extra

log = logging.getLogger(__name__)

MAX_REWARD_DAY = 7
LIME_PER_REWARD_DAY = 10
ATTEMPTS_PER_REWARD_DAY = 1

_REFERRAL_ALPHABET = string.ascii_uppercase + string.digits


# ----------------------------------------------------------------------
#   Daily reward
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class DailyRewardResult:
    streak: int
    reward_day: int
    lime_reward: int
    attempts_reward: int
    attempts_granted: int
    balance: float
    attempts: int
    max_streak: int
    claimed_at: datetime
    next_eligible_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "streak": self.streak,
            "rewardDay": self.reward_day,
            "limeReward": self.lime_reward,
            "attemptsReward": self.attempts_reward,
            "attemptsGranted": self.attempts_granted,
            "balance": self.balance,
            "attempts": self.attempts,
            "maxStreak": self.max_streak,
            "claimedAt": format_timestamp(self.claimed_at),
            "nextEligibleAt": format_timestamp(self.next_eligible_at),
        }


def calendar_day(moment: datetime, zone: tzinfo) -> date:
    return ensure_aware(moment).astimezone(zone).date()


def next_eligible_at(last_claimed_at: datetime, zone: tzinfo) -> datetime:
    """Midnight that starts the day after the claim day, in UTC."""

    claim_day = calendar_day(last_claimed_at, zone)
    midnight = datetime.combine(claim_day, dt_time.min, tzinfo=zone)
    return (midnight + timedelta(days=1)).astimezone(timezone.utc)


def reward_for_streak(streak: int) -> Tuple[int, int, int]:
    reward_day = min(max(streak, 1), MAX_REWARD_DAY)
    return reward_day, reward_day * LIME_PER_REWARD_DAY, reward_day * ATTEMPTS_PER_REWARD_DAY


def claim_daily(
    ledger: UserLedger, now: datetime, zone: tzinfo = timezone.utc
) -> Tuple[UserLedger, DailyRewardResult]:
    now = ensure_aware(now)
    state = ledger.daily_reward
    today = calendar_day(now, zone)

    if state.last_claimed_at is not None:
        last_day = calendar_day(state.last_claimed_at, zone)
        if last_day == today:
            raise AlreadyClaimedToday(ledger.user_id, next_eligible_at(state.last_claimed_at, zone))
        continues = (today - last_day).days == 1
    else:
        continues = False

    streak = state.current_streak + 1 if continues else 1
    reward_day, lime_reward, attempts_reward = reward_for_streak(streak)

    updated = ledger.copy()
    updated.balance = ledger.balance + lime_reward
    attempts_after = min(ledger.attempts + attempts_reward, MAX_ATTEMPTS)
    attempts_granted = attempts_after - ledger.attempts
    updated.attempts = attempts_after
    updated.daily_reward.last_claimed_at = now
    updated.daily_reward.current_streak = streak
    updated.daily_reward.max_streak = max(state.max_streak, streak)
    updated.touch(now)

    if attempts_granted < attempts_reward:
        log.info(
            "rewards.daily.attempts_capped",
            **build_log_extra(
                user_id=ledger.user_id, granted=attempts_granted, reward=attempts_reward
            ),
        )

    result = DailyRewardResult(
        streak=streak,
        reward_day=reward_day,
        lime_reward=lime_reward,
        attempts_reward=attempts_reward,
        attempts_granted=attempts_granted,
        balance=updated.balance,
        attempts=updated.attempts,
        max_streak=updated.daily_reward.max_streak,
        claimed_at=now,
        next_eligible_at=next_eligible_at(now, zone),
    )
    return updated, result


# ----------------------------------------------------------------------
#   Referrals
# ----------------------------------------------------------------------
def generate_referral_code(length: int = REFERRAL_CODE_LENGTH) -> str:
    return "".join(secrets.choice(_REFERRAL_ALPHABET) for _ in range(length))


def normalize_referral_code(code: Optional[str]) -> str:
    return "".join(str(code or "").split()).upper()


def mask_user_id(user_id: str) -> str:
    text = str(user_id or "")
    if len(text) <= 4:
        return text[:1] + "***"
    return f"{text[:2]}***{text[-2:]}"


def attach_referral(
    user: UserLedger, referrer: UserLedger, now: datetime
) -> Tuple[UserLedger, UserLedger]:
    """Link ``user`` to ``referrer``; both copies must be written in one unit."""

    if user.user_id == referrer.user_id:
        raise SelfReferral(user.user_id)
    if user.referral.referrer_id:
        raise AlreadyReferred(user.user_id, user.referral.referrer_id)
    if referrer.referral.referrer_id == user.user_id:
        raise ReferralCycle(user.user_id, referrer.user_id)

    now = ensure_aware(now)
    updated_user = user.copy()
    updated_user.referral.referrer_id = referrer.user_id
    updated_user.touch(now)

    updated_referrer = referrer.copy()
    if updated_referrer.referral.find_referred(user.user_id) is None:
        updated_referrer.referral.referred_users.append(
            ReferredUser(user_id=user.user_id, joined_at=now, earnings=0.0)
        )
    updated_referrer.touch(now)
    return updated_user, updated_referrer


def credit_referral_earnings(
    referrer: UserLedger, referred_user_id: str, delta: float, rate: float, now: datetime
) -> Tuple[UserLedger, float]:
    """Credit ``delta * rate`` to the referrer's entry and aggregate total."""

    share = float(delta) * float(rate)
    if not math.isfinite(share) or share <= 0:
        return referrer, 0.0

    updated = referrer.copy()
    entry = updated.referral.find_referred(referred_user_id)
    if entry is None:
        log.warning(
            "rewards.referral.entry_missing",
            **build_log_extra(referrer_id=referrer.user_id, referred_id=referred_user_id),
        )
        entry = ReferredUser(user_id=referred_user_id, joined_at=ensure_aware(now))
        updated.referral.referred_users.append(entry)
    entry.earnings += share
    if updated.referral.total_earnings is None:
        log.error(
            "rewards.referral.total_unreadable",
            **build_log_extra(referrer_id=referrer.user_id),
        )
    else:
        updated.referral.total_earnings += share
        updated.referral.earnings_dirty = True
    updated.touch(now)
    return updated, share


# ----------------------------------------------------------------------
#   Attempts
# ----------------------------------------------------------------------
def validate_attempts(value: Any, *, current: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidAttempts(
            "attempts must be an integer", field="attemptsCounter", current=current, attempted=value
        )
    if isinstance(value, float) and not value.is_integer():
        raise InvalidAttempts(
            "attempts must be an integer", field="attemptsCounter", current=current, attempted=value
        )
    number = int(value)
    if not 0 <= number <= MAX_ATTEMPTS:
        raise InvalidAttempts(
            f"attempts must be between 0 and {MAX_ATTEMPTS}",
            field="attemptsCounter",
            current=current,
            attempted=value,
        )
    return number


__all__ = [
    "DailyRewardResult",
    "attach_referral",
    "calendar_day",
    "claim_daily",
    "credit_referral_earnings",
    "generate_referral_code",
    "mask_user_id",
    "next_eligible_at",
    "normalize_referral_code",
    "reward_for_streak",
    "validate_attempts",
]
