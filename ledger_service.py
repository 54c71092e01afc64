# -*- coding: utf-8 -*-
"""User-facing ledger actions: lazy creation, farming, rewards and referrals.

Each action captures ``now`` once, runs as a single unit of work on
:class:`ledger.LedgerStorage` and returns a JSON-ready view. Every action has
an ``a``-prefixed coroutine twin that runs it on the default executor.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone, tzinfo
from functools import partial, wraps
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from core.errors import InvalidPatch, InvalidReferralCode, LedgerError
from crypto_box import CryptoBox
from farming import FarmingRules, Settlement, evaluate_achievements, project, settle, start_session
from ledger import LedgerStorage, LedgerUnit
from ledger_models import (
    ACHIEVEMENT_KEYS,
    REFERRAL_CODE_LENGTH,
    UserLedger,
    format_timestamp,
    utcnow,
    validate_user_id,
)
from logging_utils import build_log_extra
from metrics import (
    record_daily_claim,
    record_error,
    record_referral_applied,
    record_session_settled,
    record_session_started,
)
from rewards import (
    attach_referral,
    claim_daily,
    credit_referral_earnings,
    mask_user_id,
    next_eligible_at,
    normalize_referral_code,
    validate_attempts,
)
from utils.sanitize import sanitize

log = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

PATCHABLE_FIELDS = ("balance", "level", "xp", "attemptsCounter", "achievements")
_PATCH_ALIASES = {"attempts": "attemptsCounter"}


def _tracked(action: str) -> Callable[[F], F]:
    """Count failed actions by error kind."""

    def decorator(fn: F) -> F:
        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return fn(*args, **kwargs)
            except LedgerError as exc:
                record_error(action, exc.kind)
                raise
            except Exception:
                record_error(action, "internal")
                raise

        return wrapper  # type: ignore[return-value]

    return decorator


class LedgerService:
    """Synchronous action surface over the ledger store."""

    def __init__(
        self,
        storage: LedgerStorage,
        rules: FarmingRules,
        *,
        zone: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.rules = rules
        self.zone = zone
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Any) -> "LedgerService":
        box = CryptoBox(settings.LEDGER_ENCRYPTION_KEY)
        storage = LedgerStorage.from_settings(settings, box)
        return cls(
            storage,
            FarmingRules.from_settings(settings),
            zone=settings.daily_reward_zone,
        )

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    #   Internal helpers
    # ------------------------------------------------------------------
    def _settle(
        self, unit: LedgerUnit, ledger: UserLedger, now: datetime
    ) -> Tuple[UserLedger, Optional[Settlement], float]:
        """Fold a completed session into ``ledger`` and credit its referrer."""

        updated, settlement = settle(ledger, now, self.rules)
        if settlement is None or not settlement.completed:
            return ledger, settlement, 0.0
        unit.save(updated)

        share = 0.0
        referrer_id = updated.referral.referrer_id
        if referrer_id:
            referrer = unit.get(referrer_id)
            if referrer is None:
                log.warning(
                    "ledger.referral.referrer_missing",
                    **build_log_extra(user_id=updated.user_id, referrer_id=referrer_id),
                )
            else:
                credited, share = credit_referral_earnings(
                    referrer, updated.user_id, settlement.earned, self.rules.referral_rate, now
                )
                if share > 0:
                    unit.save(credited)
        return updated, settlement, share

    def _log_settlement(
        self, ledger: UserLedger, settlement: Optional[Settlement], share: float, trigger: str
    ) -> None:
        if settlement is None or not settlement.completed:
            return
        record_session_settled(trigger)
        log.info(
            "ledger.session.settled",
            **build_log_extra(
                user_id=ledger.user_id,
                trigger=trigger,
                earned=settlement.earned,
                balance=ledger.balance,
                referrer_share=share,
            ),
        )

    def _view(
        self,
        ledger: UserLedger,
        now: datetime,
        *,
        settlement: Optional[Settlement] = None,
    ) -> Dict[str, Any]:
        projection = project(ledger, now, self.rules)
        daily = ledger.daily_reward
        next_claim = (
            next_eligible_at(daily.last_claimed_at, self.zone)
            if daily.last_claimed_at is not None
            else None
        )
        view: Dict[str, Any] = {
            "userId": ledger.user_id,
            "balance": ledger.balance,
            "xp": ledger.xp,
            "level": ledger.level,
            "farmingCount": ledger.farming_count,
            "sessionsStarted": ledger.sessions_started,
            "attemptsCounter": ledger.attempts,
            "farmingActive": ledger.farming_active,
            "farming": projection.to_dict() if projection is not None else None,
            "dailyReward": {
                "lastClaimedAt": format_timestamp(daily.last_claimed_at),
                "currentStreak": daily.current_streak,
                "maxStreak": daily.max_streak,
                "nextEligibleAt": format_timestamp(next_claim),
                "canClaim": next_claim is None or now >= next_claim,
            },
            "achievements": ledger.achievements.as_dict(),
            "referralCode": ledger.referral.code,
            "referrerId": ledger.referral.referrer_id,
            "createdAt": format_timestamp(ledger.created_at),
            "lastUpdate": format_timestamp(ledger.last_update),
        }
        if settlement is not None and settlement.completed:
            view["settlement"] = settlement.to_dict()
        return view

    # ------------------------------------------------------------------
    #   Actions
    # ------------------------------------------------------------------
    @_tracked("get_user")
    def get_user(self, user_id: Any) -> Dict[str, Any]:
        """Load (creating if absent) and settle the user; include the live projection."""

        uid = validate_user_id(user_id)
        now = self.now()

        def unit_of_work(unit: LedgerUnit) -> Tuple[UserLedger, Optional[Settlement], float]:
            ledger, _ = unit.get_or_create(uid, now)
            return self._settle(unit, ledger, now)

        ledger, settlement, share = self.storage.run_in_transaction(
            unit_of_work, op="get_user", user_id=uid
        )
        self._log_settlement(ledger, settlement, share, "read")
        return self._view(ledger, now, settlement=settlement)

    @_tracked("start_farming")
    def start_farming(self, user_id: Any) -> Dict[str, Any]:
        uid = validate_user_id(user_id)
        now = self.now()

        def unit_of_work(unit: LedgerUnit) -> Tuple[UserLedger, Optional[Settlement], float]:
            ledger = unit.require(uid)
            ledger, settlement, share = self._settle(unit, ledger, now)
            started = start_session(ledger, now)
            unit.save(started)
            return started, settlement, share

        ledger, settlement, share = self.storage.run_in_transaction(
            unit_of_work, op="start_farming", user_id=uid
        )
        self._log_settlement(ledger, settlement, share, "read")
        record_session_started()
        log.info(
            "ledger.session.started",
            **build_log_extra(user_id=uid, started_at=now, duration=self.rules.session_duration),
        )
        view = self._view(ledger, now, settlement=settlement)
        view["startedAt"] = format_timestamp(now)
        view["duration"] = self.rules.session_duration
        return view

    @_tracked("claim_daily_reward")
    def claim_daily_reward(self, user_id: Any) -> Dict[str, Any]:
        uid = validate_user_id(user_id)
        now = self.now()

        def unit_of_work(unit: LedgerUnit) -> Tuple[UserLedger, Any, Optional[Settlement], float]:
            ledger = unit.require(uid)
            ledger, settlement, share = self._settle(unit, ledger, now)
            updated, result = claim_daily(ledger, now, self.zone)
            unit.save(updated)
            return updated, result, settlement, share

        ledger, result, settlement, share = self.storage.run_in_transaction(
            unit_of_work, op="claim_daily_reward", user_id=uid
        )
        self._log_settlement(ledger, settlement, share, "read")
        record_daily_claim(result.reward_day)
        log.info(
            "ledger.daily.claimed",
            **build_log_extra(
                user_id=uid,
                streak=result.streak,
                lime=result.lime_reward,
                attempts=result.attempts_granted,
            ),
        )
        return result.to_dict()

    def _validate_patch(self, patch: Mapping[str, Any]) -> Dict[str, Any]:
        if not isinstance(patch, Mapping) or not patch:
            raise InvalidPatch("patch must be a non-empty object")
        clean: Dict[str, Any] = {}
        for raw_key, value in patch.items():
            key = _PATCH_ALIASES.get(raw_key, raw_key)
            if key not in PATCHABLE_FIELDS:
                raise InvalidPatch(f"field {raw_key!r} cannot be updated", field=str(raw_key))
            if key in ("balance", "xp"):
                if (
                    isinstance(value, bool)
                    or not isinstance(value, (int, float))
                    or not math.isfinite(value)
                    or value < 0
                ):
                    raise InvalidPatch(
                        f"{key} must be a finite, non-negative number", field=key, attempted=value
                    )
                clean[key] = float(value)
            elif key == "level":
                if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                    raise InvalidPatch("level must be an integer >= 1", field=key, attempted=value)
                clean[key] = value
            elif key == "attemptsCounter":
                clean[key] = validate_attempts(value)
            else:
                if not isinstance(value, Mapping):
                    raise InvalidPatch("achievements must be an object", field=key)
                flags: Dict[str, bool] = {}
                for name, flag in value.items():
                    if name not in ACHIEVEMENT_KEYS or not isinstance(flag, bool):
                        raise InvalidPatch(
                            f"unknown achievement flag {name!r}",
                            field=f"achievements.{name}",
                            attempted=flag,
                        )
                    flags[name] = flag
                clean[key] = flags
        return clean

    @_tracked("update_user")
    def update_user(self, user_id: Any, patch: Mapping[str, Any]) -> Dict[str, Any]:
        """Apply an allow-listed patch; achievement flags can only be raised."""

        uid = validate_user_id(user_id)
        clean = self._validate_patch(patch)
        now = self.now()

        def unit_of_work(unit: LedgerUnit) -> Tuple[UserLedger, Optional[Settlement], float]:
            ledger = unit.require(uid)
            ledger, settlement, share = self._settle(unit, ledger, now)
            updated = ledger.copy()
            if "balance" in clean:
                updated.balance = clean["balance"]
            if "xp" in clean:
                updated.xp = clean["xp"]
            if "level" in clean:
                updated.level = clean["level"]
            if "attemptsCounter" in clean:
                updated.attempts = clean["attemptsCounter"]
            for name, flag in clean.get("achievements", {}).items():
                attr = ACHIEVEMENT_KEYS[name]
                current = getattr(updated.achievements, attr)
                if current and not flag:
                    raise InvalidPatch(
                        f"achievement {name} cannot be revoked",
                        field=f"achievements.{name}",
                        current=current,
                        attempted=flag,
                    )
                setattr(updated.achievements, attr, current or flag)
            evaluate_achievements(updated, self.rules)
            updated.touch(now)
            unit.save(updated)
            return updated, settlement, share

        ledger, settlement, share = self.storage.run_in_transaction(
            unit_of_work, op="update_user", user_id=uid
        )
        self._log_settlement(ledger, settlement, share, "read")
        log.info("ledger.user.updated", **build_log_extra(user_id=uid, fields=sorted(clean)))
        return self._view(ledger, now, settlement=settlement)

    @_tracked("update_attempts")
    def update_attempts(self, user_id: Any, value: Any) -> Dict[str, Any]:
        uid = validate_user_id(user_id)
        attempts = validate_attempts(value)
        ledger = self.storage.atomic_field_update(
            uid, None, {"attemptsCounter": attempts}, now=self.now()
        )
        log.info("ledger.attempts.updated", **build_log_extra(user_id=uid, attempts=attempts))
        return {"userId": uid, "attemptsCounter": ledger.attempts}

    @_tracked("get_referrals")
    def get_referrals(self, user_id: Any) -> Dict[str, Any]:
        uid = validate_user_id(user_id)
        ledger = self.storage.run_in_transaction(
            lambda unit: unit.require(uid, for_update=False), op="get_referrals", user_id=uid
        )
        referral = ledger.referral
        referred: List[Dict[str, Any]] = [
            {
                "userId": mask_user_id(entry.user_id),
                "joinedAt": format_timestamp(entry.joined_at),
                "earnings": entry.earnings,
            }
            for entry in referral.referred_users
        ]
        return {
            "code": referral.code,
            "referrerId": referral.referrer_id,
            "referredUsers": referred,
            "totalEarnings": referral.total_earnings,
            "count": len(referred),
        }

    @_tracked("apply_referral")
    def apply_referral(self, user_id: Any, referral_code: Any) -> Dict[str, Any]:
        uid = validate_user_id(user_id)
        code = normalize_referral_code(sanitize(str(referral_code or "")))
        if len(code) != REFERRAL_CODE_LENGTH or not code.isalnum():
            raise InvalidReferralCode()
        lookup = self.storage.box.lookup_key(code)
        now = self.now()

        def unit_of_work(unit: LedgerUnit) -> Tuple[UserLedger, UserLedger]:
            user = unit.require(uid)
            referrer = unit.find_by_referral_lookup(lookup)
            if referrer is None:
                raise InvalidReferralCode()
            updated_user, updated_referrer = attach_referral(user, referrer, now)
            unit.save(updated_user)
            unit.save(updated_referrer)
            return updated_user, updated_referrer

        user, referrer = self.storage.run_in_transaction(
            unit_of_work, op="apply_referral", user_id=uid
        )
        record_referral_applied()
        log.info(
            "ledger.referral.applied",
            **build_log_extra(user_id=uid, referrer_id=referrer.user_id),
        )
        return {
            "userId": user.user_id,
            "referrerId": referrer.user_id,
            "joinedAt": format_timestamp(now),
        }

    def sweep_stale_sessions(self, now: Optional[datetime] = None) -> int:
        """Settle every session that has run its full duration; returns the count."""

        moment = now or self.now()
        cutoff = moment - timedelta(seconds=self.rules.session_duration)
        settled = 0
        for uid in self.storage.stale_sessions(cutoff):

            def unit_of_work(
                unit: LedgerUnit, uid: str = uid
            ) -> Tuple[Optional[UserLedger], Optional[Settlement], float]:
                ledger = unit.get(uid)
                if ledger is None:
                    return None, None, 0.0
                return self._settle(unit, ledger, moment)

            try:
                ledger, settlement, share = self.storage.run_in_transaction(
                    unit_of_work, op="sweep_settle", user_id=uid
                )
            except Exception:
                log.exception("ledger.sweep.user_failed", **build_log_extra(user_id=uid))
                continue
            if ledger is not None and settlement is not None and settlement.completed:
                settled += 1
                self._log_settlement(ledger, settlement, share, "sweep")
        log.info("ledger.sweep.finished", **build_log_extra(settled=settled, cutoff=cutoff))
        return settled

    def health(self) -> Dict[str, Any]:
        return {"ok": self.storage.ping(), "backend": self.storage.backend_name}

    # ------------------------------------------------------------------
    #   Async wrappers
    # ------------------------------------------------------------------
    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    async def aget_user(self, user_id: Any) -> Dict[str, Any]:
        return await self._run(self.get_user, user_id)

    async def astart_farming(self, user_id: Any) -> Dict[str, Any]:
        return await self._run(self.start_farming, user_id)

    async def aclaim_daily_reward(self, user_id: Any) -> Dict[str, Any]:
        return await self._run(self.claim_daily_reward, user_id)

    async def aupdate_user(self, user_id: Any, patch: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._run(self.update_user, user_id, patch)

    async def aupdate_attempts(self, user_id: Any, value: Any) -> Dict[str, Any]:
        return await self._run(self.update_attempts, user_id, value)

    async def aget_referrals(self, user_id: Any) -> Dict[str, Any]:
        return await self._run(self.get_referrals, user_id)

    async def aapply_referral(self, user_id: Any, referral_code: Any) -> Dict[str, Any]:
        return await self._run(self.apply_referral, user_id, referral_code)

    async def asweep_stale_sessions(self, now: Optional[datetime] = None) -> int:
        return await self._run(self.sweep_stale_sessions, now)

    async def ahealth(self) -> Dict[str, Any]:
        return await self._run(self.health)


__all__ = ["LedgerService", "PATCHABLE_FIELDS"]
