import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from ledger_test_utils import DURATION, START, TOTAL_REWARD, FakeClock, make_service

import metrics
from core.errors import (
    AlreadyClaimedToday,
    ConflictOrNotFound,
    InvalidAttempts,
    InvalidPatch,
    InvalidUserId,
    SessionAlreadyActive,
    UserNotFound,
)


def _sample(name: str, labels: dict) -> float:
    return metrics.REGISTRY.get_sample_value(name, labels) or 0.0


def test_end_to_end_farming_scenario() -> None:
    clock = FakeClock()
    service = make_service(clock)

    fresh = service.get_user("u1")
    assert fresh["balance"] == 0.0
    assert fresh["farmingActive"] is False
    assert fresh["farming"] is None
    assert len(fresh["referralCode"]) == 8

    service.start_farming("u1")
    immediately = service.get_user("u1")
    assert immediately["farming"]["progress"] == pytest.approx(0.0)
    assert immediately["farming"]["remainingTime"] == pytest.approx(DURATION)

    clock.advance(seconds=DURATION)
    settled = service.get_user("u1")
    assert settled["balance"] == TOTAL_REWARD
    assert settled["xp"] == pytest.approx(TOTAL_REWARD * 0.1)
    assert settled["farmingActive"] is False
    assert settled["farming"] is None
    assert settled["achievements"]["firstFarm"] is True
    assert settled["farmingCount"] == 1
    assert settled["settlement"]["earned"] == TOTAL_REWARD

    again = service.get_user("u1")
    assert again["balance"] == TOTAL_REWARD
    assert "settlement" not in again


def test_in_progress_view_is_projected_not_persisted() -> None:
    clock = FakeClock()
    service = make_service(clock)
    service.get_user("u1")
    service.start_farming("u1")
    clock.advance(seconds=DURATION / 4)

    view = service.get_user("u1")
    assert view["balance"] == 0.0
    assert view["farming"]["currentBalance"] == pytest.approx(TOTAL_REWARD / 4)
    assert service.storage.find("u1").balance == 0.0


def test_start_farming_requires_existing_user() -> None:
    service = make_service()
    with pytest.raises(UserNotFound):
        service.start_farming("ghost")
    with pytest.raises(InvalidUserId):
        service.start_farming("bad id!")


def test_start_farming_settles_finished_session_first() -> None:
    clock = FakeClock()
    service = make_service(clock)
    service.get_user("u1")
    service.start_farming("u1")
    with pytest.raises(SessionAlreadyActive):
        service.start_farming("u1")

    clock.advance(seconds=DURATION + 10)
    view = service.start_farming("u1")
    assert view["balance"] == TOTAL_REWARD
    assert view["farmingActive"] is True
    assert view["startedAt"] == clock.now.isoformat()
    assert service.storage.find("u1").sessions_started == 2


def test_concurrent_start_farming_only_one_wins() -> None:
    service = make_service()
    service.get_user("racer")
    barrier = threading.Barrier(8)

    def attempt() -> str:
        barrier.wait()
        try:
            service.start_farming("racer")
        except SessionAlreadyActive:
            return "conflict"
        return "started"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(lambda _: attempt(), range(8)))

    assert outcomes.count("started") == 1
    assert outcomes.count("conflict") == 7
    assert service.storage.find("racer").sessions_started == 1


def test_claim_daily_reward_flow() -> None:
    clock = FakeClock()
    service = make_service(clock)
    service.get_user("u1")

    first = service.claim_daily_reward("u1")
    assert first["streak"] == 1
    assert first["balance"] == 10

    with pytest.raises(AlreadyClaimedToday):
        service.claim_daily_reward("u1")

    clock.advance(days=1)
    second = service.claim_daily_reward("u1")
    assert second["streak"] == 2
    assert second["attempts"] == 3
    view = service.get_user("u1")
    assert view["dailyReward"]["canClaim"] is False
    assert view["dailyReward"]["currentStreak"] == 2


def test_referral_flow_and_earnings() -> None:
    clock = FakeClock()
    service = make_service(clock)
    code = service.get_user("referrer")["referralCode"]
    service.get_user("newbie")

    applied = service.apply_referral("newbie", f"  {code.lower()} ")
    assert applied == {
        "userId": "newbie",
        "referrerId": "referrer",
        "joinedAt": START.isoformat(),
    }

    service.start_farming("newbie")
    clock.advance(seconds=DURATION)
    service.get_user("newbie")

    referrals = service.get_referrals("referrer")
    assert referrals["code"] == code
    assert referrals["count"] == 1
    assert referrals["referredUsers"][0]["userId"] == "ne***ie"
    assert referrals["referredUsers"][0]["earnings"] == pytest.approx(TOTAL_REWARD * 0.1)
    assert referrals["totalEarnings"] == pytest.approx(TOTAL_REWARD * 0.1)
    assert service.get_user("referrer")["balance"] == 0.0
    assert service.get_referrals("newbie")["referrerId"] == "referrer"


def test_referral_conflicts() -> None:
    service = make_service()
    code_a = service.get_user("alice")["referralCode"]
    code_b = service.get_user("bobby")["referralCode"]
    service.get_user("carol")

    from core.errors import AlreadyReferred, InvalidReferralCode, ReferralCycle, SelfReferral

    with pytest.raises(SelfReferral):
        service.apply_referral("alice", code_a)
    with pytest.raises(InvalidReferralCode):
        service.apply_referral("alice", "ZZZZZZZZ" if code_b != "ZZZZZZZZ" else "YYYYYYYY")
    with pytest.raises(InvalidReferralCode):
        service.apply_referral("alice", "<b>")

    service.apply_referral("bobby", code_a)
    with pytest.raises(AlreadyReferred):
        service.apply_referral("bobby", code_a)
    with pytest.raises(ReferralCycle):
        service.apply_referral("alice", code_b)

    referrals = service.get_referrals("alice")
    assert referrals["count"] == 1


def test_concurrent_apply_referral_only_one_wins() -> None:
    service = make_service()
    codes = [service.get_user(f"ref{i}")["referralCode"] for i in range(6)]
    service.get_user("target")
    barrier = threading.Barrier(len(codes))

    def attempt(code: str) -> bool:
        barrier.wait()
        try:
            service.apply_referral("target", code)
        except Exception:
            return False
        return True

    with ThreadPoolExecutor(max_workers=len(codes)) as pool:
        outcomes = list(pool.map(attempt, codes))

    assert outcomes.count(True) == 1
    winner = service.get_referrals("target")["referrerId"]
    counts = {f"ref{i}": service.get_referrals(f"ref{i}")["count"] for i in range(6)}
    assert counts[winner] == 1
    assert sum(counts.values()) == 1


def test_update_user_patch_rules() -> None:
    service = make_service()
    service.get_user("u1")

    view = service.update_user("u1", {"balance": 2_000_000, "level": 5, "attempts": 4})
    assert view["balance"] == 2_000_000
    assert view["attemptsCounter"] == 4
    assert view["achievements"] == {"firstFarm": False, "speedDemon": True, "millionaire": True}

    view = service.update_user("u1", {"balance": 10, "achievements": {"firstFarm": True}})
    assert view["achievements"]["millionaire"] is True
    assert view["achievements"]["firstFarm"] is True

    with pytest.raises(InvalidPatch):
        service.update_user("u1", {"achievements": {"millionaire": False}})
    with pytest.raises(InvalidPatch):
        service.update_user("u1", {"referral": {"referrerId": "x"}})
    with pytest.raises(InvalidPatch):
        service.update_user("u1", {"balance": -5})
    with pytest.raises(InvalidPatch):
        service.update_user("u1", {"level": 0})
    with pytest.raises(InvalidPatch):
        service.update_user("u1", {})
    with pytest.raises(InvalidAttempts):
        service.update_user("u1", {"attemptsCounter": 101})
    with pytest.raises(UserNotFound):
        service.update_user("ghost", {"balance": 1})

    assert service.storage.find("u1").balance == 10


def test_update_attempts() -> None:
    service = make_service()
    service.get_user("u1")
    assert service.update_attempts("u1", 42) == {"userId": "u1", "attemptsCounter": 42}
    with pytest.raises(InvalidAttempts) as excinfo:
        service.update_attempts("u1", 101)
    assert excinfo.value.context["attempted"] == 101
    with pytest.raises(ConflictOrNotFound):
        service.update_attempts("ghost", 1)
    assert service.storage.find("u1").attempts == 42


def test_sweep_settles_only_finished_sessions(caplog) -> None:
    clock = FakeClock()
    service = make_service(clock)
    for user_id in ("early", "late", "idle", "broken"):
        service.get_user(user_id)
    service.start_farming("early")
    service.start_farming("broken")
    clock.advance(seconds=DURATION / 2)
    service.start_farming("late")
    clock.advance(seconds=DURATION / 2)

    original = service._settle

    def flaky_settle(unit, ledger, now):
        if ledger.user_id == "broken":
            raise RuntimeError("corrupted record")
        return original(unit, ledger, now)

    service._settle = flaky_settle
    with caplog.at_level(logging.ERROR, logger="ledger_service"):
        assert service.sweep_stale_sessions() == 1

    assert any(r.getMessage() == "ledger.sweep.user_failed" for r in caplog.records)
    assert service.storage.find("early").balance == TOTAL_REWARD
    assert service.storage.find("early").session is None
    assert service.storage.find("late").session is not None
    assert service.storage.find("broken").session is not None


def test_sweep_credits_referrer() -> None:
    clock = FakeClock()
    service = make_service(clock)
    code = service.get_user("boss")["referralCode"]
    service.get_user("worker")
    service.apply_referral("worker", code)
    service.start_farming("worker")

    assert service.sweep_stale_sessions(clock.now + timedelta(seconds=DURATION)) == 1
    assert service.get_referrals("boss")["totalEarnings"] == pytest.approx(TOTAL_REWARD * 0.1)


def test_async_wrappers() -> None:
    clock = FakeClock()
    service = make_service(clock)

    async def scenario():
        created = await service.aget_user("async_user")
        started = await service.astart_farming("async_user")
        claimed = await service.aclaim_daily_reward("async_user")
        health = await service.ahealth()
        return created, started, claimed, health

    created, started, claimed, health = asyncio.run(scenario())
    assert created["userId"] == "async_user"
    assert started["farmingActive"] is True
    assert claimed["streak"] == 1
    assert health == {"ok": True, "backend": "memory"}


def test_metrics_follow_actions() -> None:
    clock = FakeClock()
    service = make_service(clock)
    env = metrics._ENV
    started_before = _sample("ledger_sessions_started_total", {"env": env})
    settled_before = _sample("ledger_sessions_settled_total", {"trigger": "read", "env": env})
    errors_before = _sample(
        "ledger_errors_total", {"action": "start_farming", "kind": "session_already_active"}
    )

    service.get_user("metered")
    service.start_farming("metered")
    with pytest.raises(SessionAlreadyActive):
        service.start_farming("metered")
    clock.advance(seconds=DURATION)
    service.get_user("metered")

    assert _sample("ledger_sessions_started_total", {"env": env}) == started_before + 1
    assert (
        _sample("ledger_sessions_settled_total", {"trigger": "read", "env": env})
        == settled_before + 1
    )
    assert (
        _sample("ledger_errors_total", {"action": "start_farming", "kind": "session_already_active"})
        == errors_before + 1
    )
    assert b"ledger_txn_seconds" in metrics.render_metrics()


def test_corrupt_referral_code_reads_as_null() -> None:
    service = make_service()
    service.get_user("damaged")
    document = service.storage._impl._docs["damaged"]
    document["referral"]["code"]["iv"] = "00"
    failures_before = _sample("ledger_integrity_failures_total", {"field": "referral.code"})

    view = service.get_user("damaged")
    referrals = service.get_referrals("damaged")

    assert view["referralCode"] is None
    assert referrals["code"] is None
    assert referrals["count"] == 0
    assert (
        _sample("ledger_integrity_failures_total", {"field": "referral.code"})
        == failures_before + 2
    )
