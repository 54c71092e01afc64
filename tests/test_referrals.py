from datetime import timedelta

import pytest

from ledger_test_utils import START, make_box

from core.errors import AlreadyReferred, ReferralCycle, SelfReferral
from ledger_models import new_user_ledger
from rewards import (
    attach_referral,
    credit_referral_earnings,
    generate_referral_code,
    mask_user_id,
    normalize_referral_code,
)


def _pair():
    box = make_box()
    return (
        new_user_ledger("newbie", "NEWB0001", box, START),
        new_user_ledger("mentor", "MENT0001", box, START),
    )


def test_generated_codes_are_uppercase_alphanumeric() -> None:
    codes = {generate_referral_code() for _ in range(50)}
    assert all(len(code) == 8 and code.isalnum() and code.upper() == code for code in codes)
    assert len(codes) > 1


def test_normalize_and_mask() -> None:
    assert normalize_referral_code("  ab cd\t12 34 ") == "ABCD1234"
    assert normalize_referral_code(None) == ""
    assert mask_user_id("newbie") == "ne***ie"
    assert mask_user_id("abc") == "a***"


def test_attach_records_link_on_both_sides() -> None:
    user, referrer = _pair()
    joined = START + timedelta(minutes=5)

    updated_user, updated_referrer = attach_referral(user, referrer, joined)

    assert updated_user.referral.referrer_id == "mentor"
    entries = updated_referrer.referral.referred_users
    assert [(e.user_id, e.joined_at, e.earnings) for e in entries] == [("newbie", joined, 0.0)]
    assert user.referral.referrer_id is None
    assert referrer.referral.referred_users == []


def test_attach_rejections() -> None:
    user, referrer = _pair()
    with pytest.raises(SelfReferral):
        attach_referral(user, user, START)

    linked_user, linked_referrer = attach_referral(user, referrer, START)
    with pytest.raises(AlreadyReferred):
        attach_referral(linked_user, linked_referrer, START)
    with pytest.raises(ReferralCycle):
        attach_referral(linked_referrer, linked_user, START)


def test_credit_earnings_updates_entry_and_total() -> None:
    user, referrer = _pair()
    _, referrer = attach_referral(user, referrer, START)

    credited, share = credit_referral_earnings(referrer, "newbie", 100.0, 0.1, START)
    credited, second = credit_referral_earnings(credited, "newbie", 50.0, 0.1, START)

    assert share == pytest.approx(10.0)
    assert second == pytest.approx(5.0)
    assert credited.referral.find_referred("newbie").earnings == pytest.approx(15.0)
    assert credited.referral.total_earnings == pytest.approx(15.0)
    assert credited.balance == 0.0


def test_credit_ignores_non_positive_share() -> None:
    _, referrer = _pair()
    unchanged, share = credit_referral_earnings(referrer, "newbie", 0.0, 0.1, START)
    assert share == 0.0
    assert unchanged is referrer


def test_referral_survives_document_round_trip() -> None:
    from ledger_models import UserLedger

    box = make_box()
    user, referrer = _pair()
    _, referrer = attach_referral(user, referrer, START)
    referrer, _ = credit_referral_earnings(referrer, "newbie", 100.0, 0.1, START)

    restored = UserLedger.from_document(referrer.to_document(box), box)
    assert restored.referral.code == "MENT0001"
    assert restored.referral.total_earnings == pytest.approx(10.0)
    assert restored.referral.referred_users[0].user_id == "newbie"
