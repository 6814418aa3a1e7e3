import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from abuse import AbuseCheckResult, CreditTier  # noqa: E402
from ledger import LedgerStorage  # noqa: E402
from trial_policy import (  # noqa: E402
    AccountState,
    AccountType,
    Eligibility,
    MemoryAccountDirectory,
    TrialPolicy,
    TrialPolicyConfig,
    TrialPolicyMode,
    get_promo_remaining_days,
    get_trial_credits_amount,
    is_promo_active,
    trial_idempotency_key,
)

PROMO = TrialPolicyConfig(mode=TrialPolicyMode.PROMO_AUTO_GRANT)
FIXED = TrialPolicyConfig(mode=TrialPolicyMode.FIXED_CLAIM)


def _utc(*parts) -> datetime:
    return datetime(*parts, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "moment,amount",
    [
        (_utc(2025, 12, 28, 0, 0, 0), 5),
        (_utc(2026, 1, 14, 23, 59, 59), 5),
        (_utc(2026, 1, 15, 0, 0, 0), 1),
        (_utc(2025, 12, 27, 23, 59, 59), 1),
    ],
)
def test_promo_window_is_half_open(moment, amount):
    assert get_trial_credits_amount(PROMO, moment) == amount


def test_fixed_mode_ignores_dates():
    assert get_trial_credits_amount(FIXED, _utc(2025, 12, 30)) == 5
    assert get_trial_credits_amount(FIXED, _utc(2030, 1, 1)) == 5


def test_naive_datetimes_are_treated_as_utc():
    assert is_promo_active(PROMO, datetime(2026, 1, 1, 12, 0))


@pytest.mark.parametrize(
    "moment,days",
    [
        (_utc(2025, 12, 28), 18),
        (_utc(2026, 1, 5), 10),
        (_utc(2026, 1, 14, 23, 0), 1),
        (_utc(2026, 1, 15), 0),
        (_utc(2025, 12, 1), 0),
    ],
)
def test_promo_remaining_days(moment, days):
    assert get_promo_remaining_days(PROMO, moment) == days


def test_idempotency_keys_are_deterministic_per_mode():
    assert trial_idempotency_key(TrialPolicyMode.FIXED_CLAIM, "acc-1") == "trial_claim_acc-1"
    assert trial_idempotency_key(TrialPolicyMode.PROMO_AUTO_GRANT, "acc-1") == "welcome_trial_acc-1"


def _account(**overrides) -> AccountState:
    data = dict(account_id="acc", email_verified=True, phone_verified=True)
    data.update(overrides)
    return AccountState(**data)


def _abuse(tier: CreditTier, score: int) -> AbuseCheckResult:
    return AbuseCheckResult(
        allowed=tier is not CreditTier.BLOCKED,
        credit_tier=tier,
        risk_score=score,
        is_suspicious=score >= 20,
    )


def test_rules_are_evaluated_in_order():
    ledger = LedgerStorage(None)
    policy = TrialPolicy(ledger, FIXED)
    blocked = _abuse(CreditTier.BLOCKED, 90)

    org = _account(account_type=AccountType.ORGANIZATION, email_verified=False, phone_verified=False)
    assert policy.evaluate("acc", org, blocked).eligibility is Eligibility.NOT_PERSONAL
    unverified = _account(email_verified=False, phone_verified=False)
    assert policy.evaluate("acc", unverified, blocked).eligibility is Eligibility.EMAIL_NOT_VERIFIED
    no_phone = _account(phone_verified=False)
    assert policy.evaluate("acc", no_phone, blocked).eligibility is Eligibility.PHONE_NOT_VERIFIED
    assert policy.evaluate("acc", _account(), blocked).eligibility is Eligibility.ABUSE_BLOCKED

    decision = policy.evaluate("acc", _account(), None)
    assert decision.eligible
    assert decision.amount == 5
    assert decision.idempotency_key == "trial_claim_acc"


def test_already_granted_wins_over_every_other_rule():
    ledger = LedgerStorage(None)
    policy = TrialPolicy(ledger, FIXED)
    ledger.mutate("acc", "GRANT", 5, "trial", "trial", "acc", idempotency_key="trial_claim_acc")

    decision = policy.evaluate("acc", None, _abuse(CreditTier.BLOCKED, 99))

    assert decision.eligibility is Eligibility.ALREADY_GRANTED
    assert decision.existing is not None
    assert decision.amount == 5


def test_promo_mode_does_not_require_phone():
    policy = TrialPolicy(LedgerStorage(None), PROMO, clock=lambda: _utc(2026, 1, 2))
    decision = policy.evaluate("acc", _account(phone_verified=False))
    assert decision.eligible
    assert decision.amount == 5
    assert decision.idempotency_key == "welcome_trial_acc"


def test_missing_account_is_reported():
    policy = TrialPolicy(LedgerStorage(None), FIXED)
    assert policy.evaluate("ghost", None).eligibility is Eligibility.ACCOUNT_NOT_FOUND


def test_throttled_tier_caps_amount():
    policy = TrialPolicy(LedgerStorage(None), FIXED)
    decision = policy.evaluate("acc", _account(), _abuse(CreditTier.THROTTLED, 45))
    assert decision.eligible
    assert decision.amount == 1


def test_promo_status_reports_window():
    policy = TrialPolicy(LedgerStorage(None), PROMO)
    status = policy.promo_status(_utc(2026, 1, 5))
    assert status == {
        "mode": "promo_auto_grant",
        "promoActive": True,
        "promoRemainingDays": 10,
        "trialAmount": 5,
    }
    fixed = TrialPolicy(LedgerStorage(None), FIXED).promo_status(_utc(2026, 1, 5))
    assert fixed["promoActive"] is False
    assert fixed["promoRemainingDays"] == 0


def test_memory_account_directory_updates():
    accounts = MemoryAccountDirectory()
    accounts.upsert(AccountState("acc"))
    assert accounts.mark_email_verified("acc").email_verified is True
    assert accounts.mark_phone_verified("acc").phone_verified is True
    assert accounts.get_account("acc").phone_verified is True
    assert accounts.get_account("missing") is None
    with pytest.raises(KeyError):
        accounts.mark_phone_verified("missing")
