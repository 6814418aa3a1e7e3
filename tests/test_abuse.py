import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from abuse import (  # noqa: E402
    AbuseConfig,
    AbuseRiskScorer,
    CreditTier,
    RequiredAction,
    SessionActivity,
    SignupSignals,
    compute_behavior_score,
    extract_email_domain,
    extract_subnet,
    tier_for_score,
    velocity_bucket_start,
)
from counters import MemoryCounterStore  # noqa: E402
from disposable_domains import DisposableDomainRegistry  # noqa: E402

NOW = datetime(2026, 1, 5, 12, 30, tzinfo=timezone.utc)


def _scorer(**config) -> AbuseRiskScorer:
    return AbuseRiskScorer(
        MemoryCounterStore(),
        config=AbuseConfig(**config),
        domains=DisposableDomainRegistry(["mailinator.com"]),
        clock=lambda: NOW,
    )


def _signals(**overrides) -> SignupSignals:
    data = dict(email="user@example.com", ip_address="203.0.113.7", device_fingerprint="fp-1")
    data.update(overrides)
    return SignupSignals(**data)


def test_clean_signup_is_full_tier():
    result = _scorer().check(_signals())
    assert result.risk_score == 0
    assert result.credit_tier is CreditTier.FULL
    assert result.allowed is True
    assert result.is_suspicious is False
    assert result.required_actions == [RequiredAction.PHONE_VERIFY]


def test_missing_fingerprint_is_mild_penalty():
    result = _scorer().check(_signals(device_fingerprint=None))
    assert result.risk_score == 10
    assert result.credit_tier is CreditTier.FULL
    assert result.suspicion_reasons == []


def test_disposable_email_requires_identity():
    result = _scorer().check(_signals(email="x@Mailinator.com"))
    assert result.risk_score == 40
    assert result.credit_tier is CreditTier.THROTTLED
    assert result.is_suspicious is True
    assert result.is_disposable_email is True
    assert "Disposable email domain: mailinator.com" in result.suspicion_reasons
    assert RequiredAction.THIRD_PARTY_IDENTITY in result.required_actions
    assert RequiredAction.CAPTCHA in result.required_actions


def test_fingerprint_and_ip_reuse_block():
    scorer = _scorer()
    previous = _signals()
    scorer.register_signup(previous)
    scorer.register_signup(_signals(device_fingerprint="fp-2"))

    result = scorer.check(_signals())

    assert result.risk_score == 80
    assert result.credit_tier is CreditTier.BLOCKED
    assert result.allowed is False
    assert len(result.suspicion_reasons) == 2


def test_subnet_velocity_counts_attempts_in_bucket():
    scorer = _scorer(max_signups_per_subnet_window=3)
    for index in range(3):
        result = scorer.check(_signals(ip_address=f"198.51.100.{index}", device_fingerprint=f"fp-{index}"))
        assert result.risk_score == 0

    fourth = scorer.check(_signals(ip_address="198.51.100.200", device_fingerprint="fp-x"))

    assert fourth.risk_score == 25
    assert fourth.subnet == "198.51.100.0/24"
    assert RequiredAction.CAPTCHA in fourth.required_actions
    assert fourth.suspicion_reasons[0].startswith("High velocity signups from subnet (4 in last 60 minutes)")


def test_subnet_velocity_needs_an_ip():
    scorer = _scorer(max_signups_per_subnet_window=1)
    for _ in range(3):
        result = scorer.check(_signals(ip_address=None))
    assert result.risk_score == 0
    assert result.subnet is None


def test_check_without_counting_does_not_move_buckets():
    scorer = _scorer(max_signups_per_subnet_window=1)
    for _ in range(5):
        scorer.check(_signals(), count_attempt=False)
    assert scorer.check(_signals()).risk_score == 0


def test_captcha_and_identity_waived_when_supplied():
    scorer = _scorer()
    scorer.register_signup(_signals())
    result = scorer.check(_signals(captcha_completed=True, identity_proof="li-123", ip_address="192.0.2.9"))
    assert result.risk_score == 50
    assert result.required_actions == [RequiredAction.PHONE_VERIFY]


def test_score_is_clamped_to_100():
    scorer = _scorer(max_signups_per_subnet_window=0, max_accounts_per_ip=1)
    signals = _signals(email="x@mailinator.com")
    scorer.register_signup(signals)
    result = scorer.check(signals)
    assert result.risk_score == 100
    assert result.credit_tier is CreditTier.BLOCKED


@pytest.mark.parametrize(
    "extra",
    [
        {"email": "x@mailinator.com"},
        {"device_fingerprint": None},
    ],
)
def test_adding_a_signal_never_lowers_the_score(extra):
    scorer = _scorer()
    base = scorer.check(_signals(), count_attempt=False).risk_score
    assert scorer.check(_signals(**extra), count_attempt=False).risk_score >= base


def test_reuse_signals_are_monotonic():
    scorer = _scorer()
    scores = [scorer.check(_signals(), count_attempt=False).risk_score]
    for index in range(3):
        scorer.register_signup(_signals(device_fingerprint="fp-1", ip_address="203.0.113.7"))
        scores.append(scorer.check(_signals(), count_attempt=False).risk_score)
    assert scores == sorted(scores)


@pytest.mark.parametrize(
    "score,tier",
    [(0, CreditTier.FULL), (39, CreditTier.FULL), (40, CreditTier.THROTTLED), (79, CreditTier.THROTTLED), (80, CreditTier.BLOCKED)],
)
def test_tier_thresholds(score, tier):
    assert tier_for_score(score) is tier


def test_signals_from_camel_case_payload():
    signals = SignupSignals.from_mapping(
        {
            "email": " a@b.io ",
            "ipAddress": "10.1.2.3",
            "deviceFingerprint": "fp",
            "userAgent": "UA",
            "captchaToken": "tok",
            "linkedInId": "li",
        }
    )
    assert signals == SignupSignals(
        email="a@b.io",
        ip_address="10.1.2.3",
        device_fingerprint="fp",
        user_agent="UA",
        captcha_completed=True,
        identity_proof="li",
    )


def test_extract_helpers():
    assert extract_email_domain("User@Example.COM") == "example.com"
    assert extract_email_domain("no-at-sign") == ""
    assert extract_subnet("192.168.10.77") == "192.168.10.0/24"
    assert extract_subnet("2001:db8:abcd:12::1") == "2001:db8:abcd::/48"
    assert extract_subnet("not-an-ip") == "not-an-ip"
    assert velocity_bucket_start(NOW, 60) == datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def test_high_velocity_subnets_report():
    scorer = _scorer(max_signups_per_subnet_window=1)
    for index in range(3):
        scorer.track_subnet_signup(f"203.0.113.{index}")
    scorer.track_subnet_signup("198.51.100.1")

    rows = scorer.high_velocity_subnets()
    assert rows == [
        {"subnet": "203.0.113.0/24", "signupCount": 3, "windowStart": "2026-01-05T12:00:00+00:00"}
    ]


def test_behavior_score_rules():
    created = NOW - timedelta(days=3)
    assert compute_behavior_score(created, []) == 50

    engaged = [
        SessionActivity("COMPLETED", created + timedelta(hours=30), 600),
        SessionActivity("COMPLETED", created + timedelta(hours=40), 400),
    ]
    # 50 + 20 (completion) + 15 (long sessions) + 10 (waited > 24h)
    assert compute_behavior_score(created, engaged) == 95

    farming = [
        SessionActivity("CANCELLED", created + timedelta(minutes=1), 20),
        SessionActivity("CANCELLED", created + timedelta(minutes=2), 30),
        SessionActivity("COMPLETED", created + timedelta(minutes=3), 40),
    ]
    # 50 + 7 (one in three completed) - 20 (short) - 10 (immediate) - 15 (cancels)
    assert compute_behavior_score(created, farming) == 12

    worst = [SessionActivity("CANCELLED", created, 5) for _ in range(4)]
    assert compute_behavior_score(created, worst) == 5
