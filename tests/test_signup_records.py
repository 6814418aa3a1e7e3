import contextlib
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from abuse import AbuseCheckResult, CreditTier, SignupSignals  # noqa: E402
from signup_records import (  # noqa: E402
    SignupRiskRecord,
    SignupRiskRecordStore,
    VerificationKind,
    apply_verification,
)

NOW = datetime(2026, 1, 3, 9, 0, tzinfo=timezone.utc)


def _record(account_id: str, **overrides) -> SignupRiskRecord:
    data: Dict[str, Any] = dict(account_id=account_id, created_at=NOW, updated_at=NOW)
    data.update(overrides)
    return SignupRiskRecord(**data)


def test_record_from_check_copies_signals():
    signals = SignupSignals(
        email="a@mailinator.com",
        ip_address="10.0.0.1",
        device_fingerprint="fp",
        user_agent="UA",
        captcha_completed=True,
    )
    result = AbuseCheckResult(
        allowed=True,
        credit_tier=CreditTier.THROTTLED,
        risk_score=40,
        is_suspicious=True,
        suspicion_reasons=["Disposable email domain: mailinator.com"],
        email_domain="mailinator.com",
        is_disposable_email=True,
    )

    record = SignupRiskRecord.from_check("acc", signals, result, now=NOW)

    assert record.ip_address == "10.0.0.1"
    assert record.email_domain == "mailinator.com"
    assert record.credit_tier is CreditTier.THROTTLED
    assert record.captcha_completed is True
    assert record.identity_verified is False
    assert record.is_suspicious is True
    assert record.abuse_result().allowed is True


def test_phone_verification_upgrades_throttled_tier():
    record = _record("acc", credit_tier=CreditTier.THROTTLED, risk_score=45)
    updated = apply_verification(record, VerificationKind.PHONE, min_behavior_score=30, now=NOW)
    assert updated.phone_verified is True
    assert updated.credit_tier is CreditTier.FULL
    assert record.credit_tier is CreditTier.THROTTLED


def test_low_behavior_score_blocks_upgrade():
    record = _record("acc", credit_tier=CreditTier.THROTTLED, behavior_score=12)
    updated = apply_verification(record, "phone", min_behavior_score=30, now=NOW)
    assert updated.phone_verified is True
    assert updated.credit_tier is CreditTier.THROTTLED


def test_blocked_tier_is_never_upgraded():
    record = _record("acc", credit_tier=CreditTier.BLOCKED, risk_score=90)
    updated = apply_verification(record, VerificationKind.PHONE, min_behavior_score=0, now=NOW)
    assert updated.credit_tier is CreditTier.BLOCKED


def test_captcha_and_identity_flags():
    record = _record("acc", credit_tier=CreditTier.THROTTLED)
    after_captcha = apply_verification(record, VerificationKind.CAPTCHA, min_behavior_score=30)
    assert after_captcha.captcha_completed is True
    assert after_captcha.credit_tier is CreditTier.THROTTLED
    after_identity = apply_verification(after_captcha, VerificationKind.IDENTITY, min_behavior_score=30)
    assert after_identity.identity_verified is True
    with pytest.raises(ValueError):
        apply_verification(record, "fax", min_behavior_score=30)


def test_memory_store_create_is_first_writer_wins():
    store = SignupRiskRecordStore()
    assert store.create(_record("acc", risk_score=10)) is True
    assert store.create(_record("acc", risk_score=99)) is False
    assert store.get("acc").risk_score == 10
    assert store.get("missing") is None

    fetched = store.get("acc")
    fetched.phone_verified = True
    assert store.get("acc").phone_verified is False
    store.save(fetched)
    assert store.get("acc").phone_verified is True

    with pytest.raises(KeyError):
        store.save(_record("ghost"))


def test_memory_store_stats():
    store = SignupRiskRecordStore()
    store.create(_record("a", risk_score=0, phone_verified=True))
    store.create(_record("b", risk_score=45, credit_tier=CreditTier.THROTTLED, is_disposable_email=True))
    store.create(_record("c", risk_score=85, credit_tier=CreditTier.BLOCKED))
    store.create(_record("d", risk_score=25, phone_verified=True))

    assert store.stats() == {
        "totalSignups": 4,
        "suspiciousSignups": 3,
        "blockedSignups": 1,
        "throttledSignups": 1,
        "phoneVerifiedSignups": 2,
        "disposableEmailAttempts": 1,
        "verificationRate": 50,
    }
    assert SignupRiskRecordStore().stats()["verificationRate"] == 0


class _StatsCursor:
    def __init__(self, log: List[str]) -> None:
        self.log = log
        self.rowcount = 0
        self._row: Any = None

    def execute(self, sql: str, params: Any = ()) -> None:
        text = " ".join(sql.split()).lower()
        self.log.append(text)
        if text.startswith("select count(*)"):
            self._row = (3, 2, 1, 1, 2, 1)
        elif text.startswith("insert into signup_risk_records"):
            self.rowcount = 1
        else:
            self._row = None

    def fetchone(self) -> Any:
        return self._row


class _Conn:
    def __init__(self, log: List[str]) -> None:
        self.log = log

    @contextlib.contextmanager
    def cursor(self):
        yield _StatsCursor(self.log)

    @contextlib.contextmanager
    def transaction(self):
        yield


class _Pool:
    def __init__(self) -> None:
        self.log: List[str] = []

    @contextlib.contextmanager
    def connection(self):
        yield _Conn(self.log)

    def close(self) -> None:
        pass


def test_postgres_store_uses_schema_and_aggregates():
    pool = _Pool()
    store = SignupRiskRecordStore("postgresql://u:p@db:5432/credits", backend="postgres", pool=pool)
    store.start()

    assert store.create(_record("acc", suspicion_reasons=["x"])) is True
    stats = store.stats()

    assert any(statement.startswith("create table if not exists signup_risk_records") for statement in pool.log)
    assert any("on conflict (account_id) do nothing" in statement for statement in pool.log)
    assert stats["totalSignups"] == 3
    assert stats["verificationRate"] == 67
