"""Trial credit eligibility and amount rules.

Two deployment modes exist and exactly one is active at a time:

``promo_auto_grant``
    credits are issued while the account is created; the amount is the promo
    amount inside ``[PROMO_START, PROMO_END)`` and the default amount outside.
``fixed_claim``
    a fixed amount the account holder claims explicitly once email and phone
    are verified.

Both modes derive the idempotency key from the account id, so repeated
signups or claims never produce a second grant.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

from abuse import AbuseCheckResult, CreditTier
from core.constants import REFERENCE_TRIAL, TRIAL_CLAIM_KEY_PREFIX, TRIAL_GRANT_KEY_PREFIX
from ledger import EntryType, LedgerEntry, LedgerStorage

log = logging.getLogger("trial-policy")


class TrialPolicyMode(str, Enum):
    PROMO_AUTO_GRANT = "promo_auto_grant"
    FIXED_CLAIM = "fixed_claim"


class Eligibility(str, Enum):
    ELIGIBLE = "eligible"
    ALREADY_GRANTED = "already_granted"
    NOT_PERSONAL = "not_personal"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    PHONE_NOT_VERIFIED = "phone_not_verified"
    ABUSE_BLOCKED = "abuse_blocked"
    ACCOUNT_NOT_FOUND = "account_not_found"


class AccountType(str, Enum):
    PERSONAL = "personal"
    ORGANIZATION = "organization"


@dataclass(frozen=True)
class TrialPolicyConfig:
    mode: TrialPolicyMode = TrialPolicyMode.FIXED_CLAIM
    promo_start: datetime = datetime(2025, 12, 28, tzinfo=timezone.utc)
    promo_end: datetime = datetime(2026, 1, 15, tzinfo=timezone.utc)
    promo_credits: int = 5
    default_credits: int = 1
    fixed_credits: int = 5
    throttled_credits: int = 1

    @classmethod
    def from_settings(cls, config: Any) -> "TrialPolicyConfig":
        return cls(
            mode=TrialPolicyMode(config.TRIAL_POLICY_MODE),
            promo_start=config.PROMO_START,
            promo_end=config.PROMO_END,
            promo_credits=config.PROMO_TRIAL_CREDITS,
            default_credits=config.DEFAULT_TRIAL_CREDITS,
            fixed_credits=config.FIXED_TRIAL_CREDITS,
            throttled_credits=config.THROTTLED_TRIAL_CREDITS,
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_promo_active(config: TrialPolicyConfig, now: datetime) -> bool:
    """Start inclusive, end exclusive."""

    moment = _as_utc(now)
    return _as_utc(config.promo_start) <= moment < _as_utc(config.promo_end)


def get_trial_credits_amount(config: TrialPolicyConfig, now: datetime) -> int:
    if config.mode is TrialPolicyMode.FIXED_CLAIM:
        return config.fixed_credits
    return config.promo_credits if is_promo_active(config, now) else config.default_credits


def get_promo_remaining_days(config: TrialPolicyConfig, now: datetime) -> int:
    """Whole days left in the promo, rounded up; ``0`` outside the window."""

    if not is_promo_active(config, now):
        return 0
    remaining = (_as_utc(config.promo_end) - _as_utc(now)).total_seconds()
    return max(0, math.ceil(remaining / 86_400))


def trial_idempotency_key(mode: TrialPolicyMode, account_id: str) -> str:
    prefix = TRIAL_CLAIM_KEY_PREFIX if TrialPolicyMode(mode) is TrialPolicyMode.FIXED_CLAIM else TRIAL_GRANT_KEY_PREFIX
    return f"{prefix}{account_id}"


@dataclass
class AccountState:
    """What the policy needs to know about an account from the identity layer."""

    account_id: str
    account_type: AccountType = AccountType.PERSONAL
    email_verified: bool = False
    phone_verified: bool = False
    created_at: Optional[datetime] = None


class AccountDirectory(Protocol):
    def get_account(self, account_id: str) -> Optional[AccountState]:
        ...


class MemoryAccountDirectory:
    """Process-local account directory for tests and single-process runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._accounts: Dict[str, AccountState] = {}

    def upsert(self, account: AccountState) -> AccountState:
        with self._lock:
            self._accounts[account.account_id] = replace(account)
        return account

    def get_account(self, account_id: str) -> Optional[AccountState]:
        with self._lock:
            account = self._accounts.get(account_id)
            return replace(account) if account else None

    def mark_email_verified(self, account_id: str) -> AccountState:
        return self._update(account_id, email_verified=True)

    def mark_phone_verified(self, account_id: str) -> AccountState:
        return self._update(account_id, phone_verified=True)

    def _update(self, account_id: str, **changes: Any) -> AccountState:
        with self._lock:
            current = self._accounts.get(account_id)
            if current is None:
                raise KeyError(account_id)
            updated = replace(current, **changes)
            self._accounts[account_id] = updated
            return replace(updated)


@dataclass
class TrialDecision:
    eligibility: Eligibility
    mode: TrialPolicyMode
    amount: int
    idempotency_key: str
    existing: Optional[LedgerEntry] = None
    abuse: Optional[AbuseCheckResult] = None

    @property
    def eligible(self) -> bool:
        return self.eligibility is Eligibility.ELIGIBLE


class TrialPolicy:
    """Evaluate the ordered trial rules; the first failing rule wins."""

    def __init__(
        self,
        ledger: LedgerStorage,
        config: Optional[TrialPolicyConfig] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ledger = ledger
        self.config = config or TrialPolicyConfig()
        self._clock = clock

    @property
    def mode(self) -> TrialPolicyMode:
        return self.config.mode

    def now(self) -> datetime:
        return self._clock()

    def idempotency_key(self, account_id: str) -> str:
        return trial_idempotency_key(self.mode, account_id)

    def find_existing_grant(self, account_id: str) -> Optional[LedgerEntry]:
        entry = self.ledger.get_entry_by_key(self.idempotency_key(account_id))
        if entry is not None:
            return entry
        return self.ledger.find_first_entry(account_id, REFERENCE_TRIAL, EntryType.GRANT)

    def amount_for(self, tier: Optional[CreditTier], now: Optional[datetime] = None) -> int:
        base = get_trial_credits_amount(self.config, now or self.now())
        if tier is CreditTier.BLOCKED:
            return 0
        if tier is CreditTier.THROTTLED:
            return min(base, self.config.throttled_credits)
        return base

    def evaluate(
        self,
        account_id: str,
        account: Optional[AccountState],
        abuse: Optional[AbuseCheckResult] = None,
        *,
        now: Optional[datetime] = None,
    ) -> TrialDecision:
        moment = now or self.now()
        key = self.idempotency_key(account_id)

        def decide(eligibility: Eligibility, existing: Optional[LedgerEntry] = None) -> TrialDecision:
            amount = 0
            if eligibility is Eligibility.ELIGIBLE:
                amount = self.amount_for(abuse.credit_tier if abuse else None, moment)
            elif existing is not None:
                amount = existing.amount
            decision = TrialDecision(eligibility, self.mode, amount, key, existing=existing, abuse=abuse)
            log.debug(
                "trial.policy.evaluated account=%s mode=%s eligibility=%s amount=%s",
                account_id,
                self.mode.value,
                eligibility.value,
                amount,
            )
            return decision

        existing = self.find_existing_grant(account_id)
        if existing is not None:
            return decide(Eligibility.ALREADY_GRANTED, existing)
        if account is None:
            return decide(Eligibility.ACCOUNT_NOT_FOUND)
        if account.account_type is not AccountType.PERSONAL:
            return decide(Eligibility.NOT_PERSONAL)
        if not account.email_verified:
            return decide(Eligibility.EMAIL_NOT_VERIFIED)
        if self.mode is TrialPolicyMode.FIXED_CLAIM and not account.phone_verified:
            return decide(Eligibility.PHONE_NOT_VERIFIED)
        if abuse is not None and not abuse.allowed:
            return decide(Eligibility.ABUSE_BLOCKED)
        return decide(Eligibility.ELIGIBLE)

    def promo_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        moment = now or self.now()
        return {
            "mode": self.mode.value,
            "promoActive": self.mode is TrialPolicyMode.PROMO_AUTO_GRANT and is_promo_active(self.config, moment),
            "promoRemainingDays": (
                get_promo_remaining_days(self.config, moment)
                if self.mode is TrialPolicyMode.PROMO_AUTO_GRANT
                else 0
            ),
            "trialAmount": get_trial_credits_amount(self.config, moment),
        }


__all__ = [
    "AccountDirectory",
    "AccountState",
    "AccountType",
    "Eligibility",
    "MemoryAccountDirectory",
    "TrialDecision",
    "TrialPolicy",
    "TrialPolicyConfig",
    "TrialPolicyMode",
    "get_promo_remaining_days",
    "get_trial_credits_amount",
    "is_promo_active",
    "trial_idempotency_key",
]
