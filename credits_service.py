"""Entry point that composes the ledger, abuse scoring and trial policy.

Callers (signup flow, session start, payment webhook, refund flow) talk to
:class:`CreditsService` only. Policy outcomes are returned as typed results;
ledger failures are returned as retryable errors for trial grants and raised
for direct ledger operations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Union

from abuse import (
    AbuseCheckResult,
    AbuseConfig,
    AbuseRiskScorer,
    SessionActivity,
    SignupSignals,
    compute_behavior_score,
)
from core import balance_provider
from core.constants import (
    ADJUST_KEY_PREFIX,
    PURCHASE_KEY_PREFIX,
    REFERENCE_ADMIN,
    REFERENCE_PURCHASE,
    REFERENCE_TRIAL,
    RESTORE_KEY_PREFIX,
    SPEND_KEY_PREFIX,
)
from counters import PeriodicPurger, create_counter_store
from helpers.errors import CODE_ABUSE_BLOCKED, CreditsError, ValidationError, describe_error, error_payload
from ledger import EntryType, LedgerEntry, LedgerStorage, MutationResult, Wallet
from logging_utils import build_log_extra, mask_identifier
from metrics import record_trial_attempt
from signup_records import (
    SignupRiskRecord,
    SignupRiskRecordStore,
    VerificationKind,
    apply_verification,
)
from trial_policy import (
    AccountDirectory,
    Eligibility,
    MemoryAccountDirectory,
    TrialPolicy,
    TrialPolicyConfig,
    TrialPolicyMode,
)

log = logging.getLogger("credits")

SignupInfo = Union[SignupSignals, Mapping[str, Any]]


class ActivityProvider(Protocol):
    def sessions_for(self, account_id: str) -> Sequence[SessionActivity]:
        ...


@dataclass
class TrialGrantResult:
    success: bool
    eligibility: Optional[Eligibility]
    credits_granted: int = 0
    ledger_entry_id: Optional[str] = None
    new_balance: Optional[int] = None
    error: Optional[Dict[str, Any]] = None
    already_processed: bool = False
    required_actions: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "eligibility": self.eligibility.value if self.eligibility else None,
            "creditsGranted": self.credits_granted,
        }
        if self.ledger_entry_id is not None:
            payload["ledgerEntryId"] = self.ledger_entry_id
        if self.new_balance is not None:
            payload["newBalance"] = self.new_balance
        if self.error is not None:
            payload["error"] = self.error
        if self.already_processed:
            payload["alreadyProcessed"] = True
        if self.required_actions:
            payload["requiredActions"] = list(self.required_actions)
        return payload


@dataclass
class TrialStatus:
    granted: bool
    amount: int
    granted_at: Optional[datetime]
    current_balance: int
    can_claim: bool
    mode: TrialPolicyMode
    blocked_reason: Optional[str] = None
    promo_active: bool = False
    promo_remaining_days: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "granted": self.granted,
            "amount": self.amount,
            "grantedAt": self.granted_at.isoformat() if self.granted_at else None,
            "currentBalance": self.current_balance,
            "canClaim": self.can_claim,
            "blockedReason": self.blocked_reason,
            "mode": self.mode.value,
            "promoActive": self.promo_active,
            "promoRemainingDays": self.promo_remaining_days,
        }


@dataclass
class SignupOutcome:
    account_id: str
    abuse: Optional[AbuseCheckResult]
    record_created: bool = False
    trial: Optional[TrialGrantResult] = None
    error: Optional[Dict[str, Any]] = None


def _coerce_signals(signup_info: Optional[SignupInfo]) -> Optional[SignupSignals]:
    if signup_info is None or isinstance(signup_info, SignupSignals):
        return signup_info
    return SignupSignals.from_mapping(signup_info)


class CreditsService:
    def __init__(
        self,
        ledger: LedgerStorage,
        scorer: AbuseRiskScorer,
        records: SignupRiskRecordStore,
        accounts: AccountDirectory,
        policy: Optional[TrialPolicy] = None,
        *,
        activity: Optional[ActivityProvider] = None,
        purger: Optional[PeriodicPurger] = None,
    ) -> None:
        self.ledger = ledger
        self.scorer = scorer
        self.records = records
        self.accounts = accounts
        self.policy = policy or TrialPolicy(ledger)
        self.activity = activity
        self._purger = purger

    def start(self) -> None:
        self.ledger.start()
        self.records.start()
        balance_provider.set_ledger_storage(self.ledger)
        if self._purger is not None:
            self._purger.start()

    def stop(self) -> None:
        if self._purger is not None:
            self._purger.stop()
        self.records.stop()
        balance_provider.set_ledger_storage(None)
        self.ledger.stop()

    # ------------------------------------------------------------------
    #   Ledger
    # ------------------------------------------------------------------
    def mutate_ledger(
        self,
        account_id: str,
        entry_type: Any,
        amount: int,
        description: str = "",
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        idempotency_key: str,
    ) -> MutationResult:
        return self.ledger.mutate(
            account_id,
            entry_type,
            amount,
            description,
            reference_type,
            reference_id,
            metadata,
            idempotency_key=idempotency_key,
        )

    def get_wallet(self, account_id: str) -> Wallet:
        return self.ledger.get_wallet(account_id)

    def list_history(
        self,
        account_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        entry_type: Optional[Any] = None,
    ) -> List[LedgerEntry]:
        return self.ledger.list_entries(account_id, limit=limit, offset=offset, entry_type=entry_type)

    def spend_credits(
        self,
        account_id: str,
        amount: int,
        reference_type: str,
        reference_id: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MutationResult:
        """Debit credits for a business event; the event id makes it idempotent."""

        return self.ledger.mutate(
            account_id,
            EntryType.DEBIT,
            amount,
            description or f"Spent on {reference_type}",
            reference_type,
            reference_id,
            metadata,
            idempotency_key=f"{SPEND_KEY_PREFIX}{reference_type}_{reference_id}",
        )

    def restore_credits(
        self,
        account_id: str,
        amount: int,
        reference_type: str,
        reference_id: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MutationResult:
        """Refund credits spent on an event that did not complete."""

        return self.ledger.mutate(
            account_id,
            EntryType.REFUND,
            amount,
            description or f"Restored from {reference_type}",
            reference_type,
            reference_id,
            metadata,
            idempotency_key=f"{RESTORE_KEY_PREFIX}{reference_type}_{reference_id}",
        )

    def grant_purchase(
        self,
        account_id: str,
        amount: int,
        payment_id: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MutationResult:
        return self.ledger.mutate(
            account_id,
            EntryType.GRANT,
            amount,
            description or "Credit purchase",
            REFERENCE_PURCHASE,
            payment_id,
            metadata,
            idempotency_key=f"{PURCHASE_KEY_PREFIX}{payment_id}",
        )

    def adjust_credits(
        self,
        account_id: str,
        amount: int,
        adjustment_id: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MutationResult:
        """Apply an administrative correction; negative amounts are recorded as debits."""

        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise ValidationError("adjustment amount must be a non-zero integer")
        return self.ledger.mutate(
            account_id,
            EntryType.ADJUSTMENT if amount > 0 else EntryType.DEBIT,
            abs(amount),
            description or "Administrative adjustment",
            REFERENCE_ADMIN,
            adjustment_id,
            metadata,
            idempotency_key=f"{ADJUST_KEY_PREFIX}{adjustment_id}",
        )

    # ------------------------------------------------------------------
    #   Abuse
    # ------------------------------------------------------------------
    def check_abuse(self, signup_info: SignupInfo, *, count_attempt: bool = True) -> AbuseCheckResult:
        signals = _coerce_signals(signup_info)
        if signals is None:
            raise ValidationError("signup info is required")
        return self.scorer.check(signals, now=self.policy.now(), count_attempt=count_attempt)

    def abuse_stats(self) -> Dict[str, Any]:
        stats = dict(self.records.stats())
        stats["highVelocitySubnets"] = self.scorer.high_velocity_subnets(limit=10)
        return stats

    def _abuse_for(self, account_id: str, signals: Optional[SignupSignals]) -> Optional[AbuseCheckResult]:
        # the stored record already counts this account in the reuse counters
        record = self.records.get(account_id)
        if record is not None:
            return record.abuse_result()
        if signals is not None:
            return self.scorer.check(signals, now=self.policy.now(), count_attempt=False)
        return None

    # ------------------------------------------------------------------
    #   Trial
    # ------------------------------------------------------------------
    def grant_or_claim_trial(
        self,
        account_id: str,
        signup_info: Optional[SignupInfo] = None,
        *,
        now: Optional[datetime] = None,
    ) -> TrialGrantResult:
        """Grant (promo mode) or claim (fixed mode) the trial credits once.

        The stored signup risk record supplies the abuse decision; ``signup_info``
        is scored only for accounts without one. Policy outcomes, storage
        failures and account lookup errors are returned on the result.
        """

        try:
            signals = _coerce_signals(signup_info)
            cached = self._cached_trial(account_id)
            if cached is not None:
                return cached
            abuse = self._abuse_for(account_id, signals)
        except Exception as exc:
            return self._trial_failure(account_id, None, exc)
        return self._grant_trial(account_id, abuse, now=now)

    def _cached_trial(self, account_id: str) -> Optional[TrialGrantResult]:
        entry = self.ledger.get_entry_by_key(self.policy.idempotency_key(account_id))
        if entry is None:
            return None
        record_trial_attempt(self.policy.mode.value, Eligibility.ALREADY_GRANTED.value)
        return TrialGrantResult(
            success=True,
            eligibility=Eligibility.ALREADY_GRANTED,
            credits_granted=entry.amount,
            ledger_entry_id=entry.id,
            new_balance=entry.balance_after,
            already_processed=True,
        )

    def _grant_trial(
        self,
        account_id: str,
        abuse: Optional[AbuseCheckResult],
        *,
        now: Optional[datetime] = None,
    ) -> TrialGrantResult:
        mode = self.policy.mode.value
        required = [action.value for action in abuse.required_actions] if abuse else []
        try:
            account = self.accounts.get_account(account_id)
            decision = self.policy.evaluate(account_id, account, abuse, now=now)
        except Exception as exc:
            return self._trial_failure(account_id, None, exc)

        if decision.eligibility is Eligibility.ALREADY_GRANTED and decision.existing is not None:
            record_trial_attempt(mode, decision.eligibility.value)
            return TrialGrantResult(
                success=True,
                eligibility=decision.eligibility,
                credits_granted=decision.existing.amount,
                ledger_entry_id=decision.existing.id,
                new_balance=decision.existing.balance_after,
                already_processed=True,
            )

        if not decision.eligible or decision.amount <= 0:
            eligibility = decision.eligibility if not decision.eligible else Eligibility.ABUSE_BLOCKED
            record_trial_attempt(mode, eligibility.value)
            code = CODE_ABUSE_BLOCKED if eligibility is Eligibility.ABUSE_BLOCKED else eligibility.value
            log.info(
                "trial.grant.not_eligible account=%s mode=%s eligibility=%s",
                account_id,
                mode,
                eligibility.value,
            )
            return TrialGrantResult(
                success=False,
                eligibility=eligibility,
                error=error_payload(code),
                required_actions=required,
            )

        metadata: Dict[str, Any] = {"mode": mode}
        if abuse is not None:
            metadata.update(tier=abuse.credit_tier.value, riskScore=abuse.risk_score)
        try:
            result = self.ledger.mutate(
                account_id,
                EntryType.GRANT,
                decision.amount,
                "Welcome trial credits" if self.policy.mode is TrialPolicyMode.PROMO_AUTO_GRANT else "Trial credits claimed",
                REFERENCE_TRIAL,
                account_id,
                metadata,
                idempotency_key=decision.idempotency_key,
            )
        except CreditsError as exc:
            return self._trial_failure(account_id, Eligibility.ELIGIBLE, exc)

        entry = result.entry
        credits = entry.amount if entry is not None else decision.amount
        if result.already_processed:
            record_trial_attempt(mode, Eligibility.ALREADY_GRANTED.value)
            return TrialGrantResult(
                success=True,
                eligibility=Eligibility.ALREADY_GRANTED,
                credits_granted=credits,
                ledger_entry_id=result.ledger_entry_id,
                new_balance=result.new_balance,
                already_processed=True,
            )

        record_trial_attempt(mode, "granted")
        log.info(
            "trial.grant.applied account=%s mode=%s amount=%s balance=%s",
            account_id,
            mode,
            credits,
            result.new_balance,
        )
        self._mark_trial_granted(account_id, credits)
        return TrialGrantResult(
            success=True,
            eligibility=Eligibility.ELIGIBLE,
            credits_granted=credits,
            ledger_entry_id=result.ledger_entry_id,
            new_balance=result.new_balance,
            required_actions=required,
        )

    def _trial_failure(
        self,
        account_id: str,
        eligibility: Optional[Eligibility],
        exc: Exception,
    ) -> TrialGrantResult:
        record_trial_attempt(self.policy.mode.value, "error")
        payload = error_payload(exc)
        log.warning(
            "trial.grant.failed",
            extra=build_log_extra(
                account_id=account_id, code=payload["code"], retryable=payload["retryable"], error=str(exc)
            ),
            exc_info=not isinstance(exc, CreditsError),
        )
        return TrialGrantResult(success=False, eligibility=eligibility, error=payload)

    def _mark_trial_granted(self, account_id: str, amount: int) -> None:
        try:
            record = self.records.get(account_id)
            if record is None:
                return
            self.records.save(
                replace(record, trial_credits_granted=amount, updated_at=self.policy.now())
            )
        except Exception as exc:
            log.warning(
                "trial.record_update_failed",
                extra=build_log_extra(account_id=account_id, error=str(exc)),
            )

    def get_trial_status(self, account_id: str, *, now: Optional[datetime] = None) -> TrialStatus:
        moment = now or self.policy.now()
        promo = self.policy.promo_status(moment)
        account = self.accounts.get_account(account_id)
        decision = self.policy.evaluate(account_id, account, self._abuse_for(account_id, None), now=moment)
        wallet = self.ledger.get_wallet(account_id)

        existing = decision.existing
        if decision.eligible:
            amount = decision.amount
        elif existing is not None:
            amount = existing.amount
        else:
            amount = promo["trialAmount"]
        blocked_reason = None
        if not decision.eligible:
            code = CODE_ABUSE_BLOCKED if decision.eligibility is Eligibility.ABUSE_BLOCKED else decision.eligibility.value
            blocked_reason = describe_error(code)
        return TrialStatus(
            granted=existing is not None,
            amount=amount,
            granted_at=existing.created_at if existing is not None else None,
            current_balance=wallet.balance,
            can_claim=decision.eligible,
            mode=self.policy.mode,
            blocked_reason=blocked_reason,
            promo_active=promo["promoActive"],
            promo_remaining_days=promo["promoRemainingDays"],
        )

    # ------------------------------------------------------------------
    #   Signup and verification
    # ------------------------------------------------------------------
    def handle_signup(
        self,
        account_id: str,
        signup_info: SignupInfo,
        *,
        now: Optional[datetime] = None,
    ) -> SignupOutcome:
        """Score the signup, persist its risk record and auto-grant in promo mode.

        Failures are logged and reported on the outcome; account creation is
        never blocked by this call.
        """

        outcome = SignupOutcome(account_id=account_id, abuse=None)
        try:
            signals = _coerce_signals(signup_info)
            if signals is None:
                raise ValidationError("signup info is required")
            moment = now or self.policy.now()
            abuse = self.scorer.check(signals, now=moment)
            outcome.abuse = abuse

            record = SignupRiskRecord.from_check(account_id, signals, abuse, now=moment)
            outcome.record_created = self.records.create(record)
            if outcome.record_created:
                self.scorer.register_signup(signals)

            if self.policy.mode is TrialPolicyMode.PROMO_AUTO_GRANT:
                outcome.trial = self._grant_trial(account_id, abuse, now=moment)
        except Exception as exc:
            log.exception(
                "signup.handle_failed",
                extra=build_log_extra(account_id=account_id, email=mask_identifier(getattr(signup_info, "email", None))),
            )
            outcome.error = error_payload(exc)
        return outcome

    def complete_verification(
        self,
        account_id: str,
        kind: Union[VerificationKind, str],
        *,
        now: Optional[datetime] = None,
    ) -> Optional[SignupRiskRecord]:
        """Record a finished verification and re-evaluate a throttled tier."""

        record = self.records.get(account_id)
        if record is None:
            log.warning("signup.verification.no_record account=%s kind=%s", account_id, kind)
            return None
        behavior = record.behavior_score
        if self.activity is not None:
            behavior = compute_behavior_score(record.created_at, self.activity.sessions_for(account_id))
        updated = apply_verification(
            replace(record, behavior_score=behavior),
            VerificationKind(kind),
            min_behavior_score=self.scorer.config.min_behavior_score_for_upgrade,
            now=now or self.policy.now(),
        )
        self.records.save(updated)
        log.info(
            "signup.verification.applied account=%s kind=%s tier=%s behavior=%s",
            account_id,
            VerificationKind(kind).value,
            updated.credit_tier.value,
            behavior,
        )
        return updated


def build_credits_service(
    config: Any = None,
    *,
    accounts: Optional[AccountDirectory] = None,
    activity: Optional[ActivityProvider] = None,
) -> CreditsService:
    """Wire a service from settings; call :meth:`CreditsService.start` before use."""

    if config is None:
        from core.settings import settings as config

    ledger = LedgerStorage.from_settings(config)
    counters = create_counter_store(config)
    scorer = AbuseRiskScorer(counters, config=AbuseConfig.from_settings(config))
    records = SignupRiskRecordStore.from_settings(config)
    policy = TrialPolicy(ledger, TrialPolicyConfig.from_settings(config))
    if accounts is None:
        log.warning("credits.accounts | using process-local account directory")
        accounts = MemoryAccountDirectory()
    purger = PeriodicPurger(counters, config.COUNTER_PURGE_INTERVAL_SEC)
    log.info(
        "credits.service.built ledger=%s counters=%s mode=%s",
        config.LEDGER_BACKEND_EFFECTIVE,
        config.COUNTER_BACKEND_EFFECTIVE,
        policy.mode.value,
    )
    return CreditsService(ledger, scorer, records, accounts, policy, activity=activity, purger=purger)


__all__ = [
    "ActivityProvider",
    "CreditsService",
    "SignupOutcome",
    "TrialGrantResult",
    "TrialStatus",
    "build_credits_service",
]
