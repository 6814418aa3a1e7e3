"""Async facade over :class:`credits_service.CreditsService` for event-loop callers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from credits_service import CreditsService, SignupInfo, SignupOutcome, TrialGrantResult, TrialStatus
from ledger import MutationResult, Wallet

logger = logging.getLogger(__name__)

_SERVICE: Optional[CreditsService] = None


def set_credits_service(service: Optional[CreditsService]) -> None:
    global _SERVICE
    _SERVICE = service


def _service() -> CreditsService:
    if _SERVICE is None:
        raise RuntimeError("credits service is not configured; call set_credits_service() first")
    return _SERVICE


async def _run_in_executor(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


async def charge(
    account_id: str,
    amount: int,
    reference_type: str,
    reference_id: str,
    description: str = "",
) -> MutationResult:
    """Debit ``amount`` credits for the referenced event.

    Raises :class:`helpers.errors.InsufficientBalance` when the balance is
    too low; a repeated call for the same event returns the first result.
    """

    result = await _run_in_executor(
        _service().spend_credits, account_id, amount, reference_type, reference_id, description
    )
    logger.debug(
        "billing.charge.ok",
        extra={"meta": {"account_id": account_id, "amount": amount, "balance": result.new_balance}},
    )
    return result


async def refund(
    account_id: str,
    amount: int,
    reference_type: str,
    reference_id: str,
    description: str = "",
) -> MutationResult:
    """Return credits spent on an event that did not complete."""

    result = await _run_in_executor(
        _service().restore_credits, account_id, amount, reference_type, reference_id, description
    )
    logger.debug(
        "billing.refund.ok",
        extra={"meta": {"account_id": account_id, "amount": amount, "balance": result.new_balance}},
    )
    return result


async def credit_purchase(account_id: str, amount: int, payment_id: str, description: str = "") -> MutationResult:
    return await _run_in_executor(_service().grant_purchase, account_id, amount, payment_id, description)


async def get_wallet(account_id: str) -> Wallet:
    return await _run_in_executor(_service().get_wallet, account_id)


async def get_history(account_id: str, *, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    """Return the newest ledger entries of ``account_id`` as plain dicts."""

    entries = await _run_in_executor(_service().list_history, account_id, limit=limit, offset=offset)
    return [
        {
            "id": entry.id,
            "type": entry.type.value,
            "amount": entry.amount,
            "balanceAfter": entry.balance_after,
            "description": entry.description,
            "referenceType": entry.reference_type,
            "referenceId": entry.reference_id,
            "createdAt": entry.created_at.isoformat(),
        }
        for entry in entries
    ]


async def grant_or_claim_trial(account_id: str, signup_info: Optional[SignupInfo] = None) -> TrialGrantResult:
    return await _run_in_executor(_service().grant_or_claim_trial, account_id, signup_info)


async def get_trial_status(account_id: str) -> TrialStatus:
    return await _run_in_executor(_service().get_trial_status, account_id)


async def handle_signup(account_id: str, signup_info: SignupInfo) -> SignupOutcome:
    return await _run_in_executor(_service().handle_signup, account_id, signup_info)


__all__ = [
    "charge",
    "credit_purchase",
    "get_history",
    "get_trial_status",
    "get_wallet",
    "grant_or_claim_trial",
    "handle_signup",
    "refund",
    "set_credits_service",
]
