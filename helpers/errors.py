"""Error taxonomy of the credits engine and its mapping onto caller-facing codes."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Union

logger = logging.getLogger("credits-errors")

CODE_VALIDATION = "validation_error"
CODE_IDEMPOTENCY_CONFLICT = "idempotency_conflict"
CODE_INSUFFICIENT_BALANCE = "insufficient_balance"
CODE_ALREADY_PROCESSED = "already_processed"
CODE_ABUSE_BLOCKED = "abuse_blocked"
CODE_NOT_ELIGIBLE = "not_eligible"
CODE_PERSISTENCE = "persistence_error"
CODE_INTERNAL = "internal_error"

_TEMPLATES: dict[str, str] = {
    CODE_VALIDATION: "The request is malformed. Check the amount and identifiers and try again.",
    CODE_IDEMPOTENCY_CONFLICT: "This operation key is already bound to another account.",
    CODE_INSUFFICIENT_BALANCE: "Not enough credits to complete this action.",
    CODE_ALREADY_PROCESSED: "This operation has already been processed.",
    CODE_ABUSE_BLOCKED: "Free credits are not available for this account. Contact support if this is a mistake.",
    CODE_NOT_ELIGIBLE: "This account is not eligible for free trial credits.",
    CODE_PERSISTENCE: "Credits are temporarily unavailable. Please retry in a moment.",
    CODE_INTERNAL: "Something went wrong. Please try again later.",
    # eligibility reasons reported by the trial policy
    "already_granted": "Trial credits have already been claimed.",
    "not_personal": "Organization accounts do not receive free trial credits.",
    "email_not_verified": "Verify your email address to receive trial credits.",
    "phone_not_verified": "Verify your phone number to claim trial credits.",
    "account_not_found": "Account not found.",
}

_RETRYABLE_CODES = {CODE_PERSISTENCE}


class CreditsError(RuntimeError):
    """Base class for failures raised by the credits engine."""

    code = CODE_INTERNAL
    retryable = False


class ValidationError(CreditsError, ValueError):
    code = CODE_VALIDATION


class IdempotencyConflict(ValidationError):
    code = CODE_IDEMPOTENCY_CONFLICT

    def __init__(self, key: str, *, account_id: str, owner_id: str) -> None:
        super().__init__(f"idempotency key {key!r} belongs to another account")
        self.key = key
        self.account_id = account_id
        self.owner_id = owner_id


class InsufficientBalance(CreditsError):
    code = CODE_INSUFFICIENT_BALANCE

    def __init__(self, balance: int, required: int) -> None:
        super().__init__(f"insufficient balance: balance={balance} required={required}")
        self.balance = balance
        self.required = required


class PersistenceError(CreditsError):
    code = CODE_PERSISTENCE
    retryable = True

    def __init__(self, op: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"storage failure during {op}")
        self.op = op


def describe_error(kind: str) -> str:
    """Return the caller-facing message for an error or eligibility code."""

    return _TEMPLATES.get(kind, _TEMPLATES[CODE_INTERNAL])


def error_payload(
    source: Union[str, BaseException],
    *,
    details: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """Build the ``{code, message, retryable}`` body an HTTP layer would return."""

    if isinstance(source, BaseException):
        code = getattr(source, "code", CODE_INTERNAL)
        retryable = bool(getattr(source, "retryable", False))
    else:
        code = str(source)
        retryable = code in _RETRYABLE_CODES
    payload: dict[str, Any] = {
        "code": code,
        "message": describe_error(code),
        "retryable": retryable,
    }
    if details:
        payload["details"] = dict(details)
    if code not in _TEMPLATES:
        logger.warning("credits.error.unmapped", extra={"meta": {"code": code}})
    return payload


__all__ = [
    "CODE_ABUSE_BLOCKED",
    "CODE_ALREADY_PROCESSED",
    "CODE_IDEMPOTENCY_CONFLICT",
    "CODE_INSUFFICIENT_BALANCE",
    "CODE_INTERNAL",
    "CODE_NOT_ELIGIBLE",
    "CODE_PERSISTENCE",
    "CODE_VALIDATION",
    "CreditsError",
    "IdempotencyConflict",
    "InsufficientBalance",
    "PersistenceError",
    "ValidationError",
    "describe_error",
    "error_payload",
]
