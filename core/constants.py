"""Shared string constants for references, idempotency keys and counters."""

REFERENCE_TRIAL = "trial"
REFERENCE_PURCHASE = "purchase"
REFERENCE_ADMIN = "admin"

TRIAL_GRANT_KEY_PREFIX = "welcome_trial_"
TRIAL_CLAIM_KEY_PREFIX = "trial_claim_"
SPEND_KEY_PREFIX = "spend_"
RESTORE_KEY_PREFIX = "restore_"
PURCHASE_KEY_PREFIX = "purchase_"
ADJUST_KEY_PREFIX = "adjust_"

COUNTER_NS_FINGERPRINT = "fp"
COUNTER_NS_IP = "ip"
COUNTER_NS_SUBNET = "subnet"

HISTORY_MAX_LIMIT = 100

__all__ = [
    "REFERENCE_TRIAL",
    "REFERENCE_PURCHASE",
    "REFERENCE_ADMIN",
    "TRIAL_GRANT_KEY_PREFIX",
    "TRIAL_CLAIM_KEY_PREFIX",
    "SPEND_KEY_PREFIX",
    "RESTORE_KEY_PREFIX",
    "PURCHASE_KEY_PREFIX",
    "ADJUST_KEY_PREFIX",
    "COUNTER_NS_FINGERPRINT",
    "COUNTER_NS_IP",
    "COUNTER_NS_SUBNET",
    "HISTORY_MAX_LIMIT",
]
