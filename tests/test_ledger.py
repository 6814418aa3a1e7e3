import sys
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ledger import (  # noqa: E402
    EntryType,
    IdempotencyConflict,
    InsufficientBalance,
    LedgerStorage,
    ValidationError,
)


def _ledger_sum(ledger: LedgerStorage, account_id: str) -> int:
    return sum(entry.signed_amount for entry in ledger.list_entries(account_id, limit=100))


def test_memory_ledger_operations():
    ledger = LedgerStorage(None)
    assert ledger.backend == "memory"

    grant = ledger.mutate("acc-1", "GRANT", 100, "deposit", "purchase", "pay-1", idempotency_key="mem-op-1")
    assert grant.already_processed is False
    assert grant.new_balance == 100

    duplicate = ledger.mutate("acc-1", "GRANT", 100, "deposit", "purchase", "pay-1", idempotency_key="mem-op-1")
    assert duplicate.already_processed is True
    assert duplicate.ledger_entry_id == grant.ledger_entry_id
    assert duplicate.new_balance == 100

    debit = ledger.mutate("acc-1", EntryType.DEBIT, 25, "interview", "interview", "s-1", idempotency_key="mem-op-2")
    assert debit.new_balance == 75

    with pytest.raises(InsufficientBalance) as excinfo:
        ledger.mutate("acc-1", EntryType.DEBIT, 1000, "overdraft", idempotency_key="mem-op-3")
    assert excinfo.value.balance == 75
    assert excinfo.value.required == 1000
    assert ledger.get_wallet("acc-1").balance == 75
    assert ledger.get_entry_by_key("mem-op-3") is None


def test_get_or_create_wallet_starts_empty():
    ledger = LedgerStorage(None)
    wallet = ledger.get_or_create_wallet("fresh")
    assert wallet.balance == 0
    assert wallet.as_dict() == {"balance": 0, "totalGranted": 0, "totalSpent": 0, "totalPurchased": 0}
    assert ledger.get_or_create_wallet("fresh").created_at == wallet.created_at


def test_wallet_aggregates_follow_entry_types():
    ledger = LedgerStorage(None)
    ledger.mutate("acc", "GRANT", 5, "trial", "trial", "acc", idempotency_key="k1")
    ledger.mutate("acc", "GRANT", 20, "purchase", "purchase", "pay", idempotency_key="k2")
    ledger.mutate("acc", "DEBIT", 3, "session", "interview", "s1", idempotency_key="k3")
    ledger.mutate("acc", "REFUND", 2, "failed session", "interview", "s1", idempotency_key="k4")
    ledger.mutate("acc", "ADJUSTMENT", 1, "support", "admin", "t-9", idempotency_key="k5")

    wallet = ledger.get_wallet("acc")
    assert wallet.balance == 25
    assert wallet.total_granted == 5
    assert wallet.total_purchased == 20
    assert wallet.total_spent == 3
    assert wallet.total_refunded == 2
    assert wallet.total_adjusted == 1
    assert wallet.last_debit_at is not None
    assert wallet.last_credit_at is not None


def test_balance_equals_sum_of_signed_entries():
    ledger = LedgerStorage(None)
    steps = [("GRANT", 10), ("DEBIT", 4), ("REFUND", 1), ("DEBIT", 7), ("GRANT", 3)]
    for index, (kind, amount) in enumerate(steps):
        result = ledger.mutate("acc", kind, amount, idempotency_key=f"step-{index}")
        assert result.new_balance == ledger.get_wallet("acc").balance
        assert ledger.get_wallet("acc").balance == _ledger_sum(ledger, "acc")

    entries = list(reversed(ledger.list_entries("acc")))
    running = 0
    for entry in entries:
        running += entry.signed_amount
        assert entry.balance_after == running


@pytest.mark.parametrize("amount", [0, -5, 1.5, "10", True])
def test_mutate_rejects_invalid_amounts(amount):
    ledger = LedgerStorage(None)
    with pytest.raises(ValidationError):
        ledger.mutate("acc", "GRANT", amount, idempotency_key="bad")
    assert ledger.list_entries("acc") == []


def test_mutate_rejects_malformed_input():
    ledger = LedgerStorage(None)
    with pytest.raises(ValidationError):
        ledger.mutate("acc", "BONUS", 1, idempotency_key="k")
    with pytest.raises(ValidationError):
        ledger.mutate("acc", "GRANT", 1, idempotency_key="  ")
    with pytest.raises(ValidationError):
        ledger.mutate("", "GRANT", 1, idempotency_key="k")
    with pytest.raises(ValidationError):
        ledger.mutate("acc", "GRANT", 1, idempotency_key="x" * 256)


def test_validation_error_is_value_error():
    ledger = LedgerStorage(None)
    with pytest.raises(ValueError):
        ledger.mutate("acc", "GRANT", 0, idempotency_key="k")


def test_idempotency_key_reused_by_other_account_conflicts():
    ledger = LedgerStorage(None)
    ledger.mutate("owner", "GRANT", 5, idempotency_key="shared")
    with pytest.raises(IdempotencyConflict) as excinfo:
        ledger.mutate("intruder", "GRANT", 5, idempotency_key="shared")
    assert excinfo.value.owner_id == "owner"
    assert ledger.get_wallet("intruder").balance == 0


def test_concurrent_mutations_with_same_key_apply_once():
    ledger = LedgerStorage(None)
    barrier = threading.Barrier(8)
    results = []

    def worker():
        barrier.wait()
        results.append(ledger.mutate("acc", "GRANT", 5, idempotency_key="race"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len({result.ledger_entry_id for result in results}) == 1
    assert sum(1 for result in results if not result.already_processed) == 1
    assert ledger.get_wallet("acc").balance == 5
    assert len(ledger.list_entries("acc")) == 1


def test_history_is_newest_first_and_clamped():
    ledger = LedgerStorage(None)
    for index in range(120):
        ledger.mutate("acc", "GRANT", 1, idempotency_key=f"g-{index}")
    ledger.mutate("acc", "DEBIT", 1, idempotency_key="d-1")

    history = ledger.list_entries("acc", limit=500)
    assert len(history) == 100
    assert history[0].idempotency_key == "d-1"

    debits = ledger.list_entries("acc", entry_type="debit")
    assert [entry.idempotency_key for entry in debits] == ["d-1"]

    page = ledger.list_entries("acc", limit=10, offset=115)
    assert len(page) == 6


def test_find_first_entry_filters_by_reference_and_type():
    ledger = LedgerStorage(None)
    ledger.mutate("acc", "GRANT", 5, "trial", "trial", "acc", idempotency_key="trial_claim_acc")
    ledger.mutate("acc", "GRANT", 9, "purchase", "purchase", "p1", idempotency_key="purchase_p1")

    entry = ledger.find_first_entry("acc", "trial", EntryType.GRANT)
    assert entry is not None and entry.amount == 5
    assert ledger.find_first_entry("acc", "trial", EntryType.DEBIT) is None
    assert ledger.find_first_entry("other", "trial") is None


def test_returned_entries_do_not_share_metadata_with_history():
    ledger = LedgerStorage(None)
    result = ledger.mutate("acc", "GRANT", 5, "trial", "trial", "acc", {"mode": "fixed"}, idempotency_key="k1")
    result.entry.metadata["mode"] = "tampered"

    fetched = ledger.get_entry_by_key("k1")
    assert fetched.metadata == {"mode": "fixed"}
    fetched.metadata["extra"] = True

    assert ledger.list_entries("acc")[0].metadata == {"mode": "fixed"}
    assert ledger.find_first_entry("acc", "trial").metadata == {"mode": "fixed"}
    replay = ledger.mutate("acc", "GRANT", 5, "trial", "trial", "acc", idempotency_key="k1")
    assert replay.entry.metadata == {"mode": "fixed"}


def test_has_credits_and_recalc_wallet():
    ledger = LedgerStorage(None)
    ledger.mutate("acc", "GRANT", 4, idempotency_key="k1")
    assert ledger.has_credits("acc", 4) is True
    assert ledger.has_credits("acc", 5) is False

    clean = ledger.recalc_wallet("acc")
    assert clean.updated is False
    assert clean.calculated == 4


def test_recalc_wallet_repairs_drift(caplog):
    ledger = LedgerStorage(None)
    ledger.mutate("acc", "GRANT", 4, idempotency_key="k1")
    ledger._impl._wallets["acc"].balance = 40  # simulate a corrupted cache

    caplog.set_level("WARNING", logger="ledger")
    result = ledger.recalc_wallet("acc")

    assert result.updated is True
    assert (result.previous, result.calculated) == (40, 4)
    assert ledger.get_wallet("acc").balance == 4
    assert any("ledger.recalc.drift" in record.getMessage() for record in caplog.records)


def test_memory_backend_can_be_forbidden(monkeypatch):
    monkeypatch.setenv("FORBID_MEMORY_DB", "1")
    with pytest.raises(RuntimeError):
        LedgerStorage(None)


def test_unknown_backend_is_rejected():
    with pytest.raises(RuntimeError):
        LedgerStorage(None, backend="sqlite")
