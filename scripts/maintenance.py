"""Operator commands for the credits engine.

Usage::

    python -m scripts.maintenance purge-counters [--namespace subnet]
    python -m scripts.maintenance reconcile ACCOUNT [ACCOUNT ...] [--dry-run]
    python -m scripts.maintenance stats
"""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from core.constants import COUNTER_NS_FINGERPRINT, COUNTER_NS_IP, COUNTER_NS_SUBNET, HISTORY_MAX_LIMIT
from counters import CounterStore, create_counter_store
from helpers.errors import CreditsError
from ledger import LedgerStorage
from logging_utils import init_logging

log = logging.getLogger("credits-maintenance")

_NAMESPACES = (COUNTER_NS_FINGERPRINT, COUNTER_NS_IP, COUNTER_NS_SUBNET)


@dataclass
class MaintenanceStats:
    """Summary of a maintenance run."""

    expired_removed: int = 0
    counters_deleted: int = 0
    accounts_checked: int = 0
    accounts_repaired: int = 0
    errors: List[str] = field(default_factory=list)

    def as_lines(self) -> List[str]:
        lines = [
            f"Expired counters removed: {self.expired_removed}",
            f"Counters deleted: {self.counters_deleted}",
            f"Accounts checked: {self.accounts_checked}",
            f"Accounts repaired: {self.accounts_repaired}",
        ]
        if self.errors:
            lines.append(f"Errors: {len(self.errors)}")
        return lines


def purge_counters(store: CounterStore, namespace: Optional[str] = None) -> MaintenanceStats:
    """Drop expired counters, and every live counter of ``namespace`` when given."""

    stats = MaintenanceStats(expired_removed=store.purge_expired())
    if namespace:
        for key, _ in list(store.items(f"{namespace}:")):
            store.delete(key)
            stats.counters_deleted += 1
        log.info("counters.namespace_reset | namespace=%s deleted=%s", namespace, stats.counters_deleted)
    return stats


def _ledger_sum(ledger: LedgerStorage, account_id: str) -> int:
    total = 0
    offset = 0
    while True:
        page = ledger.list_entries(account_id, limit=HISTORY_MAX_LIMIT, offset=offset)
        total += sum(entry.signed_amount for entry in page)
        if len(page) < HISTORY_MAX_LIMIT:
            return total
        offset += len(page)


def reconcile_accounts(
    ledger: LedgerStorage,
    account_ids: Sequence[str],
    *,
    dry_run: bool = False,
) -> MaintenanceStats:
    """Compare wallet balances with the ledger sum and repair drift."""

    stats = MaintenanceStats()
    for account_id in account_ids:
        stats.accounts_checked += 1
        try:
            if dry_run:
                wallet = ledger.get_wallet(account_id)
                calculated = _ledger_sum(ledger, account_id)
                if calculated != wallet.balance:
                    stats.accounts_repaired += 1
                    log.warning(
                        "reconcile.drift | account=%s wallet=%s ledger=%s",
                        account_id,
                        wallet.balance,
                        calculated,
                    )
                continue
            result = ledger.recalc_wallet(account_id)
        except CreditsError as exc:
            stats.errors.append(f"{account_id}: {exc}")
            log.error("reconcile.failed | account=%s err=%s", account_id, exc)
            continue
        if result.updated:
            stats.accounts_repaired += 1
    return stats


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="credits-maintenance", description="Credits engine maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    purge = sub.add_parser("purge-counters", help="remove expired abuse counters")
    purge.add_argument("--namespace", choices=_NAMESPACES, help="also delete every live counter in this namespace")

    reconcile = sub.add_parser("reconcile", help="recompute wallet balances from the ledger")
    reconcile.add_argument("accounts", nargs="+", help="account ids to check")
    reconcile.add_argument("--dry-run", action="store_true", help="report drift without repairing it")

    sub.add_parser("stats", help="print signup risk statistics as JSON")
    return parser


def main(argv: Optional[Sequence[str]] = None, config: Any = None) -> int:
    args = _build_parser().parse_args(argv)
    if config is None:
        from core.settings import settings as config

    init_logging("credits-maintenance", config.LOG_LEVEL, json_logs=config.LOG_JSON)

    if args.command == "purge-counters":
        stats = purge_counters(create_counter_store(config), args.namespace)
    elif args.command == "reconcile":
        ledger = LedgerStorage.from_settings(config)
        try:
            stats = reconcile_accounts(ledger, args.accounts, dry_run=args.dry_run)
        finally:
            ledger.stop()
    else:
        from credits_service import build_credits_service

        service = build_credits_service(config)
        service.records.start()
        try:
            print(json.dumps(service.abuse_stats(), ensure_ascii=False, indent=2))
        finally:
            service.records.stop()
            service.ledger.stop()
        return 0

    for line in stats.as_lines():
        print(line)
    for entry in stats.errors:
        print(f" - {entry}")
    return 1 if stats.errors else 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
