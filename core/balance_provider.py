from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Optional

from helpers.errors import CreditsError
from ledger import LedgerStorage

__all__ = [
    "BALANCE_PLACEHOLDER",
    "BALANCE_WARNING",
    "BalanceSnapshot",
    "aget_balance_snapshot",
    "get_balance_snapshot",
    "set_ledger_storage",
]

log = logging.getLogger(__name__)

BALANCE_PLACEHOLDER = "—"
BALANCE_WARNING = "Balance is temporarily unavailable. Please try again later."


@dataclass(frozen=True)
class BalanceSnapshot:
    value: Optional[int]
    display: str
    warning: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return self.value is not None


_LEDGER_STORAGE: Optional[LedgerStorage] = None


def set_ledger_storage(storage: Optional[LedgerStorage]) -> None:
    global _LEDGER_STORAGE
    _LEDGER_STORAGE = storage


def _build_snapshot(value: Optional[int], warning: Optional[str] = None) -> BalanceSnapshot:
    if value is None:
        return BalanceSnapshot(value=None, display=BALANCE_PLACEHOLDER, warning=warning or BALANCE_WARNING)
    return BalanceSnapshot(value=int(value), display=str(int(value)), warning=None)


def get_balance_snapshot(account_id: str, *, retries: int = 2) -> BalanceSnapshot:
    """Read the cached wallet balance for display; never raises."""

    ledger = _LEDGER_STORAGE
    if ledger is None:
        log.warning("balance.ledger_unavailable | account=%s", account_id)
        return _build_snapshot(None)

    attempts = max(int(retries), 1)
    for attempt in range(attempts):
        try:
            wallet = ledger.get_wallet(account_id)
        except CreditsError as exc:
            log.warning(
                "balance.fetch_retry | account=%s attempt=%s err=%s",
                account_id,
                attempt + 1,
                exc,
            )
        else:
            return _build_snapshot(wallet.balance)
    return _build_snapshot(None)


async def aget_balance_snapshot(account_id: str, *, retries: int = 2) -> BalanceSnapshot:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(get_balance_snapshot, account_id, retries=retries))
