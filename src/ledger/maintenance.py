"""Background maintenance tasks for the credit ledger."""

from __future__ import annotations

import asyncio
import logging

from config import CFG
from ledger.service import CreditLedger


logger = logging.getLogger(__name__)


async def ledger_reconcile_loop(
    ledger: CreditLedger,
    *,
    interval_sec: int = CFG.ledger_reconcile_interval_sec,
) -> None:
    """Periodically re-derive cached balances from the transaction log."""
    sleep_for = max(60, int(interval_sec))

    while True:
        try:
            stats = await ledger.reconcile_all()
            if stats["drifted"] or stats["failed"]:
                logger.warning(
                    "Ledger reconciled: scanned=%s drifted=%s failed=%s",
                    stats["scanned"],
                    stats["drifted"],
                    stats["failed"],
                )
            else:
                logger.debug("Ledger reconciled: scanned=%s, no drift", stats["scanned"])
        except Exception:
            logger.exception("Ledger reconcile loop failed")
        await asyncio.sleep(sleep_for)
