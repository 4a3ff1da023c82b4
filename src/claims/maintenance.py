"""Background maintenance tasks for place claims."""

from __future__ import annotations

import asyncio
import logging

from claims.verifier import ClaimVerifier
from config import CFG


logger = logging.getLogger(__name__)


async def claim_expiry_loop(
    verifier: ClaimVerifier,
    *,
    interval_sec: int = CFG.claim_expiry_sweep_interval_sec,
) -> None:
    """Periodically expire claims whose code was never entered."""
    sleep_for = max(30, int(interval_sec))

    while True:
        try:
            expired = await verifier.expire_stale_claims()
            if expired:
                logger.info("Claim expiry sweep: expired=%s", expired)
        except Exception:
            logger.exception("Claim expiry loop failed")
        await asyncio.sleep(sleep_for)
