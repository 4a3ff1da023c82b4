import asyncio
import logging

from config import CFG
from logging_setup import configure_logging

configure_logging("listings")

from database import init_db
from services import build_services
from api_server import create_api_app, start_api_server, stop_api_server
from claims.maintenance import claim_expiry_loop
from ledger.maintenance import ledger_reconcile_loop
from notifications_worker import build_dispatcher, notifications_worker_loop


logger = logging.getLogger(__name__)


async def main():
    """Application entry point."""
    await init_db()
    services = build_services()

    api_app = create_api_app(services)
    api_runner = await start_api_server(api_app)

    tasks = [
        # Expire claims whose code TTL passed without an entry
        asyncio.create_task(claim_expiry_loop(services.verifier)),
        # Re-derive cached balances from the transaction log
        asyncio.create_task(ledger_reconcile_loop(services.ledger)),
        # Deliver queued notifications
        asyncio.create_task(
            notifications_worker_loop(build_dispatcher(), poll_interval_sec=CFG.notify_poll_interval_sec)
        ),
    ]

    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await stop_api_server(api_runner)
        logger.info("Shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
