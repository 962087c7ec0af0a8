"""
Reconciliation background worker.

Every ``reconciliation_interval_seconds``:
- polls Daraja for initiated M-Pesa payments whose callback never arrived
- purges expired or revoked refresh tokens
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from pharmacy_backend.config import Settings, get_settings
from pharmacy_backend.core.auth_service import AuthService
from pharmacy_backend.core.reconciliation import StalePaymentReconciler
from pharmacy_backend.database.connection import Database
from pharmacy_backend.integrations.mpesa_client import MpesaClient
from pharmacy_backend.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation_cycle(
    reconciler: StalePaymentReconciler, auth_service: AuthService
) -> Dict[str, Any]:
    """
    Run one reconciliation pass.

    Returns:
        Stale payment counters plus the number of purged refresh tokens
    """
    logger.info("reconciliation_cycle_started")

    summary: Dict[str, Any] = dict(await reconciler.run())
    summary["refresh_tokens_purged"] = await auth_service.cleanup_expired_tokens()

    logger.info("reconciliation_cycle_completed", **summary)
    if summary["failed"] or summary["errors"] or summary.get("abandoned"):
        logger.warning(
            "reconciliation_attention_needed",
            failed=summary["failed"],
            errors=summary["errors"],
            abandoned=summary.get("abandoned", 0),
        )
    return summary


async def start_reconciliation_worker(settings: Optional[Settings] = None) -> None:
    """
    Start the reconciliation worker.

    Runs until SIGINT or SIGTERM.
    """
    settings = settings or get_settings()
    setup_logging(settings)
    interval = settings.reconciliation_interval_seconds

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    database = Database.from_settings(settings)
    gateway = MpesaClient(settings)
    reconciler = StalePaymentReconciler(database, gateway, settings)
    auth_service = AuthService(database, settings)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await database.create_all()
        while running:
            try:
                await run_reconciliation_cycle(reconciler, auth_service)
            except Exception as e:
                logger.error("reconciliation_execution_error", error=str(e))
                # Continue running even if one cycle fails

            # Sleep in short steps so a shutdown signal is noticed quickly
            remaining = float(interval)
            while remaining > 0 and running:
                sleep_time = min(remaining, 5.0)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time

    except Exception as e:
        logger.error("reconciliation_worker_error", error=str(e))
        raise
    finally:
        await gateway.close()
        await database.dispose()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    asyncio.run(start_reconciliation_worker())


if __name__ == "__main__":
    main()
