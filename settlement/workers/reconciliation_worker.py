"""
Background worker running the pending-payment sweep on an interval.

Run as `settlement-reconciler` or `python -m settlement.workers.reconciliation_worker`.
"""
import asyncio
from typing import Optional

import structlog

from settlement.config import get_settings
from settlement.core.reconciliation import PendingPaymentSweeper
from settlement.core.settlement_engine import SettlementEngine
from settlement.database.connection import close_db, get_session_factory
from settlement.integrations.paychangu_client import PayChanguClient
from settlement.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_reconciliation_worker(
    sweeper: PendingPaymentSweeper,
    interval_seconds: float,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Run sweeps until the stop event is set.

    A failed sweep is logged and retried at the next interval.

    Args:
        sweeper: Configured sweeper
        interval_seconds: Pause between sweeps
        stop_event: Optional event that ends the loop
    """
    stop_event = stop_event or asyncio.Event()
    logger.info("reconciliation_worker_started", interval_seconds=interval_seconds)

    while not stop_event.is_set():
        try:
            await sweeper.sweep()
        except Exception as e:
            logger.error("reconciliation_sweep_crashed", error=str(e), error_type=type(e).__name__)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass

    logger.info("reconciliation_worker_stopped")


async def _run() -> None:
    settings = get_settings()
    session_factory = get_session_factory()
    gateway = PayChanguClient(settings)
    engine = SettlementEngine(session_factory, gateway, settings)
    sweeper = PendingPaymentSweeper(session_factory, engine, settings)

    try:
        await start_reconciliation_worker(
            sweeper, settings.reconciliation_interval_minutes * 60
        )
    finally:
        await gateway.close()
        await close_db()


def main() -> None:
    setup_logging()
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("reconciliation_worker_interrupted")


if __name__ == "__main__":
    main()
