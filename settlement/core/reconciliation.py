"""
Pending-payment sweep.

Re-runs settlement for payments stuck in pending, for the case where
neither the webhook nor the client poll ever reached the engine:
- Only payments older than the minimum age (the user may still be paying)
- Only payments younger than the maximum age (abandoned checkouts stay pending)
- One payment at a time; a failure is counted and the sweep moves on
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.config import Settings, get_settings
from settlement.core.settlement_engine import SettlementEngine, SettlementSource
from settlement.database.models import Payment, PaymentStatus
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    """Counts from one sweep."""

    checked: int = 0
    completed: int = 0
    failed: int = 0
    still_pending: int = 0
    errors: int = 0
    error_refs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "completed": self.completed,
            "failed": self.failed,
            "still_pending": self.still_pending,
            "errors": self.errors,
            "error_refs": self.error_refs,
        }


class PendingPaymentSweeper:
    """Settles pending payments whose triggers never arrived."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: SettlementEngine,
        settings: Optional[Settings] = None,
        batch_size: int = 100,
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.settings = settings or get_settings()
        self.batch_size = batch_size

    async def _find_candidates(self, now: datetime) -> List[str]:
        newest = now - timedelta(minutes=self.settings.reconciliation_min_age_minutes)
        oldest = now - timedelta(hours=self.settings.reconciliation_max_age_hours)

        async with self.session_factory() as db:
            result = await db.execute(
                select(Payment.tx_ref)
                .where(
                    Payment.status == PaymentStatus.PENDING,
                    Payment.created_at <= newest,
                    Payment.created_at >= oldest,
                )
                .order_by(Payment.created_at)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Run one sweep.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            SweepReport: What the sweep did
        """
        now = now or datetime.now(timezone.utc)
        tx_refs = await self._find_candidates(now)
        report = SweepReport()

        logger.info("reconciliation_sweep_started", candidates=len(tx_refs))

        for tx_ref in tx_refs:
            report.checked += 1
            try:
                result = await self.engine.settle(tx_ref, SettlementSource.RECONCILIATION)
            except Exception as e:
                report.errors += 1
                report.error_refs.append(tx_ref)
                metrics.record_reconciliation_check("error")
                logger.error(
                    "reconciliation_settle_failed",
                    tx_ref=tx_ref,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            if result.status == PaymentStatus.COMPLETED:
                report.completed += 1
            elif result.status == PaymentStatus.FAILED:
                report.failed += 1
            else:
                report.still_pending += 1
            metrics.record_reconciliation_check(result.status)

        metrics.mark_reconciliation_run()
        logger.info("reconciliation_sweep_completed", **report.to_dict())
        return report
