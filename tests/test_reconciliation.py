"""
Tests for the pending-payment sweep and its worker loop.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from settlement.core.errors import GatewayError
from settlement.core.reconciliation import PendingPaymentSweeper, SweepReport
from settlement.core.settlement_engine import SettlementSource
from settlement.database.models import PaymentStatus
from settlement.workers.reconciliation_worker import start_reconciliation_worker

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class TestPendingPaymentSweeper:
    """Test suite for the sweep."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_only_sweeps_pending_payments_inside_age_window(
        self, settlement_engine, session_factory, gateway, make_verification, seed_profile, create_payment, test_settings
    ) -> None:
        await seed_profile("user-1")
        await create_payment("DW-too-new", created_at=NOW - timedelta(minutes=1))
        await create_payment("DW-due", created_at=NOW - timedelta(hours=1))
        await create_payment("DW-abandoned", created_at=NOW - timedelta(days=3))
        await create_payment(
            "DW-settled", status=PaymentStatus.COMPLETED, created_at=NOW - timedelta(hours=1)
        )
        gateway.verify.return_value = make_verification("successful", 1000)

        sweeper = PendingPaymentSweeper(session_factory, settlement_engine, test_settings)
        report = await sweeper.sweep(now=NOW)

        assert report.checked == 1
        assert report.completed == 1
        gateway.verify.assert_awaited_once_with("DW-due")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failures_do_not_stop_the_sweep(
        self, settlement_engine, session_factory, gateway, make_verification, create_payment, test_settings
    ) -> None:
        await create_payment("DW-a", created_at=NOW - timedelta(hours=2))
        await create_payment("DW-b", created_at=NOW - timedelta(hours=1))

        gateway.verify.side_effect = [
            GatewayError("verify timed out"),
            make_verification("pending", 1000),
        ]

        sweeper = PendingPaymentSweeper(session_factory, settlement_engine, test_settings)
        report = await sweeper.sweep(now=NOW)

        assert report.to_dict() == {
            "checked": 2,
            "completed": 0,
            "failed": 0,
            "still_pending": 1,
            "errors": 1,
            "error_refs": ["DW-a"],
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_uses_reconciliation_source(self, session_factory, create_payment, test_settings) -> None:
        await create_payment("DW-c", created_at=NOW - timedelta(hours=1))
        engine = AsyncMock()
        engine.settle.return_value.status = PaymentStatus.FAILED

        report = await PendingPaymentSweeper(session_factory, engine, test_settings).sweep(now=NOW)

        engine.settle.assert_awaited_once_with("DW-c", SettlementSource.RECONCILIATION)
        assert report.failed == 1


class TestReconciliationWorker:
    """Test suite for the worker loop."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_runs_until_stopped_and_survives_crashes(self) -> None:
        sweeper = AsyncMock(spec=PendingPaymentSweeper)
        stop = asyncio.Event()
        calls = 0

        async def sweep() -> SweepReport:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("database restarting")
            if calls == 3:
                stop.set()
            return SweepReport()

        sweeper.sweep.side_effect = sweep

        await asyncio.wait_for(start_reconciliation_worker(sweeper, 0.01, stop), timeout=5)

        assert calls == 3
