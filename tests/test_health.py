"""
Tests for the health checks.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from settlement.database.models import PaymentStatus
from settlement.monitoring.health import HealthCheck


def _redis(ping: AsyncMock) -> MagicMock:
    redis_client = MagicMock()
    redis_client.ping = ping
    return redis_client


class TestHealthCheck:
    """Test suite for HealthCheck."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_database_reports_reconciliation_backlog(
        self, session_factory, create_payment, test_settings
    ) -> None:
        now = datetime.now(timezone.utc)
        await create_payment("DW-fresh", created_at=now)
        await create_payment("DW-stuck-1", created_at=now - timedelta(hours=1))
        await create_payment("DW-stuck-2", created_at=now - timedelta(hours=2))
        await create_payment(
            "DW-done", status=PaymentStatus.COMPLETED, created_at=now - timedelta(hours=1)
        )

        result = await HealthCheck(test_settings, session_factory).check_database()

        assert result == {"status": "healthy", "service": "database", "pending_backlog": 2}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_skipped_without_client(self, session_factory, test_settings) -> None:
        result = await HealthCheck(test_settings, session_factory).check_all()

        assert result["status"] == "healthy"
        assert set(result["checks"]) == {"database"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_checked_through_injected_client(
        self, session_factory, test_settings
    ) -> None:
        ping = AsyncMock(return_value=True)

        result = await HealthCheck(test_settings, session_factory, _redis(ping)).check_all()

        assert result["status"] == "healthy"
        assert result["checks"]["redis"] == {"status": "healthy", "service": "redis"}
        ping.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_outage_makes_service_unready(
        self, session_factory, test_settings
    ) -> None:
        ping = AsyncMock(side_effect=ConnectionError("Connection refused"))

        result = await HealthCheck(test_settings, session_factory, _redis(ping)).readiness()

        assert result["status"] == "unhealthy"
        assert result["checks"]["database"]["status"] == "healthy"
        assert result["checks"]["redis"]["status"] == "unhealthy"
        assert "Connection refused" in result["checks"]["redis"]["error"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_database_failure_is_reported(self, test_settings) -> None:
        session_factory = MagicMock(side_effect=RuntimeError("database is locked"))

        result = await HealthCheck(test_settings, session_factory).check_all()

        assert result["status"] == "unhealthy"
        assert result["checks"]["database"]["error"] == "database is locked"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_liveness_touches_nothing(self, test_settings) -> None:
        session_factory = MagicMock()

        result = await HealthCheck(test_settings, session_factory).liveness()

        assert result["status"] == "alive"
        session_factory.assert_not_called()
