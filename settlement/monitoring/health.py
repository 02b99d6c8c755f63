"""
Health checks for the settlement service.

Readiness needs the ledger database, plus Redis when the rate limiters
run on it. The database check also reports the reconciliation backlog:
pending payments old enough for the sweep to pick up.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.config import Settings, get_settings
from settlement.database.connection import get_session_factory
from settlement.database.models import Payment, PaymentStatus

logger = structlog.get_logger(__name__)

Check = Callable[[], Awaitable[Dict[str, Any]]]


class HealthCheck:
    """Database and rate-limit store checks. The payment provider is not checked."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.redis_client = redis_client

    async def check_database(self) -> Dict[str, Any]:
        """Query the payments table and count the reconciliation backlog."""
        cutoff = datetime.now(timezone.utc) - timedelta(
            minutes=self.settings.reconciliation_min_age_minutes
        )
        session_factory = self._session_factory or get_session_factory()
        async with session_factory() as db:
            backlog = await db.scalar(
                select(func.count())
                .select_from(Payment)
                .where(Payment.status == PaymentStatus.PENDING, Payment.created_at <= cutoff)
            )
        return {"status": "healthy", "service": "database", "pending_backlog": backlog or 0}

    async def check_redis(self) -> Dict[str, Any]:
        await self.redis_client.ping()
        return {"status": "healthy", "service": "redis"}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every check that applies to this deployment.

        Returns:
            Dict[str, Any]: Overall status and the per-service results
        """
        checks_to_run: Dict[str, Check] = {"database": self.check_database}
        if self.redis_client is not None:
            checks_to_run["redis"] = self.check_redis

        checks: Dict[str, Any] = {}
        for name, check in checks_to_run.items():
            try:
                checks[name] = await check()
            except Exception as e:
                logger.error("health_check_failed", service=name, error=str(e))
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}

        healthy = all(result["status"] == "healthy" for result in checks.values())
        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Liveness check. Does not check external dependencies."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
