"""
Client-triggered payment verification.

The poll path of settlement: the post-checkout page asks for a payment
to be verified until it leaves pending. Errors surface to the caller.
"""
from typing import Any, Dict

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.core.errors import Forbidden, InvalidInput, PaymentNotFound, RateLimited
from settlement.core.rate_limiter import RateLimiter
from settlement.core.settlement_engine import SettlementEngine, SettlementResult, SettlementSource
from settlement.database.models import Payment
from settlement.integrations.identity import DatabaseRoleChecker

logger = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"


class VerificationService:
    """Authorizes poll requests and delegates to the settlement engine."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: SettlementEngine,
        role_checker: DatabaseRoleChecker,
        rate_limiter: RateLimiter,
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.role_checker = role_checker
        self.rate_limiter = rate_limiter

    async def _authorize(self, tx_ref: str, caller_id: str, admin_override: bool) -> Payment:
        async with self.session_factory() as db:
            payment = await db.scalar(select(Payment).where(Payment.tx_ref == tx_ref))
        if payment is None:
            raise PaymentNotFound()

        if admin_override:
            if not await self.role_checker.has_role(caller_id, ADMIN_ROLE):
                logger.warning("verify_admin_override_denied", tx_ref=tx_ref, caller_id=caller_id)
                raise Forbidden("Admin role required")
        elif payment.user_id != caller_id:
            logger.warning("verify_owner_mismatch", tx_ref=tx_ref, caller_id=caller_id)
            raise Forbidden()
        return payment

    async def verify(
        self, tx_ref: str, caller_id: str, admin_override: bool = False
    ) -> SettlementResult:
        """
        Verify and settle a payment on behalf of its owner or an admin.

        Args:
            tx_ref: Transaction reference
            caller_id: Authenticated caller
            admin_override: Act as admin on someone else's payment

        Returns:
            SettlementResult: Outcome of the settlement

        Raises:
            InvalidInput: Missing reference
            RateLimited: Too many verifications for this reference
            PaymentNotFound: Unknown reference
            Forbidden: Caller is neither the owner nor an admin
            GatewayError: The provider could not be reached
        """
        tx_ref = (tx_ref or "").strip()
        if not tx_ref:
            raise InvalidInput("Missing txRef")

        # Only authorized callers spend the reference's budget
        await self._authorize(tx_ref, caller_id, admin_override)

        if not await self.rate_limiter.hit(tx_ref):
            raise RateLimited(
                "Too many verification attempts. Please wait a moment.",
                retry_after=self.rate_limiter.window_seconds,
            )

        source = SettlementSource.ADMIN if admin_override else SettlementSource.POLL
        result = await self.engine.settle(tx_ref, source)
        logger.info(
            "payment_verified",
            tx_ref=tx_ref,
            caller_id=caller_id,
            status=result.status,
            already=result.already,
        )
        return result

    async def get_status(self, tx_ref: str, caller_id: str) -> Dict[str, Any]:
        """
        Read a payment's current state without settling it.

        The owner may always read; other callers need the admin role.
        """
        async with self.session_factory() as db:
            payment = await db.scalar(select(Payment).where(Payment.tx_ref == tx_ref))
        if payment is None:
            raise PaymentNotFound()
        if payment.user_id != caller_id and not await self.role_checker.has_role(
            caller_id, ADMIN_ROLE
        ):
            raise Forbidden()

        return {
            "tx_ref": payment.tx_ref,
            "status": payment.status,
            "amount": payment.amount,
            "currency": payment.currency,
            "tier": payment.tier,
            "created_at": payment.created_at,
            "updated_at": payment.updated_at,
        }
