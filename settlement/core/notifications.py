"""Best-effort in-app notifications emitted after a payment settles."""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.core.pricing import PaymentPurpose
from settlement.database.models import Notification

logger = structlog.get_logger(__name__)


def _format_amount(amount: int, currency: str) -> str:
    return f"{currency} {amount:,}"


def build_payment_notification(
    purpose: PaymentPurpose,
    amount: int,
    currency: str,
    tier: Optional[str],
) -> Dict[str, str]:
    """Title and message shown to the user for a completed payment."""
    money = _format_amount(amount, currency)

    if purpose == PaymentPurpose.WALLET_TOPUP:
        return {
            "type": "wallet_topup",
            "title": "Wallet topped up",
            "message": f"{money} has been added to your wallet.",
        }
    if purpose == PaymentPurpose.DONATION:
        return {
            "type": "donation",
            "title": "Thank you for your donation",
            "message": f"We received your donation of {money}.",
        }
    return {
        "type": "subscription",
        "title": "Subscription activated",
        "message": f"Your {(tier or 'premium').title()} subscription is now active.",
    }


class NotificationService:
    """
    Writes notifications in their own session.

    Failures are logged and never raised: a settled payment stays settled
    even if the user cannot be told about it.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Insert one notification.

        Returns:
            bool: True if the notification was stored
        """
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    db.add(
                        Notification(
                            user_id=user_id,
                            type=type,
                            title=title,
                            message=message,
                            data=data,
                        )
                    )
            return True
        except Exception as e:
            logger.warning(
                "notification_failed",
                user_id=user_id,
                notification_type=type,
                error=str(e),
            )
            return False
