"""
Checkout initiation.

Validates the requested tier and amount, records a pending payment and
asks the payment provider for a hosted checkout page.
"""
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.config import Settings, get_settings
from settlement.core.errors import GatewayError, InvalidInput, RateLimited
from settlement.core.pricing import (
    PaymentPurpose,
    normalize_currency,
    normalize_phone,
    validate_amount,
    validate_email,
)
from settlement.core.rate_limiter import RateLimiter
from settlement.database.models import Payment, PaymentStatus
from settlement.integrations.paychangu_client import CheckoutCustomer, PayChanguClient
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TX_REF_PREFIX = "DW"


def generate_tx_ref(user_id: str) -> str:
    """
    Build a transaction reference.

    Format: DW-<first 8 chars of user id>-<epoch millis>-<8 random hex chars>
    """
    user_fragment = "".join(ch for ch in user_id if ch.isalnum())[:8] or "anon"
    return f"{TX_REF_PREFIX}-{user_fragment}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


@dataclass
class CheckoutSession:
    checkout_url: str
    tx_ref: str

    def to_dict(self) -> dict:
        return {"success": True, "checkout_url": self.checkout_url, "tx_ref": self.tx_ref}


class CheckoutInitiator:
    """Creates pending payments and their hosted checkout sessions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PayChanguClient,
        rate_limiter: RateLimiter,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.rate_limiter = rate_limiter
        self.settings = settings or get_settings()

    async def initiate(
        self,
        user_id: str,
        tier: str,
        amount: int,
        currency: str,
        customer: CheckoutCustomer,
    ) -> CheckoutSession:
        """
        Start a checkout.

        Args:
            user_id: Authenticated user
            tier: Tier name (subscription tier, wallet_topup or donation)
            amount: Amount in whole currency units
            currency: Currency code
            customer: Customer contact details

        Returns:
            CheckoutSession: Hosted checkout URL and transaction reference

        Raises:
            RateLimited: Too many checkouts for this user
            InvalidInput: Bad tier, currency, email or phone number
            InvalidAmount: Amount does not match the tier's price or bounds
            GatewayError: The provider could not create a session
        """
        if not user_id:
            raise InvalidInput("User ID is required")

        if not await self.rate_limiter.hit(user_id):
            metrics.record_checkout("rate_limited", tier)
            raise RateLimited(
                "Too many payment attempts. Please wait a minute and try again.",
                retry_after=self.rate_limiter.window_seconds,
            )

        try:
            currency = normalize_currency(currency)
            policy = validate_amount(tier, amount, currency)
            email = validate_email(customer.email)
            phone_number = normalize_phone(customer.phone_number)
        except InvalidInput:
            metrics.record_checkout("invalid", tier)
            raise

        first_name = (customer.first_name or "").strip()
        last_name = (customer.last_name or "").strip()
        if not first_name or not last_name:
            metrics.record_checkout("invalid", tier)
            raise InvalidInput("First and last name are required")

        tx_ref = generate_tx_ref(user_id)
        log = logger.bind(tx_ref=tx_ref, user_id=user_id, tier=policy.name)

        meta = {
            "tier": policy.name,
            "purpose": policy.purpose.value,
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "phone_number": phone_number,
            "initiated_at": datetime.now(timezone.utc).isoformat(),
        }
        if policy.purpose == PaymentPurpose.SUBSCRIPTION:
            meta["subscription_days"] = policy.entitlement_days or self.settings.default_entitlement_days

        async with self.session_factory() as db:
            async with db.begin():
                db.add(
                    Payment(
                        tx_ref=tx_ref,
                        user_id=user_id,
                        amount=amount,
                        currency=currency,
                        payment_method="paychangu",
                        status=PaymentStatus.PENDING,
                        meta=meta,
                    )
                )
        log.info("payment_record_created", amount=amount, currency=currency)

        try:
            checkout_url = await self.gateway.create_checkout(
                amount=amount,
                currency=currency,
                tx_ref=tx_ref,
                customer=CheckoutCustomer(
                    email=email,
                    first_name=first_name,
                    last_name=last_name,
                    phone_number=phone_number,
                ),
                title=_checkout_title(policy.purpose, policy.name),
                description=f"{policy.name} payment of {currency} {amount:,}",
            )
        except GatewayError as e:
            # The pending row stays; with no webhook or poll it never leaves pending
            log.error("checkout_gateway_failed", error=e.message)
            metrics.record_checkout("gateway_error", policy.name)
            raise

        metrics.record_checkout("created", policy.name, currency, amount)
        log.info("checkout_initiated")
        return CheckoutSession(checkout_url=checkout_url, tx_ref=tx_ref)


def _checkout_title(purpose: PaymentPurpose, tier: str) -> str:
    if purpose == PaymentPurpose.WALLET_TOPUP:
        return "Wallet top-up"
    if purpose == PaymentPurpose.DONATION:
        return "Donation"
    return f"{tier.title()} subscription"
