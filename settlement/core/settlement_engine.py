"""
Settlement engine.

Converges every trigger (provider webhook, client poll, admin action,
reconciliation sweep) on one idempotent operation:
1. Load the payment (short-circuit if already completed)
2. Re-verify with the payment provider
3. Map the provider status to pending/completed/failed
4. Cross-check the verified amount and currency
5. Conditionally transition the payment ("unless already completed")
6. Apply wallet or subscription effects in the same transaction
7. Notify the user after commit (best effort)

The conditional update is the only serialization point. A unique
constraint on (type, idempotency_key) backs the wallet ledger so a
settlement can never credit twice.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.config import Settings, get_settings
from settlement.core.errors import InvalidInput, LedgerError, PaymentNotFound
from settlement.core.notifications import NotificationService, build_payment_notification
from settlement.core.pricing import TIERS, PaymentPurpose, purpose_for_tier
from settlement.database.models import (
    Payment,
    PaymentStatus,
    Profile,
    Subscription,
    WalletTransaction,
)
from settlement.integrations.paychangu_client import GatewayVerification, PayChanguClient
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

WALLET_TOPUP_TX_TYPE = "topup"

SUCCESS_STATUSES = frozenset({"success", "successful", "completed", "paid"})
FAILURE_STATUSES = frozenset(
    {"failed", "failure", "cancelled", "canceled", "declined", "reversed", "expired"}
)


class SettlementSource(str, Enum):
    """Trigger that asked for a settlement."""

    WEBHOOK = "webhook"
    POLL = "poll"
    ADMIN = "admin"
    RECONCILIATION = "reconciliation"


class ManualAction(str, Enum):
    COMPLETE = "complete"
    FAIL = "fail"


@dataclass
class SettlementResult:
    """Outcome of one settle() call."""

    tx_ref: str
    status: str
    already: bool = False
    provider_status: Optional[str] = None
    amount_mismatch: bool = False

    @property
    def success(self) -> bool:
        return self.status == PaymentStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success, "status": self.status}
        if self.already:
            body["already"] = True
        if self.provider_status is not None:
            body["paychangu_status"] = self.provider_status
        return body


def map_provider_status(provider_status: Optional[str]) -> str:
    """
    Map a provider status string to a payment status.

    Unknown strings map to pending so the record is left untouched.
    """
    value = (provider_status or "").strip().lower()
    if value in SUCCESS_STATUSES:
        return PaymentStatus.COMPLETED
    if value in FAILURE_STATUSES:
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SettlementEngine:
    """
    Applies provider outcomes to the ledger exactly once.

    Safe to call any number of times, from any number of concurrent
    request contexts, for the same transaction reference.
    """

    COMMIT_ATTEMPTS = 2

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PayChanguClient,
        settings: Optional[Settings] = None,
        notifier: Optional[NotificationService] = None,
    ):
        """
        Initialize the settlement engine.

        Args:
            session_factory: Factory for database sessions
            gateway: Payment provider client
            settings: Optional settings (defaults to the cached settings)
            notifier: Optional notification service
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.notifier = notifier or NotificationService(session_factory)

    async def _load_payment(self, tx_ref: str) -> Payment:
        async with self.session_factory() as db:
            payment = await db.scalar(select(Payment).where(Payment.tx_ref == tx_ref))
        if payment is None:
            raise PaymentNotFound()
        return payment

    def _check_amount(
        self, payment: Payment, verification: GatewayVerification
    ) -> Optional[Dict[str, Any]]:
        """Return a discrepancy record if the provider confirmed a different amount or currency."""
        amount_differs = verification.verified_amount is not None and (
            abs(verification.verified_amount - Decimal(payment.amount))
            > Decimal(self.settings.amount_tolerance)
        )
        currency_differs = (
            verification.verified_currency is not None
            and verification.verified_currency != payment.currency.upper()
        )
        if not (amount_differs or currency_differs):
            return None
        return {
            "expected_amount": payment.amount,
            "expected_currency": payment.currency,
            "verified_amount": (
                str(verification.verified_amount)
                if verification.verified_amount is not None
                else None
            ),
            "verified_currency": verification.verified_currency,
        }

    async def settle(self, tx_ref: str, source: SettlementSource) -> SettlementResult:
        """
        Settle a payment against the provider's authoritative state.

        Args:
            tx_ref: Transaction reference
            source: Trigger that requested the settlement

        Returns:
            SettlementResult: Final status of the payment

        Raises:
            PaymentNotFound: No payment exists for the reference
            GatewayError: The provider could not be reached (caller retries)
            LedgerError: The ledger effects could not be applied (rolled back)
        """
        start_time = time.time()
        log = logger.bind(tx_ref=tx_ref, source=source.value)

        payment = await self._load_payment(tx_ref)
        if payment.status == PaymentStatus.COMPLETED:
            log.info("settlement_already_completed")
            metrics.record_settlement(source.value, "already", time.time() - start_time)
            return SettlementResult(tx_ref=tx_ref, status=PaymentStatus.COMPLETED, already=True)

        verification = await self.gateway.verify(tx_ref)
        outcome = map_provider_status(verification.provider_status)

        meta_updates: Dict[str, Any] = {
            "verification": verification.raw,
            "verified_at": _utcnow().isoformat(),
        }

        discrepancy = self._check_amount(payment, verification)
        if discrepancy is not None:
            log.warning(
                "settlement_amount_mismatch",
                provider_status=verification.provider_status,
                **discrepancy,
            )
            metrics.record_amount_mismatch()
            outcome = PaymentStatus.FAILED
            meta_updates["amount_discrepancy"] = discrepancy
            meta_updates["failure_reason"] = "amount_mismatch"
        elif outcome == PaymentStatus.COMPLETED and verification.verified_amount is None:
            log.warning("settlement_unverified_amount", provider_status=verification.provider_status)
            outcome = PaymentStatus.PENDING
        elif outcome == PaymentStatus.FAILED:
            meta_updates["failure_reason"] = f"provider_status:{verification.provider_status}"

        if outcome == PaymentStatus.PENDING:
            log.info("settlement_pending", provider_status=verification.provider_status)
            metrics.record_settlement(source.value, PaymentStatus.PENDING, time.time() - start_time)
            return SettlementResult(
                tx_ref=tx_ref,
                status=PaymentStatus.PENDING,
                provider_status=verification.provider_status,
            )

        result = await self._commit_outcome(payment, outcome, meta_updates, source)
        result.provider_status = verification.provider_status
        result.amount_mismatch = discrepancy is not None

        metrics.record_settlement(
            source.value,
            "already" if result.already else result.status,
            time.time() - start_time,
        )
        return result

    async def apply_manual_outcome(
        self, tx_ref: str, action: str, actor_id: str
    ) -> SettlementResult:
        """
        Complete or fail a payment by hand, without consulting the provider.

        Goes through the same conditional write as settle(), so a manual
        completion of an already completed payment is a no-op.

        Raises:
            InvalidInput: Unknown action
            PaymentNotFound: No payment exists for the reference
        """
        try:
            manual_action = ManualAction(action)
        except ValueError:
            raise InvalidInput("action must be 'complete' or 'fail'")

        start_time = time.time()
        payment = await self._load_payment(tx_ref)
        if payment.status == PaymentStatus.COMPLETED:
            logger.info("manual_action_on_completed_payment", tx_ref=tx_ref, actor_id=actor_id)
            metrics.record_settlement(SettlementSource.ADMIN.value, "already", time.time() - start_time)
            return SettlementResult(tx_ref=tx_ref, status=PaymentStatus.COMPLETED, already=True)

        now = _utcnow().isoformat()
        if manual_action == ManualAction.COMPLETE:
            outcome = PaymentStatus.COMPLETED
            meta_updates = {
                "manual_completion": True,
                "completed_by": actor_id,
                "completed_at": now,
            }
        else:
            outcome = PaymentStatus.FAILED
            meta_updates = {
                "marked_failed_by": actor_id,
                "marked_failed_at": now,
                "failure_reason": "manual",
            }

        logger.info("manual_action_applying", tx_ref=tx_ref, action=manual_action.value, actor_id=actor_id)
        result = await self._commit_outcome(
            payment, outcome, meta_updates, SettlementSource.ADMIN, actor_id=actor_id
        )
        metrics.record_settlement(
            SettlementSource.ADMIN.value,
            "already" if result.already else result.status,
            time.time() - start_time,
        )
        return result

    async def _commit_outcome(
        self,
        payment: Payment,
        outcome: str,
        meta_updates: Dict[str, Any],
        source: SettlementSource,
        actor_id: Optional[str] = None,
    ) -> SettlementResult:
        """
        Transition the payment and apply its ledger effects atomically.

        Returns an `already` result when another caller completed the
        payment first. A unique-constraint conflict from a concurrent
        writer rolls the whole transaction back; the write is retried
        once unless the payment turns out to be completed.

        Raises:
            LedgerError: The ledger effects could not be applied
        """
        tx_ref = payment.tx_ref
        completed_by = actor_id or source.value

        for attempt in range(1, self.COMMIT_ATTEMPTS + 1):
            try:
                settled = await self._write_outcome(
                    tx_ref, outcome, meta_updates, source, completed_by
                )
            except IntegrityError as e:
                current = await self._current_status(tx_ref)
                if current == PaymentStatus.COMPLETED:
                    logger.info(
                        "settlement_duplicate_ledger_entry", tx_ref=tx_ref, error=str(e.orig)
                    )
                    return SettlementResult(
                        tx_ref=tx_ref, status=PaymentStatus.COMPLETED, already=True
                    )
                if attempt == self.COMMIT_ATTEMPTS:
                    logger.error(
                        "settlement_ledger_conflict",
                        tx_ref=tx_ref,
                        status=current,
                        error=str(e.orig),
                    )
                    raise LedgerError(f"Ledger conflict settling {tx_ref}") from e
                logger.warning(
                    "settlement_ledger_conflict_retrying", tx_ref=tx_ref, error=str(e.orig)
                )
                continue

            if settled is None:
                logger.info("settlement_lost_race", tx_ref=tx_ref, source=source.value)
                return SettlementResult(tx_ref=tx_ref, status=PaymentStatus.COMPLETED, already=True)
            break

        logger.info(
            "settlement_applied",
            tx_ref=tx_ref,
            user_id=settled.user_id,
            status=outcome,
            source=source.value,
        )

        if outcome == PaymentStatus.COMPLETED:
            await self._notify(settled)

        return SettlementResult(tx_ref=tx_ref, status=outcome)

    async def _write_outcome(
        self,
        tx_ref: str,
        outcome: str,
        meta_updates: Dict[str, Any],
        source: SettlementSource,
        completed_by: str,
    ) -> Optional[Payment]:
        """
        One settlement transaction. Returns None if the payment was already completed.

        The conditional update comes first so the transaction holds the
        row's write lock before metadata is read and merged.
        """
        async with self.session_factory() as db:
            async with db.begin():
                transitioned = await db.execute(
                    update(Payment)
                    .where(
                        Payment.tx_ref == tx_ref,
                        Payment.status != PaymentStatus.COMPLETED,
                    )
                    .values({Payment.status: outcome, Payment.updated_at: func.now()})
                    .execution_options(synchronize_session=False)
                )
                if transitioned.rowcount == 0:
                    return None

                locked = await db.scalar(select(Payment).where(Payment.tx_ref == tx_ref))
                locked.meta = {
                    **(locked.meta or {}),
                    **meta_updates,
                    "settled_by": source.value,
                }
                await db.flush()

                if outcome == PaymentStatus.COMPLETED:
                    await self._apply_ledger_effects(db, locked, completed_by)
        return locked

    async def _current_status(self, tx_ref: str) -> Optional[str]:
        async with self.session_factory() as db:
            return await db.scalar(select(Payment.status).where(Payment.tx_ref == tx_ref))

    async def _apply_ledger_effects(
        self, db: AsyncSession, payment: Payment, completed_by: str
    ) -> None:
        purpose = purpose_for_tier(payment.tier)

        if purpose == PaymentPurpose.WALLET_TOPUP:
            await self._credit_wallet(db, payment, completed_by)
        elif purpose == PaymentPurpose.SUBSCRIPTION:
            await self._activate_subscription(db, payment)
        else:
            logger.info("donation_settled", tx_ref=payment.tx_ref, user_id=payment.user_id)

    async def _credit_wallet(self, db: AsyncSession, payment: Payment, completed_by: str) -> None:
        """
        Insert the top-up ledger entry and credit the balance.

        Raises:
            LedgerError: The user has no profile to credit
        """
        existing = await db.scalar(
            select(WalletTransaction.id).where(
                WalletTransaction.type == WALLET_TOPUP_TX_TYPE,
                WalletTransaction.idempotency_key == payment.tx_ref,
            )
        )
        if existing is not None:
            logger.info("wallet_credit_already_recorded", tx_ref=payment.tx_ref)
            return

        fee = 0
        net_amount = payment.amount - fee
        db.add(
            WalletTransaction(
                user_id=payment.user_id,
                type=WALLET_TOPUP_TX_TYPE,
                amount=payment.amount,
                fee=fee,
                net_amount=net_amount,
                status="completed",
                idempotency_key=payment.tx_ref,
                meta={
                    "tx_ref": payment.tx_ref,
                    "payment_method": payment.payment_method,
                    "payment_id": str(payment.id),
                    "completed_by": completed_by,
                },
            )
        )
        await db.flush()

        credited = await db.execute(
            update(Profile)
            .where(Profile.id == payment.user_id)
            .values({
                Profile.wallet_balance: Profile.wallet_balance + net_amount,
                Profile.updated_at: func.now(),
            })
            .execution_options(synchronize_session=False)
        )
        if credited.rowcount == 0:
            logger.error("wallet_profile_missing", tx_ref=payment.tx_ref, user_id=payment.user_id)
            raise LedgerError(f"No profile {payment.user_id} to credit")

        logger.info(
            "wallet_credited",
            tx_ref=payment.tx_ref,
            user_id=payment.user_id,
            net_amount=net_amount,
            currency=payment.currency,
        )

    async def _activate_subscription(self, db: AsyncSession, payment: Payment) -> None:
        tier = payment.tier
        if not tier:
            logger.warning("subscription_tier_missing", tx_ref=payment.tx_ref)
            return

        policy = TIERS.get(tier)
        days = (payment.meta or {}).get("subscription_days") or (
            policy.entitlement_days if policy else 0
        ) or self.settings.default_entitlement_days

        start_date = _utcnow()
        end_date = start_date + timedelta(days=int(days))

        active = await db.scalar(
            select(Subscription)
            .where(Subscription.user_id == payment.user_id, Subscription.is_active.is_(True))
            .limit(1)
        )
        if active is not None:
            active.tier = tier
            active.start_date = start_date
            active.end_date = end_date
        else:
            db.add(
                Subscription(
                    user_id=payment.user_id,
                    tier=tier,
                    is_active=True,
                    start_date=start_date,
                    end_date=end_date,
                )
            )
        await db.flush()

        tier_set = await db.execute(
            update(Profile)
            .where(Profile.id == payment.user_id)
            .values({Profile.subscription_tier: tier, Profile.updated_at: func.now()})
            .execution_options(synchronize_session=False)
        )
        if tier_set.rowcount == 0:
            logger.warning("subscription_profile_missing", tx_ref=payment.tx_ref, user_id=payment.user_id)

        logger.info(
            "subscription_activated",
            tx_ref=payment.tx_ref,
            user_id=payment.user_id,
            tier=tier,
            end_date=end_date.isoformat(),
        )

    async def _notify(self, payment: Payment) -> None:
        content = build_payment_notification(
            purpose_for_tier(payment.tier),
            payment.amount,
            payment.currency,
            payment.tier,
        )
        await self.notifier.notify(
            user_id=payment.user_id,
            data={"tx_ref": payment.tx_ref, "amount": payment.amount, "currency": payment.currency},
            **content,
        )
