"""
API routes for checkout, settlement and monitoring.
"""
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from settlement.config import get_settings
from settlement.core.checkout import CheckoutInitiator
from settlement.core.reconciliation import PendingPaymentSweeper
from settlement.core.settlement_engine import SettlementEngine
from settlement.core.verification import VerificationService
from settlement.integrations.paychangu_client import CheckoutCustomer
from settlement.integrations.webhook_handler import WebhookAuthenticationError, WebhookHandler
from settlement.monitoring.health import HealthCheck

from .dependencies import (
    get_admin_user_id,
    get_checkout_initiator,
    get_current_user_id,
    get_health_check,
    get_settlement_engine,
    get_staff_user_id,
    get_sweeper,
    get_verification_service,
    get_webhook_handler,
)
from .schemas import (
    AdminActionRequest,
    CheckoutRequest,
    CheckoutResponse,
    ErrorResponse,
    HealthCheckResponse,
    PaymentStatusResponse,
    ReconciliationResponse,
    VerifyRequest,
    VerifyResponse,
)

logger = structlog.get_logger(__name__)

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    code: {"model": ErrorResponse} for code in (400, 401, 403, 404, 429, 500)
}

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"], responses=ERROR_RESPONSES)
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"], responses=ERROR_RESPONSES)
monitoring_router = APIRouter(tags=["monitoring"])


@payment_router.post(
    "/checkout",
    response_model=CheckoutResponse,
    summary="Start a checkout",
    description="Validate the tier and amount, record a pending payment and return a hosted checkout URL",
)
async def create_checkout(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    initiator: CheckoutInitiator = Depends(get_checkout_initiator),
) -> Dict[str, Any]:
    """Start a PayChangu checkout for the authenticated user."""
    logger.info(
        "api_checkout_request",
        tier=request.tier,
        amount=request.amount,
        currency=request.currency,
    )
    session = await initiator.initiate(
        user_id=user_id,
        tier=request.tier,
        amount=request.amount,
        currency=request.currency,
        customer=CheckoutCustomer(
            email=request.email,
            first_name=request.first_name,
            last_name=request.last_name,
            phone_number=request.phone_number,
        ),
    )
    return session.to_dict()


@payment_router.post(
    "/verify",
    response_model=VerifyResponse,
    response_model_exclude_none=True,
    summary="Verify a payment",
    description="Re-check a payment with the provider and settle it",
)
async def verify_payment(
    request: VerifyRequest,
    user_id: str = Depends(get_current_user_id),
    verifier: VerificationService = Depends(get_verification_service),
) -> Dict[str, Any]:
    """Verify a payment owned by the caller (or any payment, for admins)."""
    result = await verifier.verify(request.tx_ref, user_id, request.admin_override)
    return result.to_dict()


@payment_router.get(
    "/{tx_ref}",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Read the current state of a payment without settling it",
)
async def get_payment_status(
    tx_ref: str,
    user_id: str = Depends(get_current_user_id),
    verifier: VerificationService = Depends(get_verification_service),
) -> Dict[str, Any]:
    """Get payment status by transaction reference."""
    return await verifier.get_status(tx_ref, user_id)


@webhook_router.post(
    "/paychangu",
    response_class=PlainTextResponse,
    summary="PayChangu webhook endpoint",
    description="Trigger settlement for the referenced transaction",
)
async def paychangu_webhook(
    request: Request,
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> PlainTextResponse:
    """
    Handle PayChangu webhook deliveries.

    Always answers 200 OK except when the signature check fails.
    """
    body = await request.body()
    signature = request.headers.get(get_settings().paychangu_signature_header)

    try:
        result = await handler.handle(body, signature)
    except WebhookAuthenticationError:
        return PlainTextResponse("Unauthorized", status_code=status.HTTP_401_UNAUTHORIZED)

    logger.info("api_webhook_handled", result=result.value)
    return PlainTextResponse("OK")


@admin_router.post(
    "/payments/{tx_ref}/action",
    response_model=VerifyResponse,
    response_model_exclude_none=True,
    summary="Complete or fail a payment by hand",
    description="Apply a manual outcome through the settlement write path (admin or moderator)",
)
async def admin_payment_action(
    tx_ref: str,
    request: AdminActionRequest,
    staff_id: str = Depends(get_staff_user_id),
    engine: SettlementEngine = Depends(get_settlement_engine),
) -> Dict[str, Any]:
    """Complete or fail a payment without consulting the provider."""
    logger.info("api_admin_payment_action", tx_ref=tx_ref, action=request.action, staff_id=staff_id)
    result = await engine.apply_manual_outcome(tx_ref, request.action, staff_id)
    return result.to_dict()


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Re-settle pending payments whose webhook and poll never arrived",
)
async def run_reconciliation(
    admin_id: str = Depends(get_admin_user_id),
    sweeper: PendingPaymentSweeper = Depends(get_sweeper),
) -> Dict[str, Any]:
    """Run one pending-payment sweep now."""
    logger.info("api_reconciliation_started", admin_id=admin_id)
    report = await sweeper.sweep()
    return report.to_dict()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
    description="Liveness check endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness check endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
    description="Readiness check endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness check endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
