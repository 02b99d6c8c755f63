"""
FastAPI dependency providers.

Each service is built once per process. Tests replace any of them
through `app.dependency_overrides`.
"""
from functools import lru_cache
from typing import Optional

import redis.asyncio as aioredis
import structlog
from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.config import get_settings
from settlement.core.checkout import CheckoutInitiator
from settlement.core.errors import Forbidden, Unauthorized
from settlement.core.rate_limiter import RateLimiter, build_rate_limiter
from settlement.core.reconciliation import PendingPaymentSweeper
from settlement.core.settlement_engine import SettlementEngine
from settlement.core.verification import VerificationService
from settlement.database.connection import get_session_factory
from settlement.integrations.identity import DatabaseRoleChecker, IdentityClient
from settlement.integrations.paychangu_client import PayChanguClient
from settlement.integrations.webhook_handler import WebhookHandler
from settlement.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)

STAFF_ROLES = ("admin", "moderator")


def get_sessions() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


@lru_cache
def get_redis_client() -> Optional[aioredis.Redis]:
    settings = get_settings()
    if settings.rate_limit_backend != "redis":
        return None
    return aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)


@lru_cache
def get_gateway() -> PayChanguClient:
    return PayChanguClient(get_settings())


@lru_cache
def get_identity_client() -> IdentityClient:
    return IdentityClient(get_settings())


@lru_cache
def get_role_checker() -> DatabaseRoleChecker:
    return DatabaseRoleChecker(get_sessions())


@lru_cache
def get_checkout_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return build_rate_limiter(
        "checkout",
        settings.checkout_rate_limit,
        settings.checkout_rate_window_seconds,
        settings,
        get_redis_client(),
    )


@lru_cache
def get_verify_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return build_rate_limiter(
        "verify",
        settings.verify_rate_limit,
        settings.verify_rate_window_seconds,
        settings,
        get_redis_client(),
    )


@lru_cache
def get_webhook_cooldown() -> RateLimiter:
    settings = get_settings()
    return build_rate_limiter(
        "webhook_cooldown",
        1,
        settings.webhook_cooldown_seconds,
        settings,
        get_redis_client(),
    )


@lru_cache
def get_settlement_engine() -> SettlementEngine:
    return SettlementEngine(get_sessions(), get_gateway(), get_settings())


@lru_cache
def get_checkout_initiator() -> CheckoutInitiator:
    return CheckoutInitiator(
        get_sessions(), get_gateway(), get_checkout_rate_limiter(), get_settings()
    )


@lru_cache
def get_verification_service() -> VerificationService:
    return VerificationService(
        get_sessions(),
        get_settlement_engine(),
        get_role_checker(),
        get_verify_rate_limiter(),
    )


@lru_cache
def get_webhook_handler() -> WebhookHandler:
    return WebhookHandler(get_settlement_engine(), get_webhook_cooldown(), get_settings())


@lru_cache
def get_sweeper() -> PendingPaymentSweeper:
    return PendingPaymentSweeper(get_sessions(), get_settlement_engine(), get_settings())


@lru_cache
def get_health_check() -> HealthCheck:
    return HealthCheck(get_settings(), get_sessions(), get_redis_client())


async def get_current_user_id(
    authorization: Optional[str] = Header(default=None),
    identity: IdentityClient = Depends(get_identity_client),
) -> str:
    """
    Resolve the caller from the `Authorization: Bearer <token>` header.

    Raises:
        Unauthorized: Missing or invalid token
    """
    if not authorization:
        raise Unauthorized("Authentication required")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Invalid authentication")

    user_id = await identity.authenticate(token.strip())
    structlog.contextvars.bind_contextvars(user_id=user_id)
    return user_id


async def get_staff_user_id(
    user_id: str = Depends(get_current_user_id),
    roles: DatabaseRoleChecker = Depends(get_role_checker),
) -> str:
    """
    Require the admin or moderator role.

    Raises:
        Forbidden: Caller has neither role
    """
    if not await roles.has_any_role(user_id, STAFF_ROLES):
        logger.warning("staff_role_required", user_id=user_id)
        raise Forbidden("Not authorized")
    return user_id


async def get_admin_user_id(
    user_id: str = Depends(get_current_user_id),
    roles: DatabaseRoleChecker = Depends(get_role_checker),
) -> str:
    """
    Require the admin role.

    Raises:
        Forbidden: Caller is not an admin
    """
    if not await roles.has_role(user_id, "admin"):
        logger.warning("admin_role_required", user_id=user_id)
        raise Forbidden("Not authorized")
    return user_id


async def shutdown_dependencies() -> None:
    """Close the outbound clients that were created and forget every cached service."""
    if get_gateway.cache_info().currsize:
        await get_gateway().close()
    if get_identity_client.cache_info().currsize:
        await get_identity_client().close()
    if get_redis_client.cache_info().currsize:
        redis_client = get_redis_client()
        if redis_client is not None:
            await redis_client.aclose()

    for provider in (
        get_redis_client,
        get_gateway,
        get_identity_client,
        get_role_checker,
        get_checkout_rate_limiter,
        get_verify_rate_limiter,
        get_webhook_cooldown,
        get_settlement_engine,
        get_checkout_initiator,
        get_verification_service,
        get_webhook_handler,
        get_sweeper,
        get_health_check,
    ):
        provider.cache_clear()
