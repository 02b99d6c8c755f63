"""
Pytest configuration and fixtures.
"""
import os

# Settings are read when the API module is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYCHANGU_SECRET_KEY", "sec-test-fake-key")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from settlement.config import Settings
from settlement.core.settlement_engine import SettlementEngine
from settlement.database.connection import create_session_factory, init_db
from settlement.database.models import Payment, PaymentStatus, Profile, UserRole
from settlement.integrations.paychangu_client import GatewayVerification, PayChanguClient

WEBHOOK_SECRET = "whsec_test_fake_secret"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O beyond SQLite")
    config.addinivalue_line("markers", "race: concurrent settlement tests")
    config.addinivalue_line("markers", "integration: API tests through the ASGI app")


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        paychangu_secret_key="sec-test-fake-key",
        paychangu_api_base_url="https://api.paychangu.test",
        paychangu_webhook_secret=WEBHOOK_SECRET,
        paychangu_callback_url="https://app.test/api/webhooks/paychangu",
        paychangu_return_url="https://app.test/payment/return",
        identity_url="https://identity.test",
        identity_api_key="anon-key",
        database_url="sqlite+aiosqlite:///:memory:",
        app_name="payment-settlement-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite engine so concurrent sessions share one database."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def gateway() -> AsyncMock:
    """Payment provider double."""
    return AsyncMock(spec=PayChanguClient)


@pytest.fixture
def make_verification() -> Callable[..., GatewayVerification]:
    def _make(
        status: str = "successful",
        amount: Any = 1000,
        currency: Optional[str] = "MWK",
    ) -> GatewayVerification:
        return GatewayVerification(
            provider_status=status,
            verified_amount=Decimal(str(amount)) if amount is not None else None,
            verified_currency=currency,
            raw={"status": status, "amount": amount, "currency": currency},
        )

    return _make


@pytest.fixture
def settlement_engine(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: AsyncMock,
    test_settings: Settings,
) -> SettlementEngine:
    return SettlementEngine(session_factory, gateway, test_settings)


@pytest.fixture
def seed_profile(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[None]]:
    async def _seed(user_id: str, wallet_balance: int = 0, roles: tuple = ()) -> None:
        async with session_factory() as db:
            async with db.begin():
                db.add(Profile(id=user_id, wallet_balance=wallet_balance))
                for role in roles:
                    db.add(UserRole(user_id=user_id, role=role))

    return _seed


@pytest.fixture
def create_payment(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[None]]:
    async def _create(
        tx_ref: str,
        user_id: str = "user-1",
        amount: int = 1000,
        currency: str = "MWK",
        tier: str = "wallet_topup",
        status: str = PaymentStatus.PENDING,
        created_at: Optional[datetime] = None,
        **meta: Any,
    ) -> None:
        payment = Payment(
            tx_ref=tx_ref,
            user_id=user_id,
            amount=amount,
            currency=currency,
            status=status,
            meta={"tier": tier, **meta},
        )
        if created_at is not None:
            payment.created_at = created_at
        async with session_factory() as db:
            async with db.begin():
                db.add(payment)

    return _create


@pytest.fixture
def fetch_payment(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[str], Awaitable[Payment]]:
    async def _fetch(tx_ref: str) -> Payment:
        async with session_factory() as db:
            return await db.scalar(select(Payment).where(Payment.tx_ref == tx_ref))

    return _fetch
