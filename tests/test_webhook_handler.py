"""
Tests for webhook signature handling, reference extraction and duplicate collapsing.
"""
import json
from unittest.mock import AsyncMock

import pytest

from settlement.config import Settings
from settlement.core.errors import PaymentNotFound
from settlement.core.rate_limiter import InMemoryRateLimiter
from settlement.core.settlement_engine import SettlementEngine, SettlementResult, SettlementSource
from settlement.integrations.webhook_handler import (
    WebhookAuthenticationError,
    WebhookHandler,
    WebhookResult,
    compute_signature,
    extract_tx_ref,
)

WEBHOOK_SECRET = "whsec_test_fake_secret"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def engine() -> AsyncMock:
    mock_engine = AsyncMock(spec=SettlementEngine)
    mock_engine.settle.return_value = SettlementResult(tx_ref="DW-1", status="completed")
    return mock_engine


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def handler(engine: AsyncMock, clock: FakeClock, test_settings: Settings) -> WebhookHandler:
    cooldown = InMemoryRateLimiter("webhook_cooldown", 1, 5.0, clock=clock)
    return WebhookHandler(engine, cooldown, test_settings)


def _body(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


class TestExtractTxRef:
    """Test suite for reference extraction."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "payload",
        [
            {"tx_ref": "DW-1"},
            {"reference": "DW-1"},
            {"data": {"tx_ref": "DW-1"}},
            {"meta": {"reference": " DW-1 "}},
            {"event_type": "api.charge.payment", "data": {"status": "success", "tx_ref": "DW-1"}},
        ],
    )
    def test_shapes(self, payload: dict) -> None:
        assert extract_tx_ref(payload) == "DW-1"

    @pytest.mark.unit
    def test_absent(self) -> None:
        assert extract_tx_ref({"data": {"status": "success"}}) is None
        assert extract_tx_ref({"tx_ref": 12345}) is None


class TestWebhookHandler:
    """Test suite for webhook deliveries."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_signature_triggers_settlement(self, handler, engine) -> None:
        body = _body({"tx_ref": "DW-1", "status": "success"})

        result = await handler.handle(body, compute_signature(body, WEBHOOK_SECRET))

        assert result == WebhookResult.PROCESSED
        engine.settle.assert_awaited_once_with("DW-1", SettlementSource.WEBHOOK)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_signature_prefix_and_case_are_tolerated(self, handler, engine) -> None:
        body = _body({"tx_ref": "DW-1"})
        signature = "sha256=" + compute_signature(body, WEBHOOK_SECRET).upper()

        assert await handler.handle(body, signature) == WebhookResult.PROCESSED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_wrong_signature_never_reaches_engine(self, handler, engine) -> None:
        body = _body({"tx_ref": "DW-1"})

        with pytest.raises(WebhookAuthenticationError):
            await handler.handle(body, compute_signature(body, "some-other-secret"))

        engine.settle.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, handler, engine) -> None:
        signature = compute_signature(_body({"tx_ref": "DW-1"}), WEBHOOK_SECRET)

        with pytest.raises(WebhookAuthenticationError):
            await handler.handle(_body({"tx_ref": "DW-2"}), signature)

        engine.settle.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_signature_rejected_when_secret_configured(self, handler, engine) -> None:
        with pytest.raises(WebhookAuthenticationError):
            await handler.handle(_body({"tx_ref": "DW-1"}), None)
        engine.settle.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsigned_accepted_without_secret(self, engine, clock, test_settings) -> None:
        settings = test_settings.model_copy(update={"paychangu_webhook_secret": None})
        handler = WebhookHandler(
            engine, InMemoryRateLimiter("webhook_cooldown", 1, 5.0, clock=clock), settings
        )

        result = await handler.handle(_body({"tx_ref": "DW-1"}), None)

        assert result == WebhookResult.PROCESSED
        engine.settle.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_reference_is_acknowledged(self, handler, engine) -> None:
        body = _body({"data": {"status": "success"}})

        result = await handler.handle(body, compute_signature(body, WEBHOOK_SECRET))

        assert result == WebhookResult.IGNORED
        engine.settle.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_json_is_acknowledged(self, handler, engine) -> None:
        body = b"{not json"

        result = await handler.handle(body, compute_signature(body, WEBHOOK_SECRET))

        assert result == WebhookResult.IGNORED
        engine.settle.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rapid_duplicates_collapse(self, handler, engine, clock) -> None:
        body = _body({"tx_ref": "DW-1"})
        signature = compute_signature(body, WEBHOOK_SECRET)

        first = await handler.handle(body, signature)
        clock.now += 1
        second = await handler.handle(body, signature)
        clock.now += 5
        third = await handler.handle(body, signature)

        assert first == WebhookResult.PROCESSED
        assert second == WebhookResult.DUPLICATE
        assert third == WebhookResult.PROCESSED
        assert engine.settle.await_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cooldown_backend_failure_still_settles(self, engine, test_settings) -> None:
        cooldown = AsyncMock(spec=InMemoryRateLimiter)
        cooldown.hit.side_effect = ConnectionError("Error 111 connecting to redis")
        handler = WebhookHandler(engine, cooldown, test_settings)
        body = _body({"tx_ref": "DW-1"})

        result = await handler.handle(body, compute_signature(body, WEBHOOK_SECRET))

        assert result == WebhookResult.PROCESSED
        engine.settle.assert_awaited_once_with("DW-1", SettlementSource.WEBHOOK)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_engine_errors_are_swallowed(self, handler, engine) -> None:
        engine.settle.side_effect = PaymentNotFound()
        body = _body({"tx_ref": "DW-unknown"})

        result = await handler.handle(body, compute_signature(body, WEBHOOK_SECRET))

        assert result == WebhookResult.ERROR

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payload_status_is_not_trusted(
        self,
        settlement_engine,
        gateway,
        make_verification,
        seed_profile,
        create_payment,
        fetch_payment,
        clock,
        test_settings,
    ) -> None:
        """A forged "success" push is re-verified and settles as the provider says."""
        await seed_profile("user-1")
        await create_payment("DW-forged")
        gateway.verify.return_value = make_verification("failed", 1000)
        handler = WebhookHandler(
            settlement_engine,
            InMemoryRateLimiter("webhook_cooldown", 1, 5.0, clock=clock),
            test_settings,
        )
        body = _body({"tx_ref": "DW-forged", "status": "success", "data": {"status": "successful"}})

        result = await handler.handle(body, compute_signature(body, WEBHOOK_SECRET))

        assert result == WebhookResult.PROCESSED
        gateway.verify.assert_awaited_once_with("DW-forged")
        assert (await fetch_payment("DW-forged")).status == "failed"
