"""
PayChangu webhook handler with signature verification and duplicate collapsing.

Implements:
- HMAC-SHA256 signature verification over the raw body (constant-time)
- Transaction reference extraction from several payload shapes
- Per-reference cooldown so rapid duplicate pushes settle once
- Delegation to the settlement engine; the payload's own status is ignored
"""
import hashlib
import hmac
import json
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from settlement.config import Settings, get_settings
from settlement.core.errors import Unauthorized
from settlement.core.rate_limiter import RateLimiter
from settlement.core.settlement_engine import SettlementEngine, SettlementSource
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_TX_REF_KEYS = ("tx_ref", "txRef", "reference")
_NESTED_KEYS = ("data", "meta")


class WebhookAuthenticationError(Unauthorized):
    """Raised when a webhook signature is missing or does not match."""

    pass


class WebhookResult(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    ERROR = "error"


def compute_signature(payload: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of the payload."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def extract_tx_ref(payload: Dict[str, Any]) -> Optional[str]:
    """
    Find the transaction reference in a webhook payload.

    Looks at the top level first, then inside `data` and `meta`.
    """
    candidates = [payload]
    for key in _NESTED_KEYS:
        nested = payload.get(key)
        if isinstance(nested, dict):
            candidates.append(nested)

    for candidate in candidates:
        for key in _TX_REF_KEYS:
            value = candidate.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


class WebhookHandler:
    """
    Handles PayChangu webhook deliveries.

    The delivery is only a trigger: settlement always re-verifies with
    the provider. Only signature failures are raised; every other
    problem is logged and acknowledged.
    """

    def __init__(
        self,
        engine: SettlementEngine,
        cooldown: RateLimiter,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            engine: Settlement engine
            cooldown: Limiter allowing one delivery per reference per cooldown window
            settings: Optional settings
        """
        self.engine = engine
        self.cooldown = cooldown
        self.settings = settings or get_settings()

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> None:
        """
        Verify the delivery signature.

        Args:
            payload: Raw request body as bytes
            signature: Signature header value

        Raises:
            WebhookAuthenticationError: If a secret is configured and the
                signature is missing or wrong
        """
        secret = self.settings.paychangu_webhook_secret
        if not secret:
            logger.warning("webhook_signature_not_configured")
            return

        if not signature:
            logger.warning("webhook_signature_missing")
            raise WebhookAuthenticationError("Missing webhook signature")

        provided = signature.strip().lower()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]

        expected = compute_signature(payload, secret)
        if not hmac.compare_digest(expected, provided):
            logger.warning("webhook_signature_invalid")
            raise WebhookAuthenticationError("Invalid webhook signature")

    async def handle(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Process one delivery.

        Args:
            payload: Raw request body
            signature: Signature header value

        Returns:
            WebhookResult: What happened to the delivery

        Raises:
            WebhookAuthenticationError: Signature verification failed
        """
        try:
            self.verify_signature(payload, signature)
        except WebhookAuthenticationError:
            metrics.record_webhook("rejected")
            raise

        try:
            body = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("webhook_body_invalid", error=str(e))
            metrics.record_webhook(WebhookResult.IGNORED.value)
            return WebhookResult.IGNORED

        tx_ref = extract_tx_ref(body) if isinstance(body, dict) else None
        if not tx_ref:
            logger.info("webhook_missing_tx_ref")
            metrics.record_webhook(WebhookResult.IGNORED.value)
            return WebhookResult.IGNORED

        log = logger.bind(tx_ref=tx_ref)

        try:
            allowed = await self.cooldown.hit(tx_ref)
        except Exception as e:
            # Fail open: settlement is idempotent, the cooldown only saves work
            log.warning(
                "webhook_cooldown_unavailable", error=str(e), error_type=type(e).__name__
            )
            allowed = True

        if not allowed:
            log.info("webhook_duplicate_collapsed")
            metrics.record_webhook(WebhookResult.DUPLICATE.value)
            return WebhookResult.DUPLICATE

        try:
            result = await self.engine.settle(tx_ref, SettlementSource.WEBHOOK)
        except Exception as e:
            log.error("webhook_settlement_failed", error=str(e), error_type=type(e).__name__)
            metrics.record_webhook(WebhookResult.ERROR.value)
            return WebhookResult.ERROR

        log.info("webhook_processed", status=result.status, already=result.already)
        metrics.record_webhook(WebhookResult.PROCESSED.value)
        return WebhookResult.PROCESSED
