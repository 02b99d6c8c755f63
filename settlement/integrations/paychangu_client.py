"""
PayChangu API client.

Implements:
- Hosted checkout session creation
- Transaction verification by reference
- Uniform error mapping (every provider failure becomes GatewayError)

No retries happen here. The webhook path is retried by the provider and
the poll path by the client; the settlement engine is re-entrant.
"""
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
import structlog

from settlement.config import Settings, get_settings
from settlement.core.errors import GatewayError
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class CheckoutCustomer:
    """Customer details forwarded to the hosted checkout page."""

    email: str
    first_name: str
    last_name: str
    phone_number: Optional[str] = None


@dataclass
class GatewayVerification:
    """Authoritative view of a transaction as reported by the provider."""

    provider_status: str
    verified_amount: Optional[Decimal]
    verified_currency: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


def _parse_amount(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).replace(",", "").strip())
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


class PayChanguClient:
    """
    Thin async wrapper around the PayChangu REST API.

    An httpx.AsyncClient may be injected (tests use httpx.MockTransport);
    otherwise one is created with the configured timeout and closed by close().
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.paychangu_api_base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.gateway_timeout_seconds)
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.paychangu_secret_key}",
            "Accept": "application/json",
        }

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Perform one authenticated call and return the decoded JSON body.

        Raises:
            GatewayError: On transport errors, timeouts, non-2xx responses,
                undecodable bodies or a body whose status is not "success"
        """
        url = f"{self.base_url}{path}"
        start_time = time.time()
        try:
            response = await self._client.request(method, url, headers=self._headers(), **kwargs)
            response.raise_for_status()
            body = response.json()

        except httpx.TimeoutException as e:
            metrics.record_gateway_call(operation, "timeout", time.time() - start_time)
            logger.error("gateway_timeout", operation=operation, url=url, error=str(e))
            raise GatewayError(f"{operation} timed out", original_error=e) from e

        except httpx.HTTPStatusError as e:
            metrics.record_gateway_call(operation, "http_error", time.time() - start_time)
            logger.error(
                "gateway_http_error",
                operation=operation,
                url=url,
                status_code=e.response.status_code,
                body=e.response.text[:2000],
            )
            raise GatewayError(
                f"{operation} failed with HTTP {e.response.status_code}",
                status_code=e.response.status_code,
                original_error=e,
            ) from e

        except httpx.HTTPError as e:
            metrics.record_gateway_call(operation, "transport_error", time.time() - start_time)
            logger.error("gateway_transport_error", operation=operation, url=url, error=str(e))
            raise GatewayError(f"{operation} transport error", original_error=e) from e

        except ValueError as e:
            metrics.record_gateway_call(operation, "invalid_body", time.time() - start_time)
            logger.error("gateway_invalid_body", operation=operation, url=url, error=str(e))
            raise GatewayError(f"{operation} returned an invalid body", original_error=e) from e

        if not isinstance(body, dict) or body.get("status") != "success":
            metrics.record_gateway_call(operation, "rejected", time.time() - start_time)
            logger.error(
                "gateway_rejected",
                operation=operation,
                url=url,
                provider_message=body.get("message") if isinstance(body, dict) else None,
            )
            raise GatewayError(f"{operation} was rejected by the provider")

        metrics.record_gateway_call(operation, "success", time.time() - start_time)
        return body

    async def create_checkout(
        self,
        amount: int,
        currency: str,
        tx_ref: str,
        customer: CheckoutCustomer,
        title: str = "Payment",
        description: str = "",
    ) -> str:
        """
        Create a hosted checkout session.

        Args:
            amount: Amount in whole currency units
            currency: ISO currency code
            tx_ref: Transaction reference (idempotency key)
            customer: Customer details shown on the checkout page
            title: Checkout page title
            description: Checkout page description

        Returns:
            str: URL of the hosted checkout page

        Raises:
            GatewayError: If the provider call fails or returns no URL
        """
        payload: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "email": customer.email,
            "first_name": customer.first_name,
            "last_name": customer.last_name,
            "tx_ref": tx_ref,
            "callback_url": self.settings.paychangu_callback_url,
            "return_url": self.settings.paychangu_return_url,
            "customization": {"title": title, "description": description},
        }
        if customer.phone_number:
            payload["phone_number"] = customer.phone_number

        body = await self._request("create_checkout", "POST", "/payment", json=payload)

        checkout_url = (body.get("data") or {}).get("checkout_url")
        if not checkout_url:
            logger.error("gateway_missing_checkout_url", tx_ref=tx_ref)
            raise GatewayError("Provider response had no checkout URL")

        logger.info("checkout_session_created", tx_ref=tx_ref, amount=amount, currency=currency)
        return checkout_url

    async def verify(self, tx_ref: str) -> GatewayVerification:
        """
        Fetch the authoritative status of a transaction.

        Args:
            tx_ref: Transaction reference

        Returns:
            GatewayVerification: Provider status, amount and currency

        Raises:
            GatewayError: If the provider call fails
        """
        body = await self._request("verify", "GET", f"/verify-payment/{tx_ref}")
        data = body.get("data") or {}

        currency = data.get("currency")
        verification = GatewayVerification(
            provider_status=str(data.get("status") or "").strip().lower(),
            verified_amount=_parse_amount(data.get("amount")),
            verified_currency=currency.strip().upper() if isinstance(currency, str) else None,
            raw=data,
        )

        logger.info(
            "gateway_verification_received",
            tx_ref=tx_ref,
            provider_status=verification.provider_status,
            verified_amount=str(verification.verified_amount),
            verified_currency=verification.verified_currency,
        )
        return verification
