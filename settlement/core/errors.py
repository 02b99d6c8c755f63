"""
Error kinds raised by the settlement service.

Each kind carries the HTTP status it maps to. Kinds that describe a
user-correctable problem expose their message as-is; infrastructure
kinds only ever expose a generic public message.
"""
from typing import Optional


class SettlementError(Exception):
    """Base exception for the settlement service."""

    status_code = 500
    public_message = "Payment processing failed. Please contact support if you were charged."
    expose_message = False

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    @property
    def client_message(self) -> str:
        """Message that is safe to return to the caller."""
        return self.message if self.expose_message else self.public_message


class InvalidInput(SettlementError):
    """Raised when request input fails validation."""

    status_code = 400
    public_message = "Invalid request"
    expose_message = True


class InvalidAmount(InvalidInput):
    """Raised when the amount does not match the tier's published price or bounds."""

    pass


class Unauthorized(SettlementError):
    """Raised when the caller cannot be authenticated."""

    status_code = 401
    public_message = "Authentication required"
    expose_message = True


class Forbidden(SettlementError):
    """Raised when the caller may not act on the requested payment."""

    status_code = 403
    public_message = "Not authorized to access this payment"
    expose_message = True


class PaymentNotFound(SettlementError):
    """Raised when no payment exists for a transaction reference."""

    status_code = 404
    public_message = "Payment not found"
    expose_message = True


class RateLimited(SettlementError):
    """Raised when a rate limit rejects the request."""

    status_code = 429
    public_message = "Too many requests. Please try again shortly."
    expose_message = True

    def __init__(self, message: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class GatewayError(SettlementError):
    """Raised when the payment provider call fails or returns an error."""

    status_code = 500
    public_message = "Payment provider is unavailable. Please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.provider_status_code = status_code
        self.original_error = original_error


class LedgerError(SettlementError):
    """Raised when a ledger write cannot be applied."""

    status_code = 500
