"""
Pydantic schemas for API request/response models.

Request field names follow the web client's camelCase JSON.
"""
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CheckoutRequest(BaseModel):
    """Request schema for starting a checkout."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "amount": 15000,
                    "currency": "MWK",
                    "tier": "premium",
                    "email": "user@example.com",
                    "firstName": "Chikondi",
                    "lastName": "Banda",
                    "phoneNumber": "0991234567",
                }
            ]
        },
    )

    amount: int = Field(..., description="Amount in whole currency units")
    currency: str = Field(default="MWK", description="Currency code (MWK or USD)")
    tier: str = Field(..., description="supporter, premium, vip, wallet_topup or donation")
    email: str = Field(..., description="Customer email")
    first_name: str = Field(..., alias="firstName", description="Customer first name")
    last_name: str = Field(..., alias="lastName", description="Customer last name")
    phone_number: Optional[str] = Field(
        default=None, alias="phoneNumber", description="Malawian phone number"
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Upper-case the currency code."""
        return v.strip().upper()


class CheckoutResponse(BaseModel):
    """Response schema for checkout creation."""

    success: bool = Field(default=True)
    checkout_url: str = Field(..., description="Hosted checkout page URL")
    tx_ref: str = Field(..., description="Transaction reference")


class VerifyRequest(BaseModel):
    """Request schema for verifying a payment."""

    model_config = ConfigDict(populate_by_name=True)

    tx_ref: str = Field(..., alias="txRef", min_length=1, description="Transaction reference")
    admin_override: bool = Field(
        default=False, alias="adminOverride", description="Verify as admin"
    )


class VerifyResponse(BaseModel):
    """Response schema for verification; optional keys are omitted when unset."""

    success: bool
    status: str
    already: Optional[bool] = None
    paychangu_status: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    """Response schema for payment status."""

    tx_ref: str
    status: str
    amount: int
    currency: str
    tier: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AdminActionRequest(BaseModel):
    """Request schema for a manual admin action."""

    action: Literal["complete", "fail"] = Field(..., description="Outcome to apply")


class ReconciliationResponse(BaseModel):
    """Response schema for a pending-payment sweep."""

    checked: int
    completed: int
    failed: int
    still_pending: int
    errors: int
    error_refs: list[str]


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    """Response schema for errors."""

    success: bool = False
    error: str = Field(..., description="Error message")
