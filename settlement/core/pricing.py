"""
Tier catalogue and checkout input validation.

Fixed tiers must be paid at exactly their published price; the wallet
top-up and donation pseudo-tiers accept any amount within per-currency
bounds.
"""
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from settlement.core.errors import InvalidAmount, InvalidInput

SUPPORTED_CURRENCIES = ("MWK", "USD")

_PHONE_PATTERN = re.compile(r"^(?:\+?265|0)\d{9}$")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class PaymentPurpose(str, Enum):
    """What a completed payment is applied to."""

    SUBSCRIPTION = "subscription"
    WALLET_TOPUP = "wallet_topup"
    DONATION = "donation"


@dataclass(frozen=True)
class TierPolicy:
    """Pricing rule for one tier."""

    name: str
    purpose: PaymentPurpose
    prices: Dict[str, int] = field(default_factory=dict)
    bounds: Dict[str, Tuple[int, int]] = field(default_factory=dict)
    entitlement_days: int = 0

    @property
    def is_fixed_price(self) -> bool:
        return bool(self.prices)


TIERS: Dict[str, TierPolicy] = {
    "supporter": TierPolicy(
        name="supporter",
        purpose=PaymentPurpose.SUBSCRIPTION,
        prices={"MWK": 5000, "USD": 5},
        entitlement_days=30,
    ),
    "premium": TierPolicy(
        name="premium",
        purpose=PaymentPurpose.SUBSCRIPTION,
        prices={"MWK": 15000, "USD": 15},
        entitlement_days=30,
    ),
    "vip": TierPolicy(
        name="vip",
        purpose=PaymentPurpose.SUBSCRIPTION,
        prices={"MWK": 30000, "USD": 30},
        entitlement_days=30,
    ),
    "wallet_topup": TierPolicy(
        name="wallet_topup",
        purpose=PaymentPurpose.WALLET_TOPUP,
        bounds={"MWK": (100, 1_000_000), "USD": (1, 1000)},
    ),
    "donation": TierPolicy(
        name="donation",
        purpose=PaymentPurpose.DONATION,
        bounds={"MWK": (100, 5_000_000), "USD": (1, 5000)},
    ),
}


def get_tier(tier: str) -> TierPolicy:
    """Look up a tier by name."""
    policy = TIERS.get((tier or "").strip().lower())
    if policy is None:
        raise InvalidInput("Invalid subscription tier")
    return policy


def purpose_for_tier(tier: Optional[str]) -> PaymentPurpose:
    """
    Payment purpose for a recorded tier name.

    Unknown or missing tiers are treated as subscriptions, matching how
    records created before the catalogue existed were settled.
    """
    policy = TIERS.get((tier or "").strip().lower())
    return policy.purpose if policy else PaymentPurpose.SUBSCRIPTION


def normalize_currency(currency: str) -> str:
    """Validate and upper-case a currency code."""
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise InvalidInput("Currency must be 3-letter code")
    if code not in SUPPORTED_CURRENCIES:
        raise InvalidInput(f"Unsupported currency: {code}")
    return code


def normalize_phone(phone_number: Optional[str]) -> Optional[str]:
    """Strip whitespace from a Malawian phone number and validate its shape."""
    if phone_number is None:
        return None
    cleaned = re.sub(r"\s", "", phone_number)
    if not cleaned:
        return None
    if not _PHONE_PATTERN.match(cleaned):
        raise InvalidInput("Invalid phone number. Example: 0991234567")
    return cleaned


def validate_email(email: str) -> str:
    value = (email or "").strip()
    if not _EMAIL_PATTERN.match(value):
        raise InvalidInput("A valid email address is required")
    return value


def validate_amount(tier: str, amount: int, currency: str) -> TierPolicy:
    """
    Check that an amount is acceptable for a tier and currency.

    Args:
        tier: Tier name
        amount: Amount in whole currency units
        currency: Normalized currency code

    Returns:
        TierPolicy: The matched tier

    Raises:
        InvalidInput: Unknown tier or malformed amount
        InvalidAmount: Amount does not match the published price or bounds
    """
    policy = get_tier(tier)

    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInput("Amount must be a whole number")
    if amount <= 0:
        raise InvalidInput("Amount must be positive")

    if policy.is_fixed_price:
        expected = policy.prices.get(currency)
        if expected is None or amount != expected:
            raise InvalidAmount(f"Invalid amount for {policy.name}. Expected {expected} {currency}")
        return policy

    low, high = policy.bounds.get(currency, (None, None))
    if low is None:
        raise InvalidAmount(f"{policy.name} is not available in {currency}")
    if amount < low:
        raise InvalidAmount(f"Minimum amount is {currency} {low}")
    if amount > high:
        raise InvalidAmount(f"Maximum amount is {currency} {high}")
    return policy
