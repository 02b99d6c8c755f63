"""External integrations: payment provider and identity provider."""
from .identity import DatabaseRoleChecker, IdentityClient
from .paychangu_client import CheckoutCustomer, GatewayVerification, PayChanguClient

__all__ = [
    "CheckoutCustomer",
    "DatabaseRoleChecker",
    "GatewayVerification",
    "IdentityClient",
    "PayChanguClient",
]
