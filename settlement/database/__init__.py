"""Database package for the settlement ledger."""
from .connection import close_db, get_session_factory, init_db
from .models import (
    Base,
    Notification,
    Payment,
    PaymentStatus,
    Profile,
    Subscription,
    UserRole,
    WalletTransaction,
)

__all__ = [
    "Base",
    "Notification",
    "Payment",
    "PaymentStatus",
    "Profile",
    "Subscription",
    "UserRole",
    "WalletTransaction",
    "close_db",
    "get_session_factory",
    "init_db",
]
