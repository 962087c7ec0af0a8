"""Domain types shared by every layer."""
from .enums import OrderStatus, PaymentMethod, PaymentStatus
from .errors import (
    AuthenticationError,
    AuthzError,
    ConflictError,
    NotFoundError,
    PharmacyError,
    UpstreamError,
    ValidationError,
)

__all__ = [
    "OrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "PharmacyError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "AuthenticationError",
    "AuthzError",
    "UpstreamError",
]
