"""
Closed status and method types for orders and payments.

Every status or method that crosses a module boundary is one of these
enums; raw strings only exist at the HTTP and database edges.
"""
from enum import Enum
from typing import FrozenSet

from .errors import ValidationError


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    def allowed_transitions(self) -> FrozenSet["OrderStatus"]:
        return _ORDER_TRANSITIONS[self]

    def can_transition_to(self, target: "OrderStatus") -> bool:
        return target in _ORDER_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not _ORDER_TRANSITIONS[self]

    @property
    def is_cancellable(self) -> bool:
        return OrderStatus.CANCELLED in _ORDER_TRANSITIONS[self]


_ORDER_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class PaymentStatus(str, Enum):
    """Payment record states. Only COMPLETED and FAILED are terminal."""

    PENDING = "pending"
    INITIATED = "initiated"
    PENDING_DELIVERY = "pending_delivery"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.FAILED)

    @classmethod
    def active(cls) -> FrozenSet["PaymentStatus"]:
        """Statuses that block a new payment attempt for the same order."""
        return frozenset(s for s in cls if not s.is_terminal)


class PaymentMethod(str, Enum):
    """Supported payment methods."""

    MPESA = "mpesa"
    CARD = "card"
    COD = "cod"

    @classmethod
    def parse(cls, value: "str | PaymentMethod") -> "PaymentMethod":
        """
        Parse a client-supplied method name.

        Accepts any casing plus the long cash-on-delivery alias.

        Raises:
            ValidationError: If the method is unknown
        """
        if isinstance(value, PaymentMethod):
            return value
        normalized = str(value or "").strip().lower()
        if normalized == "cash_on_delivery":
            normalized = cls.COD.value
        try:
            return cls(normalized)
        except ValueError:
            raise ValidationError(
                f"Unsupported payment method: {value}",
                code="INVALID_PAYMENT_METHOD",
                details={"supported": [m.value for m in cls]},
            )
