"""Core business logic for orders and payments."""
from .auth_service import AuthService, CurrentUser, TokenPair
from .order_service import CartItem, OrderCreationResult, OrderPage, OrderService
from .payment_processor import PaymentProcessor, PaymentRequest, PaymentResult
from .reconciliation import CallbackReconciler, StalePaymentReconciler

__all__ = [
    "AuthService",
    "CallbackReconciler",
    "CartItem",
    "CurrentUser",
    "OrderCreationResult",
    "OrderPage",
    "OrderService",
    "PaymentProcessor",
    "PaymentRequest",
    "PaymentResult",
    "StalePaymentReconciler",
    "TokenPair",
]
