"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    CallbackAck,
    CreateOrderRequest,
    OrderCreatedResponse,
    OrderResponse,
    PaymentResponse,
)

__all__ = [
    "app",
    "create_app",
    "CallbackAck",
    "CreateOrderRequest",
    "OrderCreatedResponse",
    "OrderResponse",
    "PaymentResponse",
]
