"""Database package for the pharmacy backend."""
from .connection import Database
from .models import (
    Base,
    Order,
    OrderItem,
    OrderStatusHistory,
    Payment,
    Product,
    RefreshToken,
    User,
)

__all__ = [
    "Base",
    "Database",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "Payment",
    "Product",
    "RefreshToken",
    "User",
]
