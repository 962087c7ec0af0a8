"""Online pharmacy backend: orders, M-Pesa payments and callback reconciliation."""

__version__ = "1.0.0"
