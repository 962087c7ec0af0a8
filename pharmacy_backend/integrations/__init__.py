"""External service integrations."""
from .mpesa_client import (
    CallbackParseError,
    CallbackResult,
    CircuitBreaker,
    MpesaClient,
    MpesaError,
    MpesaErrorType,
    StkPushResult,
    StkQueryResult,
    normalize_phone_number,
    parse_callback,
)

__all__ = [
    "CallbackParseError",
    "CallbackResult",
    "CircuitBreaker",
    "MpesaClient",
    "MpesaError",
    "MpesaErrorType",
    "StkPushResult",
    "StkQueryResult",
    "normalize_phone_number",
    "parse_callback",
]
