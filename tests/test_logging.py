"""
Tests for log event processing.
"""
import pytest

from pharmacy_backend.config import Settings
from pharmacy_backend.monitoring.logging import REDACTED, AppContext, redact_sensitive


@pytest.mark.unit
def test_credentials_are_masked() -> None:
    event = redact_sensitive(
        None,
        "info",
        {
            "event": "stk_push_sent",
            "password": "hunter2",
            "refresh_token": "a" * 128,
            "amount": 1000,
        },
    )

    assert event["password"] == REDACTED
    assert event["refresh_token"] == REDACTED
    assert event["amount"] == 1000
    assert event["event"] == "stk_push_sent"


@pytest.mark.unit
def test_nested_gateway_payload_is_masked() -> None:
    event = redact_sensitive(
        None,
        "error",
        {
            "event": "mpesa_api_error",
            "payload": {
                "BusinessShortCode": "174379",
                "Password": "MTc0Mzc5cGFzc2tleTIwMjYxMDE2",
                "Amount": 1000,
            },
            "headers": [{"Authorization": "Bearer abc.def"}],
            "error_message": "Rejected Bearer abc.def for request",
        },
    )

    assert event["payload"] == {
        "BusinessShortCode": "174379",
        "Password": REDACTED,
        "Amount": 1000,
    }
    assert event["headers"] == [{"Authorization": REDACTED}]
    assert "abc.def" not in event["error_message"]
    assert event["error_message"] == f"Rejected Bearer {REDACTED} for request"


@pytest.mark.unit
def test_app_context_added(test_settings: Settings) -> None:
    processor = AppContext(test_settings)

    event = processor(None, "info", {"event": "order_created"})

    assert event["app_name"] == test_settings.app_name
    assert event["app_env"] == "test"
