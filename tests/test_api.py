"""
Integration tests for the HTTP API.
"""
from typing import Any, AsyncGenerator, Dict

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import CHECKOUT_ID, FakeDaraja, stk_callback
from pharmacy_backend.api.main import create_app
from pharmacy_backend.config import Settings
from pharmacy_backend.core.auth_service import AuthService
from pharmacy_backend.database.connection import Database
from pharmacy_backend.database.models import User
from pharmacy_backend.integrations.mpesa_client import MpesaClient

pytestmark = [pytest.mark.integration, pytest.mark.usefixtures("products")]

ORDER_BODY: Dict[str, Any] = {
    "items": [{"product_id": 7, "quantity": 2}],
    "shipping": {
        "full_name": "Jane Wanjiku",
        "address": "12 Moi Avenue",
        "city": "Nairobi",
        "phone": "0712345678",
    },
    "payment": {"method": "mpesa", "phone": "0712345678"},
    "total": "1000.00",
}


@pytest_asyncio.fixture
async def client(
    test_settings: Settings, database: Database, gateway: MpesaClient
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(test_settings, database=database, gateway=gateway)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def customer_headers(auth_service: AuthService, customer: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {auth_service.create_access_token(customer)}"}


@pytest.fixture
def other_headers(auth_service: AuthService, other_customer: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {auth_service.create_access_token(other_customer)}"}


@pytest.fixture
def admin_headers(auth_service: AuthService, admin: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {auth_service.create_access_token(admin)}"}


class TestAuthApi:
    async def test_register_login_refresh(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/auth/register",
            json={"name": "Amina", "email": "amina@example.com", "password": "pa55word"},
        )
        assert response.status_code == 201

        response = await client.post(
            "/api/v1/auth/login", json={"email": "amina@example.com", "password": "pa55word"}
        )
        assert response.status_code == 200
        tokens = response.json()
        assert tokens["token_type"] == "bearer"

        response = await client.post(
            "/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert response.status_code == 200
        assert response.json()["refresh_token"] != tokens["refresh_token"]

    async def test_bad_login(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/auth/login", json={"email": "nobody@example.com", "password": "x"}
        )
        assert response.status_code == 401
        assert response.json() == {
            "status": "error",
            "error": {"code": "INVALID_CREDENTIALS", "message": "Invalid credentials"},
        }

    async def test_orders_require_token(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/orders")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "TOKEN_REQUIRED"


class TestOrderApi:
    async def test_create_order(
        self, client: AsyncClient, customer_headers: Dict[str, str], daraja: FakeDaraja
    ) -> None:
        response = await client.post("/api/v1/orders", json=ORDER_BODY, headers=customer_headers)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "success"
        assert body["message"] == "Order created successfully"
        assert body["data"]["status"] == "PENDING"
        assert body["data"]["total_amount"] == "1000.00"
        assert body["data"]["payment_status"] == "initiated"
        assert len(body["data"]["status_history"]) == 1
        assert body["payment"]["checkout_request_id"] == CHECKOUT_ID
        assert body["payment_error"] is None

    async def test_total_mismatch(
        self, client: AsyncClient, customer_headers: Dict[str, str]
    ) -> None:
        response = await client.post(
            "/api/v1/orders", json={**ORDER_BODY, "total": "1200.00"}, headers=customer_headers
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "TOTAL_MISMATCH"
        assert error["details"]["server_total"] == "1000.00"

    async def test_malformed_body(
        self, client: AsyncClient, customer_headers: Dict[str, str]
    ) -> None:
        response = await client.post(
            "/api/v1/orders", json={"items": "nope"}, headers=customer_headers
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_order_visibility(
        self,
        client: AsyncClient,
        customer_headers: Dict[str, str],
        other_headers: Dict[str, str],
        admin_headers: Dict[str, str],
    ) -> None:
        created = await client.post("/api/v1/orders", json=ORDER_BODY, headers=customer_headers)
        order = created.json()["data"]

        own = await client.get(f"/api/v1/orders/{order['id']}", headers=customer_headers)
        assert own.status_code == 200

        tracked = await client.get(
            f"/api/v1/orders/track/{order['order_number']}", headers=customer_headers
        )
        assert tracked.json()["data"]["id"] == order["id"]

        foreign = await client.get(f"/api/v1/orders/{order['id']}", headers=other_headers)
        assert foreign.status_code == 404

        listing = await client.get("/api/v1/orders", headers=other_headers)
        assert listing.json()["pagination"]["total"] == 0

        everyone = await client.get("/api/v1/orders/admin/all", headers=admin_headers)
        assert everyone.json()["pagination"]["total"] == 1

    async def test_admin_routes_require_admin(
        self, client: AsyncClient, customer_headers: Dict[str, str]
    ) -> None:
        response = await client.get("/api/v1/orders/admin/stats", headers=customer_headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ADMIN_REQUIRED"

    async def test_admin_status_update_and_cancel_guard(
        self,
        client: AsyncClient,
        customer_headers: Dict[str, str],
        admin_headers: Dict[str, str],
    ) -> None:
        created = await client.post(
            "/api/v1/orders",
            json={**ORDER_BODY, "payment": {"method": "cod"}},
            headers=customer_headers,
        )
        order_id = created.json()["data"]["id"]

        bad = await client.patch(
            f"/api/v1/orders/admin/{order_id}/status",
            json={"status": "SHIPPED"},
            headers=admin_headers,
        )
        assert bad.status_code == 400
        assert bad.json()["error"]["code"] == "INVALID_TRANSITION"

        for status in ("CONFIRMED", "PROCESSING", "SHIPPED"):
            response = await client.patch(
                f"/api/v1/orders/admin/{order_id}/status",
                json={"status": status},
                headers=admin_headers,
            )
            assert response.status_code == 200
            assert response.json()["data"]["status"] == status

        cancel = await client.patch(f"/api/v1/orders/{order_id}/cancel", headers=customer_headers)
        assert cancel.status_code == 400
        assert cancel.json()["error"]["code"] == "CANNOT_CANCEL"

        stats = await client.get("/api/v1/orders/admin/stats", headers=admin_headers)
        assert stats.json()["total_orders"] == 1


class TestPaymentApi:
    async def test_callback_confirms_order(
        self, client: AsyncClient, customer_headers: Dict[str, str]
    ) -> None:
        created = await client.post("/api/v1/orders", json=ORDER_BODY, headers=customer_headers)
        order_id = created.json()["data"]["id"]
        payment_id = created.json()["payment"]["payment_id"]

        response = await client.post("/api/v1/payments/mpesa/callback", json=stk_callback())

        assert response.status_code == 200
        assert response.json() == {
            "ResultCode": 0,
            "ResultDesc": "Callback processed successfully",
        }
        order = await client.get(f"/api/v1/orders/{order_id}", headers=customer_headers)
        assert order.json()["data"]["status"] == "CONFIRMED"

        payment = await client.get(
            f"/api/v1/payments/{payment_id}/status", headers=customer_headers
        )
        assert payment.json()["status"] == "completed"
        assert payment.json()["order_status"] == "CONFIRMED"

    async def test_callback_always_acknowledged(self, client: AsyncClient) -> None:
        unknown = await client.post(
            "/api/v1/payments/mpesa/callback",
            json=stk_callback(checkout_request_id="ws_CO_unknown"),
        )
        assert unknown.status_code == 200
        assert unknown.json() == {
            "ResultCode": 0,
            "ResultDesc": "Callback received but processing failed",
        }

        malformed = await client.post("/api/v1/payments/mpesa/callback", json={"hello": "world"})
        assert malformed.status_code == 200
        assert malformed.json() == {"ResultCode": 0, "ResultDesc": "Callback received"}

        not_json = await client.post(
            "/api/v1/payments/mpesa/callback",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )
        assert not_json.status_code == 200
        assert not_json.json()["ResultCode"] == 0

    async def test_test_callback_simulates_success(
        self, client: AsyncClient, customer_headers: Dict[str, str]
    ) -> None:
        await client.post("/api/v1/orders", json=ORDER_BODY, headers=customer_headers)

        response = await client.post(
            "/api/v1/payments/mpesa/test-callback",
            json={"checkout_request_id": CHECKOUT_ID, "result_code": 0},
        )

        assert response.status_code == 200
        assert response.json()["data"]["payment_success"] is True

    async def test_test_callback_hidden_in_production(
        self, test_settings: Settings, database: Database, gateway: MpesaClient
    ) -> None:
        app = create_app(
            test_settings.model_copy(update={"app_env": "production"}),
            database=database,
            gateway=gateway,
        )
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.post("/api/v1/payments/mpesa/test-callback", json={})
        assert response.status_code == 404

    async def test_mpesa_status_query(
        self, client: AsyncClient, customer_headers: Dict[str, str]
    ) -> None:
        await client.post("/api/v1/orders", json=ORDER_BODY, headers=customer_headers)

        response = await client.get(
            f"/api/v1/payments/mpesa/{CHECKOUT_ID}/status", headers=customer_headers
        )

        assert response.status_code == 200
        assert response.json()["result_code"] == 0


class TestMonitoringApi:
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["mpesa"]["environment"] == "sandbox"

    async def test_readiness_fails_without_mpesa_config(
        self, test_settings: Settings, database: Database
    ) -> None:
        settings = test_settings.model_copy(update={"mpesa_passkey": None})
        app = create_app(settings, database=database, gateway=MpesaClient(settings))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get("/health/ready")
        assert response.status_code == 503
        assert response.json()["checks"]["mpesa"]["status"] == "unhealthy"

    async def test_metrics(self, client: AsyncClient) -> None:
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "orders_created_total" in response.text

    async def test_request_id_header(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")
        assert response.json()["status"] == "alive"
        assert "X-Request-ID" in response.headers
