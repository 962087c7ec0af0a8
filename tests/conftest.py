"""
Pytest configuration and fixtures.
"""
import json
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Type

import httpx
import pytest
import pytest_asyncio

from pharmacy_backend.config import Settings
from pharmacy_backend.core.auth_service import AuthService, CurrentUser, hash_password
from pharmacy_backend.core.order_service import CartItem, OrderService
from pharmacy_backend.core.payment_processor import PaymentProcessor
from pharmacy_backend.core.reconciliation import CallbackReconciler
from pharmacy_backend.database.connection import Database
from pharmacy_backend.database.models import Product, User
from pharmacy_backend.integrations.mpesa_client import CircuitBreaker, MpesaClient

CHECKOUT_ID = "ws_CO_16102026101500123456"


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'pharmacy_test.db'}",
        mpesa_consumer_key="test-consumer-key",
        mpesa_consumer_secret="test-consumer-secret",
        mpesa_business_shortcode="174379",
        mpesa_passkey="test-passkey",
        mpesa_callback_url="https://pharmacy.test/api/v1/payments/mpesa/callback",
        mpesa_environment="sandbox",
        mpesa_max_retries=3,
        jwt_secret="test-secret",
        bcrypt_rounds=4,
        app_name="pharmacy-backend-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, Any]:
    """Fresh SQLite database file with all tables."""
    db = Database(test_settings.database_url)
    await db.create_all()
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def customer(database: Database) -> User:
    async with database.transaction() as session:
        user = User(
            name="Jane Wanjiku",
            email="jane@example.com",
            password_hash=hash_password("secret123", rounds=4),
        )
        session.add(user)
    return user


@pytest_asyncio.fixture
async def other_customer(database: Database) -> User:
    async with database.transaction() as session:
        user = User(
            name="Otieno Ouma",
            email="otieno@example.com",
            password_hash=hash_password("secret123", rounds=4),
        )
        session.add(user)
    return user


@pytest_asyncio.fixture
async def admin(database: Database) -> User:
    async with database.transaction() as session:
        user = User(
            name="Admin",
            email="admin@example.com",
            password_hash=hash_password("admin123", rounds=4),
            is_admin=True,
        )
        session.add(user)
    return user


@pytest_asyncio.fixture
async def products(database: Database) -> Dict[int, Product]:
    """Catalog: product 7 costs 500.00, product 8 costs 199.99."""
    async with database.transaction() as session:
        items = [
            Product(id=7, name="Paracetamol 500mg", price=Decimal("500.00"), category="Pain relief"),
            Product(id=8, name="Vitamin C 1000mg", price=Decimal("199.99"), category="Supplements"),
        ]
        session.add_all(items)
    return {p.id: p for p in items}


@pytest.fixture
def as_user() -> Callable[[User], CurrentUser]:
    def _as_user(user: User) -> CurrentUser:
        return CurrentUser(id=user.id, email=user.email, is_admin=user.is_admin)

    return _as_user


class FakeDaraja:
    """
    Scripted Daraja endpoints for httpx.MockTransport.

    Queued responses are consumed per path suffix; without one the default
    success body is returned.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.queued: Dict[str, List[httpx.Response]] = {}
        self.errors: Dict[str, List[Type[httpx.TransportError]]] = {}
        self.checkout_request_id = CHECKOUT_ID
        self.query_result: Dict[str, Any] = {
            "ResponseCode": "0",
            "ResultCode": "0",
            "ResultDesc": "The service request is processed successfully.",
        }

    def queue(self, path: str, status_code: int, body: Optional[Dict[str, Any]] = None) -> None:
        self.queued.setdefault(path, []).append(httpx.Response(status_code, json=body))

    def fail(self, path: str, error: Type[httpx.TransportError]) -> None:
        """Raise a transport error on the next request to path."""
        self.errors.setdefault(path, []).append(error)

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path)]

    def last_json(self, path: str) -> Dict[str, Any]:
        return json.loads(self.calls(path)[-1].content)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for path, errors in self.errors.items():
            if request.url.path.endswith(path) and errors:
                raise errors.pop(0)("simulated transport failure", request=request)
        for path, responses in self.queued.items():
            if request.url.path.endswith(path) and responses:
                return responses.pop(0)

        if request.url.path.endswith("/oauth/v1/generate"):
            return httpx.Response(200, json={"access_token": "test-token", "expires_in": "3599"})
        if request.url.path.endswith("/stkpush/v1/processrequest"):
            return httpx.Response(
                200,
                json={
                    "MerchantRequestID": "29115-34620561-1",
                    "CheckoutRequestID": self.checkout_request_id,
                    "ResponseCode": "0",
                    "ResponseDescription": "Success. Request accepted for processing",
                    "CustomerMessage": "Success. Request accepted for processing",
                },
            )
        if request.url.path.endswith("/stkpushquery/v1/query"):
            return httpx.Response(
                200,
                json={
                    "MerchantRequestID": "29115-34620561-1",
                    "CheckoutRequestID": json.loads(request.content)["CheckoutRequestID"],
                    **self.query_result,
                },
            )
        return httpx.Response(404, json={"errorMessage": "Unknown endpoint"})


@pytest.fixture
def daraja() -> FakeDaraja:
    return FakeDaraja()


@pytest_asyncio.fixture
async def gateway(test_settings: Settings, daraja: FakeDaraja) -> AsyncGenerator[MpesaClient, Any]:
    """M-Pesa client wired to the scripted Daraja, without backoff delays."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(daraja))
    client = MpesaClient(
        test_settings,
        http_client=http_client,
        circuit_breaker=CircuitBreaker(failure_threshold=50),
        retry_backoff=0,
    )
    yield client
    await http_client.aclose()


@pytest.fixture
def payment_processor(
    database: Database, gateway: MpesaClient, test_settings: Settings
) -> PaymentProcessor:
    return PaymentProcessor(database, gateway, test_settings)


@pytest.fixture
def order_service(
    database: Database, payment_processor: PaymentProcessor, test_settings: Settings
) -> OrderService:
    return OrderService(database, payment_processor, test_settings)


@pytest.fixture
def reconciler(database: Database) -> CallbackReconciler:
    return CallbackReconciler(database)


@pytest.fixture
def auth_service(database: Database, test_settings: Settings) -> AuthService:
    return AuthService(database, test_settings)


@pytest.fixture
def shipping() -> Dict[str, Any]:
    return {
        "full_name": "Jane Wanjiku",
        "address": "12 Moi Avenue",
        "city": "Nairobi",
        "phone": "0712345678",
    }


@pytest.fixture
def two_paracetamol() -> List[CartItem]:
    return [CartItem(product_id=7, quantity=2)]


def stk_callback(
    checkout_request_id: str = CHECKOUT_ID,
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    receipt: str = "QKJ4ABCDEF",
) -> Dict[str, Any]:
    """Daraja callback body."""
    callback: Dict[str, Any] = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": 1000.0},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20261016101530},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}
