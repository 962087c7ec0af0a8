"""FastAPI dependencies: services built at startup and the bearer-token user."""
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pharmacy_backend.core.auth_service import AuthService, CurrentUser
from pharmacy_backend.core.order_service import OrderService
from pharmacy_backend.core.payment_processor import PaymentProcessor
from pharmacy_backend.core.reconciliation import CallbackReconciler
from pharmacy_backend.domain.errors import AuthenticationError, AuthzError
from pharmacy_backend.monitoring.health import HealthCheck

bearer_scheme = HTTPBearer(auto_error=False)


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


def get_payment_processor(request: Request) -> PaymentProcessor:
    return request.app.state.payment_processor


def get_callback_reconciler(request: Request) -> CallbackReconciler:
    return request.app.state.callback_reconciler


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> CurrentUser:
    """Decode the bearer access token."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Access token required", code="TOKEN_REQUIRED")
    return auth_service.decode_access_token(credentials.credentials)


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise AuthzError("Admin access required", code="ADMIN_REQUIRED")
    return user
