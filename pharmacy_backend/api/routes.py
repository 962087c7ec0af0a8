"""
API routes for orders, payments and authentication.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from pharmacy_backend.core.auth_service import AuthService, CurrentUser, TokenPair
from pharmacy_backend.core.order_service import (
    CartItem,
    OrderCreationResult,
    OrderPage,
    OrderService,
)
from pharmacy_backend.core.payment_processor import PaymentProcessor
from pharmacy_backend.core.reconciliation import CallbackReconciler
from pharmacy_backend.database.models import Payment
from pharmacy_backend.domain.enums import OrderStatus
from pharmacy_backend.domain.errors import NotFoundError
from pharmacy_backend.monitoring.health import HealthCheck

from .dependencies import (
    get_auth_service,
    get_callback_reconciler,
    get_current_user,
    get_health_check,
    get_order_service,
    get_payment_processor,
    require_admin,
)
from .schemas import (
    CallbackAck,
    CreateOrderRequest,
    HealthCheckResponse,
    LoginRequest,
    MpesaStatusResponse,
    OrderCreatedResponse,
    OrderDetailResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatsResponse,
    Pagination,
    PaymentResponse,
    PaymentResultResponse,
    RefreshRequest,
    RegisterRequest,
    RetryOrderPaymentRequest,
    TestCallbackRequest,
    TokenResponse,
    UpdateOrderStatusRequest,
    UserResponse,
)

logger = structlog.get_logger(__name__)

auth_router = APIRouter(prefix="/api/v1/auth", tags=["auth"])
order_router = APIRouter(prefix="/api/v1/orders", tags=["orders"])
payment_router = APIRouter(prefix="/api/v1/payments", tags=["payments"])
monitoring_router = APIRouter(tags=["monitoring"])


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        user=UserResponse(**pair.user),
    )


def _order_list(page: OrderPage) -> OrderListResponse:
    return OrderListResponse(
        data=[OrderResponse.model_validate(order) for order in page.orders],
        pagination=Pagination(
            total=page.total,
            page=page.page,
            limit=page.limit,
            total_pages=page.total_pages,
        ),
    )


def _order_created(result: OrderCreationResult, message: str) -> OrderCreatedResponse:
    return OrderCreatedResponse(
        data=OrderResponse.model_validate(result.order),
        payment=PaymentResultResponse(**result.payment.to_dict()) if result.payment else None,
        payment_error=result.payment_error,
        message=message,
    )


def _payment_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        order_id=payment.order_id,
        order_number=payment.order.order_number,
        order_status=payment.order.status,
        method=payment.method,
        amount=payment.amount,
        status=payment.status,
        provider_transaction_id=payment.provider_transaction_id,
        failure_reason=payment.failure_reason,
        completed_at=payment.completed_at,
        created_at=payment.created_at,
        updated_at=payment.updated_at,
    )


# Auth


@auth_router.post(
    "/register",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a customer account",
)
async def register(
    request: RegisterRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    return await auth_service.register(request.name, request.email, request.password)


@auth_router.post("/login", response_model=TokenResponse, summary="Log in")
async def login(
    request: LoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    return _token_response(await auth_service.login(request.email, request.password))


@auth_router.post("/refresh", response_model=TokenResponse, summary="Rotate refresh token")
async def refresh(
    request: RefreshRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    return _token_response(await auth_service.refresh(request.refresh_token))


@auth_router.post("/logout", status_code=status.HTTP_204_NO_CONTENT, summary="Revoke refresh token")
async def logout(
    request: RefreshRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> Response:
    await auth_service.logout(request.refresh_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Orders


@order_router.post(
    "",
    response_model=OrderCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description=(
        "Validates the cart against current catalog prices and starts payment. "
        "The total must be the products total only, delivery fees excluded."
    ),
)
async def create_order(
    request: CreateOrderRequest,
    user: CurrentUser = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service),
) -> OrderCreatedResponse:
    logger.info(
        "api_create_order_request",
        user_id=user.id,
        item_count=len(request.items),
        payment_method=request.payment.method,
    )
    result = await order_service.create_order(
        user_id=user.id,
        items=[CartItem(product_id=i.product_id, quantity=i.quantity) for i in request.items],
        shipping_info=request.shipping.model_dump(exclude_none=True),
        payment=request.payment.model_dump(),
        client_total=request.total,
    )
    return _order_created(result, "Order created successfully")


@order_router.get("", response_model=OrderListResponse, summary="List my orders")
async def list_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    user: CurrentUser = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    return _order_list(
        await order_service.list_user_orders(user.id, page=page, limit=limit, status=order_status)
    )


@order_router.get("/admin/all", response_model=OrderListResponse, summary="List all orders")
async def list_all_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    admin: CurrentUser = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    return _order_list(
        await order_service.list_all_orders(page=page, limit=limit, status=order_status)
    )


@order_router.get("/admin/stats", response_model=OrderStatsResponse, summary="Order statistics")
async def order_stats(
    admin: CurrentUser = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    return await order_service.get_order_stats()


@order_router.get(
    "/admin/awaiting-payment",
    response_model=OrderListResponse,
    summary="Pending orders without a usable payment",
)
async def orders_awaiting_payment(
    limit: int = Query(default=100, ge=1, le=500),
    admin: CurrentUser = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    orders = await order_service.list_orders_awaiting_payment(limit=limit)
    return _order_list(OrderPage(orders=orders, total=len(orders), page=1, limit=limit))


@order_router.patch(
    "/admin/{order_id}/status",
    response_model=OrderDetailResponse,
    summary="Change order status",
)
async def update_order_status(
    order_id: str,
    request: UpdateOrderStatusRequest,
    admin: CurrentUser = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service),
) -> OrderDetailResponse:
    order = await order_service.update_order_status(
        order_id, request.status, changed_by=admin.id, notes=request.notes
    )
    return OrderDetailResponse(
        data=OrderResponse.model_validate(order),
        message="Order status updated successfully",
    )


@order_router.get("/track/{order_number}", response_model=OrderDetailResponse, summary="Track order")
async def track_order(
    order_number: str,
    user: CurrentUser = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service),
) -> OrderDetailResponse:
    order = await order_service.get_order_by_number(order_number, user)
    return OrderDetailResponse(data=OrderResponse.model_validate(order))


@order_router.get("/{order_id}", response_model=OrderDetailResponse, summary="Get order")
async def get_order(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service),
) -> OrderDetailResponse:
    order = await order_service.get_order(order_id, user)
    return OrderDetailResponse(data=OrderResponse.model_validate(order))


@order_router.patch("/{order_id}/cancel", response_model=OrderDetailResponse, summary="Cancel order")
async def cancel_order(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service),
) -> OrderDetailResponse:
    order = await order_service.cancel_order(order_id, user)
    return OrderDetailResponse(
        data=OrderResponse.model_validate(order),
        message="Order cancelled successfully",
    )


@order_router.post(
    "/{order_id}/payment",
    response_model=OrderCreatedResponse,
    summary="Retry payment for an order awaiting payment",
)
async def retry_order_payment(
    order_id: str,
    request: RetryOrderPaymentRequest,
    user: CurrentUser = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service),
) -> OrderCreatedResponse:
    payment = request.payment.model_dump() if request.payment else None
    result = await order_service.retry_order_payment(order_id, user, payment)
    return _order_created(result, "Payment retried")


# Payments


@payment_router.post(
    "/mpesa/callback",
    response_model=CallbackAck,
    summary="M-Pesa STK callback",
    description="Unauthenticated. Always answers 200 so Safaricom does not retry.",
)
async def mpesa_callback(
    request: Request,
    reconciler: CallbackReconciler = Depends(get_callback_reconciler),
) -> CallbackAck:
    try:
        payload = await request.json()
        result = await reconciler.handle_callback(payload)
    except Exception as e:
        # Acknowledge regardless of outcome
        logger.error(
            "mpesa_callback_processing_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        return CallbackAck(ResultDesc="Callback received")

    if result.get("success"):
        return CallbackAck(ResultDesc="Callback processed successfully")
    logger.error("mpesa_callback_processing_failed", message=result.get("message"))
    return CallbackAck(ResultDesc="Callback received but processing failed")


@payment_router.post(
    "/mpesa/test-callback",
    summary="Simulate an M-Pesa callback (non-production only)",
)
async def mpesa_test_callback(
    request: TestCallbackRequest,
    http_request: Request,
    reconciler: CallbackReconciler = Depends(get_callback_reconciler),
) -> Dict[str, Any]:
    if http_request.app.state.settings.is_production:
        raise NotFoundError("Not found")

    callback: Dict[str, Any] = {
        "MerchantRequestID": "test-merchant-123",
        "CheckoutRequestID": request.checkout_request_id,
        "ResultCode": request.result_code,
        "ResultDesc": request.result_desc or "The service request is processed successfully.",
    }
    if request.result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": 100},
                {"Name": "MpesaReceiptNumber", "Value": "TEST123456"},
                {"Name": "TransactionDate", "Value": 20241230100000},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    result = await reconciler.handle_callback({"Body": {"stkCallback": callback}})
    return {"status": "success", "data": result, "message": "Test callback processed"}


@payment_router.get(
    "/mpesa/{checkout_request_id}/status",
    response_model=MpesaStatusResponse,
    summary="Query Daraja for an STK push status",
)
async def mpesa_status(
    checkout_request_id: str,
    user: CurrentUser = Depends(get_current_user),
    payment_processor: PaymentProcessor = Depends(get_payment_processor),
) -> MpesaStatusResponse:
    result = await payment_processor.query_mpesa_status(checkout_request_id, user)
    return MpesaStatusResponse(
        checkout_request_id=result.checkout_request_id,
        response_code=result.response_code,
        result_code=result.result_code,
        result_desc=result.result_desc,
    )


@payment_router.get("/{payment_id}/status", response_model=PaymentResponse, summary="Payment status")
async def payment_status(
    payment_id: str,
    user: CurrentUser = Depends(get_current_user),
    payment_processor: PaymentProcessor = Depends(get_payment_processor),
) -> PaymentResponse:
    return _payment_response(await payment_processor.get_payment(payment_id, user))


@payment_router.post(
    "/{payment_id}/retry",
    response_model=PaymentResultResponse,
    summary="Retry a failed payment",
)
async def retry_payment(
    payment_id: str,
    user: CurrentUser = Depends(get_current_user),
    payment_processor: PaymentProcessor = Depends(get_payment_processor),
) -> PaymentResultResponse:
    result = await payment_processor.retry_payment(payment_id, user)
    return PaymentResultResponse(**result.to_dict())


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check health of all system dependencies",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Any:
    result = await health_check.check_all()
    if result["status"] != "healthy":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get("/health/live", summary="Liveness check")
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get("/health/ready", summary="Readiness check")
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Any:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
