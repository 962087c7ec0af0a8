"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from pharmacy_backend.domain.enums import OrderStatus, PaymentMethod, PaymentStatus


# Auth


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=6, max_length=128)


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    is_admin: bool


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: UserResponse


# Orders


class CartItemRequest(BaseModel):
    product_id: int = Field(..., description="Catalog product id")
    quantity: int = Field(..., description="Units ordered, at least 1")


class ShippingInfo(BaseModel):
    """Delivery address snapshot; extra fields are kept as sent."""

    full_name: str = Field(..., description="Recipient name")
    address: str = Field(..., description="Street address")
    city: Optional[str] = None
    phone: Optional[str] = None
    postal_code: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class PaymentInfo(BaseModel):
    method: str = Field(..., description="mpesa, card or cod")
    phone: Optional[str] = Field(default=None, description="M-Pesa phone number")


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    items: List[CartItemRequest]
    shipping: ShippingInfo
    payment: PaymentInfo
    total: Decimal = Field(..., description="Products total, delivery fees excluded")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
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
            ]
        }
    }


class RetryOrderPaymentRequest(BaseModel):
    payment: Optional[PaymentInfo] = None


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus
    notes: Optional[str] = Field(default=None, max_length=1000)


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: Optional[int]
    product_name: str
    unit_price: Decimal
    quantity: int
    subtotal: Decimal
    product_snapshot: Dict[str, Any]


class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: OrderStatus
    changed_by: Optional[int]
    notes: Optional[str]
    created_at: datetime


class OrderResponse(BaseModel):
    """Order with its line items and status history."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    user_id: int
    status: OrderStatus
    total_amount: Decimal
    shipping_info: Dict[str, Any]
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    estimated_delivery: datetime
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse]
    status_history: List[StatusHistoryResponse]


class PaymentResultResponse(BaseModel):
    success: bool
    payment_id: str
    method: PaymentMethod
    status: PaymentStatus
    message: str
    checkout_request_id: Optional[str] = None
    customer_message: Optional[str] = None
    requires_delivery_payment: bool = False


class OrderCreatedResponse(BaseModel):
    status: str = "success"
    data: OrderResponse
    payment: Optional[PaymentResultResponse] = None
    payment_error: Optional[str] = None
    message: str = "Order created successfully"


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class OrderListResponse(BaseModel):
    status: str = "success"
    data: List[OrderResponse]
    pagination: Pagination


class OrderDetailResponse(BaseModel):
    status: str = "success"
    data: OrderResponse
    message: Optional[str] = None


class OrderStatsResponse(BaseModel):
    total_orders: int
    pending_orders: int
    delivered_orders: int
    total_revenue: Decimal
    today_orders: int


# Payments


class PaymentResponse(BaseModel):
    """Payment record as shown to its owner."""

    id: UUID
    order_id: UUID
    order_number: str
    order_status: OrderStatus
    method: PaymentMethod
    amount: Decimal
    status: PaymentStatus
    provider_transaction_id: Optional[str]
    failure_reason: Optional[str]
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class MpesaStatusResponse(BaseModel):
    checkout_request_id: str
    response_code: Optional[str]
    result_code: Optional[int]
    result_desc: Optional[str]


class CallbackAck(BaseModel):
    """Acknowledgment Safaricom expects for every callback."""

    ResultCode: int = 0
    ResultDesc: str


class TestCallbackRequest(BaseModel):
    checkout_request_id: str = "test-checkout-123"
    result_code: int = 0
    result_desc: Optional[str] = None


# Monitoring


class HealthCheckResponse(BaseModel):
    status: str = Field(..., description="Overall health status")
    checks: Dict[str, Any] = Field(..., description="Individual service checks")
