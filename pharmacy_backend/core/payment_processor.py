"""
Payment orchestrator.

Dispatches a payment request for a persisted order to one of three
strategies:
1. M-Pesa STK push: payment row committed as pending, gateway called,
   outcome written in a second transaction
2. Cash on delivery: payment row in pending_delivery, no gateway call
3. Card: not implemented, fails fast

The order's payment_status mirrors the payment it is currently tracking.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from pharmacy_backend.config import Settings, get_settings
from pharmacy_backend.database.connection import Database
from pharmacy_backend.database.models import Order, Payment, as_utc, utcnow
from pharmacy_backend.database.repositories import OrderRepository, PaymentRepository
from pharmacy_backend.domain.enums import OrderStatus, PaymentMethod, PaymentStatus
from pharmacy_backend.domain.errors import (
    AuthzError,
    ConflictError,
    NotFoundError,
    PharmacyError,
    UpstreamError,
    ValidationError,
)
from pharmacy_backend.integrations.mpesa_client import (
    UNCONFIRMED_CODE,
    MpesaClient,
    StkQueryResult,
    normalize_phone_number,
)
from pharmacy_backend.monitoring.metrics import metrics

from .auth_service import CurrentUser

logger = structlog.get_logger(__name__)

MPESA_INITIATED_MESSAGE = "Payment initiated. Please check your phone and enter your M-Pesa PIN."
COD_MESSAGE = "Order confirmed. Payment will be collected on delivery."
UNCONFIRMED_MESSAGE = (
    "M-Pesa did not confirm the payment request. If no prompt reaches your phone, "
    "retry the payment in a few minutes."
)
ABANDONED_REASON = "Payment initiation did not complete"
PAYMENT_NOTE_LIMIT = 200


def payment_failure_note(message: str) -> str:
    if len(message) > PAYMENT_NOTE_LIMIT:
        message = message[:PAYMENT_NOTE_LIMIT] + "..."
    return f"Payment failed: {message}"


def is_abandoned(payment: Payment, cutoff: datetime) -> bool:
    """M-Pesa payment still pending without a CheckoutRequestID since before cutoff."""
    return (
        payment.method is PaymentMethod.MPESA
        and payment.status is PaymentStatus.PENDING
        and payment.provider_transaction_id is None
        and as_utc(payment.created_at) < cutoff
    )


def abandon_payment(payment: Payment, reason: str = ABANDONED_REASON) -> None:
    """
    Fail a locked payment whose initiation never completed.

    The order stays PENDING and becomes retryable.
    """
    payment.status = PaymentStatus.FAILED
    payment.failure_reason = reason
    payment.provider_metadata = {
        **(payment.provider_metadata or {}),
        "abandoned_at": utcnow().isoformat(),
    }
    payment.order.payment_status = PaymentStatus.FAILED
    if payment.order.status is OrderStatus.PENDING:
        payment.order.notes = payment_failure_note(reason)


@dataclass
class PaymentRequest:
    """Client-supplied payment instructions."""

    method: PaymentMethod
    phone: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentRequest":
        return cls(method=PaymentMethod.parse(data.get("method")), phone=data.get("phone"))


@dataclass
class PaymentResult:
    """Outcome reported back to the customer."""

    success: bool
    payment_id: uuid.UUID
    method: PaymentMethod
    status: PaymentStatus
    message: str
    checkout_request_id: Optional[str] = None
    customer_message: Optional[str] = None
    requires_delivery_payment: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "payment_id": str(self.payment_id),
            "method": self.method.value,
            "status": self.status.value,
            "message": self.message,
            "checkout_request_id": self.checkout_request_id,
            "customer_message": self.customer_message,
            "requires_delivery_payment": self.requires_delivery_payment,
        }


def ensure_can_view(payment_owner_id: int, user: CurrentUser) -> None:
    if not user.is_admin and payment_owner_id != user.id:
        raise AuthzError("Not allowed to access this payment")


class PaymentProcessor:
    """
    Main payment processing orchestrator.

    Holds the invariant that an order has at most one payment in a
    non-terminal status.
    """

    def __init__(
        self,
        database: Database,
        gateway: MpesaClient,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize payment processor.

        Args:
            database: Injected database
            gateway: M-Pesa client
            settings: Application settings
        """
        self.database = database
        self.gateway = gateway
        self.settings = settings or get_settings()

        logger.info("payment_processor_initialized")

    def abandoned_cutoff(self, now: Optional[datetime] = None) -> datetime:
        """Pending M-Pesa payments created before this never got an answer."""
        return (now or utcnow()) - timedelta(minutes=self.settings.stale_payment_minutes)

    async def process_payment(self, request: PaymentRequest, order: Order) -> PaymentResult:
        """
        Start payment for a committed order.

        Args:
            request: Method and, for M-Pesa, the payer's phone
            order: Persisted order

        Returns:
            PaymentResult: Client-facing outcome

        Raises:
            ValidationError: NOT_IMPLEMENTED, PHONE_REQUIRED or invalid input
            UpstreamError: CONFIG_INCOMPLETE or gateway failure
            ConflictError: PAYMENT_IN_PROGRESS
        """
        logger.info(
            "payment_processing_started",
            order_id=str(order.id),
            order_number=order.order_number,
            method=request.method.value,
        )

        if request.method is PaymentMethod.MPESA:
            return await self._process_mpesa(request, order)
        if request.method is PaymentMethod.COD:
            return await self._process_cod(order)
        if request.method is PaymentMethod.CARD:
            metrics.record_payment_initiation("card", "failed", float(order.total_amount))
            raise ValidationError("Card payment not yet implemented", code="NOT_IMPLEMENTED")
        raise ValidationError(f"Unsupported payment method: {request.method.value}")

    async def _create_payment(
        self,
        order_id: uuid.UUID,
        method: PaymentMethod,
        amount: Decimal,
        status: PaymentStatus,
        provider_metadata: Dict[str, Any],
    ) -> Payment:
        """Commit a new payment row and mirror its status on the order."""
        async with self.database.transaction() as session:
            order = await OrderRepository(session).get(order_id, for_update=True)
            if order is None:
                raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")

            payments = PaymentRepository(session)
            active = await payments.active_for_order(order.id)
            if active is not None and is_abandoned(active, self.abandoned_cutoff()):
                abandon_payment(active)
                logger.warning(
                    "abandoned_payment_superseded",
                    payment_id=str(active.id),
                    order_id=str(order.id),
                )
                active = None
            if active is not None:
                raise ConflictError(
                    "A payment for this order is already in progress",
                    code="PAYMENT_IN_PROGRESS",
                    details={"payment_id": str(active.id), "status": active.status.value},
                )

            payment = await payments.add(
                Payment(
                    order_id=order.id,
                    method=method,
                    amount=amount,
                    status=status,
                    provider_metadata=provider_metadata,
                )
            )
            order.payment_status = status

        logger.info(
            "payment_record_created",
            payment_id=str(payment.id),
            order_id=str(order_id),
            status=status.value,
        )
        return payment

    async def _process_mpesa(self, request: PaymentRequest, order: Order) -> PaymentResult:
        missing = self.gateway.validate_configuration()
        if missing:
            metrics.record_payment_initiation("mpesa", "failed", float(order.total_amount))
            raise UpstreamError(
                "M-Pesa configuration is incomplete",
                code="CONFIG_INCOMPLETE",
                details={"missing": missing},
            )
        if not request.phone:
            raise ValidationError(
                "Phone number is required for M-Pesa payment", code="PHONE_REQUIRED"
            )
        phone = normalize_phone_number(request.phone)

        payment = await self._create_payment(
            order.id,
            PaymentMethod.MPESA,
            order.total_amount,
            PaymentStatus.PENDING,
            {"phone_number": phone, "order_number": order.order_number},
        )

        try:
            ack = await self.gateway.initiate_stk_push(
                phone_number=phone,
                amount=order.total_amount,
                account_reference=order.order_number,
                description=f"Payment for order {order.order_number}",
            )
        except PharmacyError as e:
            if e.code == UNCONFIRMED_CODE:
                await self._mark_unconfirmed(payment.id, e.message)
                metrics.record_payment_initiation("mpesa", "unconfirmed", float(order.total_amount))
                logger.warning(
                    "stk_push_unconfirmed",
                    payment_id=str(payment.id),
                    order_number=order.order_number,
                    error=e.message,
                )
                raise UpstreamError(
                    UNCONFIRMED_MESSAGE,
                    code=UNCONFIRMED_CODE,
                    details={"payment_id": str(payment.id)},
                ) from e
            await self._mark_failed(payment.id, e.message, {"error_code": e.code})
            metrics.record_payment_initiation("mpesa", "failed", float(order.total_amount))
            logger.error(
                "mpesa_payment_failed",
                payment_id=str(payment.id),
                order_number=order.order_number,
                error_code=e.code,
                error=e.message,
            )
            raise
        except Exception as e:
            await self._mark_failed(
                payment.id,
                "Failed to initiate M-Pesa payment",
                {"error_code": "PAYMENT_INITIATION_FAILED", "error_type": e.__class__.__name__},
            )
            metrics.record_payment_initiation("mpesa", "failed", float(order.total_amount))
            logger.exception(
                "mpesa_payment_crashed",
                payment_id=str(payment.id),
                order_number=order.order_number,
            )
            raise UpstreamError(
                "Failed to initiate M-Pesa payment", code="PAYMENT_INITIATION_FAILED"
            ) from e

        status = PaymentStatus.INITIATED if ack.accepted else PaymentStatus.FAILED
        async with self.database.transaction() as session:
            stored = await PaymentRepository(session).get(payment.id, for_update=True)
            stored.status = status
            stored.provider_transaction_id = ack.checkout_request_id
            stored.provider_metadata = {
                **(stored.provider_metadata or {}),
                "merchant_request_id": ack.merchant_request_id,
                "checkout_request_id": ack.checkout_request_id,
                "response_code": ack.response_code,
                "response_description": ack.response_description,
            }
            if not ack.accepted:
                stored.failure_reason = ack.response_description
            stored.order.payment_status = status

        metrics.record_payment_initiation("mpesa", status.value, float(order.total_amount))

        if not ack.accepted:
            logger.warning(
                "stk_push_rejected",
                payment_id=str(payment.id),
                response_code=ack.response_code,
                response_description=ack.response_description,
            )
            raise UpstreamError(
                ack.response_description or "Failed to initiate M-Pesa payment",
                code="STK_PUSH_REJECTED",
                details={"response_code": ack.response_code},
            )

        logger.info(
            "mpesa_payment_initiated",
            payment_id=str(payment.id),
            checkout_request_id=ack.checkout_request_id,
        )
        return PaymentResult(
            success=True,
            payment_id=payment.id,
            method=PaymentMethod.MPESA,
            status=PaymentStatus.INITIATED,
            message=MPESA_INITIATED_MESSAGE,
            checkout_request_id=ack.checkout_request_id,
            customer_message=ack.customer_message,
        )

    async def _process_cod(self, order: Order) -> PaymentResult:
        payment = await self._create_payment(
            order.id,
            PaymentMethod.COD,
            order.total_amount,
            PaymentStatus.PENDING_DELIVERY,
            {
                "order_number": order.order_number,
                "note": "Cash on Delivery - Payment due on delivery",
            },
        )
        metrics.record_payment_initiation("cod", "pending_delivery", float(order.total_amount))
        return PaymentResult(
            success=True,
            payment_id=payment.id,
            method=PaymentMethod.COD,
            status=PaymentStatus.PENDING_DELIVERY,
            message=COD_MESSAGE,
            requires_delivery_payment=True,
        )

    async def _mark_unconfirmed(self, payment_id: uuid.UUID, reason: str) -> None:
        """Keep the payment pending; the prompt may still be answered."""
        async with self.database.transaction() as session:
            payment = await PaymentRepository(session).get(payment_id, for_update=True)
            payment.provider_metadata = {
                **(payment.provider_metadata or {}),
                "error_code": UNCONFIRMED_CODE,
                "unconfirmed_reason": reason,
                "unconfirmed_at": utcnow().isoformat(),
            }

    async def _mark_failed(
        self, payment_id: uuid.UUID, reason: str, extra_metadata: Dict[str, Any]
    ) -> None:
        async with self.database.transaction() as session:
            payment = await PaymentRepository(session).get(payment_id, for_update=True)
            payment.status = PaymentStatus.FAILED
            payment.failure_reason = reason
            payment.provider_metadata = {**(payment.provider_metadata or {}), **extra_metadata}
            payment.order.payment_status = PaymentStatus.FAILED

    async def get_payment(self, payment_id: str, user: CurrentUser) -> Payment:
        """
        Fetch a payment visible to the user.

        Raises:
            NotFoundError: Unknown payment
            AuthzError: Payment belongs to another customer
        """
        async with self.database.session() as session:
            payment = await PaymentRepository(session).get(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", code="PAYMENT_NOT_FOUND")
        ensure_can_view(payment.order.user_id, user)
        return payment

    async def query_mpesa_status(
        self, checkout_request_id: str, user: Optional[CurrentUser] = None
    ) -> StkQueryResult:
        """
        Poll Daraja for an STK push and keep the answer on the payment.

        Raises:
            NotFoundError: No payment carries this checkout request id
            AuthzError: Payment belongs to another customer
            UpstreamError: Gateway failure
        """
        async with self.database.session() as session:
            payment = await PaymentRepository(session).get_by_provider_transaction_id(
                checkout_request_id
            )
        if payment is None:
            raise NotFoundError("Payment not found", code="PAYMENT_NOT_FOUND")
        if user is not None:
            ensure_can_view(payment.order.user_id, user)

        result = await self.gateway.query_stk_status(checkout_request_id)

        async with self.database.transaction() as session:
            stored = await PaymentRepository(session).get(payment.id, for_update=True)
            stored.provider_metadata = {
                **(stored.provider_metadata or {}),
                "last_status_query": utcnow().isoformat(),
                "status_query_result": result.raw,
            }

        logger.info(
            "mpesa_status_queried",
            payment_id=str(payment.id),
            result_code=result.result_code,
        )
        return result

    async def retry_payment(self, payment_id: str, user: CurrentUser) -> PaymentResult:
        """
        Retry a failed payment with its stored method and phone.

        Raises:
            ConflictError: INVALID_STATUS unless the payment failed and the order is still pending
        """
        payment = await self.get_payment(payment_id, user)
        if payment.status is not PaymentStatus.FAILED:
            raise ConflictError(
                "Only failed payments can be retried",
                code="INVALID_STATUS",
                details={"status": payment.status.value},
            )
        order = payment.order
        if order.status is not OrderStatus.PENDING:
            raise ConflictError(
                "Order is no longer awaiting payment",
                code="INVALID_STATUS",
                details={"order_status": order.status.value},
            )

        phone = (payment.provider_metadata or {}).get("phone_number")
        logger.info("payment_retry_requested", payment_id=str(payment.id), order_id=str(order.id))
        return await self.process_payment(
            PaymentRequest(method=payment.method, phone=phone), order
        )
