"""
Order transaction manager.

Creates orders from a cart against live catalog prices, then hands the
committed order to the payment orchestrator. A failed payment never rolls
the order back: the order stays PENDING, carries a note, and is listed by
``list_orders_awaiting_payment`` until someone retries it.
"""
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pharmacy_backend.config import Settings, get_settings
from pharmacy_backend.database.connection import Database
from pharmacy_backend.database.models import Order, OrderItem, utcnow
from pharmacy_backend.database.repositories import OrderRepository, ProductRepository
from pharmacy_backend.domain.enums import OrderStatus, PaymentMethod, PaymentStatus
from pharmacy_backend.domain.errors import (
    ConflictError,
    NotFoundError,
    PharmacyError,
    ValidationError,
)
from pharmacy_backend.integrations.mpesa_client import UNCONFIRMED_CODE
from pharmacy_backend.monitoring.metrics import metrics

from .auth_service import CurrentUser
from .payment_processor import (
    PaymentProcessor,
    PaymentRequest,
    PaymentResult,
    payment_failure_note,
)

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")


@dataclass
class CartItem:
    product_id: int
    quantity: int


@dataclass
class OrderCreationResult:
    """Committed order plus the outcome of the payment step."""

    order: Order
    payment: Optional[PaymentResult] = None
    payment_error: Optional[str] = None


@dataclass
class OrderPage:
    orders: Sequence[Order]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


def _to_money(value: Any, field_name: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid {field_name}", code="INVALID_TOTAL")
    if not amount.is_finite():
        raise ValidationError(f"Invalid {field_name}", code="INVALID_TOTAL")
    return amount


def _is_order_number_conflict(error: IntegrityError) -> bool:
    """Unique violation on orders.order_number, as reported by SQLite or PostgreSQL."""
    return "order_number" in str(error.orig)


class OrderService:
    """Order creation, queries and status changes."""

    def __init__(
        self,
        database: Database,
        payment_processor: PaymentProcessor,
        settings: Optional[Settings] = None,
    ):
        self.database = database
        self.payment_processor = payment_processor
        self.settings = settings or get_settings()

    def generate_order_number(self) -> str:
        """Tag + millisecond timestamp + two random digits."""
        millis = int(time.time() * 1000)
        return f"{self.settings.order_number_prefix}{millis}{secrets.randbelow(100):02d}"

    @staticmethod
    def _validate_input(
        items: Sequence[CartItem], shipping_info: Dict[str, Any], client_total: Decimal
    ) -> None:
        if not items:
            raise ValidationError("Order must contain at least one item", code="INVALID_ITEMS")
        for item in items:
            if (
                isinstance(item.quantity, bool)
                or not isinstance(item.quantity, int)
                or item.quantity < 1
            ):
                raise ValidationError(
                    "Quantity must be a whole number of at least 1",
                    code="INVALID_QUANTITY",
                    details={"product_id": item.product_id, "quantity": item.quantity},
                )
        if not shipping_info or not str(shipping_info.get("full_name") or "").strip() or not str(
            shipping_info.get("address") or ""
        ).strip():
            raise ValidationError(
                "Shipping information is required", code="INVALID_SHIPPING"
            )
        if client_total <= 0:
            raise ValidationError("Invalid order total", code="INVALID_TOTAL")

    async def _persist_order(
        self,
        user_id: int,
        items: Sequence[CartItem],
        shipping_info: Dict[str, Any],
        payment_method: PaymentMethod,
        client_total: Decimal,
    ) -> Order:
        """
        Price the cart and write order, items and first history row.

        One transaction per attempt; order number collisions get a fresh
        number and a new attempt.
        """
        attempts = max(1, self.settings.order_number_max_attempts)
        for attempt in range(1, attempts + 1):
            order_number = self.generate_order_number()
            try:
                async with self.database.transaction() as session:
                    products = await ProductRepository(session).get_many(
                        item.product_id for item in items
                    )
                    missing = sorted({i.product_id for i in items} - set(products))
                    if missing:
                        raise NotFoundError(
                            "Some items in your cart are no longer available",
                            code="ITEMS_UNAVAILABLE",
                            details={"missing_product_ids": missing},
                        )

                    order_items: List[OrderItem] = []
                    server_total = Decimal("0.00")
                    for item in items:
                        product = products[item.product_id]
                        unit_price = Decimal(product.price).quantize(CENTS)
                        subtotal = (unit_price * item.quantity).quantize(CENTS)
                        server_total += subtotal
                        order_items.append(
                            OrderItem(
                                product_id=product.id,
                                product_name=product.name,
                                unit_price=unit_price,
                                quantity=item.quantity,
                                subtotal=subtotal,
                                product_snapshot={
                                    "name": product.name,
                                    "description": product.description,
                                    "category": product.category,
                                    "image_url": product.image_url,
                                    "price": str(unit_price),
                                },
                            )
                        )

                    # Server total covers products only; delivery fees are excluded
                    if abs(server_total - client_total) > self.settings.total_tolerance:
                        raise ConflictError(
                            "Order total mismatch. Send the products total only, "
                            "excluding delivery fees.",
                            code="TOTAL_MISMATCH",
                            details={
                                "client_total": str(client_total),
                                "server_total": str(server_total),
                                "hint": "Do not include delivery fees in the total",
                            },
                        )

                    now = utcnow()
                    order = Order(
                        order_number=order_number,
                        user_id=user_id,
                        status=OrderStatus.PENDING,
                        total_amount=server_total,
                        shipping_info=dict(shipping_info),
                        payment_method=payment_method,
                        payment_status=PaymentStatus.PENDING,
                        estimated_delivery=now
                        + timedelta(hours=self.settings.delivery_window_hours),
                        created_at=now,
                        updated_at=now,
                        items=order_items,
                        status_history=[],
                        payments=[],
                    )
                    orders = OrderRepository(session)
                    await orders.add(order)
                    await orders.add_history(order, OrderStatus.PENDING, notes="Order created")
                return order
            except IntegrityError as e:
                if not _is_order_number_conflict(e):
                    raise
                logger.warning(
                    "order_number_collision",
                    order_number=order_number,
                    attempt=attempt,
                    error=str(e.orig),
                )
        raise ConflictError(
            "Could not allocate a unique order number", code="ORDER_NUMBER_CONFLICT"
        )

    async def create_order(
        self,
        user_id: int,
        items: Sequence[CartItem],
        shipping_info: Dict[str, Any],
        payment: Dict[str, Any],
        client_total: Any,
    ) -> OrderCreationResult:
        """
        Create an order and start its payment.

        Args:
            user_id: Owner of the order
            items: Cart lines (product id and quantity)
            shipping_info: Address snapshot, must include full_name and address
            payment: {"method": ..., "phone": ...}
            client_total: Products total computed by the client

        Returns:
            OrderCreationResult: The order, plus either the payment outcome or
            the reason payment could not be started

        Raises:
            ValidationError: Bad cart, shipping, method or total
            NotFoundError: ITEMS_UNAVAILABLE
            ConflictError: TOTAL_MISMATCH
        """
        start = time.perf_counter()
        try:
            total = _to_money(client_total, "order total")
            self._validate_input(items, shipping_info, total)
            payment_request = PaymentRequest.from_dict(payment or {})
            order = await self._persist_order(
                user_id, items, shipping_info, payment_request.method, total
            )
        except PharmacyError as e:
            metrics.record_order_rejected(e.code)
            logger.warning("order_rejected", user_id=user_id, code=e.code, error=e.message)
            raise

        logger.info(
            "order_created",
            order_id=str(order.id),
            order_number=order.order_number,
            user_id=user_id,
            total_amount=str(order.total_amount),
            payment_method=payment_request.method.value,
        )

        result = OrderCreationResult(order=order)
        try:
            result.payment = await self.payment_processor.process_payment(payment_request, order)
        except (PharmacyError, SQLAlchemyError) as e:
            result.payment_error = await self._handle_payment_error(order, e)

        metrics.record_order_created(payment_request.method.value, time.perf_counter() - start)
        result.order = await self._reload(order.id)
        return result

    async def _handle_payment_error(self, order: Order, error: Exception) -> str:
        """
        Record why payment could not start and return the customer message.

        An unconfirmed STK push keeps the order's payment pending: the prompt
        may still be answered, and the payment is abandoned later if not.
        """
        if isinstance(error, PharmacyError):
            message = error.message
            if error.code == UNCONFIRMED_CODE:
                logger.warning(
                    "order_payment_unconfirmed",
                    order_id=str(order.id),
                    order_number=order.order_number,
                )
                return message
        else:
            message = "Payment could not be recorded"
        await self._record_payment_failure(order, message)
        logger.error(
            "order_payment_failed",
            order_id=str(order.id),
            order_number=order.order_number,
            error=message,
        )
        return message

    async def _record_payment_failure(self, order: Order, message: str) -> None:
        async with self.database.transaction() as session:
            stored = await OrderRepository(session).get(order.id, for_update=True)
            stored.notes = payment_failure_note(message)
            stored.payment_status = PaymentStatus.FAILED

    async def _reload(self, order_id: Any) -> Order:
        async with self.database.session() as session:
            order = await OrderRepository(session).get(order_id)
        if order is None:
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        return order

    async def get_order(self, order_id: str, user: CurrentUser) -> Order:
        """
        Fetch an order for its owner or an admin.

        Other customers get NotFoundError so order ids cannot be enumerated.
        """
        async with self.database.session() as session:
            order = await OrderRepository(session).get(order_id)
        if order is None or (not user.is_admin and order.user_id != user.id):
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        return order

    async def get_order_by_number(self, order_number: str, user: CurrentUser) -> Order:
        async with self.database.session() as session:
            order = await OrderRepository(session).get_by_number(order_number)
        if order is None or (not user.is_admin and order.user_id != user.id):
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        return order

    async def list_user_orders(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 10,
        status: Optional[OrderStatus] = None,
    ) -> OrderPage:
        page, limit = max(page, 1), max(limit, 1)
        async with self.database.session() as session:
            orders, total = await OrderRepository(session).list(
                user_id=user_id, status=status, page=page, limit=limit
            )
        return OrderPage(orders=orders, total=total, page=page, limit=limit)

    async def list_all_orders(
        self, page: int = 1, limit: int = 20, status: Optional[OrderStatus] = None
    ) -> OrderPage:
        page, limit = max(page, 1), max(limit, 1)
        async with self.database.session() as session:
            orders, total = await OrderRepository(session).list(
                status=status, page=page, limit=limit
            )
        return OrderPage(orders=orders, total=total, page=page, limit=limit)

    async def get_order_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        async with self.database.session() as session:
            return await OrderRepository(session).stats(since=start_of_day)

    async def update_order_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        changed_by: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Move an order along the state machine.

        The status write and its history row share one transaction.

        Raises:
            NotFoundError: Unknown order
            ConflictError: INVALID_TRANSITION
        """
        async with self.database.transaction() as session:
            orders = OrderRepository(session)
            order = await orders.get(order_id, for_update=True)
            if order is None:
                raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
            self._transition(order, new_status)
            await orders.add_history(order, new_status, changed_by=changed_by, notes=notes)

        metrics.record_status_transition(new_status.value)
        logger.info(
            "order_status_updated",
            order_id=str(order.id),
            status=new_status.value,
            changed_by=changed_by,
        )
        return order

    @staticmethod
    def _transition(order: Order, new_status: OrderStatus) -> None:
        if not order.status.can_transition_to(new_status):
            raise ConflictError(
                f"Cannot change order status from {order.status.value} to {new_status.value}",
                code="INVALID_TRANSITION",
                details={
                    "current_status": order.status.value,
                    "requested_status": new_status.value,
                    "allowed": sorted(s.value for s in order.status.allowed_transitions()),
                },
            )
        order.status = new_status

    async def cancel_order(self, order_id: str, user: CurrentUser) -> Order:
        """
        Cancel an order on behalf of its owner.

        Raises:
            NotFoundError: Unknown order or not the owner
            ConflictError: CANNOT_CANCEL once shipped, delivered or cancelled
        """
        async with self.database.transaction() as session:
            orders = OrderRepository(session)
            order = await orders.get(order_id, for_update=True)
            if order is None or (not user.is_admin and order.user_id != user.id):
                raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
            if not order.status.is_cancellable:
                raise ConflictError(
                    "Order cannot be cancelled at this stage",
                    code="CANNOT_CANCEL",
                    details={"current_status": order.status.value},
                )
            order.status = OrderStatus.CANCELLED
            await orders.add_history(
                order, OrderStatus.CANCELLED, changed_by=user.id, notes="Cancelled by customer"
            )

        metrics.record_status_transition(OrderStatus.CANCELLED.value)
        logger.info("order_cancelled", order_id=str(order.id), user_id=user.id)
        return order

    async def list_orders_awaiting_payment(
        self, limit: int = 100, now: Optional[datetime] = None
    ) -> Sequence[Order]:
        """
        PENDING orders whose payment failed, never got a payment row, or is
        an M-Pesa attempt that never received a CheckoutRequestID in time.
        """
        cutoff = self.payment_processor.abandoned_cutoff(now)
        async with self.database.session() as session:
            return await OrderRepository(session).awaiting_payment(
                limit=limit, stuck_before=cutoff
            )

    async def retry_order_payment(
        self, order_id: str, user: CurrentUser, payment: Dict[str, Any]
    ) -> OrderCreationResult:
        """
        Start payment again for an order left without a usable payment.

        Raises:
            ConflictError: INVALID_STATUS if the order is not awaiting payment
        """
        order = await self.get_order(order_id, user)
        if order.status is not OrderStatus.PENDING or order.payment_status not in (
            PaymentStatus.FAILED,
            PaymentStatus.PENDING,
        ):
            raise ConflictError(
                "Order is not awaiting payment",
                code="INVALID_STATUS",
                details={
                    "status": order.status.value,
                    "payment_status": order.payment_status.value,
                },
            )

        request = PaymentRequest.from_dict(payment or {"method": order.payment_method.value})
        result = OrderCreationResult(order=order)
        try:
            result.payment = await self.payment_processor.process_payment(request, order)
        except PharmacyError as e:
            if e.code == "PAYMENT_IN_PROGRESS":
                raise
            result.payment_error = await self._handle_payment_error(order, e)
        else:
            await self._clear_payment_note(order.id)
            logger.info("order_payment_retried", order_id=str(order.id))

        result.order = await self._reload(order.id)
        return result

    async def _clear_payment_note(self, order_id: Any) -> None:
        async with self.database.transaction() as session:
            stored = await OrderRepository(session).get(order_id, for_update=True)
            if stored.notes and stored.notes.startswith("Payment failed:"):
                stored.notes = None
