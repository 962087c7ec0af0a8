"""
Repositories wrapping an AsyncSession.

Services open a session (or transaction) on the injected Database and build
the repositories they need for that unit of work.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pharmacy_backend.domain.enums import OrderStatus, PaymentMethod, PaymentStatus

from .models import Order, OrderStatusHistory, Payment, Product, RefreshToken, User


def parse_uuid(value: "str | uuid.UUID") -> Optional[uuid.UUID]:
    """Return a UUID, or None when the value is not a valid identifier."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _unsent_conditions(older_than: Optional[datetime]) -> List[Any]:
    conditions = [
        Payment.method == PaymentMethod.MPESA,
        Payment.status == PaymentStatus.PENDING,
        Payment.provider_transaction_id.is_(None),
    ]
    if older_than is not None:
        conditions.append(Payment.created_at < older_than)
    return conditions


class ProductRepository:
    """Read access to the catalog."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_many(self, product_ids: Iterable[int]) -> Dict[int, Product]:
        """Fetch all referenced products in one query, keyed by id."""
        ids = set(product_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(Product).where(Product.id.in_(ids)))
        return {product.id: product for product in result.scalars().all()}

    async def add(self, product: Product) -> Product:
        self.session.add(product)
        await self.session.flush()
        return product


class OrderRepository:
    """Orders with their items, status history and payments."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, order: Order) -> Order:
        self.session.add(order)
        await self.session.flush()
        return order

    async def get(
        self, order_id: "str | uuid.UUID", for_update: bool = False
    ) -> Optional[Order]:
        order_uuid = parse_uuid(order_id)
        if order_uuid is None:
            return None
        stmt = select(Order).where(Order.id == order_uuid)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_number(self, order_number: str) -> Optional[Order]:
        result = await self.session.execute(
            select(Order).where(Order.order_number == order_number)
        )
        return result.scalar_one_or_none()

    async def list(
        self,
        user_id: Optional[int] = None,
        status: Optional[OrderStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[Sequence[Order], int]:
        """
        Page through orders, newest first.

        Returns:
            Tuple of (orders on the page, total matching orders)
        """
        conditions = []
        if user_id is not None:
            conditions.append(Order.user_id == user_id)
        if status is not None:
            conditions.append(Order.status == status)

        total = await self.session.scalar(
            select(func.count(Order.id)).where(*conditions)
        )
        result = await self.session.execute(
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return result.scalars().all(), int(total or 0)

    async def awaiting_payment(
        self, limit: int = 100, stuck_before: Optional[datetime] = None
    ) -> Sequence[Order]:
        """
        PENDING orders left without a usable payment.

        Either the last payment attempt failed, no payment row was ever
        written (payment initiation raised before persisting anything), or,
        when stuck_before is given, an M-Pesa payment created before then
        is still pending without a CheckoutRequestID.
        """
        has_payment = select(Payment.id).where(Payment.order_id == Order.id).exists()
        conditions = [Order.payment_status == PaymentStatus.FAILED, ~has_payment]
        if stuck_before is not None:
            conditions.append(
                select(Payment.id)
                .where(
                    Payment.order_id == Order.id,
                    *_unsent_conditions(stuck_before),
                )
                .exists()
            )
        result = await self.session.execute(
            select(Order)
            .where(Order.status == OrderStatus.PENDING, or_(*conditions))
            .order_by(Order.created_at)
            .limit(limit)
        )
        return result.scalars().all()

    async def add_history(
        self,
        order: Order,
        status: OrderStatus,
        changed_by: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            order_id=order.id, status=status, changed_by=changed_by, notes=notes
        )
        order.status_history.append(entry)
        await self.session.flush()
        return entry

    async def stats(self, since: datetime) -> Dict[str, Any]:
        """Order counters for the admin overview."""
        total_orders = await self.session.scalar(select(func.count(Order.id)))
        pending_orders = await self.session.scalar(
            select(func.count(Order.id)).where(Order.status == OrderStatus.PENDING)
        )
        delivered_orders = await self.session.scalar(
            select(func.count(Order.id)).where(Order.status == OrderStatus.DELIVERED)
        )
        revenue = await self.session.scalar(
            select(func.sum(Order.total_amount)).where(Order.status != OrderStatus.CANCELLED)
        )
        today_orders = await self.session.scalar(
            select(func.count(Order.id)).where(Order.created_at >= since)
        )
        return {
            "total_orders": int(total_orders or 0),
            "pending_orders": int(pending_orders or 0),
            "delivered_orders": int(delivered_orders or 0),
            "total_revenue": Decimal(revenue or 0).quantize(Decimal("0.01")),
            "today_orders": int(today_orders or 0),
        }


class PaymentRepository:
    """Payment ledger."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, payment: Payment) -> Payment:
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def get(
        self, payment_id: "str | uuid.UUID", for_update: bool = False
    ) -> Optional[Payment]:
        payment_uuid = parse_uuid(payment_id)
        if payment_uuid is None:
            return None
        stmt = select(Payment).where(Payment.id == payment_uuid)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_provider_transaction_id(
        self, provider_transaction_id: str, for_update: bool = False
    ) -> Optional[Payment]:
        stmt = select(Payment).where(
            Payment.provider_transaction_id == provider_transaction_id
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def active_for_order(self, order_id: uuid.UUID) -> Optional[Payment]:
        """The non-terminal payment of an order, if any."""
        result = await self.session.execute(
            select(Payment)
            .where(
                Payment.order_id == order_id,
                Payment.status.in_(PaymentStatus.active()),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def stale_initiated(self, older_than: datetime, limit: int = 50) -> List[Payment]:
        """Initiated payments whose callback has not arrived in time."""
        result = await self.session.execute(
            select(Payment)
            .where(
                Payment.status == PaymentStatus.INITIATED,
                Payment.provider_transaction_id.is_not(None),
                Payment.created_at < older_than,
            )
            .order_by(Payment.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def pending_unsent(
        self,
        older_than: Optional[datetime] = None,
        limit: int = 50,
        for_update: bool = False,
    ) -> List[Payment]:
        """Pending M-Pesa payments that never received a CheckoutRequestID."""
        stmt = (
            select(Payment)
            .where(*_unsent_conditions(older_than))
            .order_by(Payment.created_at)
            .limit(limit)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, user: User) -> User:
        self.session.add(user)
        await self.session.flush()
        return user

    async def get(self, user_id: int) -> Optional[User]:
        return await self.session.get(User, user_id)

    async def get_by_email(self, email: str) -> Optional[User]:
        result = await self.session.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()


class RefreshTokenRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, token: RefreshToken) -> RefreshToken:
        self.session.add(token)
        await self.session.flush()
        return token

    async def get_by_token(
        self, token: str, for_update: bool = False
    ) -> Optional[RefreshToken]:
        stmt = select(RefreshToken).where(RefreshToken.token == token)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def revoke(self, token: str) -> int:
        result = await self.session.execute(
            update(RefreshToken).where(RefreshToken.token == token).values(is_revoked=True)
        )
        return result.rowcount

    async def delete(self, token: RefreshToken) -> None:
        await self.session.delete(token)
        await self.session.flush()

    async def purge(self, now: datetime) -> int:
        """Delete expired or revoked tokens."""
        result = await self.session.execute(
            delete(RefreshToken).where(
                or_(RefreshToken.expires_at < now, RefreshToken.is_revoked.is_(True))
            )
        )
        return result.rowcount
