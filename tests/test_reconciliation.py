"""
Tests for callback reconciliation and the stale payment reaper.
"""
from datetime import timedelta
from typing import Any, Callable, Dict, List

import httpx
import pytest

from conftest import CHECKOUT_ID, FakeDaraja, stk_callback
from pharmacy_backend.core.auth_service import CurrentUser
from pharmacy_backend.core.order_service import CartItem, OrderCreationResult, OrderService
from pharmacy_backend.core.reconciliation import CallbackReconciler, StalePaymentReconciler
from pharmacy_backend.config import Settings
from pharmacy_backend.database.connection import Database
from pharmacy_backend.database.models import Order, User, utcnow
from pharmacy_backend.database.repositories import OrderRepository
from pharmacy_backend.domain.enums import OrderStatus, PaymentStatus
from pharmacy_backend.integrations.mpesa_client import CallbackParseError, MpesaClient

pytestmark = pytest.mark.usefixtures("products")


@pytest.fixture
async def mpesa_order(
    order_service: OrderService,
    customer: User,
    shipping: Dict[str, Any],
    two_paracetamol: List[CartItem],
) -> OrderCreationResult:
    """Order of 1000.00 with an initiated STK push."""
    result = await order_service.create_order(
        customer.id,
        two_paracetamol,
        shipping,
        {"method": "mpesa", "phone": "0712345678"},
        "1000.00",
    )
    assert result.payment.status is PaymentStatus.INITIATED
    return result


async def _reload(database: Database, order_id: Any) -> Order:
    async with database.session() as session:
        return await OrderRepository(session).get(order_id)


class TestCallbackReconciler:
    """STK callback handling."""

    @pytest.mark.unit
    async def test_successful_callback_confirms_order(
        self,
        reconciler: CallbackReconciler,
        database: Database,
        mpesa_order: OrderCreationResult,
    ) -> None:
        outcome = await reconciler.handle_callback(stk_callback(receipt="QKJ4ABCDEF"))

        assert outcome["success"]
        assert outcome["payment_success"]
        assert outcome["order_number"] == mpesa_order.order.order_number

        order = await _reload(database, mpesa_order.order.id)
        assert order.status is OrderStatus.CONFIRMED
        assert order.payment_status is PaymentStatus.COMPLETED
        assert [h.status for h in order.status_history] == [
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
        ]
        assert "QKJ4ABCDEF" in order.status_history[-1].notes

        [payment] = order.payments
        assert payment.status is PaymentStatus.COMPLETED
        assert payment.completed_at is not None
        assert payment.provider_metadata["mpesa_receipt_number"] == "QKJ4ABCDEF"
        assert payment.provider_metadata["transaction_details"]["amount"] == 1000.0

    @pytest.mark.unit
    async def test_failed_callback_cancels_order(
        self,
        reconciler: CallbackReconciler,
        database: Database,
        mpesa_order: OrderCreationResult,
    ) -> None:
        outcome = await reconciler.handle_callback(
            stk_callback(result_code=1032, result_desc="Request cancelled by user")
        )

        assert outcome["success"]
        assert not outcome["payment_success"]

        order = await _reload(database, mpesa_order.order.id)
        assert order.status is OrderStatus.CANCELLED
        assert order.payment_status is PaymentStatus.FAILED
        assert order.status_history[-1].status is OrderStatus.CANCELLED

        [payment] = order.payments
        assert payment.status is PaymentStatus.FAILED
        assert payment.failure_reason == "Request cancelled by user"
        assert payment.provider_metadata["failure_details"] == {
            "result_code": 1032,
            "result_desc": "Request cancelled by user",
        }

    @pytest.mark.unit
    async def test_duplicate_callback_is_ignored(
        self,
        reconciler: CallbackReconciler,
        database: Database,
        mpesa_order: OrderCreationResult,
    ) -> None:
        await reconciler.handle_callback(stk_callback())
        first = await _reload(database, mpesa_order.order.id)

        replay = await reconciler.handle_callback(stk_callback())
        assert replay["success"]
        assert replay["duplicate"]
        assert replay["payment_success"]

        # A late failure for the same transaction must not undo the success
        outcome = await reconciler.handle_callback(
            stk_callback(result_code=1, result_desc="The balance is insufficient")
        )

        assert outcome["success"]
        assert outcome["duplicate"]
        second = await _reload(database, mpesa_order.order.id)
        assert second.status is OrderStatus.CONFIRMED
        assert second.payments[0].status is PaymentStatus.COMPLETED
        assert len(second.status_history) == len(first.status_history)

    @pytest.mark.unit
    async def test_unknown_checkout_request(
        self, reconciler: CallbackReconciler, mpesa_order: OrderCreationResult
    ) -> None:
        outcome = await reconciler.handle_callback(stk_callback(checkout_request_id="ws_CO_unknown"))
        assert outcome == {"success": False, "message": "Payment record not found"}

    @pytest.mark.unit
    async def test_malformed_callback_raises(self, reconciler: CallbackReconciler) -> None:
        with pytest.raises(CallbackParseError):
            await reconciler.handle_callback({"Body": {"unexpected": True}})

    @pytest.mark.unit
    async def test_success_after_customer_cancel_keeps_order_cancelled(
        self,
        reconciler: CallbackReconciler,
        order_service: OrderService,
        database: Database,
        mpesa_order: OrderCreationResult,
        customer: User,
        as_user: Callable[[User], CurrentUser],
    ) -> None:
        await order_service.cancel_order(str(mpesa_order.order.id), as_user(customer))

        outcome = await reconciler.handle_callback(stk_callback())

        assert outcome["success"]
        order = await _reload(database, mpesa_order.order.id)
        assert order.status is OrderStatus.CANCELLED
        # Money was taken; the payment record reflects it
        assert order.payment_status is PaymentStatus.COMPLETED
        assert order.payments[0].status is PaymentStatus.COMPLETED

    @pytest.mark.unit
    async def test_success_matched_to_unacknowledged_push(
        self,
        reconciler: CallbackReconciler,
        order_service: OrderService,
        database: Database,
        customer: User,
        shipping: Dict[str, Any],
        two_paracetamol: List[CartItem],
        daraja: FakeDaraja,
    ) -> None:
        # Daraja sent the prompt but the acknowledgment was lost
        daraja.fail("/stkpush/v1/processrequest", httpx.ReadTimeout)
        created = await order_service.create_order(
            customer.id,
            two_paracetamol,
            shipping,
            {"method": "mpesa", "phone": "0712345678"},
            "1000.00",
        )
        assert created.payment is None

        outcome = await reconciler.handle_callback(stk_callback())

        assert outcome["success"]
        assert outcome["payment_success"]
        order = await _reload(database, created.order.id)
        assert order.status is OrderStatus.CONFIRMED
        [payment] = order.payments
        assert payment.status is PaymentStatus.COMPLETED
        assert payment.provider_transaction_id == CHECKOUT_ID
        assert payment.provider_metadata["matched_by"] == "phone_and_amount"

    @pytest.mark.unit
    async def test_unacknowledged_push_not_matched_on_other_amount(
        self,
        reconciler: CallbackReconciler,
        order_service: OrderService,
        database: Database,
        customer: User,
        shipping: Dict[str, Any],
        daraja: FakeDaraja,
    ) -> None:
        daraja.fail("/stkpush/v1/processrequest", httpx.ReadTimeout)
        created = await order_service.create_order(
            customer.id,
            [CartItem(product_id=8, quantity=1)],
            shipping,
            {"method": "mpesa", "phone": "0712345678"},
            "199.99",
        )

        outcome = await reconciler.handle_callback(stk_callback())

        assert outcome == {"success": False, "message": "Payment record not found"}
        order = await _reload(database, created.order.id)
        assert order.payments[0].status is PaymentStatus.PENDING



class TestStalePaymentReconciler:
    """Polling Daraja for payments whose callback never arrived."""

    @pytest.fixture
    def stale_reconciler(
        self, database: Database, gateway: MpesaClient, test_settings: Settings
    ) -> StalePaymentReconciler:
        return StalePaymentReconciler(database, gateway, test_settings)

    @pytest.mark.unit
    async def test_recent_payments_are_left_alone(
        self,
        stale_reconciler: StalePaymentReconciler,
        mpesa_order: OrderCreationResult,
        daraja: FakeDaraja,
    ) -> None:
        summary = await stale_reconciler.run()

        assert summary["checked"] == 0
        assert daraja.calls("/stkpushquery/v1/query") == []

    @pytest.mark.unit
    async def test_stale_success_completes_payment(
        self,
        stale_reconciler: StalePaymentReconciler,
        database: Database,
        mpesa_order: OrderCreationResult,
        daraja: FakeDaraja,
    ) -> None:
        summary = await stale_reconciler.run(now=utcnow() + timedelta(minutes=30))

        assert summary == {
            "checked": 1,
            "completed": 1,
            "failed": 0,
            "still_pending": 0,
            "errors": 0,
            "abandoned": 0,
        }
        assert daraja.last_json("/stkpushquery/v1/query")["CheckoutRequestID"] == CHECKOUT_ID
        order = await _reload(database, mpesa_order.order.id)
        assert order.status is OrderStatus.CONFIRMED
        assert order.payments[0].status is PaymentStatus.COMPLETED
        assert "status_query_result" in order.payments[0].provider_metadata

    @pytest.mark.unit
    async def test_stale_failure_cancels_order(
        self,
        stale_reconciler: StalePaymentReconciler,
        database: Database,
        mpesa_order: OrderCreationResult,
        daraja: FakeDaraja,
    ) -> None:
        daraja.query_result = {
            "ResponseCode": "0",
            "ResultCode": "1037",
            "ResultDesc": "DS timeout user cannot be reached",
        }

        summary = await stale_reconciler.run(now=utcnow() + timedelta(minutes=30))

        assert summary["failed"] == 1
        order = await _reload(database, mpesa_order.order.id)
        assert order.status is OrderStatus.CANCELLED
        assert order.payments[0].failure_reason == "DS timeout user cannot be reached"

    @pytest.mark.unit
    async def test_query_error_retried_next_run(
        self,
        stale_reconciler: StalePaymentReconciler,
        database: Database,
        mpesa_order: OrderCreationResult,
        daraja: FakeDaraja,
    ) -> None:
        daraja.queue(
            "/stkpushquery/v1/query",
            500,
            {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
        )
        daraja.queue("/stkpushquery/v1/query", 500, {"errorMessage": "still processing"})
        daraja.queue("/stkpushquery/v1/query", 500, {"errorMessage": "still processing"})

        summary = await stale_reconciler.run(now=utcnow() + timedelta(minutes=30))

        assert summary["errors"] == 1
        order = await _reload(database, mpesa_order.order.id)
        assert order.status is OrderStatus.PENDING
        assert order.payments[0].status is PaymentStatus.INITIATED

    @pytest.mark.unit
    async def test_unreadable_query_answer_counts_as_error(
        self,
        stale_reconciler: StalePaymentReconciler,
        database: Database,
        mpesa_order: OrderCreationResult,
        daraja: FakeDaraja,
    ) -> None:
        daraja.query_result = {"ResponseCode": "0", "ResultCode": "pending", "ResultDesc": "?"}

        summary = await stale_reconciler.run(now=utcnow() + timedelta(minutes=30))

        assert summary["checked"] == 1
        assert summary["errors"] == 1
        order = await _reload(database, mpesa_order.order.id)
        assert order.payments[0].status is PaymentStatus.INITIATED

    @pytest.mark.unit
    async def test_unsent_payment_abandoned(
        self,
        stale_reconciler: StalePaymentReconciler,
        order_service: OrderService,
        database: Database,
        customer: User,
        as_user: Callable[[User], CurrentUser],
        shipping: Dict[str, Any],
        two_paracetamol: List[CartItem],
        daraja: FakeDaraja,
    ) -> None:
        daraja.fail("/stkpush/v1/processrequest", httpx.ReadTimeout)
        created = await order_service.create_order(
            customer.id,
            two_paracetamol,
            shipping,
            {"method": "mpesa", "phone": "0712345678"},
            "1000.00",
        )

        recent = await stale_reconciler.run()
        assert recent["abandoned"] == 0

        summary = await stale_reconciler.run(now=utcnow() + timedelta(minutes=30))

        assert summary["abandoned"] == 1
        assert summary["checked"] == 0
        order = await _reload(database, created.order.id)
        assert order.status is OrderStatus.PENDING
        assert order.payment_status is PaymentStatus.FAILED
        assert order.payments[0].status is PaymentStatus.FAILED
        assert order.notes.startswith("Payment failed:")

        retried = await order_service.retry_order_payment(
            str(order.id), as_user(customer), {"method": "mpesa", "phone": "0712345678"}
        )
        assert retried.payment.status is PaymentStatus.INITIATED
