"""
Reconciliation of M-Pesa outcomes with payments and orders.

Two entry points share the same finalisation step:
- CallbackReconciler handles the asynchronous STK callback
- StalePaymentReconciler polls Daraja for initiated payments whose
  callback never arrived

Payment update, order transition and history row are written in one
transaction. A payment that is already completed or failed is never
touched again, so replayed callbacks are harmless.
"""
import time
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from pharmacy_backend.config import Settings, get_settings
from pharmacy_backend.database.connection import Database
from pharmacy_backend.database.models import Payment, utcnow
from pharmacy_backend.database.repositories import OrderRepository, PaymentRepository
from pharmacy_backend.domain.enums import OrderStatus, PaymentStatus
from pharmacy_backend.domain.errors import PharmacyError
from pharmacy_backend.integrations.mpesa_client import (
    UNCONFIRMED_CODE,
    CallbackResult,
    MpesaClient,
    parse_callback,
)
from pharmacy_backend.monitoring.metrics import metrics

from .payment_processor import abandon_payment

logger = structlog.get_logger(__name__)


async def finalize_payment(
    session: AsyncSession, payment: Payment, result: CallbackResult, source: str
) -> Dict[str, Any]:
    """
    Apply a definitive M-Pesa result to a locked, non-terminal payment.

    Success completes the payment and confirms the order; failure fails the
    payment and cancels the order. An order that can no longer make the
    transition (e.g. cancelled by the customer meanwhile) keeps its status.
    """
    orders = OrderRepository(session)
    order = await orders.get(payment.order_id, for_update=True)

    if result.success:
        details = result.transaction_details or {}
        payment.status = PaymentStatus.COMPLETED
        payment.completed_at = utcnow()
        payment.provider_metadata = {
            **(payment.provider_metadata or {}),
            "transaction_details": details,
            "mpesa_receipt_number": details.get("mpesa_receipt_number"),
        }
        target = OrderStatus.CONFIRMED
        note = "Payment received via M-Pesa"
        if details.get("mpesa_receipt_number"):
            note = f"{note} (receipt {details['mpesa_receipt_number']})"
    else:
        payment.status = PaymentStatus.FAILED
        payment.failure_reason = result.result_desc
        payment.provider_metadata = {
            **(payment.provider_metadata or {}),
            "failure_details": {
                "result_code": result.result_code,
                "result_desc": result.result_desc,
            },
        }
        target = OrderStatus.CANCELLED
        note = f"M-Pesa payment failed: {result.result_desc}"

    order.payment_status = payment.status
    if order.status.can_transition_to(target):
        order.status = target
        await orders.add_history(order, target, notes=note)
        metrics.record_status_transition(target.value)
    else:
        logger.warning(
            "order_transition_skipped",
            order_id=str(order.id),
            current_status=order.status.value,
            requested_status=target.value,
            payment_status=payment.status.value,
            source=source,
        )

    logger.info(
        "payment_finalized",
        payment_id=str(payment.id),
        order_number=order.order_number,
        payment_status=payment.status.value,
        order_status=order.status.value,
        source=source,
    )
    return {
        "success": True,
        "payment_success": result.success,
        "order_id": str(order.id),
        "order_number": order.order_number,
    }


def _whole_amount(value: Any) -> Optional[int]:
    try:
        return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        return None


async def match_unconfirmed_payment(
    session: AsyncSession, result: CallbackResult
) -> Optional[Payment]:
    """
    Find the payment behind a successful callback whose STK push was never acknowledged.

    Without a stored CheckoutRequestID the payer's phone and the amount are the
    only link; exactly one pending candidate must match.
    """
    details = result.transaction_details or {}
    phone, amount = details.get("phone_number"), _whole_amount(details.get("amount"))
    if not result.success or phone is None or amount is None:
        return None

    candidates = [
        payment
        for payment in await PaymentRepository(session).pending_unsent(for_update=True)
        if (payment.provider_metadata or {}).get("error_code") == UNCONFIRMED_CODE
        and (payment.provider_metadata or {}).get("phone_number") == str(phone)
        and _whole_amount(payment.amount) == amount
    ]
    if len(candidates) != 1:
        return None

    payment = candidates[0]
    payment.provider_transaction_id = result.checkout_request_id
    payment.provider_metadata = {
        **(payment.provider_metadata or {}),
        "checkout_request_id": result.checkout_request_id,
        "merchant_request_id": result.merchant_request_id,
        "matched_by": "phone_and_amount",
    }
    return payment


class CallbackReconciler:
    """
    Matches STK callbacks to payments.

    Parsing errors propagate to the caller; the HTTP layer acknowledges
    every callback regardless of outcome.
    """

    def __init__(self, database: Database):
        self.database = database

    async def handle_callback(self, payload: Any) -> Dict[str, Any]:
        """
        Finalize the payment a callback refers to.

        Args:
            payload: Raw callback JSON

        Returns:
            Dict with success, order_id and order_number; unknown
            transactions give success False and a message

        Raises:
            CallbackParseError: Payload is not an STK callback
        """
        start = time.perf_counter()
        try:
            result = parse_callback(payload)
        except PharmacyError:
            metrics.record_callback("invalid", time.perf_counter() - start)
            raise

        logger.info(
            "mpesa_callback_received",
            checkout_request_id=result.checkout_request_id,
            result_code=result.result_code,
        )

        async with self.database.transaction() as session:
            payment = await PaymentRepository(session).get_by_provider_transaction_id(
                result.checkout_request_id, for_update=True
            )
            if payment is None:
                payment = await match_unconfirmed_payment(session, result)
                if payment is not None:
                    logger.warning(
                        "unconfirmed_payment_matched",
                        payment_id=str(payment.id),
                        checkout_request_id=result.checkout_request_id,
                    )
            if payment is None:
                outcome = {"success": False, "message": "Payment record not found"}
                label = "not_found"
            elif payment.status.is_terminal:
                outcome = {
                    "success": True,
                    "duplicate": True,
                    "payment_success": payment.status is PaymentStatus.COMPLETED,
                    "order_id": str(payment.order_id),
                    "order_number": payment.order.order_number,
                }
                label = "duplicate"
            else:
                outcome = await finalize_payment(session, payment, result, source="callback")
                label = "completed" if result.success else "failed"

        if label == "not_found":
            logger.error(
                "payment_not_found_for_callback",
                checkout_request_id=result.checkout_request_id,
            )
        elif label == "duplicate":
            logger.info(
                "duplicate_callback_ignored",
                checkout_request_id=result.checkout_request_id,
                payment_status=payment.status.value,
            )
        metrics.record_callback(label, time.perf_counter() - start)
        return outcome


class StalePaymentReconciler:
    """
    Polls Daraja for initiated payments that never received a callback and
    abandons pending ones that never got a CheckoutRequestID.

    Runs periodically from the reconciliation worker.
    """

    def __init__(
        self,
        database: Database,
        gateway: MpesaClient,
        settings: Optional[Settings] = None,
    ):
        self.database = database
        self.gateway = gateway
        self.settings = settings or get_settings()
        logger.info("stale_payment_reconciler_initialized")

    async def run(self, now: Optional[datetime] = None, limit: int = 50) -> Dict[str, int]:
        """
        Query and finalize stale initiated payments.

        Returns:
            Counters: checked, completed, failed, still_pending, errors and
            abandoned (pending payments that never reached Daraja)
        """
        start = time.perf_counter()
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self.settings.stale_payment_minutes)

        async with self.database.session() as session:
            stale = await PaymentRepository(session).stale_initiated(cutoff, limit=limit)

        summary = {
            "checked": len(stale),
            "completed": 0,
            "failed": 0,
            "still_pending": 0,
            "errors": 0,
            "abandoned": await self._abandon_unsent(cutoff, limit),
        }
        logger.info("stale_payment_reconciliation_started", stale_count=len(stale))

        for payment in stale:
            checkout_request_id = payment.provider_transaction_id
            try:
                status = await self.gateway.query_stk_status(checkout_request_id)
            except PharmacyError as e:
                summary["errors"] += 1
                logger.warning(
                    "stale_payment_query_failed",
                    payment_id=str(payment.id),
                    error_code=e.code,
                    error=e.message,
                )
                continue

            if not status.is_final:
                summary["still_pending"] += 1
                metrics.record_stale_payment_resolved("still_pending")
                continue

            async with self.database.transaction() as session:
                stored = await PaymentRepository(session).get_by_provider_transaction_id(
                    checkout_request_id, for_update=True
                )
                # Callback may have landed while we were polling
                if stored is None or stored.status.is_terminal:
                    continue
                stored.provider_metadata = {
                    **(stored.provider_metadata or {}),
                    "last_status_query": now.isoformat(),
                    "status_query_result": status.raw,
                }
                await finalize_payment(
                    session,
                    stored,
                    CallbackResult(
                        merchant_request_id=status.raw.get("MerchantRequestID"),
                        checkout_request_id=checkout_request_id,
                        result_code=status.result_code,
                        result_desc=status.result_desc,
                    ),
                    source="status_query",
                )

            outcome = "completed" if status.success else "failed"
            summary[outcome] += 1
            metrics.record_stale_payment_resolved(outcome)

        metrics.set_reconciliation_metrics(len(stale), time.perf_counter() - start)
        logger.info("stale_payment_reconciliation_completed", **summary)
        return summary

    async def _abandon_unsent(self, cutoff: datetime, limit: int) -> int:
        """Fail M-Pesa payments that never got a CheckoutRequestID before cutoff."""
        async with self.database.transaction() as session:
            unsent = await PaymentRepository(session).pending_unsent(
                cutoff, limit=limit, for_update=True
            )
            for payment in unsent:
                metadata = payment.provider_metadata or {}
                abandon_payment(payment)
                metrics.record_stale_payment_resolved("abandoned")
                logger.warning(
                    "unsent_payment_abandoned",
                    payment_id=str(payment.id),
                    order_id=str(payment.order_id),
                    unconfirmed=metadata.get("error_code") == UNCONFIRMED_CODE,
                )
        return len(unsent)
