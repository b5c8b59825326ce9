"""
Order Service - Order Fulfillment (write side)

Composes the user and payment services into the order workflow:

  create  validate locally -> fetch user (required) -> insert pending order
  pay     load order -> charge payment (required) -> pending -> paid
  cancel  load order -> refund if paid (best-effort) -> cancelled

Steps run in sequence because each one needs the previous result. A
failed required call aborts before anything is written, so a failed
create leaves no order behind and a failed payment leaves the order
pending and payable again.

Cancellation never waits on the payment service: if the refund call
fails the order is still cancelled, and the lost refund is logged for
reconciliation.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from services.shared.classify import CallRole, classify
from services.shared.errors import ConflictError, NotFoundError, ValidationError

from .aggregate import CANCELLED, PAID, PENDING, Order, can_transition
from .events import EventPublisher, OrderCancelled, OrderCreated, OrderPaid
from .store import OrderStore

logger = logging.getLogger(__name__)

REFUND_PROCESSED = "processed"
REFUND_FAILED = "failed"
REFUND_NOT_REQUIRED = "not_required"

_NO_REFUND = object()


# Orders store amounts as NUMERIC(10, 2).
AMOUNT_CEILING = Decimal("100000000")
CENT = Decimal("0.01")


def parse_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("amount must be a positive number")
        if amount >= AMOUNT_CEILING or amount.quantize(CENT) >= AMOUNT_CEILING:
            raise ValidationError(f"amount must be less than {AMOUNT_CEILING}")
        return amount.quantize(CENT)
    except (InvalidOperation, ValueError):
        raise ValidationError("amount must be a positive number") from None


class OrderFulfillment:
    def __init__(
        self,
        store: OrderStore,
        user_caller,
        payment_caller,
        *,
        user_service_url: str,
        payment_service_url: str,
        user_timeout: float,
        payment_timeout: float,
        refund_timeout: float,
        events: EventPublisher | None = None,
    ) -> None:
        self.store = store
        self.user_caller = user_caller
        self.payment_caller = payment_caller
        self.user_url = user_service_url
        self.payment_url = payment_service_url
        self.user_timeout = user_timeout
        self.payment_timeout = payment_timeout
        self.refund_timeout = refund_timeout
        self.events = events

    async def _publish(self, event) -> None:
        if self.events is not None:
            await self.events.publish(event)

    async def _load(self, order_id: int) -> Order:
        order = await self.store.get(order_id)
        if order is None:
            logger.warning("Order %s not found", order_id)
            raise NotFoundError("Order not found", orderId=order_id)
        return order

    # ── Create ──────────────────────────────────────

    async def create(self, user_id: int | None, product: Any, amount: Any) -> Order:
        if not user_id or not product or not amount:
            logger.warning(
                "Order creation missing fields: userId=%r product=%r amount=%r",
                user_id, product, amount,
            )
            raise ValidationError(
                "Missing required fields: userId, product, and amount are required"
            )
        amount = parse_amount(amount)

        outcome = await self.user_caller.request(
            "userService",
            "GET",
            f"{self.user_url}/users/{user_id}",
            timeout=self.user_timeout,
        )
        error = classify(
            outcome,
            CallRole.FETCH_USER,
            service="User service",
            resource=f"User with ID {user_id}",
            failure_message="Failed to create order",
        )
        if error is not None:
            raise error

        order = await self.store.insert(
            user_id=user_id, user=outcome.payload, product=product, amount=amount
        )
        logger.info(
            "Order %s created for user %s (%s), user lookup took %.0fms",
            order.id, user_id, amount, outcome.elapsed_ms,
        )
        await self._publish(
            OrderCreated(
                order_id=order.id,
                user_id=user_id,
                amount=float(amount),
                timestamp=order.created_at or datetime.now(timezone.utc),
            )
        )
        return order

    # ── Pay ─────────────────────────────────────────

    async def pay(self, order_id: int) -> tuple[Order, Any]:
        order = await self._load(order_id)
        if order.status == PAID:
            raise ConflictError("Order already paid")
        if order.status == CANCELLED:
            raise ConflictError("Cannot pay a cancelled order")

        outcome = await self.payment_caller.request(
            "paymentService",
            "POST",
            f"{self.payment_url}/pay",
            json={
                "orderId": order.id,
                "amount": float(order.amount),
                "userId": order.user_id,
            },
            timeout=self.payment_timeout,
        )
        error = classify(
            outcome,
            CallRole.CHARGE_PAYMENT,
            service="Payment service",
            resource=f"Payment for order {order.id}",
            failure_message="Failed to process payment",
        )
        if error is not None:
            # The order is left untouched so the client can try again.
            raise error

        payment = outcome.payload
        paid = await self.store.transition(
            order.id,
            PENDING,
            PAID,
            payment_details=payment if isinstance(payment, dict) else {"response": payment},
            paid_at=datetime.now(timezone.utc),
        )
        if paid is None:
            await self._lost_pay_race(order.id, payment)

        logger.info(
            "Order %s paid, transaction %s, payment took %.0fms",
            order.id, paid.transaction_id, outcome.elapsed_ms,
        )
        await self._publish(
            OrderPaid(
                order_id=paid.id,
                transaction_id=paid.transaction_id,
                amount=float(paid.amount),
                timestamp=paid.paid_at,
            )
        )
        return paid, payment

    async def _lost_pay_race(self, order_id: int, payment: Any) -> None:
        """Another request changed the order while the charge was in flight."""
        current = await self._load(order_id)
        if current.status == PAID:
            # The payment service deduplicates per order, so this is the same charge.
            raise ConflictError("Order already paid")
        transaction_id = payment.get("transactionId") if isinstance(payment, dict) else None
        refund = await self._refund(current, transaction_id, reason="order_cancelled_during_payment")
        logger.error(
            "Order %s was cancelled while being paid, refund of %s: %s",
            order_id, transaction_id, refund,
        )
        raise ConflictError("Cannot pay a cancelled order")

    # ── Cancel ──────────────────────────────────────

    async def _refund(self, order: Order, transaction_id: str | None, reason: str) -> str:
        if not transaction_id:
            logger.error("Order %s has no transaction id, cannot refund", order.id)
            return REFUND_FAILED
        result = await self.payment_caller.best_effort(
            "paymentService",
            "POST",
            f"{self.payment_url}/refund",
            json={
                "transactionId": transaction_id,
                "amount": float(order.amount),
                "reason": reason,
            },
            timeout=self.refund_timeout,
            fallback=_NO_REFUND,
        )
        if result is _NO_REFUND:
            return REFUND_FAILED
        return REFUND_PROCESSED

    async def cancel(self, order_id: int) -> tuple[Order, str]:
        order = await self._load(order_id)
        if not can_transition(order.status, CANCELLED):
            raise ConflictError("Order already cancelled")

        refund = REFUND_NOT_REQUIRED
        if order.status == PAID:
            refund = await self._refund(order, order.transaction_id, reason="order_cancellation")
            if refund == REFUND_FAILED:
                # Needs reconciliation: the order is cancelled but the money was kept.
                logger.error(
                    "Refund for cancelled order %s (transaction %s, amount %s) "
                    "was not recorded",
                    order.id, order.transaction_id, order.amount,
                )
            else:
                logger.info(
                    "Refund processed for cancelled order %s (transaction %s)",
                    order.id, order.transaction_id,
                )

        cancelled = await self.store.transition(
            order.id, order.status, CANCELLED, cancelled_at=datetime.now(timezone.utc)
        )
        if cancelled is None:
            raise ConflictError("Order was modified concurrently, please retry")

        logger.info("Order %s cancelled (was %s)", order.id, order.status)
        await self._publish(
            OrderCancelled(
                order_id=order.id,
                previous_status=order.status,
                refund_status=refund,
                timestamp=cancelled.cancelled_at,
            )
        )
        return cancelled, refund
