"""
Payment Service - charges and refunds (write side)

A charge is idempotent per order: while an order has a transaction with
money left on it, charging it again returns that transaction flagged as a
duplicate instead of taking the money twice. The order service relies on
this when two pay requests for the same order race each other.

Declines are simulated: amounts over the configured ceiling are always
declined, and a configurable share of the rest is declined at random.
"""

import logging
import random
from decimal import Decimal, InvalidOperation
from typing import Any

from services.shared.errors import ErrorKind, NotFoundError, ServiceError, ValidationError

from .aggregate import Refund, Transaction
from .store import PaymentStore

logger = logging.getLogger(__name__)

DECLINE_REASONS = ("Insufficient funds", "Card declined", "Issuer unavailable")


class PaymentDeclined(ServiceError):
    def __init__(self, reason: str, order_id: int) -> None:
        super().__init__(ErrorKind.PAYMENT_DECLINED, reason, orderId=order_id)


# Amounts are stored as NUMERIC(10, 2).
AMOUNT_CEILING = Decimal("100000000")
CENT = Decimal("0.01")


def parse_money(value: Any, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
        if not amount.is_finite() or amount <= 0:
            raise ValidationError(f"{field} must be a positive number")
        if amount >= AMOUNT_CEILING or amount.quantize(CENT) >= AMOUNT_CEILING:
            raise ValidationError(f"{field} must be less than {AMOUNT_CEILING}")
        return amount.quantize(CENT)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a positive number") from None


class PaymentProcessor:
    def __init__(
        self,
        store: PaymentStore,
        caller,
        *,
        user_service_url: str,
        user_timeout: float,
        max_amount: Decimal,
        decline_rate: float = 0.0,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.caller = caller
        self.user_url = user_service_url
        self.user_timeout = user_timeout
        self.max_amount = max_amount
        self.decline_rate = decline_rate
        self.rng = rng or random.Random()

    def _decline_reason(self, amount: Decimal) -> str | None:
        if amount > self.max_amount:
            return f"Amount exceeds limit of {self.max_amount}"
        if self.decline_rate > 0 and self.rng.random() < self.decline_rate:
            return self.rng.choice(DECLINE_REASONS)
        return None

    async def charge(
        self, order_id: int | None, amount: Any, user_id: int | None = None
    ) -> tuple[Transaction, bool]:
        """Returns the transaction and whether it already existed."""
        if not order_id or amount is None:
            raise ValidationError("Missing required fields: orderId and amount are required")
        amount = parse_money(amount, "amount")

        existing = await self.store.active_transaction(order_id)
        if existing is not None:
            logger.info(
                "Order %s already charged by %s, returning existing transaction",
                order_id, existing.transaction_id,
            )
            return existing, True

        reason = self._decline_reason(amount)
        if reason is not None:
            await self.store.record_decline(order_id, amount, reason)
            logger.warning("Payment for order %s declined: %s", order_id, reason)
            raise PaymentDeclined(reason, order_id)

        user = None
        if user_id:
            # Decoration only, a missing user never blocks a charge.
            user = await self.caller.best_effort(
                "userService",
                "GET",
                f"{self.user_url}/users/{user_id}",
                timeout=self.user_timeout,
            )

        txn, created = await self.store.charge(
            order_id=order_id, amount=amount, user_id=user_id, user=user
        )
        if created:
            logger.info("Order %s charged %s as %s", order_id, amount, txn.transaction_id)
        return txn, not created

    async def refund(
        self, transaction_id: str | None, amount: Any = None, reason: str | None = None
    ) -> Refund:
        if not transaction_id:
            raise ValidationError("Missing required field: transactionId")
        requested = None if amount is None else parse_money(amount, "amount")

        txn = await self.store.get_transaction(transaction_id)
        if txn is None:
            raise NotFoundError("Transaction not found", transactionId=transaction_id)

        refund = await self.store.add_refund(transaction_id, requested, reason or "requested")
        if refund is None:
            refunded = await self.store.refunded_amount(transaction_id)
            remaining = txn.amount - refunded
            logger.warning(
                "Refund of %s on %s rejected, %s remaining",
                requested, transaction_id, remaining,
            )
            raise ValidationError(
                "Refund amount exceeds remaining refundable amount",
                remaining=float(remaining),
            )

        logger.info(
            "Refunded %s on %s (%s)", refund.amount, transaction_id, refund.reason
        )
        return refund
