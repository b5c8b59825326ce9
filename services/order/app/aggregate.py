"""
Order Service - Order aggregate

State transitions:
    pending -> paid       (payment service charged the order)
    pending -> cancelled  (cancelled before payment)
    paid    -> cancelled  (cancelled after payment, compensating refund)

cancelled is terminal. The user snapshot is taken once at creation and is
never refreshed.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

PENDING = "pending"
PAID = "paid"
CANCELLED = "cancelled"

STATUSES = (PENDING, PAID, CANCELLED)

ALLOWED_TRANSITIONS = {
    PENDING: {PAID, CANCELLED},
    PAID: {CANCELLED},
    CANCELLED: set(),
}


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class Order:
    def __init__(
        self,
        id: int,
        user_id: int,
        user: dict,
        product: Any,
        amount: Decimal,
        status: str = PENDING,
        payment_details: dict | None = None,
        created_at: datetime | None = None,
        paid_at: datetime | None = None,
        cancelled_at: datetime | None = None,
    ) -> None:
        self.id = id
        self.user_id = user_id
        self.user = user
        self.product = product
        self.amount = amount
        self.status = status
        self.payment_details = payment_details
        self.created_at = created_at
        self.paid_at = paid_at
        self.cancelled_at = cancelled_at

    @property
    def transaction_id(self) -> str | None:
        if isinstance(self.payment_details, dict):
            return self.payment_details.get("transactionId")
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "user": self.user,
            "product": self.product,
            "amount": float(self.amount),
            "status": self.status,
            "paymentDetails": self.payment_details,
            "createdAt": _iso(self.created_at),
            "paidAt": _iso(self.paid_at),
            "cancelledAt": _iso(self.cancelled_at),
        }
