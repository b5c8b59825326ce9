"""
Payment Service - transactions and refunds

Both are append-only. A transaction's state is derived from its refunds:

    refunded == 0       -> paid
    0 < refunded < amt  -> partially_refunded
    refunded == amt     -> refunded
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

PAID = "paid"
PARTIALLY_REFUNDED = "partially_refunded"
REFUNDED = "refunded"
REFUND_PROCESSED = "processed"


class Transaction:
    def __init__(
        self,
        transaction_id: str,
        order_id: int,
        amount: Decimal,
        user_id: int | None = None,
        user: Any = None,
        status: str = PAID,
        created_at: datetime | None = None,
    ) -> None:
        self.transaction_id = transaction_id
        self.order_id = order_id
        self.amount = amount
        self.user_id = user_id
        self.user = user
        self.status = status
        self.created_at = created_at

    def to_dict(self) -> dict:
        return {
            "transactionId": self.transaction_id,
            "orderId": self.order_id,
            "userId": self.user_id,
            "user": self.user,
            "amount": float(self.amount),
            "status": self.status,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Refund:
    def __init__(
        self,
        refund_id: str,
        transaction_id: str,
        amount: Decimal,
        reason: str,
        status: str = REFUND_PROCESSED,
        created_at: datetime | None = None,
    ) -> None:
        self.refund_id = refund_id
        self.transaction_id = transaction_id
        self.amount = amount
        self.reason = reason
        self.status = status
        self.created_at = created_at

    def to_dict(self) -> dict:
        return {
            "refundId": self.refund_id,
            "originalTransactionId": self.transaction_id,
            "amount": float(self.amount),
            "reason": self.reason,
            "status": self.status,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def refund_state(amount: Decimal, refunded: Decimal) -> str:
    if refunded <= 0:
        return PAID
    if refunded < amount:
        return PARTIALLY_REFUNDED
    return REFUNDED
