"""
Payment Service - queries (read side)
"""

from datetime import datetime, timezone

from services.shared.errors import NotFoundError, ValidationError

from .aggregate import refund_state
from .store import PaymentStore

MAX_PAGE_SIZE = 100


def parse_page(limit: int, offset: int) -> tuple[int, int]:
    if limit < 1 or limit > MAX_PAGE_SIZE or offset < 0:
        raise ValidationError(f"limit must be 1-{MAX_PAGE_SIZE} and offset >= 0")
    return limit, offset


async def list_payments(
    store: PaymentStore,
    *,
    user_id: int | None = None,
    order_id: int | None = None,
    limit: int = 20,
    offset: int = 0,
) -> dict:
    limit, offset = parse_page(limit, offset)
    transactions, total = await store.list_transactions(
        user_id=user_id, order_id=order_id, limit=limit, offset=offset
    )
    return {
        "transactions": [t.to_dict() for t in transactions],
        "total": total,
        "filtered": len(transactions),
    }


async def list_refunds(
    store: PaymentStore,
    *,
    transaction_id: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> dict:
    limit, offset = parse_page(limit, offset)
    refunds, total = await store.list_refunds(
        transaction_id=transaction_id, limit=limit, offset=offset
    )
    return {"refunds": [r.to_dict() for r in refunds], "total": total}


async def transaction_status(store: PaymentStore, transaction_id: str) -> dict:
    txn = await store.get_transaction(transaction_id)
    if txn is None:
        raise NotFoundError("Transaction not found", transactionId=transaction_id)
    refunds, _ = await store.list_refunds(
        transaction_id=transaction_id, limit=MAX_PAGE_SIZE, offset=0
    )
    refunded = await store.refunded_amount(transaction_id)
    return {
        "transaction": txn.to_dict(),
        "refunds": [r.to_dict() for r in refunds],
        "refundedAmount": float(refunded),
        "netAmount": float(txn.amount - refunded),
        "status": refund_state(txn.amount, refunded),
    }


async def payment_analytics(store: PaymentStore) -> dict:
    stats = await store.stats()
    attempts = stats["transactions"] + stats["declined"]
    success_rate = stats["transactions"] / attempts * 100 if attempts else 0.0
    return {
        "totalTransactions": stats["transactions"],
        "declinedTransactions": stats["declined"],
        "totalRevenue": float(stats["revenue"]),
        "totalRefunded": float(stats["refunded"]),
        "netRevenue": float(stats["revenue"] - stats["refunded"]),
        "successRate": round(success_rate, 2),
        "refundsByReason": stats["refundsByReason"],
        "generatedAt": datetime.now(timezone.utc).isoformat(),
    }
