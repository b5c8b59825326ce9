"""
Payment Service - ledger storage

Two invariants are enforced by the store itself, not by its callers:

  * at most one transaction per order that still has money on it; a
    second charge for the same order returns the existing transaction
  * refunds against a transaction never add up to more than its amount

InMemoryPaymentStore serialises with an asyncio.Lock; SqlPaymentStore uses
an advisory lock per order and SELECT ... FOR UPDATE per transaction.
"""

import asyncio
import uuid
from collections import Counter
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from services.shared import db

from .aggregate import PAID, Refund, Transaction


def new_transaction_id() -> str:
    return f"txn_{uuid.uuid4().hex[:16]}"


def new_refund_id() -> str:
    return f"ref_{uuid.uuid4().hex[:16]}"


class PaymentStore(Protocol):
    async def ping(self) -> None: ...

    async def active_transaction(self, order_id: int) -> Transaction | None: ...

    async def charge(
        self, *, order_id: int, amount: Decimal, user_id: int | None, user: Any
    ) -> tuple[Transaction, bool]: ...

    async def get_transaction(self, transaction_id: str) -> Transaction | None: ...

    async def refunded_amount(self, transaction_id: str) -> Decimal: ...

    async def add_refund(
        self, transaction_id: str, amount: Decimal | None, reason: str
    ) -> Refund | None: ...

    async def list_transactions(
        self, *, user_id=None, order_id=None, limit=20, offset=0
    ) -> tuple[list[Transaction], int]: ...

    async def list_refunds(
        self, *, transaction_id=None, limit=20, offset=0
    ) -> tuple[list[Refund], int]: ...

    async def record_decline(self, order_id: int, amount: Decimal, reason: str) -> None: ...

    async def stats(self) -> dict: ...


class InMemoryPaymentStore:
    def __init__(self) -> None:
        self._transactions: dict[str, Transaction] = {}
        self._refunds: list[Refund] = []
        self._declines: list[tuple[int, Decimal, str]] = []
        self._lock = asyncio.Lock()

    async def ping(self) -> None:
        return None

    def _refunded(self, transaction_id: str) -> Decimal:
        return sum(
            (r.amount for r in self._refunds if r.transaction_id == transaction_id),
            Decimal("0"),
        )

    def _active(self, order_id: int) -> Transaction | None:
        for txn in self._transactions.values():
            if txn.order_id == order_id and self._refunded(txn.transaction_id) < txn.amount:
                return txn
        return None

    async def active_transaction(self, order_id: int) -> Transaction | None:
        return self._active(order_id)

    async def charge(self, *, order_id, amount, user_id, user):
        async with self._lock:
            existing = self._active(order_id)
            if existing is not None:
                return existing, False
            txn = Transaction(
                transaction_id=new_transaction_id(),
                order_id=order_id,
                amount=amount,
                user_id=user_id,
                user=user,
                status=PAID,
                created_at=datetime.now(timezone.utc),
            )
            self._transactions[txn.transaction_id] = txn
            return txn, True

    async def get_transaction(self, transaction_id):
        return self._transactions.get(transaction_id)

    async def refunded_amount(self, transaction_id):
        return self._refunded(transaction_id)

    async def add_refund(self, transaction_id, amount, reason):
        async with self._lock:
            txn = self._transactions.get(transaction_id)
            if txn is None:
                return None
            remaining = txn.amount - self._refunded(transaction_id)
            amount = remaining if amount is None else amount
            if amount <= 0 or amount > remaining:
                return None
            refund = Refund(
                refund_id=new_refund_id(),
                transaction_id=transaction_id,
                amount=amount,
                reason=reason,
                created_at=datetime.now(timezone.utc),
            )
            self._refunds.append(refund)
            return refund

    async def list_transactions(self, *, user_id=None, order_id=None, limit=20, offset=0):
        matches = [
            t
            for t in reversed(self._transactions.values())
            if (user_id is None or t.user_id == user_id)
            and (order_id is None or t.order_id == order_id)
        ]
        return matches[offset : offset + limit], len(matches)

    async def list_refunds(self, *, transaction_id=None, limit=20, offset=0):
        matches = [
            r for r in reversed(self._refunds)
            if transaction_id is None or r.transaction_id == transaction_id
        ]
        return matches[offset : offset + limit], len(matches)

    async def record_decline(self, order_id, amount, reason):
        self._declines.append((order_id, amount, reason))

    async def stats(self) -> dict:
        return {
            "transactions": len(self._transactions),
            "declined": len(self._declines),
            "revenue": sum((t.amount for t in self._transactions.values()), Decimal("0")),
            "refunded": sum((r.amount for r in self._refunds), Decimal("0")),
            "refunds": len(self._refunds),
            "refundsByReason": dict(Counter(r.reason for r in self._refunds)),
        }


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS transactions (
        transaction_id VARCHAR(40) PRIMARY KEY,
        order_id INTEGER NOT NULL,
        user_id INTEGER,
        user_data JSONB,
        amount NUMERIC(10, 2) NOT NULL CHECK (amount > 0),
        status VARCHAR(20) NOT NULL DEFAULT 'paid',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refunds (
        refund_id VARCHAR(40) PRIMARY KEY,
        transaction_id VARCHAR(40) NOT NULL REFERENCES transactions(transaction_id),
        amount NUMERIC(10, 2) NOT NULL CHECK (amount > 0),
        reason VARCHAR(100) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'processed',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_declines (
        id SERIAL PRIMARY KEY,
        order_id INTEGER NOT NULL,
        amount NUMERIC(10, 2) NOT NULL,
        reason VARCHAR(200) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_order_id ON transactions(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_user_id ON transactions(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_refunds_transaction_id ON refunds(transaction_id)",
]

_ACTIVE_FOR_ORDER = """
    SELECT t.* FROM transactions t
    WHERE t.order_id = :order_id
      AND t.amount > COALESCE(
          (SELECT SUM(r.amount) FROM refunds r WHERE r.transaction_id = t.transaction_id), 0)
    ORDER BY t.created_at DESC
    LIMIT 1
"""


def _row_to_transaction(row) -> Transaction:
    return Transaction(
        transaction_id=row.transaction_id,
        order_id=row.order_id,
        amount=Decimal(row.amount),
        user_id=row.user_id,
        user=db.loads(row.user_data),
        status=row.status,
        created_at=row.created_at,
    )


def _row_to_refund(row) -> Refund:
    return Refund(
        refund_id=row.refund_id,
        transaction_id=row.transaction_id,
        amount=Decimal(row.amount),
        reason=row.reason,
        status=row.status,
        created_at=row.created_at,
    )


class SqlPaymentStore:
    def __init__(self, async_session: sessionmaker) -> None:
        self.async_session = async_session

    async def init_schema(self) -> None:
        await db.run_ddl(self.async_session, SCHEMA)

    async def ping(self) -> None:
        await db.ping(self.async_session)

    async def active_transaction(self, order_id):
        async with self.async_session() as session:
            result = await session.execute(text(_ACTIVE_FOR_ORDER), {"order_id": order_id})
            row = result.fetchone()
            return _row_to_transaction(row) if row else None

    async def charge(self, *, order_id, amount, user_id, user):
        async with self.async_session() as session:
            # Serialises charges for the same order until commit.
            await session.execute(
                text("SELECT pg_advisory_xact_lock(:order_id)"), {"order_id": order_id}
            )
            result = await session.execute(text(_ACTIVE_FOR_ORDER), {"order_id": order_id})
            row = result.fetchone()
            if row is not None:
                await session.commit()
                return _row_to_transaction(row), False

            result = await session.execute(
                text("""
                    INSERT INTO transactions (transaction_id, order_id, user_id, user_data, amount)
                    VALUES (:transaction_id, :order_id, :user_id, CAST(:user_data AS JSONB), :amount)
                    RETURNING *
                """),
                {
                    "transaction_id": new_transaction_id(),
                    "order_id": order_id,
                    "user_id": user_id,
                    "user_data": db.dumps(user),
                    "amount": amount,
                },
            )
            row = result.fetchone()
            await session.commit()
            return _row_to_transaction(row), True

    async def get_transaction(self, transaction_id):
        async with self.async_session() as session:
            result = await session.execute(
                text("SELECT * FROM transactions WHERE transaction_id = :id"),
                {"id": transaction_id},
            )
            row = result.fetchone()
            return _row_to_transaction(row) if row else None

    async def refunded_amount(self, transaction_id):
        async with self.async_session() as session:
            result = await session.execute(
                text("SELECT COALESCE(SUM(amount), 0) FROM refunds WHERE transaction_id = :id"),
                {"id": transaction_id},
            )
            return Decimal(result.scalar_one())

    async def add_refund(self, transaction_id, amount, reason):
        async with self.async_session() as session:
            result = await session.execute(
                text("SELECT * FROM transactions WHERE transaction_id = :id FOR UPDATE"),
                {"id": transaction_id},
            )
            row = result.fetchone()
            if row is None:
                await session.rollback()
                return None
            refunded = await session.execute(
                text("SELECT COALESCE(SUM(amount), 0) FROM refunds WHERE transaction_id = :id"),
                {"id": transaction_id},
            )
            remaining = Decimal(row.amount) - Decimal(refunded.scalar_one())
            amount = remaining if amount is None else amount
            if amount <= 0 or amount > remaining:
                await session.rollback()
                return None
            result = await session.execute(
                text("""
                    INSERT INTO refunds (refund_id, transaction_id, amount, reason)
                    VALUES (:refund_id, :transaction_id, :amount, :reason)
                    RETURNING *
                """),
                {
                    "refund_id": new_refund_id(),
                    "transaction_id": transaction_id,
                    "amount": amount,
                    "reason": reason,
                },
            )
            refund = _row_to_refund(result.fetchone())
            await session.commit()
            return refund

    async def list_transactions(self, *, user_id=None, order_id=None, limit=20, offset=0):
        conditions = []
        params: dict[str, Any] = {}
        if user_id is not None:
            conditions.append("user_id = :user_id")
            params["user_id"] = user_id
        if order_id is not None:
            conditions.append("order_id = :order_id")
            params["order_id"] = order_id
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        async with self.async_session() as session:
            result = await session.execute(
                text(
                    f"SELECT * FROM transactions{where} "
                    "ORDER BY created_at DESC LIMIT :limit OFFSET :offset"
                ),
                {**params, "limit": limit, "offset": offset},
            )
            rows = result.fetchall()
            total = await session.execute(
                text(f"SELECT COUNT(*) FROM transactions{where}"), params
            )
            return [_row_to_transaction(r) for r in rows], total.scalar_one()

    async def list_refunds(self, *, transaction_id=None, limit=20, offset=0):
        where = " WHERE transaction_id = :transaction_id" if transaction_id else ""
        params = {"transaction_id": transaction_id} if transaction_id else {}
        async with self.async_session() as session:
            result = await session.execute(
                text(
                    f"SELECT * FROM refunds{where} "
                    "ORDER BY created_at DESC LIMIT :limit OFFSET :offset"
                ),
                {**params, "limit": limit, "offset": offset},
            )
            rows = result.fetchall()
            total = await session.execute(text(f"SELECT COUNT(*) FROM refunds{where}"), params)
            return [_row_to_refund(r) for r in rows], total.scalar_one()

    async def record_decline(self, order_id, amount, reason):
        async with self.async_session() as session:
            await session.execute(
                text("""
                    INSERT INTO payment_declines (order_id, amount, reason)
                    VALUES (:order_id, :amount, :reason)
                """),
                {"order_id": order_id, "amount": amount, "reason": reason},
            )
            await session.commit()

    async def stats(self) -> dict:
        async with self.async_session() as session:
            txns = (
                await session.execute(
                    text("SELECT COUNT(*) AS n, COALESCE(SUM(amount), 0) AS total FROM transactions")
                )
            ).fetchone()
            refunds = (
                await session.execute(
                    text("SELECT COUNT(*) AS n, COALESCE(SUM(amount), 0) AS total FROM refunds")
                )
            ).fetchone()
            declined = (
                await session.execute(text("SELECT COUNT(*) FROM payment_declines"))
            ).scalar_one()
            by_reason = await session.execute(
                text("SELECT reason, COUNT(*) AS n FROM refunds GROUP BY reason")
            )
            return {
                "transactions": txns.n,
                "declined": declined,
                "revenue": Decimal(txns.total),
                "refunded": Decimal(refunds.total),
                "refunds": refunds.n,
                "refundsByReason": {row.reason: row.n for row in by_reason.fetchall()},
            }
