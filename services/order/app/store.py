"""
Order Service - order storage

The fulfillment logic only sees the OrderStore interface. Two backends:

  InMemoryOrderStore  process-local dict, used when DATABASE_URL is unset
                      and in tests
  SqlOrderStore       PostgreSQL through SQLAlchemy async

Status changes go through transition(), a compare-and-swap: the row is
only updated if it is still in the expected status, so two concurrent
"pay" requests cannot both win.
"""

import asyncio
import copy
import itertools
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from services.shared import db

from .aggregate import PENDING, Order


class OrderStore(Protocol):
    async def ping(self) -> None: ...

    async def insert(
        self, *, user_id: int, user: dict, product: Any, amount: Decimal
    ) -> Order: ...

    async def get(self, order_id: int) -> Order | None: ...

    async def list_orders(
        self,
        *,
        user_id: int | None = None,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]: ...

    async def all(self) -> list[Order]: ...

    async def count(self) -> int: ...

    async def transition(
        self,
        order_id: int,
        expected: str,
        new: str,
        *,
        payment_details: dict | None = None,
        paid_at: datetime | None = None,
        cancelled_at: datetime | None = None,
    ) -> Order | None: ...


class InMemoryOrderStore:
    def __init__(self) -> None:
        self._orders: dict[int, Order] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def ping(self) -> None:
        return None

    async def insert(self, *, user_id, user, product, amount) -> Order:
        async with self._lock:
            order = Order(
                id=next(self._ids),
                user_id=user_id,
                user=copy.deepcopy(user),
                product=copy.deepcopy(product),
                amount=amount,
                status=PENDING,
                created_at=datetime.now(timezone.utc),
            )
            self._orders[order.id] = order
            return copy.deepcopy(order)

    async def get(self, order_id: int) -> Order | None:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def list_orders(self, *, user_id=None, status=None, limit=20, offset=0):
        matches = [
            o
            for o in self._orders.values()
            if (user_id is None or o.user_id == user_id)
            and (status is None or o.status == status)
        ]
        matches.sort(key=lambda o: (o.created_at, o.id), reverse=True)
        page = matches[offset : offset + limit]
        return [copy.deepcopy(o) for o in page], len(matches)

    async def all(self) -> list[Order]:
        return [copy.deepcopy(o) for o in self._orders.values()]

    async def count(self) -> int:
        return len(self._orders)

    async def transition(
        self,
        order_id,
        expected,
        new,
        *,
        payment_details=None,
        paid_at=None,
        cancelled_at=None,
    ) -> Order | None:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != expected:
                return None
            order.status = new
            if payment_details is not None:
                order.payment_details = copy.deepcopy(payment_details)
            if paid_at is not None:
                order.paid_at = paid_at
            if cancelled_at is not None:
                order.cancelled_at = cancelled_at
            return copy.deepcopy(order)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL,
        user_data JSONB NOT NULL,
        product JSONB NOT NULL,
        amount NUMERIC(10, 2) NOT NULL CHECK (amount > 0),
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        payment_details JSONB,
        paid_at TIMESTAMPTZ,
        cancelled_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_user_id ON orders(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
]


def _row_to_order(row) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        user=db.loads(row.user_data),
        product=db.loads(row.product),
        amount=Decimal(row.amount),
        status=row.status,
        payment_details=db.loads(row.payment_details),
        created_at=row.created_at,
        paid_at=row.paid_at,
        cancelled_at=row.cancelled_at,
    )


class SqlOrderStore:
    def __init__(self, async_session: sessionmaker) -> None:
        self.async_session = async_session

    async def init_schema(self) -> None:
        await db.run_ddl(self.async_session, SCHEMA)

    async def ping(self) -> None:
        await db.ping(self.async_session)

    async def insert(self, *, user_id, user, product, amount) -> Order:
        async with self.async_session() as session:
            result = await session.execute(
                text("""
                    INSERT INTO orders (user_id, user_data, product, amount)
                    VALUES (:user_id, CAST(:user_data AS JSONB), CAST(:product AS JSONB), :amount)
                    RETURNING *
                """),
                {
                    "user_id": user_id,
                    "user_data": db.dumps(user),
                    "product": db.dumps(product),
                    "amount": amount,
                },
            )
            row = result.fetchone()
            await session.commit()
            return _row_to_order(row)

    async def get(self, order_id: int) -> Order | None:
        async with self.async_session() as session:
            result = await session.execute(
                text("SELECT * FROM orders WHERE id = :id"), {"id": order_id}
            )
            row = result.fetchone()
            return _row_to_order(row) if row else None

    async def list_orders(self, *, user_id=None, status=None, limit=20, offset=0):
        conditions = []
        params: dict[str, Any] = {}
        if user_id is not None:
            conditions.append("user_id = :user_id")
            params["user_id"] = user_id
        if status is not None:
            conditions.append("status = :status")
            params["status"] = status
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""

        async with self.async_session() as session:
            result = await session.execute(
                text(
                    f"SELECT * FROM orders{where} "
                    "ORDER BY created_at DESC, id DESC LIMIT :limit OFFSET :offset"
                ),
                {**params, "limit": limit, "offset": offset},
            )
            rows = result.fetchall()
            total = await session.execute(
                text(f"SELECT COUNT(*) FROM orders{where}"), params
            )
            return [_row_to_order(r) for r in rows], total.scalar_one()

    async def all(self) -> list[Order]:
        async with self.async_session() as session:
            result = await session.execute(text("SELECT * FROM orders ORDER BY id"))
            return [_row_to_order(r) for r in result.fetchall()]

    async def count(self) -> int:
        async with self.async_session() as session:
            result = await session.execute(text("SELECT COUNT(*) FROM orders"))
            return result.scalar_one()

    async def transition(
        self,
        order_id,
        expected,
        new,
        *,
        payment_details=None,
        paid_at=None,
        cancelled_at=None,
    ) -> Order | None:
        async with self.async_session() as session:
            result = await session.execute(
                text("""
                    UPDATE orders
                    SET status = :new,
                        payment_details = COALESCE(CAST(:payment_details AS JSONB), payment_details),
                        paid_at = COALESCE(CAST(:paid_at AS TIMESTAMPTZ), paid_at),
                        cancelled_at = COALESCE(CAST(:cancelled_at AS TIMESTAMPTZ), cancelled_at),
                        updated_at = NOW()
                    WHERE id = :id AND status = :expected
                    RETURNING *
                """),
                {
                    "id": order_id,
                    "expected": expected,
                    "new": new,
                    "payment_details": db.dumps(payment_details),
                    "paid_at": paid_at,
                    "cancelled_at": cancelled_at,
                },
            )
            row = result.fetchone()
            await session.commit()
            return _row_to_order(row) if row else None
