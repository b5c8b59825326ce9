"""
Order Service - queries (read side)

Listing and lookups are served from the local store only. Analytics also
enriches each order with the buyer's demographics from the user service;
that enrichment is best-effort per order, so one failing lookup turns into
"unknown" for that order instead of failing the whole report.
"""

import asyncio
from collections import Counter
from datetime import datetime, timezone
from decimal import Decimal

from services.shared.errors import NotFoundError, ValidationError

from .aggregate import PAID, STATUSES
from .store import OrderStore

UNKNOWN = "unknown"
MAX_PAGE_SIZE = 100


def parse_order_id(raw: str) -> int:
    try:
        order_id = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("Invalid order ID") from None
    if order_id <= 0:
        raise ValidationError("Invalid order ID")
    return order_id


def parse_page(limit: int, offset: int) -> tuple[int, int]:
    if limit < 1 or limit > MAX_PAGE_SIZE or offset < 0:
        raise ValidationError(f"limit must be 1-{MAX_PAGE_SIZE} and offset >= 0")
    return limit, offset


async def get_order(store: OrderStore, order_id: int) -> dict:
    order = await store.get(order_id)
    if order is None:
        raise NotFoundError("Order not found", orderId=order_id)
    return order.to_dict()


async def list_orders(
    store: OrderStore,
    *,
    user_id: int | None = None,
    status: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> dict:
    if status is not None and status not in STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(STATUSES)}")
    limit, offset = parse_page(limit, offset)
    orders, total = await store.list_orders(
        user_id=user_id, status=status, limit=limit, offset=offset
    )
    return {
        "orders": [o.to_dict() for o in orders],
        "total": total,
        "filtered": len(orders),
    }


async def _demographics(caller, user_service_url: str, user_id: int, timeout: float):
    profile = await caller.best_effort(
        "userService",
        "GET",
        f"{user_service_url}/users/{user_id}/profile",
        timeout=timeout,
    )
    if isinstance(profile, dict) and profile.get("demographics"):
        return profile["demographics"]
    return UNKNOWN


async def order_analytics(
    store: OrderStore, caller, *, user_service_url: str, timeout: float
) -> dict:
    orders = await store.all()

    by_status = Counter(o.status for o in orders)
    revenue = sum((o.amount for o in orders if o.status == PAID), Decimal("0"))
    average = (
        sum((o.amount for o in orders), Decimal("0")) / len(orders) if orders else Decimal("0")
    )

    demographics = await asyncio.gather(
        *(_demographics(caller, user_service_url, o.user_id, timeout) for o in orders)
    )

    return {
        "totalOrders": len(orders),
        "ordersByStatus": dict(by_status),
        "totalRevenue": float(revenue),
        "averageOrderValue": round(float(average), 2),
        "userDemographics": list(demographics),
        "generatedAt": datetime.now(timezone.utc).isoformat(),
    }
