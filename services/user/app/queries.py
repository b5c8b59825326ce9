"""
User Service - queries (read side)

/users/{id}/orders and /users/{id}/payments are required reads from the
order and payment services: if the peer cannot answer, neither can we,
and the caller gets the classified error. The order insights attached to
the user analytics report are best-effort and fall back to {}.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone

from services.shared.classify import CallRole, classify
from services.shared.errors import ValidationError

from .store import UserStore

MAX_PAGE_SIZE = 100
ACTIVE_WINDOW = timedelta(days=30)


async def list_users(
    store: UserStore, *, search: str | None = None, limit: int = 10, offset: int = 0
) -> dict:
    if limit < 1 or limit > MAX_PAGE_SIZE or offset < 0:
        raise ValidationError(f"limit must be 1-{MAX_PAGE_SIZE} and offset >= 0")
    users, total = await store.list_users(search=search, limit=limit, offset=offset)
    return {
        "users": [u.to_dict() for u in users],
        "total": total,
        "returned": len(users),
    }


async def list_activity(
    store: UserStore, user_id: int, *, action: str | None = None, limit: int | None = None
) -> dict:
    if limit is not None and limit < 1:
        limit = None
    activities = await store.list_activity(user_id, action=action, limit=limit)
    return {"userId": user_id, "activities": activities, "total": len(activities)}


async def _read_from_peer(
    store: UserStore,
    caller,
    user,
    *,
    dependency: str,
    service: str,
    url: str,
    timeout: float,
    what: str,
    activity: str,
) -> dict:
    outcome = await caller.request(
        dependency, "GET", url, params={"userId": user.id}, timeout=timeout
    )
    error = classify(
        outcome,
        CallRole.READ,
        service=service,
        resource=f"{what.capitalize()} for user {user.id}",
        failure_message=f"Failed to fetch user {what}",
    )
    if error is not None:
        raise error
    count = outcome.payload.get("filtered") if isinstance(outcome.payload, dict) else None
    await store.add_activity(
        user.id, activity, {"route": f"/users/:id/{what}", "count": count}
    )
    return {"user": user.summary(), what: outcome.payload}


async def user_orders(store, caller, user, *, order_service_url: str, timeout: float) -> dict:
    return await _read_from_peer(
        store,
        caller,
        user,
        dependency="orderService",
        service="Order service",
        url=f"{order_service_url}/orders",
        timeout=timeout,
        what="orders",
        activity="orders_viewed",
    )


async def user_payments(
    store, caller, user, *, payment_service_url: str, timeout: float
) -> dict:
    return await _read_from_peer(
        store,
        caller,
        user,
        dependency="paymentService",
        service="Payment service",
        url=f"{payment_service_url}/payments",
        timeout=timeout,
        what="payments",
        activity="payments_viewed",
    )


def _demographic(user, key: str):
    if isinstance(user.demographics, dict):
        return user.demographics.get(key)
    return None


async def user_analytics(
    store: UserStore, caller, *, order_service_url: str, timeout: float
) -> dict:
    users = await store.all()
    counts = await store.counts()
    recent = await store.activity_since(datetime.now(timezone.utc) - ACTIVE_WINDOW)

    genders = Counter(_demographic(u, "gender") for u in users)
    incomes = Counter(_demographic(u, "income_bracket") for u in users)

    order_insights = await caller.best_effort(
        "orderService",
        "GET",
        f"{order_service_url}/analytics/orders",
        timeout=timeout,
        fallback={},
    )

    return {
        "totalUsers": len(users),
        "activeUsers": len({a["userId"] for a in recent}),
        "usersByDemographics": {
            "genderDistribution": {
                "male": genders["male"],
                "female": genders["female"],
            },
            "incomeDistribution": {
                "high": incomes["high"],
                "medium": incomes["medium"],
                "low": incomes["low"],
            },
        },
        "activitySummary": {
            "totalActivities": counts["activities"],
            "recentActivities": len(recent),
            "activitiesByType": dict(Counter(a["action"] for a in recent)),
        },
        "orderInsights": order_insights,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
    }
