"""
Order Service - FastAPI entry point

Owns orders. Calls the user service to attach a buyer when an order is
created and the payment service to charge or refund it. Payment calls go
through a circuit breaker so a struggling payment service is not hammered.

  POST   /orders               create (needs user service)
  GET    /orders               list with userId/status filters
  GET    /orders/{id}          single order
  POST   /orders/{id}/pay      charge (needs payment service)
  DELETE /orders/{id}          cancel, refunds paid orders (best-effort)
  GET    /analytics/orders     aggregates + buyer demographics (best-effort)
  POST   /webhooks/user-updated
  GET    /health /ready /metrics
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
import pybreaker
import redis.asyncio as aioredis
import uvicorn
from fastapi import FastAPI, Query
from pydantic import BaseModel, ConfigDict, Field

from services.shared import config, db
from services.shared.app import build_service_app
from services.shared.breaker import BreakerCaller, make_breaker
from services.shared.dependency import DependencyCaller
from services.shared.health import HealthAggregator
from services.shared.log import configure_logging
from services.shared.metrics import ServiceMetrics

from . import queries
from .commands import OrderFulfillment
from .events import EventPublisher
from .store import InMemoryOrderStore, OrderStore, SqlOrderStore

SERVICE = "order-service"
PORT = config.port(3002)

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class CreateOrderRequest(BaseModel):
    # Fields are optional here so the orchestrator can name every missing one.
    model_config = ConfigDict(populate_by_name=True)

    user_id: int | None = Field(default=None, alias="userId")
    product: Any = None
    amount: Any = None


class UserUpdatedWebhook(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int | str = Field(alias="userId")
    changes: dict = Field(default_factory=dict)
    timestamp: str | None = None


def create_app(
    store: OrderStore | None = None,
    client: httpx.AsyncClient | None = None,
    events: EventPublisher | None = None,
    *,
    user_service_url: str = config.USER_SERVICE_URL,
    payment_service_url: str = config.PAYMENT_SERVICE_URL,
    breaker: pybreaker.CircuitBreaker | None = None,
) -> FastAPI:
    metrics = ServiceMetrics(SERVICE)

    engine = None
    if store is None:
        if config.DATABASE_URL:
            engine, async_session = db.make_engine(config.DATABASE_URL)
            store = SqlOrderStore(async_session)
        else:
            logger.warning("DATABASE_URL not set, orders are kept in memory")
            store = InMemoryOrderStore()

    http = client or httpx.AsyncClient()
    caller = DependencyCaller(http, metrics)
    payment_caller = caller
    if breaker is not None or config.PAYMENT_BREAKER_ENABLED:
        payment_caller = BreakerCaller(
            caller,
            breaker
            or make_breaker(
                "payment-service",
                fail_max=config.PAYMENT_BREAKER_FAIL_MAX,
                reset_timeout=config.PAYMENT_BREAKER_RESET_TIMEOUT,
            ),
        )

    fulfillment = OrderFulfillment(
        store,
        caller,
        payment_caller,
        user_service_url=user_service_url,
        payment_service_url=payment_service_url,
        user_timeout=config.USER_SERVICE_TIMEOUT,
        payment_timeout=config.PAYMENT_SERVICE_TIMEOUT,
        refund_timeout=config.REFUND_TIMEOUT,
        events=events,
    )

    async def counters() -> dict:
        return {"ordersCount": await store.count()}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        redis_pool = None
        if isinstance(store, SqlOrderStore):
            await store.init_schema()
        if events is None and config.REDIS_URL:
            redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
            fulfillment.events = EventPublisher(redis_pool)
        app.state.started = True
        logger.info("Order service started on port %s", PORT)
        yield
        app.state.started = False
        if redis_pool is not None:
            await redis_pool.aclose()
        if client is None:
            await http.aclose()
        if engine is not None:
            await engine.dispose()
        logger.info("Order service stopped")

    app = build_service_app("Order Service", SERVICE, lifespan, metrics)
    app.state.store = store
    app.state.fulfillment = fulfillment
    app.state.health = HealthAggregator(
        SERVICE,
        caller,
        {
            "userService": f"{user_service_url}/ready",
            "paymentService": f"{payment_service_url}/ready",
        },
        store.ping,
        timeout=config.HEALTH_CHECK_TIMEOUT,
        counters=counters,
    )

    # ── Command Endpoints ────────────────────────

    @app.post("/orders", status_code=201)
    async def create_order(req: CreateOrderRequest):
        order = await fulfillment.create(req.user_id, req.product, req.amount)
        return order.to_dict()

    @app.post("/orders/{order_id}/pay")
    async def pay_order(order_id: str):
        order, payment = await fulfillment.pay(queries.parse_order_id(order_id))
        return {"order": order.to_dict(), "payment": payment}

    @app.delete("/orders/{order_id}")
    async def cancel_order(order_id: str):
        order, refund = await fulfillment.cancel(queries.parse_order_id(order_id))
        return {
            "message": "Order cancelled successfully",
            "cancelledOrder": order.to_dict(),
            "refund": refund,
        }

    # ── Query Endpoints ──────────────────────────

    @app.get("/orders")
    async def list_orders(
        user_id: int | None = Query(default=None, alias="userId"),
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ):
        return await queries.list_orders(
            store, user_id=user_id, status=status, limit=limit, offset=offset
        )

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str):
        return await queries.get_order(store, queries.parse_order_id(order_id))

    @app.get("/analytics/orders")
    async def analytics():
        return await queries.order_analytics(
            store,
            caller,
            user_service_url=user_service_url,
            timeout=config.ENRICHMENT_TIMEOUT,
        )

    # ── Webhooks ─────────────────────────────────

    @app.post("/webhooks/user-updated")
    async def user_updated(hook: UserUpdatedWebhook):
        # User snapshots on existing orders are not rewritten.
        logger.info(
            "User %s updated at %s, changed fields: %s",
            hook.user_id, hook.timestamp, sorted(hook.changes),
        )
        return {"received": True}

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=PORT)
