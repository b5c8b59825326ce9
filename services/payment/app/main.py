"""
Payment Service - FastAPI entry point

Owns transactions and refunds. The only outbound call is a best-effort
lookup of the buyer on the user service, so payments keep working while
the user service is down.

  POST /pay                       charge (idempotent per order)
  POST /refund                    full or partial refund
  GET  /payments                  transactions, userId/orderId filters
  GET  /refunds                   refunds, transactionId filter
  GET  /transactions/{id}/status  transaction + refund state
  GET  /analytics/payments
  POST /webhooks/user-activity
  GET  /health /ready /metrics
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any

import httpx
import uvicorn
from fastapi import FastAPI, Query
from pydantic import BaseModel, ConfigDict, Field

from services.shared import config, db
from services.shared.app import build_service_app
from services.shared.dependency import DependencyCaller
from services.shared.health import HealthAggregator
from services.shared.log import configure_logging
from services.shared.metrics import ServiceMetrics

from . import queries
from .commands import PaymentProcessor
from .store import InMemoryPaymentStore, PaymentStore, SqlPaymentStore

SERVICE = "payment-service"
PORT = config.port(3003)

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class PayRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: int | None = Field(default=None, alias="orderId")
    amount: Any = None
    user_id: int | None = Field(default=None, alias="userId")


class RefundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_id: str | None = Field(default=None, alias="transactionId")
    amount: Any = None
    reason: str | None = None


class UserActivityWebhook(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int | str = Field(alias="userId")
    activity: str | None = None
    session_id: Any = Field(default=None, alias="sessionId")
    ip_address: str | None = Field(default=None, alias="ipAddress")
    timestamp: str | None = None


def create_app(
    store: PaymentStore | None = None,
    client: httpx.AsyncClient | None = None,
    *,
    user_service_url: str = config.USER_SERVICE_URL,
    decline_rate: float = config.PAYMENT_DECLINE_RATE,
    max_amount: str = config.PAYMENT_MAX_AMOUNT,
    rng=None,
) -> FastAPI:
    metrics = ServiceMetrics(SERVICE)

    engine = None
    if store is None:
        if config.DATABASE_URL:
            engine, async_session = db.make_engine(config.DATABASE_URL)
            store = SqlPaymentStore(async_session)
        else:
            logger.warning("DATABASE_URL not set, payments are kept in memory")
            store = InMemoryPaymentStore()

    http = client or httpx.AsyncClient()
    caller = DependencyCaller(http, metrics)
    processor = PaymentProcessor(
        store,
        caller,
        user_service_url=user_service_url,
        user_timeout=config.USER_SERVICE_TIMEOUT,
        max_amount=Decimal(max_amount),
        decline_rate=decline_rate,
        rng=rng,
    )

    async def counters() -> dict:
        stats = await store.stats()
        return {
            "transactionsCount": stats["transactions"],
            "refundsCount": stats["refunds"],
        }

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(store, SqlPaymentStore):
            await store.init_schema()
        app.state.started = True
        logger.info("Payment service started on port %s", PORT)
        yield
        app.state.started = False
        if client is None:
            await http.aclose()
        if engine is not None:
            await engine.dispose()
        logger.info("Payment service stopped")

    app = build_service_app("Payment Service", SERVICE, lifespan, metrics)
    app.state.store = store
    app.state.processor = processor
    app.state.health = HealthAggregator(
        SERVICE,
        caller,
        {"userService": f"{user_service_url}/ready"},
        store.ping,
        timeout=config.HEALTH_CHECK_TIMEOUT,
        counters=counters,
    )

    # ── Command Endpoints ────────────────────────

    @app.post("/pay")
    async def pay(req: PayRequest):
        txn, duplicate = await processor.charge(req.order_id, req.amount, req.user_id)
        body = txn.to_dict()
        if duplicate:
            body["duplicate"] = True
        return body

    @app.post("/refund")
    async def refund(req: RefundRequest):
        result = await processor.refund(req.transaction_id, req.amount, req.reason)
        return result.to_dict()

    # ── Query Endpoints ──────────────────────────

    @app.get("/payments")
    async def list_payments(
        user_id: int | None = Query(default=None, alias="userId"),
        order_id: int | None = Query(default=None, alias="orderId"),
        limit: int = 20,
        offset: int = 0,
    ):
        return await queries.list_payments(
            store, user_id=user_id, order_id=order_id, limit=limit, offset=offset
        )

    @app.get("/refunds")
    async def list_refunds(
        transaction_id: str | None = Query(default=None, alias="transactionId"),
        limit: int = 20,
        offset: int = 0,
    ):
        return await queries.list_refunds(
            store, transaction_id=transaction_id, limit=limit, offset=offset
        )

    @app.get("/transactions/{transaction_id}/status")
    async def transaction_status(transaction_id: str):
        return await queries.transaction_status(store, transaction_id)

    @app.get("/analytics/payments")
    async def analytics():
        return await queries.payment_analytics(store)

    # ── Webhooks ─────────────────────────────────

    @app.post("/webhooks/user-activity")
    async def user_activity(hook: UserActivityWebhook):
        logger.info(
            "User %s activity %s from %s at %s",
            hook.user_id, hook.activity, hook.ip_address, hook.timestamp,
        )
        return {"received": True}

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=PORT)
