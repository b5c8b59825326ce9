"""
User Service - FastAPI entry point

Owns users, their activity log and login sessions. It is the dependency
the other two services lean on hardest: the order service needs it to
create orders, the payment service to decorate transactions.

  GET  /users                 list with search
  POST /users                 register
  GET  /users/{id}            summary (id, name, email)
  GET  /users/{id}/profile    full record
  PUT  /users/{id}/profile    partial update, notifies the order service
  GET  /users/{id}/activity
  POST /users/{id}/sessions   login, notifies the payment service
  GET  /users/{id}/orders     from the order service (required)
  GET  /users/{id}/payments   from the payment service (required)
  GET  /analytics/users
  GET  /health /ready /metrics
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
import uvicorn
from fastapi import FastAPI, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from services.shared import config, db
from services.shared.app import build_service_app
from services.shared.dependency import DependencyCaller
from services.shared.health import HealthAggregator
from services.shared.log import configure_logging
from services.shared.metrics import ServiceMetrics

from . import queries
from .commands import UserAccounts, parse_user_id
from .store import SEED_USERS, InMemoryUserStore, SqlUserStore, UserStore

SERVICE = "user-service"
PORT = config.port(3001)

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class UserFields(BaseModel):
    """Body of POST /users and PUT /users/{id}/profile."""

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: Any = None
    demographics: Any = None
    preferences: Any = None


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_info: str | None = Field(default=None, alias="deviceInfo")
    ip_address: str | None = Field(default=None, alias="ipAddress")


def create_app(
    store: UserStore | None = None,
    client: httpx.AsyncClient | None = None,
    *,
    order_service_url: str = config.ORDER_SERVICE_URL,
    payment_service_url: str = config.PAYMENT_SERVICE_URL,
) -> FastAPI:
    metrics = ServiceMetrics(SERVICE)

    engine = None
    if store is None:
        if config.DATABASE_URL:
            engine, async_session = db.make_engine(config.DATABASE_URL)
            store = SqlUserStore(async_session)
        else:
            logger.warning("DATABASE_URL not set, users are kept in memory")
            store = InMemoryUserStore(SEED_USERS)

    http = client or httpx.AsyncClient()
    caller = DependencyCaller(http, metrics)
    accounts = UserAccounts(
        store,
        caller,
        order_service_url=order_service_url,
        payment_service_url=payment_service_url,
        webhook_timeout=config.WEBHOOK_TIMEOUT,
    )

    async def counters() -> dict:
        counts = await store.counts()
        return {
            "usersCount": counts["users"],
            "activitiesCount": counts["activities"],
            "sessionsCount": counts["sessions"],
        }

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(store, SqlUserStore):
            await store.init_schema()
            seeded = await store.seed_if_empty(SEED_USERS)
            if seeded:
                logger.info("Seeded %d sample users", seeded)
        app.state.started = True
        logger.info("User service started on port %s", PORT)
        yield
        app.state.started = False
        if client is None:
            await http.aclose()
        if engine is not None:
            await engine.dispose()
        logger.info("User service stopped")

    app = build_service_app("User Service", SERVICE, lifespan, metrics)
    app.state.store = store
    app.state.accounts = accounts
    app.state.health = HealthAggregator(
        SERVICE,
        caller,
        {
            "orderService": f"{order_service_url}/ready",
            "paymentService": f"{payment_service_url}/ready",
        },
        store.ping,
        timeout=config.HEALTH_CHECK_TIMEOUT,
        counters=counters,
    )

    # ── Command Endpoints ────────────────────────

    @app.post("/users", status_code=201)
    async def create_user(req: UserFields):
        user = await accounts.register(req.model_dump(exclude_none=True))
        return user.to_dict()

    @app.put("/users/{user_id}/profile")
    async def update_profile(user_id: str, req: UserFields):
        user = await accounts.update_profile(
            parse_user_id(user_id), req.model_dump(exclude_unset=True)
        )
        return user.to_dict()

    @app.post("/users/{user_id}/sessions", status_code=201)
    async def create_session(user_id: str, request: Request, req: CreateSessionRequest):
        client_host = request.client.host if request.client else None
        return await accounts.start_session(
            parse_user_id(user_id), req.device_info, req.ip_address or client_host
        )

    # ── Query Endpoints ──────────────────────────

    @app.get("/users")
    async def list_users(search: str | None = None, limit: int = 10, offset: int = 0):
        return await queries.list_users(store, search=search, limit=limit, offset=offset)

    @app.get("/users/{user_id}")
    async def get_user(user_id: str):
        user = await accounts.view(parse_user_id(user_id))
        return user.summary()

    @app.get("/users/{user_id}/profile")
    async def get_profile(user_id: str):
        user = await accounts.view(parse_user_id(user_id), full=True)
        return user.to_dict()

    @app.get("/users/{user_id}/activity")
    async def get_activity(
        user_id: str,
        limit: int | None = None,
        action: str | None = Query(default=None, alias="type"),
    ):
        user = await accounts.load(parse_user_id(user_id))
        return await queries.list_activity(store, user.id, action=action, limit=limit)

    @app.get("/users/{user_id}/orders")
    async def get_orders(user_id: str):
        user = await accounts.load(parse_user_id(user_id))
        return await queries.user_orders(
            store,
            caller,
            user,
            order_service_url=order_service_url,
            timeout=config.ORDER_SERVICE_TIMEOUT,
        )

    @app.get("/users/{user_id}/payments")
    async def get_payments(user_id: str):
        user = await accounts.load(parse_user_id(user_id))
        return await queries.user_payments(
            store,
            caller,
            user,
            payment_service_url=payment_service_url,
            timeout=config.PAYMENT_SERVICE_TIMEOUT,
        )

    @app.get("/analytics/users")
    async def analytics():
        return await queries.user_analytics(
            store,
            caller,
            order_service_url=order_service_url,
            timeout=config.ENRICHMENT_TIMEOUT,
        )

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=PORT)
