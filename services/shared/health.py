"""
Shared - Health Aggregator

Answers "can this service and the services it depends on take traffic"
without any background state. Each check:

  1. pings the local store (one trivial query)
  2. calls every dependency's /ready endpoint, all at once, and waits for
     every one of them (a failed check never cuts the others short)
  3. folds everything into one HealthReport

  store down                  -> "down"    (HTTP 503)
  store ok, some dep down     -> "partial" (HTTP 200)
  store ok, every dep ok      -> "ok"      (HTTP 200)

check() never raises; failures end up in the report.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .dependency import DependencyCaller

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_PARTIAL = "partial"
STATUS_DOWN = "down"


@dataclass
class HealthReport:
    service: str
    status: str
    database: str
    deps: dict[str, str] = field(default_factory=dict)
    services: list[dict] = field(default_factory=list)
    counters: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def http_status(self) -> int:
        return 503 if self.status == STATUS_DOWN else 200

    def to_dict(self) -> dict:
        body = {
            "status": self.status,
            "service": self.service,
            "database": self.database,
            "deps": self.deps,
            "services": self.services,
            **self.counters,
        }
        if self.error:
            body["error"] = self.error
        return body


class HealthAggregator:
    def __init__(
        self,
        service: str,
        caller: DependencyCaller,
        dependencies: dict[str, str],
        store_check: Callable[[], Awaitable[Any]],
        *,
        timeout: float,
        counters: Callable[[], Awaitable[dict]] | None = None,
    ) -> None:
        self.service = service
        self.caller = caller
        self.dependencies = dependencies
        self.store_check = store_check
        self.timeout = timeout
        self.counters = counters

    async def _check_dependency(self, name: str, url: str) -> dict:
        outcome = await self.caller.request(name, "GET", url, timeout=self.timeout)
        if outcome.ok:
            return {"service": name, "status": STATUS_OK}
        return {"service": name, "status": STATUS_DOWN, "error": outcome.error_detail()}

    async def check(self) -> HealthReport:
        try:
            await self.store_check()
        except Exception:
            logger.exception("Health check: local store unreachable")
            return HealthReport(
                service=self.service,
                status=STATUS_DOWN,
                database=STATUS_DOWN,
                error="Database connection failed",
            )

        names = list(self.dependencies)
        results = await asyncio.gather(
            *(self._check_dependency(n, self.dependencies[n]) for n in names),
            return_exceptions=True,
        )

        services = []
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error("Health check of %s raised: %r", name, result)
                result = {
                    "service": name,
                    "status": STATUS_DOWN,
                    "error": {"kind": "unknown_failure", "statusCode": None,
                              "message": type(result).__name__},
                }
            services.append(result)
        deps = {entry["service"]: entry["status"] for entry in services}

        counters: dict = {}
        if self.counters is not None:
            try:
                counters = await self.counters()
            except Exception:
                logger.exception("Health check: could not read local counters")

        status = STATUS_OK if all(s == STATUS_OK for s in deps.values()) else STATUS_PARTIAL
        if status != STATUS_OK:
            logger.warning("Health check %s: deps=%s", status, deps)
        return HealthReport(
            service=self.service,
            status=status,
            database="ok",
            deps=deps,
            services=services,
            counters=counters,
        )
