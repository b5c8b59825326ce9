"""
Shared - Prometheus metrics

Each app owns its own CollectorRegistry so several apps can live in one
process (tests build a fresh app per case).
"""

import time

from fastapi import FastAPI, Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

DURATION_BUCKETS_MS = (50, 100, 200, 300, 500, 1000, 2000, 5000)
UNMATCHED_ROUTE = "unmatched"


class ServiceMetrics:
    def __init__(self, service: str) -> None:
        self.service = service
        self.registry = CollectorRegistry()
        self.requests = Counter(
            "http_requests_total",
            "Total number of HTTP requests",
            ["method", "route", "code"],
            registry=self.registry,
        )
        self.duration = Histogram(
            "http_request_duration_ms",
            "Duration of HTTP requests in ms",
            ["method", "route", "code"],
            buckets=DURATION_BUCKETS_MS,
            registry=self.registry,
        )
        self.errors = Counter(
            "http_errors_total",
            "Total number of HTTP errors",
            ["method", "route", "code"],
            registry=self.registry,
        )
        self.dependency_calls = Counter(
            "dependency_calls_total",
            "Outbound dependency calls by outcome",
            ["dependency", "outcome"],
            registry=self.registry,
        )
        self.dependency_duration = Histogram(
            "dependency_call_duration_ms",
            "Duration of outbound dependency calls in ms",
            ["dependency"],
            buckets=DURATION_BUCKETS_MS,
            registry=self.registry,
        )

    def observe_request(self, method: str, route: str, code: int, duration_ms: float) -> None:
        labels = {"method": method, "route": route, "code": str(code)}
        self.requests.labels(**labels).inc()
        self.duration.labels(**labels).observe(duration_ms)
        if code >= 400:
            self.errors.labels(**labels).inc()

    def observe_dependency(self, outcome) -> None:
        self.dependency_calls.labels(outcome.dependency, outcome.kind.value).inc()
        self.dependency_duration.labels(outcome.dependency).observe(outcome.elapsed_ms)

    def exposition(self) -> Response:
        return Response(generate_latest(self.registry), media_type=CONTENT_TYPE_LATEST)


def install_metrics(app: FastAPI, metrics: ServiceMetrics) -> None:
    @app.middleware("http")
    async def record_request(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        # Label by route template so /orders/1 and /orders/2 share a series.
        path = getattr(route, "path", UNMATCHED_ROUTE)
        metrics.observe_request(
            request.method,
            path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response

    @app.get("/metrics", include_in_schema=False)
    async def prometheus_metrics():
        return metrics.exposition()
