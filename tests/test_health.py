"""Tests for the Health Aggregator."""

import asyncio
import time

import httpx
import pytest

from services.shared.dependency import DependencyCaller
from services.shared.health import HealthAggregator


async def store_ok():
    return None


async def store_down():
    raise ConnectionRefusedError("postgres is gone")


def aggregator(handler, store_check=store_ok, counters=None, timeout=1.0):
    caller = DependencyCaller(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return HealthAggregator(
        "order-service",
        caller,
        {
            "userService": "http://users.test/ready",
            "paymentService": "http://payments.test/ready",
        },
        store_check,
        timeout=timeout,
        counters=counters,
    )


class TestHealthAggregator:
    @pytest.mark.asyncio
    async def test_all_dependencies_up(self):
        report = await aggregator(lambda r: httpx.Response(200, json={"status": "ready"})).check()
        assert report.status == "ok"
        assert report.http_status == 200
        assert report.deps == {"userService": "ok", "paymentService": "ok"}

    @pytest.mark.asyncio
    async def test_one_dependency_down_is_partial(self):
        def handler(request):
            if request.url.host == "payments.test":
                raise httpx.ConnectError("Connection refused", request=request)
            return httpx.Response(200, json={"status": "ready"})

        report = await aggregator(handler).check()
        body = report.to_dict()

        assert report.http_status == 200
        assert body["status"] == "partial"
        assert body["deps"] == {"userService": "ok", "paymentService": "down"}
        failed = next(s for s in body["services"] if s["service"] == "paymentService")
        assert failed["error"]["kind"] == "unavailable"

    @pytest.mark.asyncio
    async def test_checks_run_in_parallel(self):
        async def handler(request):
            await asyncio.sleep(0.3)
            if request.url.host == "payments.test":
                return httpx.Response(503, json={"status": "starting"})
            return httpx.Response(200, json={"status": "ready"})

        started = time.perf_counter()
        report = await aggregator(handler).check()
        elapsed = time.perf_counter() - started

        assert report.status == "partial"
        assert 0.3 <= elapsed < 0.55

    @pytest.mark.asyncio
    async def test_slow_dependency_is_reported_down_after_timeout(self):
        async def handler(request):
            if request.url.host == "users.test":
                await asyncio.sleep(2)
            return httpx.Response(200, json={"status": "ready"})

        report = await aggregator(handler, timeout=0.2).check()
        assert report.deps["userService"] == "down"
        assert report.services[0]["error"]["kind"] == "timeout"

    @pytest.mark.asyncio
    async def test_store_down_is_down_with_503(self):
        report = await aggregator(
            lambda r: httpx.Response(200, json={}), store_check=store_down
        ).check()
        body = report.to_dict()

        assert report.http_status == 503
        assert body["status"] == "down"
        assert body["database"] == "down"
        assert body["error"] == "Database connection failed"

    @pytest.mark.asyncio
    async def test_counters_are_merged_into_the_body(self):
        async def counters():
            return {"ordersCount": 7}

        report = await aggregator(
            lambda r: httpx.Response(200, json={}), counters=counters
        ).check()
        assert report.to_dict()["ordersCount"] == 7
