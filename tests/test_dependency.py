"""Tests for the Dependency Caller."""

import asyncio
import time

import httpx
import pytest

from services.shared.dependency import DependencyCaller, OutcomeKind
from services.shared.metrics import ServiceMetrics

URL = "http://users.test/users/1"


def caller_for(handler, metrics=None) -> DependencyCaller:
    return DependencyCaller(
        httpx.AsyncClient(transport=httpx.MockTransport(handler)), metrics
    )


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_success_carries_parsed_body(self):
        caller = caller_for(lambda r: httpx.Response(200, json={"id": 1, "name": "Alice"}))
        outcome = await caller.request("userService", "GET", URL, timeout=1)
        assert outcome.kind is OutcomeKind.SUCCESS
        assert outcome.ok
        assert outcome.payload == {"id": 1, "name": "Alice"}
        assert outcome.status_code == 200

    @pytest.mark.asyncio
    async def test_404_is_not_found(self):
        caller = caller_for(lambda r: httpx.Response(404, json={"error": "User not found"}))
        outcome = await caller.request("userService", "GET", URL, timeout=1)
        assert outcome.kind is OutcomeKind.NOT_FOUND
        assert outcome.body == {"error": "User not found"}
        assert not outcome.is_server_fault

    @pytest.mark.asyncio
    async def test_other_status_is_upstream_error_with_body(self):
        caller = caller_for(lambda r: httpx.Response(402, json={"error": "Insufficient funds"}))
        outcome = await caller.request("paymentService", "POST", URL, timeout=1, json={})
        assert outcome.kind is OutcomeKind.UPSTREAM_ERROR
        assert outcome.status_code == 402
        assert outcome.body == {"error": "Insufficient funds"}
        assert not outcome.is_server_fault

    @pytest.mark.asyncio
    async def test_5xx_counts_as_server_fault(self):
        caller = caller_for(lambda r: httpx.Response(500, text="boom"))
        outcome = await caller.request("paymentService", "POST", URL, timeout=1)
        assert outcome.kind is OutcomeKind.UPSTREAM_ERROR
        assert outcome.body == "boom"
        assert outcome.is_server_fault

    @pytest.mark.asyncio
    async def test_connection_refused_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        outcome = await caller_for(handler).request("userService", "GET", URL, timeout=1)
        assert outcome.kind is OutcomeKind.UNAVAILABLE
        assert outcome.is_server_fault

    @pytest.mark.asyncio
    async def test_transport_timeout_is_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        outcome = await caller_for(handler).request("userService", "GET", URL, timeout=1)
        assert outcome.kind is OutcomeKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_slow_dependency_times_out_near_the_deadline(self):
        async def handler(request):
            await asyncio.sleep(2)
            return httpx.Response(200, json={})

        started = time.perf_counter()
        outcome = await caller_for(handler).request("userService", "GET", URL, timeout=0.2)
        elapsed = time.perf_counter() - started

        assert outcome.kind is OutcomeKind.TIMEOUT
        assert 0.2 <= elapsed < 0.6
        assert outcome.cause == "no response within 200ms"

    @pytest.mark.asyncio
    async def test_anything_else_is_unknown_failure(self):
        def handler(request):
            raise RuntimeError("socket exploded")

        outcome = await caller_for(handler).request("userService", "GET", URL, timeout=1)
        assert outcome.kind is OutcomeKind.UNKNOWN_FAILURE
        assert "socket exploded" in outcome.cause

    @pytest.mark.asyncio
    async def test_elapsed_time_is_recorded(self):
        caller = caller_for(lambda r: httpx.Response(200, json={}))
        outcome = await caller.request("userService", "GET", URL, timeout=1)
        assert outcome.elapsed_ms >= 0


class TestBestEffort:
    @pytest.mark.asyncio
    async def test_returns_payload_on_success(self):
        caller = caller_for(lambda r: httpx.Response(200, json={"ok": True}))
        assert await caller.best_effort("orderService", "POST", URL, timeout=1) == {"ok": True}

    @pytest.mark.asyncio
    async def test_failure_yields_fallback_instead_of_raising(self):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        result = await caller_for(handler).best_effort(
            "orderService", "GET", URL, timeout=1, fallback={}
        )
        assert result == {}

    @pytest.mark.asyncio
    async def test_error_status_yields_fallback(self):
        caller = caller_for(lambda r: httpx.Response(503, json={"error": "down"}))
        assert await caller.best_effort("orderService", "GET", URL, timeout=1) is None


class TestMetrics:
    @pytest.mark.asyncio
    async def test_outcomes_are_counted_per_dependency(self):
        metrics = ServiceMetrics("test-service")
        caller = caller_for(lambda r: httpx.Response(404), metrics)
        await caller.request("userService", "GET", URL, timeout=1)

        value = metrics.registry.get_sample_value(
            "dependency_calls_total",
            {"dependency": "userService", "outcome": "not_found"},
        )
        assert value == 1.0
