import json

import httpx
import pytest

USERS_URL = "http://users.test"
ORDERS_URL = "http://orders.test"
PAYMENTS_URL = "http://payments.test"


class FakeMesh:
    """
    Stands in for the peer services behind an httpx.MockTransport.

    Routes are keyed by (method, host, path). A handler may return an
    httpx.Response, a JSON-able value (sent as 200), or raise an httpx
    transport error. Unrouted requests get a 404.
    """

    def __init__(self) -> None:
        self.routes = {}
        self.calls = []

    def on(self, method: str, url: str, handler) -> None:
        parsed = httpx.URL(url)
        self.routes[(method, parsed.host, parsed.path)] = handler

    def calls_to(self, method: str, url: str) -> list:
        parsed = httpx.URL(url)
        return [
            c for c in self.calls
            if c["method"] == method and c["host"] == parsed.host and c["path"] == parsed.path
        ]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.calls.append({
            "method": request.method,
            "host": request.url.host,
            "path": request.url.path,
            "params": dict(request.url.params),
            "json": body,
        })
        handler = self.routes.get((request.method, request.url.host, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"error": "Route not found"})
        result = handler(request)
        if hasattr(result, "__await__"):
            result = await result
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))


def refuse(request: httpx.Request):
    raise httpx.ConnectError("Connection refused", request=request)


def time_out(request: httpx.Request):
    raise httpx.ReadTimeout("timed out", request=request)


def reply(status: int, body=None):
    return lambda request: httpx.Response(status, json=body)


@pytest.fixture
def mesh():
    return FakeMesh()

