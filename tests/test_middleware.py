"""Middleware tests on a minimal FastAPI app."""

import asyncio

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request

from app.dependencies import client_ip
from app.middleware import RequestIDMiddleware, TimeoutMiddleware, add_rate_limit_middleware
from app.rate_limiter import InMemoryRateLimiter


def _request(headers: dict[str, str], peer: str | None = "127.0.0.1") -> Request:
    scope = {
        "type": "http",
        "headers": [(name.lower().encode(), value.encode()) for name, value in headers.items()],
        "client": (peer, 50000) if peer else None,
    }
    return Request(scope)


@pytest.mark.parametrize(
    "headers, peer, expected",
    [
        ({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}, "127.0.0.1", "203.0.113.7"),
        ({"X-Forwarded-For": " , 10.0.0.1", "X-Real-IP": "198.51.100.4"}, "127.0.0.1", "198.51.100.4"),
        ({"X-Real-IP": "198.51.100.4"}, "127.0.0.1", "198.51.100.4"),
        ({}, "192.0.2.10", "192.0.2.10"),
        ({}, None, ""),
    ],
)
def test_client_ip(headers: dict[str, str], peer: str | None, expected: str) -> None:
    assert client_ip(_request(headers, peer)) == expected


def _app() -> FastAPI:
    app = FastAPI()

    @app.get("/fast")
    async def fast() -> dict:
        return {"ok": True}

    @app.get("/slow")
    async def slow() -> dict:
        await asyncio.sleep(1)
        return {"ok": True}

    return app


@pytest.mark.asyncio
async def test_timeout_answers_408() -> None:
    app = _app()
    app.add_middleware(TimeoutMiddleware, timeout=0.05)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        slow = await client.get("/slow")
        fast = await client.get("/fast")

    assert slow.status_code == 408
    assert slow.json() == {"error": "request_timeout", "message": "Request processing timeout"}
    assert fast.status_code == 200


@pytest.mark.asyncio
async def test_rate_limit_is_per_client() -> None:
    app = _app()
    add_rate_limit_middleware(app, InMemoryRateLimiter(rate=2, window=60))

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = [await client.get("/fast", headers={"X-Forwarded-For": "203.0.113.1"}) for _ in range(3)]
        other = await client.get("/fast", headers={"X-Forwarded-For": "203.0.113.2"})

    assert [r.status_code for r in first] == [200, 200, 429]
    assert first[2].json()["error"] == "rate_limit_exceeded"
    assert other.status_code == 200


@pytest.mark.asyncio
async def test_request_id_generated_once_per_request() -> None:
    app = _app()
    app.add_middleware(RequestIDMiddleware)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.get("/fast")
        second = await client.get("/fast")

    assert first.headers["x-request-id"] != second.headers["x-request-id"]
