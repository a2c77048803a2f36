"""Shorten and delete endpoint behavior against live PostgreSQL and Redis."""

import re

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_shorten_valid_url(client: AsyncClient) -> None:
    response = await client.post("/api/v1/shorten", json={"url": "https://www.google.com"})
    assert response.status_code == 201
    data = response.json()
    assert data["original_url"] == "https://www.google.com"
    assert re.fullmatch(r"[A-Za-z0-9]{6}", data["short_code"])
    assert data["short_url"].endswith(f"/{data['short_code']}")
    assert data["expires_at"] is None


@pytest.mark.asyncio
async def test_shorten_with_custom_code_and_expiry(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/shorten",
        json={"url": "https://example.com/a", "custom_code": "test1", "expires_in": 1},
    )
    assert response.status_code == 201
    data = response.json()
    assert data["short_code"] == "test1"
    assert data["expires_at"] is not None


@pytest.mark.asyncio
async def test_shorten_zero_expiry_never_expires(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/shorten",
        json={"url": "http://localhost:8080/docs", "custom_code": "zero1", "expires_in": 0},
    )
    assert response.status_code == 201
    assert response.json()["expires_at"] is None

    redirect = await client.get("/zero1", follow_redirects=False)
    assert redirect.status_code == 302
    assert redirect.headers["location"] == "http://localhost:8080/docs"


@pytest.mark.asyncio
async def test_shorten_invalid_url(client: AsyncClient) -> None:
    response = await client.post("/api/v1/shorten", json={"url": "not-a-url"})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_url"


@pytest.mark.asyncio
@pytest.mark.parametrize("custom_code", ["ab", "a" * 51, "my-code!"])
async def test_shorten_invalid_custom_code(client: AsyncClient, custom_code: str) -> None:
    response = await client.post("/api/v1/shorten", json={"url": "https://www.github.com", "custom_code": custom_code})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_code"


@pytest.mark.asyncio
async def test_shorten_duplicate_custom_code(client: AsyncClient) -> None:
    first = await client.post("/api/v1/shorten", json={"url": "https://www.github.com", "custom_code": "taken1"})
    second = await client.post("/api/v1/shorten", json={"url": "https://www.example.com", "custom_code": "taken1"})
    third = await client.post("/api/v1/shorten", json={"url": "https://www.example.org", "custom_code": "taken1"})
    assert first.status_code == 201
    assert second.status_code == third.status_code == 409
    assert second.json()["error"] == "code_exists"


@pytest.mark.asyncio
async def test_shorten_multiple_urls(client: AsyncClient) -> None:
    codes = set()
    for url in ["https://www.google.com", "https://www.github.com", "https://www.python.org"]:
        response = await client.post("/api/v1/shorten", json={"url": url})
        assert response.status_code == 201
        codes.add(response.json()["short_code"])
    assert len(codes) == 3


@pytest.mark.asyncio
async def test_delete_then_reclaim_code(client: AsyncClient) -> None:
    await client.post("/api/v1/shorten", json={"url": "https://old.example", "custom_code": "reuse1"})

    deleted = await client.delete("/api/v1/shorten/reuse1")
    assert deleted.status_code == 200

    again = await client.delete("/api/v1/shorten/reuse1")
    assert again.status_code == 404

    reclaimed = await client.post("/api/v1/shorten", json={"url": "https://new.example", "custom_code": "reuse1"})
    assert reclaimed.status_code == 201

    redirect = await client.get("/reuse1", follow_redirects=False)
    assert redirect.headers["location"] == "https://new.example"
