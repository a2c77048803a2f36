"""Redirect and click accounting against live PostgreSQL and Redis."""

import asyncio
import datetime

import pytest
import redis.asyncio as redis
from httpx import AsyncClient
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.click_recorder import ClickRecorder
from app.models import AccessStatistics, ClickLog, ShortCode, utcnow


async def _create(client: AsyncClient, url: str, code: str, **extra) -> None:
    response = await client.post("/api/v1/shorten", json={"url": url, "custom_code": code, **extra})
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_end_to_end_click_accounting(client: AsyncClient, click_recorder: ClickRecorder) -> None:
    await _create(client, "https://example.com/a", "test1", expires_in=1)

    response = await client.get("/test1", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "https://example.com/a"

    await click_recorder.shutdown()

    stats = (await client.get("/api/v1/stats/test1/detailed", params={"hours": 0})).json()
    assert stats["total_clicks"] == 1
    assert stats["unique_ips"] == 1
    assert len(stats["hourly_stats"]) == 1
    assert stats["hourly_stats"][0]["access_count"] == 1
    assert stats["location_stats"][0]["country"] == "Testland"
    assert stats["recent_accesses"][0]["city"] == "Test City"

    simple = (await client.get("/api/v1/stats/test1")).json()
    assert simple["click_count"] == 1
    assert simple["last_accessed_at"] is not None


@pytest.mark.asyncio
async def test_redirect_invalid_code(client: AsyncClient) -> None:
    response = await client.get("/nonexistent", follow_redirects=False)
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_redirect_populates_cache(client: AsyncClient, redis_client: redis.Redis) -> None:
    await _create(client, "https://www.python.org", "cached1")
    assert await redis_client.get("shortcode:cached1") is None

    await client.get("/cached1", follow_redirects=False)

    assert await redis_client.get("shortcode:cached1") is not None
    assert 0 < await redis_client.ttl("shortcode:cached1") <= 24 * 60 * 60


@pytest.mark.asyncio
async def test_delete_invalidates_cached_copy(client: AsyncClient, redis_client: redis.Redis) -> None:
    await _create(client, "https://www.github.com", "ghub")
    assert (await client.get("/ghub", follow_redirects=False)).status_code == 302
    assert await redis_client.get("shortcode:ghub") is not None

    assert (await client.delete("/api/v1/shorten/ghub")).status_code == 200

    assert await redis_client.get("shortcode:ghub") is None
    assert (await client.get("/ghub", follow_redirects=False)).status_code == 404


@pytest.mark.asyncio
async def test_expired_code_is_not_found(client: AsyncClient, db_session: AsyncSession) -> None:
    await _create(client, "https://www.example.com", "soon1", expires_in=1)
    await db_session.execute(
        update(ShortCode).where(ShortCode.code == "soon1").values(expires_at=utcnow() - datetime.timedelta(seconds=1))
    )
    await db_session.commit()

    assert (await client.get("/soon1", follow_redirects=False)).status_code == 404
    # expired codes still report stats
    assert (await client.get("/api/v1/stats/soon1")).status_code == 200


@pytest.mark.asyncio
async def test_concurrent_clicks_share_one_bucket_row(
    client: AsyncClient, click_recorder: ClickRecorder, db_session: AsyncSession
) -> None:
    clicks = 20
    await _create(client, "https://example.com/burst", "burst1")
    headers = {"X-Forwarded-For": "203.0.113.50"}

    responses = await asyncio.gather(
        *(client.get("/burst1", headers=headers, follow_redirects=False) for _ in range(clicks))
    )
    assert all(r.status_code == 302 for r in responses)

    await click_recorder.shutdown()

    short_code_id = await db_session.scalar(select(ShortCode.id).where(ShortCode.code == "burst1"))
    rows = (
        await db_session.execute(select(AccessStatistics).where(AccessStatistics.short_code_id == short_code_id))
    ).scalars().all()
    assert len(rows) == 1
    assert rows[0].access_count == clicks
    assert rows[0].ip_address == "203.0.113.50"

    logged = await db_session.scalar(
        select(func.count()).select_from(ClickLog).where(ClickLog.short_code_id == short_code_id)
    )
    assert logged == clicks

    stats = (await client.get("/api/v1/stats/burst1")).json()
    assert stats["click_count"] == clicks
