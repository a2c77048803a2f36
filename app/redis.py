"""Redis client for the shortcode cache.

Redis only ever holds derived data: ``shortcode:<code>`` keys carrying a JSON
copy of the PostgreSQL row, each with a TTL of at most one day. Losing Redis
costs latency, never correctness.

Client Lifecycle
================
::
    get_redis() ──▶ client exists? ──yes──▶ reuse
                          │
                          no
                          ▼
                  redis.from_url(REDIS_URL,
                                 socket timeouts from settings)
                          │
                          ▼
                  shared by request handlers, ServiceManager
                  and detached click tasks
                          │
    close_redis() ◀───────┘  at shutdown, after click tasks drain

Key Behaviours
===============
- Connect and read timeouts are short so that an unreachable cache turns into a
  quick miss instead of a stalled redirect.
- ``decode_responses`` is on; cached payloads are UTF-8 JSON strings.
"""

import redis.asyncio as redis

from app.config import get_settings

__all__ = ["close_redis", "get_redis"]

settings = get_settings()

redis_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global redis_client
    if redis_client is None:
        redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        )
    return redis_client


async def close_redis() -> None:
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None
