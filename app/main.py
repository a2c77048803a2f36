"""FastAPI application entry point for the shortcode service.

Application Lifecycle Diagram
=============================
::
    ┌──────────────────┐
    │ uvicorn startup  │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ FastAPI app,     │
    │ middleware chain │
    │ routes           │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ lifespan startup │
    │ init_db()        │
    │ manager.init()   │
    │ rate limit sweep │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ Serve HTTP       │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ lifespan shutdown│
    │ stop sweeper     │
    │ drain clicks     │
    │ close_redis()    │
    │ close_db()       │
    └──────────────────┘

How to Use
===========
**Step 1 — Run with uvicorn**::
    uvicorn app.main:app --host 0.0.0.0 --port 8080

**Step 2 — Make API calls**::
    curl -X POST http://localhost:8080/api/v1/shorten \
         -H "Content-Type: application/json" \
         -d '{"url": "https://example.com", "expires_in": 24}'

    curl -i http://localhost:8080/abc123
    curl http://localhost:8080/api/v1/stats/abc123/detailed?hours=24

Key Behaviours
===============
- Database tables are created automatically on startup.
- Malformed request bodies and query parameters answer 400 ``invalid_request``.
- Prometheus metrics are exposed at ``/metrics/prometheus``; the JSON service
  metrics live at ``/api/v1/metrics``.
- Shutdown waits for in-flight click tasks before closing Redis and PostgreSQL.
"""

__all__ = ["app", "rate_limiter"]

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.config import get_settings
from app.database import close_db, init_db
from app.dependencies import _service_manager
from app.middleware import install_middleware
from app.rate_limiter import InMemoryRateLimiter
from app.routes import router

settings = get_settings()

rate_limiter = InMemoryRateLimiter(
    rate=settings.RATE_LIMIT_REQUESTS,
    window=settings.RATE_LIMIT_WINDOW_SECONDS,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    await _service_manager.initialize()
    sweeper = asyncio.create_task(rate_limiter.run_sweeper(settings.RATE_LIMIT_SWEEP_INTERVAL_SECONDS))
    yield
    # Shutdown
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await _service_manager.cleanup()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Short code service: creation, cached redirects and click analytics",
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "invalid_request", "message": str(exc.errors())},
    )


install_middleware(app, settings, rate_limiter)

Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_respect_env_var=False,
).instrument(app).expose(app, endpoint="/metrics/prometheus")

app.include_router(router)
