"""FastAPI route definitions for the shortcode REST API.

API Endpoint Overview
=====================
::
    GET    /health
        └─ HealthResponse (200)

    POST   /api/v1/shorten
        ├─ ShortCodeCreate (request body)
        └─ ShortCodeResponse (201) or 400/409/500

    DELETE /api/v1/shorten/:code
        └─ MessageResponse (200) or 404

    GET    /api/v1/stats/:code
        └─ ShortCodeStats (200) or 404

    GET    /api/v1/stats/:code/detailed?hours=N
        └─ DetailedStats (200) or 404

    GET    /api/v1/metrics
        └─ MetricsResponse (200) or 500

    GET    /:code
        └─ 302 Redirect or 404

Redirect Flow
=============
::
    GET /abc123
        │
        ▼
    service.get_original_url("abc123") ── NotFound ──▶ 404 not_found
        │                              ── Storage  ──▶ 500 storage_error
        ▼
    service.schedule_click(...)   detached task, own session, 5 s deadline
        │
        ▼
    302 Location: <original_url>

Key Behaviours
===============
- Domain exceptions become ``{"error", "message"}`` bodies with the status code
  carried by the exception class.
- The redirect is decided before any click accounting starts, and accounting
  failures never change the response.
- 302 rather than 301, so browsers come back through the service and every
  visit is counted.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.dependencies import RequestContext, get_request_context, get_shortcode_service
from app.enums import HealthStatus
from app.exceptions import ShortCodeError
from app.schemas import (
    DetailedStats,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MetricsResponse,
    ShortCodeCreate,
    ShortCodeResponse,
    ShortCodeStats,
)
from app.shortcode_service import ShortCodeService

__all__ = ["error_response", "router"]

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def error_response(exc: ShortCodeError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.error_code, message=exc.message).model_dump(),
    )


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx: RequestContext = Depends(get_request_context)) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.HEALTHY

    try:
        await ctx.database.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    try:
        await ctx.cache.ping()
    except RedisError as e:
        ctx.logger.error(f"Cache health check failed: {e}")
        cache_status = HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is HealthStatus.HEALTHY
        else HealthStatus.UNHEALTHY
    )
    return HealthResponse(status=status, database=db_status, cache=cache_status)


@router.post(
    "/api/v1/shorten",
    response_model=ShortCodeResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["shortcode"],
)
async def create_short_code(
    payload: ShortCodeCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: ShortCodeService = Depends(get_shortcode_service),
):
    ctx.add_tag("creation")
    ctx.logger.info(
        f"Short code requested for: {payload.url}",
        extra={"operation": "create_short_code", "custom_code": payload.custom_code},
    )
    try:
        return await service.create_short_code(payload)
    except ShortCodeError as exc:
        ctx.logger.warning(
            f"Short code creation failed: {exc.error_code}",
            extra={"operation": "create_short_code", "duration_ms": ctx.get_duration()},
        )
        return error_response(exc)


@router.delete(
    "/api/v1/shorten/{code}",
    response_model=MessageResponse,
    responses=ERROR_RESPONSES,
    tags=["shortcode"],
)
async def delete_short_code(
    code: str,
    ctx: RequestContext = Depends(get_request_context),
    service: ShortCodeService = Depends(get_shortcode_service),
):
    try:
        await service.delete_short_code(code)
    except ShortCodeError as exc:
        ctx.logger.warning(f"Delete failed for {code}: {exc.error_code}")
        return error_response(exc)
    return MessageResponse(message="Short code deleted successfully")


@router.get(
    "/api/v1/stats/{code}",
    response_model=ShortCodeStats,
    responses=ERROR_RESPONSES,
    tags=["shortcode"],
)
async def get_stats(
    code: str,
    ctx: RequestContext = Depends(get_request_context),
    service: ShortCodeService = Depends(get_shortcode_service),
):
    try:
        return await service.get_stats(code)
    except ShortCodeError as exc:
        ctx.logger.warning(f"Stats lookup failed for {code}: {exc.error_code}")
        return error_response(exc)


@router.get(
    "/api/v1/stats/{code}/detailed",
    response_model=DetailedStats,
    responses=ERROR_RESPONSES,
    tags=["shortcode"],
)
async def get_detailed_stats(
    code: str,
    hours: int = Query(0, ge=0, description="Lookback window in hours, 0 for all time"),
    ctx: RequestContext = Depends(get_request_context),
    service: ShortCodeService = Depends(get_shortcode_service),
):
    try:
        return await service.get_detailed_stats(code, hours)
    except ShortCodeError as exc:
        ctx.logger.warning(f"Detailed stats failed for {code}: {exc.error_code}")
        return error_response(exc)


@router.get("/api/v1/metrics", response_model=MetricsResponse, responses=ERROR_RESPONSES, tags=["system"])
async def get_metrics(
    ctx: RequestContext = Depends(get_request_context),
    service: ShortCodeService = Depends(get_shortcode_service),
):
    try:
        return await service.get_metrics()
    except ShortCodeError as exc:
        ctx.logger.error(f"Metrics query failed: {exc}")
        return error_response(exc)


@router.get("/{code}", response_class=RedirectResponse, status_code=302, responses=ERROR_RESPONSES, tags=["redirect"])
async def redirect_to_original(
    code: str,
    ctx: RequestContext = Depends(get_request_context),
    service: ShortCodeService = Depends(get_shortcode_service),
):
    ctx.add_tag("redirect")
    try:
        original_url = await service.get_original_url(code)
    except ShortCodeError as exc:
        ctx.logger.info(
            f"Redirect failed for {code}: {exc.error_code}",
            extra={"operation": "redirect", "duration_ms": ctx.get_duration()},
        )
        return error_response(exc)

    service.schedule_click(code, ctx.client_ip, ctx.user_agent, ctx.referer)
    ctx.logger.debug(
        f"Redirect: {code} -> {original_url}",
        extra={"operation": "redirect", "duration_ms": ctx.get_duration()},
    )
    return RedirectResponse(url=original_url, status_code=302)
