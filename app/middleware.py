"""HTTP middleware for the shortcode API.

Middleware Order (outermost first)
==================================
::
    request ──▶ RequestID ──▶ SecurityHeaders ──▶ CORS ──▶ RateLimit ──▶ Timeout ──▶ routes
                 │                 │                          │            │
                 │ echo or mint    │ nosniff, DENY, …         │ 429        │ 408
                 ▼                 ▼                          ▼            ▼
              X-Request-ID     response headers       rate_limit_exceeded  request_timeout

Starlette runs the middleware added last first, so ``install_middleware`` adds
them in reverse of the order above.

Key Behaviours
===============
- Rejections use the same ``{"error", "message"}`` body as domain errors.
- The rate limiter is any ``RateLimitBackend``; the key is ``client_ip(request)``.
- A timed-out request is answered with 408. The handler is cancelled; clicks it
  already scheduled keep running on their own deadline.
"""

import asyncio
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.config import Settings
from app.dependencies import client_ip
from app.rate_limiter import RateLimitBackend

__all__ = [
    "RateLimitMiddleware",
    "RequestIDMiddleware",
    "SecurityHeadersMiddleware",
    "TimeoutMiddleware",
    "add_rate_limit_middleware",
    "install_middleware",
]

RATE_LIMITED_TOTAL = Counter(
    "shortcode_rate_limited_requests_total",
    "Requests rejected by the rate limiter",
)
REQUEST_TIMEOUTS_TOTAL = Counter(
    "shortcode_request_timeouts_total",
    "Requests answered with 408 after exceeding the request timeout",
)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, limiter: RateLimitBackend):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next):
        if not self.limiter.allow(client_ip(request)):
            RATE_LIMITED_TOTAL.inc()
            return JSONResponse(
                status_code=429,
                content={"error": "rate_limit_exceeded", "message": "Too many requests, please try again later"},
            )
        return await call_next(request)


class TimeoutMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, timeout: float):
        super().__init__(app)
        self.timeout = timeout

    async def dispatch(self, request: Request, call_next):
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            REQUEST_TIMEOUTS_TOTAL.inc()
            return JSONResponse(
                status_code=408,
                content={"error": "request_timeout", "message": "Request processing timeout"},
            )


def add_rate_limit_middleware(app: FastAPI, limiter: RateLimitBackend) -> None:
    app.add_middleware(RateLimitMiddleware, limiter=limiter)


def install_middleware(app: FastAPI, settings: Settings, limiter: RateLimitBackend) -> None:
    """Register the full middleware chain on ``app``."""
    app.add_middleware(TimeoutMiddleware, timeout=settings.REQUEST_TIMEOUT_SECONDS)
    add_rate_limit_middleware(app, limiter)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)
