"""Dependency injection with a singleton service manager.

Shared resources (settings, logger, Redis client and click recorder)
live in one ``ServiceManager`` created at startup. Each request gets a
lightweight ``RequestContext`` holding its own database session plus a
reference to the manager.

Resource Ownership
==================
::
    ServiceManager (process-wide)          RequestContext (per request)
    ├─ settings                            ├─ database (AsyncSession)
    ├─ logger "shortcode"                  ├─ request_id / trace_id
    ├─ cache (redis.asyncio.Redis)         ├─ client_ip / user_agent / referer
    └─ click_recorder (ClickRecorder)      ├─ tags
         └─ own sessions from              └─ service_manager
            ``async_session``

Key Behaviours
===============
- Click tasks outlive the request, so the recorder never borrows the request
  session.
- ``client_ip`` prefers the first ``X-Forwarded-For`` hop, then ``X-Real-IP``, then
  the socket peer. The rate limiter and click accounting key on the same value.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.click_recorder import ClickRecorder
from app.config import Settings, get_settings
from app.database import async_session, get_db
from app.redis import close_redis, get_redis
from app.shortcode_service import ShortCodeService

__all__ = [
    "RequestContext",
    "ServiceManager",
    "client_ip",
    "get_request_context",
    "get_service_manager",
    "get_shortcode_service",
]


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else ""


# ============================================================================
# SINGLETON SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Singleton holder for resources shared by every request."""

    _instance: Optional["ServiceManager"] = None
    _initialized: bool = False

    def __new__(cls) -> "ServiceManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(self) -> None:
        """Initialize shared resources once at startup."""
        if not self._initialized:
            self.settings: Settings = get_settings()
            self.logger = self._setup_logger()
            self.cache: redis.Redis = await get_redis()
            self.click_recorder = ClickRecorder(
                async_session,
                self.cache,
                logger=self.logger,
                settings=self.settings,
            )
            self._initialized = True

    def _setup_logger(self) -> logging.Logger:
        logger = logging.getLogger("shortcode")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        logger.setLevel(self.settings.LOG_LEVEL.upper())
        return logger

    async def cleanup(self) -> None:
        """Drain click tasks, then release the Redis client."""
        if not self._initialized:
            return
        await self.click_recorder.shutdown(timeout=self.settings.CLICK_RECORD_TIMEOUT_SECONDS)
        await close_redis()
        self._initialized = False


# Global singleton instance
_service_manager = ServiceManager()


# ============================================================================
# LIGHTWEIGHT REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Per-request context with tracking and access to shared resources.

    Attributes:
        database: Async database session, the only per-request resource
        service_manager: Singleton service manager with shared resources
        request_id: Value of ``X-Request-ID``, generated when absent
        trace_id: Correlation ID for distributed tracing
        client_ip: Client address as seen through proxies
        user_agent: Client user agent string
        referer: ``Referer`` header, empty when absent
        start_time: Request start timestamp
        tags: Request tags for categorization
    """

    database: AsyncSession
    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trace_id: Optional[str] = None
    client_ip: str = ""
    user_agent: str = ""
    referer: str = ""
    start_time: float = field(default_factory=time.time)
    tags: list[str] = field(default_factory=list)

    @property
    def cache(self) -> redis.Redis:
        return self.service_manager.cache

    @property
    def click_recorder(self) -> ClickRecorder:
        return self.service_manager.click_recorder

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def logger(self) -> logging.LoggerAdapter:
        """Shared logger with the request context attached to every record."""
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "trace_id": self.trace_id or self.request_id,
                "client_ip": self.client_ip,
                "user_agent": self.user_agent,
                "tags": ",".join(self.tags),
            },
        )

    def add_tag(self, tag: str) -> None:
        if tag not in self.tags:
            self.tags.append(tag)

    def get_duration(self) -> float:
        """Get request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    if not _service_manager._initialized:
        await _service_manager.initialize()
    return _service_manager


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("x-request-id")
    return RequestContext(
        database=db,
        service_manager=manager,
        request_id=request_id or str(uuid.uuid4()),
        trace_id=request.headers.get("x-trace-id"),
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
        referer=request.headers.get("referer", ""),
    )


def get_shortcode_service(ctx: RequestContext = Depends(get_request_context)) -> ShortCodeService:
    return ShortCodeService.from_context(ctx)

