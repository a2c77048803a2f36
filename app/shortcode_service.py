"""Shortcode Service Layer - Core Business Logic

This module orchestrates code creation, resolution, deletion and statistics on
top of ``CodeStore`` (cache-aside persistence), ``StatsAggregator`` (hourly
rollups) and ``ClickRecorder`` (out-of-band click accounting).

Architecture Overview
=====================
::
    ┌──────────────────────────────────────────────────────────────┐
    │                    ShortCodeService                          │
    │  ┌────────────────┐  ┌────────────────┐  ┌────────────────┐  │
    │  │ CodeGenerator  │  │   CodeStore    │  │ StatsAggregator│  │
    │  │ • nanoid, 62   │  │ • cache-aside  │  │ • hourly upsert│  │
    │  │   char alphabet│  │ • soft delete  │  │ • rollups      │  │
    │  └────────────────┘  └────────────────┘  └────────────────┘  │
    │                       ┌────────────────┐                     │
    │                       │ ClickRecorder  │  detached tasks     │
    │                       └────────────────┘                     │
    └──────────────────────────────────────────────────────────────┘
                │                    │
                ▼                    ▼
    ┌─────────────────┐  ┌─────────────────┐
    │   PostgreSQL    │  │     Redis       │
    │ (record of truth)│ │ (24h TTL cache) │
    └─────────────────┘  └─────────────────┘

Creation Flow
-------------
::
    validate URL ──▶ custom code? ──yes──▶ format check ──▶ durable exists? ──▶ insert
                          │
                          no
                          ▼
                generate ──▶ durable exists? ──(taken, ≤5 tries)──▶ generate …
                          │ free
                          ▼
                        insert ──(unique violation, once)──▶ generate again

The existence check and the insert are not atomic. The partial unique index on
``short_codes.code`` is the backstop: a violation surfaces as
``CodeAlreadyExistsError``, and auto-generated codes get one fresh attempt.

Error Mapping
=============
::
    InvalidURLError          400  bad URL, storage never touched
    InvalidCodeFormatError   400  bad custom code, storage never touched
    CodeAlreadyExistsError   409  custom code taken, or lost the insert race
    GenerationExhaustedError 500  every candidate collided
    NotFoundError            404  missing, expired or soft-deleted
    StorageError             500  primary PostgreSQL operation failed
"""

import datetime
import re
import time
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import validators
from prometheus_client import Counter, Histogram

from app.click_recorder import ClickRecorder
from app.code_generator import generate_code
from app.code_store import CodeStore
from app.enums import RequestStatus
from app.exceptions import (
    CodeAlreadyExistsError,
    GenerationExhaustedError,
    InvalidCodeFormatError,
    InvalidURLError,
    NotFoundError,
    ShortCodeError,
)
from app.models import ShortCode, utcnow
from app.schemas import DetailedStats, MetricsResponse, ShortCodeCreate, ShortCodeResponse, ShortCodeStats
from app.stats import StatsAggregator

if TYPE_CHECKING:
    from app.dependencies import RequestContext

__all__ = ["CODE_PATTERN", "ShortCodeService", "is_valid_code", "is_valid_url"]

CODE_PATTERN = re.compile(r"[A-Za-z0-9]{4,50}")
ALLOWED_SCHEMES = frozenset({"http", "https"})

CREATION_REQUESTS_TOTAL = Counter(
    "shortcode_creation_requests_total",
    "Total short code creation requests",
    ["status"],
)
CREATION_DURATION = Histogram(
    "shortcode_creation_duration_seconds",
    "Time taken to create short codes",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)
LOOKUP_REQUESTS_TOTAL = Counter(
    "shortcode_lookup_requests_total",
    "Total short code lookups",
    ["status"],
)
LOOKUP_DURATION = Histogram(
    "shortcode_lookup_duration_seconds",
    "Time taken to resolve short codes",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25],
)
GENERATION_COLLISIONS_TOTAL = Counter(
    "shortcode_generation_collisions_total",
    "Generated candidates rejected because the code already existed",
)


def is_valid_url(raw_url: str) -> bool:
    """Absolute http(s) URL with a host that also passes ``validators.url``."""
    try:
        parts = urlsplit(raw_url)
    except ValueError:
        return False
    if parts.scheme not in ALLOWED_SCHEMES or not parts.netloc:
        return False
    return validators.url(raw_url, simple_host=True, strict_query=False) is True


def is_valid_code(code: str) -> bool:
    return CODE_PATTERN.fullmatch(code) is not None


class ShortCodeService:
    """Core service class for short code operations.

    Example:
        >>> service = ShortCodeService.from_context(ctx)
        >>> created = await service.create_short_code(ShortCodeCreate(url="https://example.com"))
        >>> await service.get_original_url(created.short_code)
        'https://example.com'
    """

    def __init__(self, ctx: "RequestContext"):
        self._db = ctx.database
        self._cache = ctx.cache
        self._logger = ctx.logger
        self._settings = ctx.settings
        self._click_recorder: ClickRecorder = ctx.click_recorder
        self._store = CodeStore(self._db, self._cache, self._logger, self._settings)
        self._stats = StatsAggregator(self._db, self._logger)

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "ShortCodeService":
        return cls(ctx)

    # ========================================================================
    # CREATION
    # ========================================================================

    async def create_short_code(self, request: ShortCodeCreate) -> ShortCodeResponse:
        """Validate, pick a code and persist it.

        Raises:
            InvalidURLError, InvalidCodeFormatError, CodeAlreadyExistsError,
            GenerationExhaustedError, StorageError
        """
        start_time = time.perf_counter()
        try:
            response = await self._create_short_code(request)
        except (InvalidURLError, InvalidCodeFormatError) as exc:
            CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.VALIDATION_ERROR).inc()
            self._logger.info(f"Rejected creation request: {exc.error_code}")
            raise
        except CodeAlreadyExistsError:
            CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.CONFLICT).inc()
            raise
        except ShortCodeError as exc:
            CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            self._logger.error(f"Short code creation failed: {exc}")
            raise
        finally:
            CREATION_DURATION.observe(time.perf_counter() - start_time)

        CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        self._logger.info(f"Short code created: {response.short_code}")
        return response

    async def _create_short_code(self, request: ShortCodeCreate) -> ShortCodeResponse:
        if not is_valid_url(request.url):
            raise InvalidURLError(request.url)

        if request.custom_code and not is_valid_code(request.custom_code):
            raise InvalidCodeFormatError(request.custom_code)

        expires_at = None
        if request.expires_in is not None and request.expires_in > 0:
            expires_at = utcnow() + datetime.timedelta(hours=request.expires_in)

        if request.custom_code:
            if await self._store.code_exists(request.custom_code):
                raise CodeAlreadyExistsError(request.custom_code)
            created = await self._store.create(self._new_record(request.custom_code, request.url, expires_at))
        else:
            created = await self._create_with_generated_code(request.url, expires_at)

        return ShortCodeResponse(
            short_code=created.code,
            short_url=self._short_url(created.code),
            original_url=created.original_url,
            created_at=created.created_at,
            expires_at=created.expires_at,
        )

    async def _create_with_generated_code(self, url: str, expires_at: datetime.datetime | None) -> ShortCode:
        code = await self._generate_unique_code()
        try:
            return await self._store.create(self._new_record(code, url, expires_at))
        except CodeAlreadyExistsError:
            GENERATION_COLLISIONS_TOTAL.inc()
            self._logger.warning(f"Lost insert race for generated code {code}, retrying once")

        code = await self._generate_unique_code()
        return await self._store.create(self._new_record(code, url, expires_at))

    async def _generate_unique_code(self) -> str:
        attempts = self._settings.MAX_GENERATION_ATTEMPTS
        for _ in range(attempts):
            candidate = generate_code(self._settings.SHORT_CODE_LENGTH)
            if not await self._store.code_exists(candidate):
                return candidate
            GENERATION_COLLISIONS_TOTAL.inc()
            self._logger.debug(f"Generated code collided: {candidate}")
        raise GenerationExhaustedError(f"no free code after {attempts} attempts")

    @staticmethod
    def _new_record(code: str, url: str, expires_at: datetime.datetime | None) -> ShortCode:
        return ShortCode(code=code, original_url=url, expires_at=expires_at, click_count=0)

    def _short_url(self, code: str) -> str:
        return f"{self._settings.BASE_URL.rstrip('/')}/{code}"

    # ========================================================================
    # RESOLUTION
    # ========================================================================

    async def get_original_url(self, code: str) -> str:
        """Resolve ``code`` through the cache-aside read path.

        Raises:
            NotFoundError: missing, expired or soft-deleted.
            StorageError: PostgreSQL failed on a cache miss.
        """
        start_time = time.perf_counter()
        try:
            short_code = await self._store.get_by_code(code)
        except NotFoundError:
            LOOKUP_REQUESTS_TOTAL.labels(status=RequestStatus.NOT_FOUND).inc()
            raise
        except ShortCodeError:
            LOOKUP_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            raise
        finally:
            LOOKUP_DURATION.observe(time.perf_counter() - start_time)

        LOOKUP_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        return short_code.original_url

    async def delete_short_code(self, code: str) -> None:
        await self._store.delete(code)
        self._logger.info(f"Short code deleted: {code}")

    # ========================================================================
    # CLICKS & STATISTICS
    # ========================================================================

    async def record_click(self, code: str, ip_address: str, user_agent: str = "", referer: str = "") -> bool:
        """Record a click and wait for it; returns False when some step was skipped."""
        return await self._click_recorder.record(code, ip_address, user_agent, referer)

    def schedule_click(self, code: str, ip_address: str, user_agent: str = "", referer: str = "") -> None:
        """Record a click in the background; returns immediately."""
        self._click_recorder.schedule(code, ip_address, user_agent, referer)

    async def get_stats(self, code: str) -> ShortCodeStats:
        short_code = await self._store.get_stats(code)
        return ShortCodeStats(
            code=short_code.code,
            original_url=short_code.original_url,
            click_count=short_code.click_count,
            created_at=short_code.created_at,
            last_accessed_at=short_code.last_accessed_at,
        )

    async def get_detailed_stats(self, code: str, hours: int = 0) -> DetailedStats:
        return await self._stats.get_detailed_stats(code, hours)

    async def get_metrics(self) -> MetricsResponse:
        return await self._store.get_metrics()
