"""Cache-aside storage for short codes.

PostgreSQL is the record of truth; Redis holds a derived copy of each short code
for the redirect hot path.

Read Path — get_by_code()
=========================
::
    ┌─────────────┐
    │ Redis GET    │──── error / bad payload ──┐
    │ shortcode:c  │                            │
    └──────┬──────┘                            │
    HIT?  │                                    │
    ┌─────┴─────┐                              │
    │ YES        │ NO                          │
    ▼            ▼                             ▼
┌──────────┐  ┌──────────────────────────────────────┐
│ expired? │  │ SELECT … WHERE code = c               │
│ yes→404  │  │   AND deleted_at IS NULL              │
│ no→return│  │   AND (expires_at IS NULL OR > now)   │
└──────────┘  └───────────────┬──────────────────────┘
                         FOUND?│
                    ┌──────────┴──────────┐
                    │ YES                  │ NO
                    ▼                      ▼
            ┌───────────────┐       ┌─────────────┐
            │ SETEX (TTL),  │       │ NotFound    │
            │ errors logged │       └─────────────┘
            └───────┬───────┘
                    ▼
                 return

Key Behaviours
===============
- ``code_exists`` reads PostgreSQL only; creation-time uniqueness never trusts the
  cache.
- Writes go to PostgreSQL only; the cache is filled lazily by the next read.
- Click counters are updated in PostgreSQL only, so cached copies may show stale
  ``click_count`` / ``last_accessed_at`` for up to the cache TTL.
- Redis failures on the read path count as misses; cache population failures are
  logged and swallowed.
- Every statement that fails in PostgreSQL is rolled back and re-raised as
  ``StorageError`` (or ``CodeAlreadyExistsError`` for the unique index).
"""

import datetime
import logging

import redis.asyncio as redis
from prometheus_client import Counter
from redis.exceptions import RedisError
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.enums import CacheStatus
from app.exceptions import CodeAlreadyExistsError, NotFoundError, StorageError
from app.models import ClickLog, ShortCode, utcnow
from app.schemas import CachedShortCodePayload, MetricsResponse

__all__ = ["CodeStore"]

CACHE_LOOKUPS_TOTAL = Counter(
    "shortcode_cache_lookups_total",
    "Cache lookups for short codes",
    ["hit"],
)
CACHE_ERRORS_TOTAL = Counter(
    "shortcode_cache_errors_total",
    "Redis failures swallowed by the cache-aside layer",
    ["operation"],
)
DATABASE_READS_TOTAL = Counter(
    "shortcode_database_reads_total",
    "Database read operations",
)
DATABASE_WRITES_TOTAL = Counter(
    "shortcode_database_writes_total",
    "Database write operations",
)


class CodeStore:
    """Cache-aside access to short codes, click logs and aggregate metrics."""

    def __init__(
        self,
        db: AsyncSession,
        cache: redis.Redis,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        settings: Settings | None = None,
    ):
        self._db = db
        self._cache = cache
        self._logger = logger or logging.getLogger("shortcode")
        self._settings = settings or get_settings()

    def cache_key(self, code: str) -> str:
        return f"{self._settings.CACHE_KEY_PREFIX}:{code}"

    # ========================================================================
    # READS
    # ========================================================================

    async def get_by_code(self, code: str) -> ShortCode:
        """Resolve a live short code, cache first.

        Raises:
            NotFoundError: missing, expired or soft-deleted.
            StorageError: PostgreSQL failed on a cache miss.
        """
        cached = await self._lookup_from_cache(code)
        if cached is not None:
            CACHE_LOOKUPS_TOTAL.labels(hit=CacheStatus.HIT).inc()
            if cached.is_expired():
                self._logger.debug(f"Cached copy of {code} has expired")
                raise NotFoundError(code)
            return cached

        CACHE_LOOKUPS_TOTAL.labels(hit=CacheStatus.MISS).inc()
        short_code = await self._lookup_from_database(code)
        if short_code is None:
            raise NotFoundError(code)

        await self._cache_short_code(short_code)
        return short_code

    async def code_exists(self, code: str) -> bool:
        """Durable existence check among rows that are not soft-deleted."""
        try:
            count = await self._db.scalar(
                select(func.count())
                .select_from(ShortCode)
                .where(ShortCode.code == code, ShortCode.deleted_at.is_(None))
            )
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError(f"existence check failed for {code}") from exc
        DATABASE_READS_TOTAL.inc()
        return bool(count)

    async def get_stats(self, code: str) -> ShortCode:
        """Fetch the durable row for statistics, bypassing the cache.

        Expired rows are still reported; soft-deleted rows are not.
        """
        try:
            result = await self._db.execute(
                select(ShortCode).where(ShortCode.code == code, ShortCode.deleted_at.is_(None))
            )
            short_code = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError(f"stats lookup failed for {code}") from exc
        DATABASE_READS_TOTAL.inc()
        if short_code is None:
            raise NotFoundError(code)
        return short_code

    async def get_metrics(self) -> MetricsResponse:
        since = utcnow() - datetime.timedelta(hours=24)
        live = ShortCode.deleted_at.is_(None)
        try:
            total_codes = await self._db.scalar(select(func.count()).select_from(ShortCode).where(live))
            total_clicks = await self._db.scalar(
                select(func.coalesce(func.sum(ShortCode.click_count), 0)).where(live)
            )
            clicks_24h = await self._db.scalar(
                select(func.count()).select_from(ClickLog).where(ClickLog.created_at > since)
            )
            active_codes = await self._db.scalar(
                select(func.count()).select_from(ShortCode).where(live, ShortCode.click_count > 0)
            )
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError("metrics query failed") from exc
        DATABASE_READS_TOTAL.inc()
        return MetricsResponse(
            total_codes=total_codes or 0,
            total_clicks=total_clicks or 0,
            clicks_24h=clicks_24h or 0,
            active_codes=active_codes or 0,
        )

    # ========================================================================
    # WRITES
    # ========================================================================

    async def create(self, short_code: ShortCode) -> ShortCode:
        """Insert a new row; the cache is left to the next read.

        Raises:
            CodeAlreadyExistsError: the partial unique index on ``code`` rejected it.
            StorageError: any other database failure.
        """
        try:
            self._db.add(short_code)
            await self._db.commit()
            await self._db.refresh(short_code)
        except IntegrityError as exc:
            await self._db.rollback()
            self._logger.warning(f"Unique index rejected code: {short_code.code}")
            raise CodeAlreadyExistsError(short_code.code) from exc
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError(f"insert failed for {short_code.code}") from exc
        DATABASE_WRITES_TOTAL.inc()
        return short_code

    async def update_click_count(self, short_code_id: int) -> None:
        """Atomically bump ``click_count`` and stamp ``last_accessed_at``."""
        try:
            await self._db.execute(
                update(ShortCode)
                .where(ShortCode.id == short_code_id)
                .values(click_count=ShortCode.click_count + 1, last_accessed_at=utcnow())
            )
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError(f"click increment failed for id {short_code_id}") from exc
        DATABASE_WRITES_TOTAL.inc()

    async def log_click(self, short_code_id: int, ip_address: str, user_agent: str, referer: str) -> ClickLog:
        click_log = ClickLog(
            short_code_id=short_code_id,
            ip_address=ip_address or "",
            user_agent=user_agent or "",
            referer=referer or "",
            created_at=utcnow(),
        )
        try:
            self._db.add(click_log)
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError(f"click log insert failed for id {short_code_id}") from exc
        DATABASE_WRITES_TOTAL.inc()
        return click_log

    async def invalidate_cache(self, code: str) -> None:
        try:
            await self._cache.delete(self.cache_key(code))
        except RedisError as exc:
            CACHE_ERRORS_TOTAL.labels(operation="delete").inc()
            raise StorageError(f"cache invalidation failed for {code}") from exc

    async def delete(self, code: str) -> None:
        """Purge the cached copy, then soft-delete the durable row.

        A failed purge is logged and does not stop the delete.

        Raises:
            NotFoundError: no live row matched.
            StorageError: the durable update failed.
        """
        try:
            await self.invalidate_cache(code)
        except StorageError as exc:
            self._logger.warning(f"Failed to invalidate cache for code {code}: {exc.__cause__}")

        try:
            result = await self._db.execute(
                update(ShortCode)
                .where(ShortCode.code == code, ShortCode.deleted_at.is_(None))
                .values(deleted_at=utcnow())
            )
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError(f"delete failed for {code}") from exc
        DATABASE_WRITES_TOTAL.inc()

        if result.rowcount == 0:
            raise NotFoundError(code)

    # ========================================================================
    # PRIVATE HELPERS
    # ========================================================================

    async def _lookup_from_cache(self, code: str) -> ShortCode | None:
        try:
            cached_data = await self._cache.get(self.cache_key(code))
        except RedisError as exc:
            CACHE_ERRORS_TOTAL.labels(operation="get").inc()
            self._logger.warning(f"Cache read failed for {code}: {exc}")
            return None

        if not cached_data:
            return None

        try:
            payload = CachedShortCodePayload.model_validate_json(cached_data)
        except ValueError as exc:
            CACHE_ERRORS_TOTAL.labels(operation="decode").inc()
            self._logger.error(f"Cache deserialization error for {code}: {exc}")
            return None

        return ShortCode(
            id=payload.id,
            code=payload.code,
            original_url=payload.original_url,
            click_count=payload.click_count,
            created_at=payload.created_at,
            updated_at=payload.updated_at,
            expires_at=payload.expires_at,
            last_accessed_at=payload.last_accessed_at,
        )

    async def _lookup_from_database(self, code: str) -> ShortCode | None:
        now = utcnow()
        try:
            result = await self._db.execute(
                select(ShortCode).where(
                    ShortCode.code == code,
                    ShortCode.deleted_at.is_(None),
                    or_(ShortCode.expires_at.is_(None), ShortCode.expires_at > now),
                )
            )
            short_code = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError(f"lookup failed for {code}") from exc
        DATABASE_READS_TOTAL.inc()
        return short_code

    async def _cache_short_code(self, short_code: ShortCode) -> None:
        ttl = self._settings.CACHE_TTL_SECONDS
        if short_code.expires_at is not None:
            if short_code.is_expired():
                return
            remaining = int((short_code.expires_at - utcnow()).total_seconds())
            ttl = max(1, min(ttl, remaining))

        try:
            payload = CachedShortCodePayload.model_validate(short_code)
            await self._cache.setex(self.cache_key(short_code.code), ttl, payload.model_dump_json())
        except (RedisError, ValueError) as exc:
            CACHE_ERRORS_TOTAL.labels(operation="set").inc()
            self._logger.warning(f"Cache population failed for {short_code.code}: {exc}")
