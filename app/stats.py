"""Hourly access statistics: recording and rollup queries.

Aggregation Model
=================
::
    click at 14:37 from 203.0.113.9 on code #42
                    │
                    ▼  hour_bucket() → 14:00 UTC
    INSERT INTO access_statistics (42, '203.0.113.9', …, '14:00', 1)
    ON CONFLICT (short_code_id, ip_address, hour_bucket)
    DO UPDATE SET access_count = access_statistics.access_count + 1

A burst of clicks from one visitor inside one hour therefore lands on a single
row whose counter grows, and concurrent writers never create duplicates.

Detailed Stats Layout
=====================
::
    DetailedStats
    ├─ total_clicks      short_codes.click_count
    ├─ unique_ips        COUNT(DISTINCT ip) over the window
    ├─ hourly_stats      per hour: SUM(access_count), COUNT(DISTINCT ip)  ≤100, newest first
    ├─ location_stats    per (country, region, city): SUM(access_count)  ≤50, busiest first
    └─ recent_accesses   click_logs ⟕ access_statistics on the hour bucket ≤20, newest first

``hours = 0`` disables the lookback filter; otherwise every sub-query applies
``>= now - hours`` on its own time column.
"""

import datetime
import logging

from prometheus_client import Histogram
from sqlalchemy import and_, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import NotFoundError, StorageError
from app.models import AccessStatistics, ClickLog, ShortCode, utcnow
from app.schemas import DetailedStats, HourlyStatItem, IPLocation, LocationStatItem, RecentAccessItem

__all__ = [
    "HOURLY_STATS_LIMIT",
    "LOCATION_STATS_LIMIT",
    "RECENT_ACCESSES_LIMIT",
    "StatsAggregator",
    "hour_bucket",
]

HOURLY_STATS_LIMIT = 100
LOCATION_STATS_LIMIT = 50
RECENT_ACCESSES_LIMIT = 20

DETAILED_STATS_DURATION = Histogram(
    "shortcode_detailed_stats_duration_seconds",
    "Time taken to build detailed statistics",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)


def hour_bucket(moment: datetime.datetime) -> datetime.datetime:
    """Truncate to the top of the hour in UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=datetime.timezone.utc)
    return moment.astimezone(datetime.timezone.utc).replace(minute=0, second=0, microsecond=0)


class StatsAggregator:
    def __init__(self, db: AsyncSession, logger: logging.Logger | logging.LoggerAdapter | None = None):
        self._db = db
        self._logger = logger or logging.getLogger("shortcode")

    async def record_access_stats(
        self,
        short_code_id: int,
        ip_address: str,
        location: IPLocation,
        bucket: datetime.datetime,
    ) -> None:
        """Insert the (code, ip, hour) row with count 1, or bump its count atomically."""
        stmt = pg_insert(AccessStatistics).values(
            short_code_id=short_code_id,
            ip_address=ip_address,
            country=location.country,
            region=location.region,
            city=location.city,
            hour_bucket=hour_bucket(bucket),
            access_count=1,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_access_statistics_bucket",
            set_={
                "access_count": AccessStatistics.access_count + 1,
                "updated_at": func.now(),
            },
        )
        try:
            await self._db.execute(stmt)
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError(f"access stats upsert failed for id {short_code_id}") from exc

    async def get_detailed_stats(self, code: str, hours: int = 0) -> DetailedStats:
        """Roll up access statistics for ``code`` over the last ``hours`` (0 = all time).

        Raises:
            NotFoundError: the code has no live row.
            StorageError: any sub-query failed.
        """
        if hours < 0:
            raise ValueError(f"hours must be non-negative, got {hours!r}")

        with DETAILED_STATS_DURATION.time():
            try:
                short_code = (
                    await self._db.execute(
                        select(ShortCode).where(ShortCode.code == code, ShortCode.deleted_at.is_(None))
                    )
                ).scalar_one_or_none()
            except SQLAlchemyError as exc:
                await self._db.rollback()
                raise StorageError(f"detailed stats lookup failed for {code}") from exc

            if short_code is None:
                raise NotFoundError(code)

            since = utcnow() - datetime.timedelta(hours=hours) if hours > 0 else None

            try:
                unique_ips = await self._unique_ips(short_code.id, since)
                hourly = await self._hourly_stats(short_code.id, since)
                locations = await self._location_stats(short_code.id, since)
                recent = await self._recent_accesses(short_code.id, since)
            except SQLAlchemyError as exc:
                await self._db.rollback()
                raise StorageError(f"detailed stats query failed for {code}") from exc

        return DetailedStats(
            code=short_code.code,
            original_url=short_code.original_url,
            total_clicks=short_code.click_count,
            unique_ips=unique_ips,
            created_at=short_code.created_at,
            last_accessed_at=short_code.last_accessed_at,
            hourly_stats=hourly,
            location_stats=locations,
            recent_accesses=recent,
        )

    # ========================================================================
    # SUB-QUERIES
    # ========================================================================

    def _window(self, short_code_id: int, since: datetime.datetime | None) -> list:
        clauses = [AccessStatistics.short_code_id == short_code_id]
        if since is not None:
            clauses.append(AccessStatistics.hour_bucket >= since)
        return clauses

    async def _unique_ips(self, short_code_id: int, since: datetime.datetime | None) -> int:
        count = await self._db.scalar(
            select(func.count(func.distinct(AccessStatistics.ip_address))).where(*self._window(short_code_id, since))
        )
        return count or 0

    async def _hourly_stats(self, short_code_id: int, since: datetime.datetime | None) -> list[HourlyStatItem]:
        result = await self._db.execute(
            select(
                AccessStatistics.hour_bucket,
                func.sum(AccessStatistics.access_count).label("access_count"),
                func.count(func.distinct(AccessStatistics.ip_address)).label("unique_ips"),
            )
            .where(*self._window(short_code_id, since))
            .group_by(AccessStatistics.hour_bucket)
            .order_by(AccessStatistics.hour_bucket.desc())
            .limit(HOURLY_STATS_LIMIT)
        )
        return [
            HourlyStatItem(hour_bucket=row.hour_bucket, access_count=row.access_count, unique_ips=row.unique_ips)
            for row in result.all()
        ]

    async def _location_stats(self, short_code_id: int, since: datetime.datetime | None) -> list[LocationStatItem]:
        total = func.sum(AccessStatistics.access_count).label("access_count")
        result = await self._db.execute(
            select(AccessStatistics.country, AccessStatistics.region, AccessStatistics.city, total)
            .where(*self._window(short_code_id, since))
            .group_by(AccessStatistics.country, AccessStatistics.region, AccessStatistics.city)
            .order_by(total.desc())
            .limit(LOCATION_STATS_LIMIT)
        )
        return [
            LocationStatItem(country=row.country, region=row.region, city=row.city, access_count=row.access_count)
            for row in result.all()
        ]

    async def _recent_accesses(self, short_code_id: int, since: datetime.datetime | None) -> list[RecentAccessItem]:
        # Buckets are written in UTC, so compare in UTC regardless of the session time zone.
        same_bucket = and_(
            ClickLog.ip_address == AccessStatistics.ip_address,
            ClickLog.short_code_id == AccessStatistics.short_code_id,
            func.date_trunc("hour", func.timezone("UTC", ClickLog.created_at))
            == func.timezone("UTC", AccessStatistics.hour_bucket),
        )
        query = (
            select(
                ClickLog.ip_address,
                ClickLog.user_agent,
                ClickLog.created_at.label("access_time"),
                func.coalesce(AccessStatistics.country, "").label("country"),
                func.coalesce(AccessStatistics.region, "").label("region"),
                func.coalesce(AccessStatistics.city, "").label("city"),
            )
            .select_from(ClickLog)
            .outerjoin(AccessStatistics, same_bucket)
            .where(ClickLog.short_code_id == short_code_id)
        )
        if since is not None:
            query = query.where(ClickLog.created_at >= since)

        result = await self._db.execute(query.order_by(ClickLog.created_at.desc()).limit(RECENT_ACCESSES_LIMIT))
        return [
            RecentAccessItem(
                ip_address=row.ip_address,
                user_agent=row.user_agent,
                access_time=row.access_time,
                country=row.country,
                region=row.region,
                city=row.city,
            )
            for row in result.all()
        ]
