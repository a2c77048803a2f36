"""SQLAlchemy ORM models for the shortcode service.

Data Model Layout
=================
::
    short_codes
    ├─ id (SERIAL PRIMARY KEY)
    ├─ code (VARCHAR(50), UNIQUE WHERE deleted_at IS NULL)
    ├─ original_url (TEXT NOT NULL)
    ├─ click_count (BIGINT DEFAULT 0)
    ├─ created_at / updated_at (TIMESTAMPTZ)
    ├─ expires_at (TIMESTAMPTZ NULL, INDEXED)
    ├─ last_accessed_at (TIMESTAMPTZ NULL)
    └─ deleted_at (TIMESTAMPTZ NULL, INDEXED)  soft-delete marker

    click_logs                       access_statistics
    ├─ id                            ├─ id
    ├─ short_code_id (FK, CASCADE)   ├─ short_code_id (FK, CASCADE)
    ├─ ip_address                    ├─ ip_address
    ├─ user_agent                    ├─ country / region / city
    ├─ referer                       ├─ hour_bucket
    └─ created_at                    ├─ access_count
                                     └─ UNIQUE (short_code_id, ip_address, hour_bucket)

Key Behaviours
===============
- A code is unique only among rows that are not soft-deleted, so a deleted code
  can be claimed again.
- Rows with ``expires_at`` in the past still exist physically but are filtered out
  by every read path in ``app.code_store``.
- ``access_statistics`` holds at most one row per (code, IP, hour); repeated
  visits increment ``access_count`` in place.

Classes:
    ShortCode:  Short code to destination URL mapping with click accounting.
    ClickLog:  Append-only record of a single redirect.
    AccessStatistics:  Hourly per-IP access counter with resolved location.
"""

import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base

__all__ = ["AccessStatistics", "ClickLog", "ShortCode", "utcnow"]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class ShortCode(Base):
    __tablename__ = "short_codes"
    __table_args__ = (
        Index(
            "uq_short_codes_code_active",
            "code",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    original_url: Mapped[str] = mapped_column(Text, nullable=False)
    click_count: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0", nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    last_accessed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), index=True)

    def is_expired(self, now: datetime.datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=datetime.timezone.utc)
        return expires_at <= (now or utcnow())

    def __repr__(self) -> str:
        return f"<ShortCode(id={self.id}, code='{self.code}', clicks={self.click_count})>"


class ClickLog(Base):
    __tablename__ = "click_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    short_code_id: Mapped[int] = mapped_column(
        ForeignKey("short_codes.id", ondelete="CASCADE"), index=True, nullable=False
    )
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False, default="")
    user_agent: Mapped[str] = mapped_column(Text, nullable=False, default="")
    referer: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True, nullable=False
    )

    def __repr__(self) -> str:
        return f"<ClickLog(id={self.id}, short_code_id={self.short_code_id}, ip='{self.ip_address}')>"


class AccessStatistics(Base):
    __tablename__ = "access_statistics"
    __table_args__ = (
        UniqueConstraint("short_code_id", "ip_address", "hour_bucket", name="uq_access_statistics_bucket"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    short_code_id: Mapped[int] = mapped_column(
        ForeignKey("short_codes.id", ondelete="CASCADE"), index=True, nullable=False
    )
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    country: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown")
    region: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown")
    city: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown")
    hour_bucket: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    access_count: Mapped[int] = mapped_column(Integer, default=1, server_default="1", nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<AccessStatistics(short_code_id={self.short_code_id}, ip='{self.ip_address}', "
            f"hour={self.hour_bucket}, count={self.access_count})>"
        )
