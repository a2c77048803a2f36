"""Pydantic schemas for request/response validation in the shortcode service.

Schema Hierarchy
=================
::
    ShortCodeCreate (Input)
    ├─ url: str
    ├─ custom_code: str | None
    └─ expires_in: int | None (hours, <= 0 means never)

    ShortCodeResponse (Output)
    ├─ short_code, short_url, original_url
    └─ created_at, expires_at

    ShortCodeStats (Output)        DetailedStats (Output)
    ├─ code                        ├─ code, original_url
    ├─ original_url                ├─ total_clicks, unique_ips
    ├─ click_count                 ├─ created_at, last_accessed_at
    ├─ created_at                  ├─ hourly_stats: list[HourlyStatItem]
    └─ last_accessed_at            ├─ location_stats: list[LocationStatItem]
                                   └─ recent_accesses: list[RecentAccessItem]

    CachedShortCodePayload (Redis value)
    IPLocation (geolocation result)

Key Behaviours
===============
- URL and custom code *format* are validated in the service layer, not here, so
  that the domain errors (invalid_url / invalid_code) reach the caller instead of
  a generic 422.
- All datetime fields are timezone-aware.
- ``CachedShortCodePayload`` is the only shape ever written to Redis.
"""

import datetime

from pydantic import BaseModel, Field

from app.enums import HealthStatus

__all__ = [
    "CachedShortCodePayload",
    "DetailedStats",
    "ErrorResponse",
    "HealthResponse",
    "HourlyStatItem",
    "IPLocation",
    "LocationStatItem",
    "MessageResponse",
    "MetricsResponse",
    "RecentAccessItem",
    "ShortCodeCreate",
    "ShortCodeResponse",
    "ShortCodeStats",
]


class ShortCodeCreate(BaseModel):
    url: str = Field(..., description="Destination URL, http or https")
    custom_code: str | None = Field(None, description="Optional 4-50 alphanumeric code")
    expires_in: int | None = Field(None, description="Lifetime in hours, 0 or less for no expiry")


class ShortCodeResponse(BaseModel):
    short_code: str
    short_url: str
    original_url: str
    created_at: datetime.datetime
    expires_at: datetime.datetime | None = None


class ShortCodeStats(BaseModel):
    code: str
    original_url: str
    click_count: int
    created_at: datetime.datetime
    last_accessed_at: datetime.datetime | None = None

    model_config = {"from_attributes": True}


class HourlyStatItem(BaseModel):
    hour_bucket: datetime.datetime
    access_count: int
    unique_ips: int


class LocationStatItem(BaseModel):
    country: str
    region: str
    city: str
    access_count: int


class RecentAccessItem(BaseModel):
    ip_address: str
    country: str
    region: str
    city: str
    access_time: datetime.datetime
    user_agent: str


class DetailedStats(BaseModel):
    code: str
    original_url: str
    total_clicks: int
    unique_ips: int
    created_at: datetime.datetime
    last_accessed_at: datetime.datetime | None = None
    hourly_stats: list[HourlyStatItem] = Field(default_factory=list)
    location_stats: list[LocationStatItem] = Field(default_factory=list)
    recent_accesses: list[RecentAccessItem] = Field(default_factory=list)


class MetricsResponse(BaseModel):
    total_codes: int
    total_clicks: int
    clicks_24h: int
    active_codes: int


class IPLocation(BaseModel):
    country: str = "Unknown"
    region: str = "Unknown"
    city: str = "Unknown"


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus


class ErrorResponse(BaseModel):
    error: str
    message: str | None = None


class MessageResponse(BaseModel):
    message: str


class CachedShortCodePayload(BaseModel):
    """Redis cache payload for a short code."""

    id: int
    code: str
    original_url: str
    click_count: int
    created_at: datetime.datetime
    updated_at: datetime.datetime
    expires_at: datetime.datetime | None = None
    last_accessed_at: datetime.datetime | None = None

    model_config = {"from_attributes": True}
