"""IP geolocation lookup used by click accounting.

The lookup is a black box with a short timeout: any failure (network error,
timeout, non-200, malformed body, ``status != "success"``) yields the
``Unknown`` triple and never raises. Private and loopback addresses are answered
locally as ``Private / Local / Local`` without a network call.
"""

import ipaddress
import logging
from collections.abc import Awaitable, Callable

import httpx

from app.config import get_settings
from app.schemas import IPLocation

__all__ = ["Locator", "is_private_ip", "locate"]

logger = logging.getLogger("shortcode")

Locator = Callable[[str], Awaitable[IPLocation]]

PRIVATE_LOCATION = IPLocation(country="Private", region="Local", city="Local")


def is_private_ip(ip: str) -> bool:
    if not ip or ip == "localhost":
        return True
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local


async def locate(ip: str, client: httpx.AsyncClient | None = None) -> IPLocation:
    if is_private_ip(ip):
        return PRIVATE_LOCATION.model_copy()

    try:
        ipaddress.ip_address(ip)
    except ValueError:
        logger.debug(f"Skipping geolocation for malformed address: {ip!r}")
        return IPLocation()

    settings = get_settings()
    url = settings.GEOLOCATION_URL.format(ip=ip)

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=settings.GEOLOCATION_TIMEOUT_SECONDS) as owned:
                response = await owned.get(url)
        else:
            response = await client.get(url, timeout=settings.GEOLOCATION_TIMEOUT_SECONDS)
        if response.status_code != 200:
            return IPLocation()
        payload = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.debug(f"Geolocation lookup failed for {ip}: {exc}")
        return IPLocation()

    if not isinstance(payload, dict) or payload.get("status") != "success":
        return IPLocation()

    return IPLocation(
        country=payload.get("country") or "Unknown",
        region=payload.get("regionName") or "Unknown",
        city=payload.get("city") or "Unknown",
    )
