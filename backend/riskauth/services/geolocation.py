# backend/riskauth/services/geolocation.py
"""
Optional IP geolocation and reputation lookup.

The risk engine works without it: NullGeoLookup returns empty info, which
disables the location checks but keeps every other signal. HttpGeoLookup
queries an ip-api.com style JSON endpoint; any failure degrades to empty
info instead of failing the login.
"""

import ipaddress
import logging
from typing import Any, Protocol

import httpx

from riskauth.core.config import settings
from riskauth.schemas.auth import GeoInfo

logger = logging.getLogger(__name__)


class GeoLookup(Protocol):
    async def lookup(self, ip_address: str) -> GeoInfo: ...


class NullGeoLookup:
    async def lookup(self, ip_address: str) -> GeoInfo:
        return GeoInfo()


def _is_public_ip(ip_address: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_address)
    except ValueError:
        return False
    return ip.is_global


def parse_lookup_response(payload: dict[str, Any]) -> GeoInfo:
    """
    Map an ip-api.com style payload to GeoInfo.

    `hosting` (datacenter ranges) is treated as VPN since commercial VPN
    exits live there.
    """
    if payload.get("status") not in (None, "success"):
        return GeoInfo()
    country = payload.get("countryCode") or payload.get("country_code")
    return GeoInfo(
        country_code=str(country).upper()[:2] if country else None,
        city=payload.get("city") or None,
        is_proxy=bool(payload.get("proxy", False)),
        is_vpn=bool(payload.get("vpn", False) or payload.get("hosting", False)),
    )


class HttpGeoLookup:
    """
    Args:
        url_template: Endpoint with an `{ip}` placeholder
        client: Optional shared httpx.AsyncClient
    """

    def __init__(
        self,
        url_template: str,
        *,
        timeout_seconds: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url_template = url_template
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, timeout=self.timeout_seconds)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.get(url)

    async def lookup(self, ip_address: str) -> GeoInfo:
        if not _is_public_ip(ip_address):
            return GeoInfo()
        try:
            response = await self._get(self.url_template.format(ip=ip_address))
            response.raise_for_status()
            return parse_lookup_response(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Geolocation lookup failed for {ip_address}: {e}")
            return GeoInfo()


def get_geo_lookup() -> GeoLookup:
    """Lookup configured through GEOIP_API_URL, or the no-op lookup when unset."""
    if settings.GEOIP_API_URL:
        return HttpGeoLookup(settings.GEOIP_API_URL, timeout_seconds=settings.GEOIP_TIMEOUT_SECONDS)
    return NullGeoLookup()
