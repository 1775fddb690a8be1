# backend/tests/unit/services/test_geolocation.py
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from riskauth.schemas.auth import GeoInfo
from riskauth.services.geolocation import (
    HttpGeoLookup,
    NullGeoLookup,
    get_geo_lookup,
    parse_lookup_response,
)


def test_parse_success_payload():
    info = parse_lookup_response(
        {"status": "success", "countryCode": "de", "city": "Berlin", "proxy": True, "hosting": False}
    )

    assert info == GeoInfo(country_code="DE", city="Berlin", is_proxy=True, is_vpn=False)


def test_parse_hosting_counts_as_vpn():
    assert parse_lookup_response({"countryCode": "US", "hosting": True}).is_vpn is True


def test_parse_failed_lookup_is_empty():
    assert parse_lookup_response({"status": "fail", "message": "private range"}) == GeoInfo()


@pytest.mark.asyncio
async def test_null_lookup_returns_empty_info():
    assert await NullGeoLookup().lookup("8.8.8.8") == GeoInfo()


@pytest.mark.asyncio
async def test_http_lookup_skips_private_addresses():
    client = AsyncMock()
    lookup = HttpGeoLookup("http://geo.test/{ip}", client=client)

    assert await lookup.lookup("192.168.1.10") == GeoInfo()
    assert await lookup.lookup("not-an-ip") == GeoInfo()
    client.get.assert_not_called()


@pytest.mark.asyncio
async def test_http_lookup_maps_response():
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json.return_value = {"status": "success", "countryCode": "JP", "city": "Tokyo"}
    client = AsyncMock()
    client.get.return_value = response
    lookup = HttpGeoLookup("http://geo.test/{ip}", timeout_seconds=1.5, client=client)

    info = await lookup.lookup("8.8.8.8")

    client.get.assert_awaited_once_with("http://geo.test/8.8.8.8", timeout=1.5)
    assert info.country_code == "JP"
    assert info.city == "Tokyo"


@pytest.mark.asyncio
async def test_http_lookup_degrades_on_error():
    client = AsyncMock()
    client.get.side_effect = httpx.ConnectTimeout("timed out")
    lookup = HttpGeoLookup("http://geo.test/{ip}", client=client)

    assert await lookup.lookup("8.8.8.8") == GeoInfo()


def test_get_geo_lookup_follows_settings(monkeypatch):
    from riskauth.core.config import settings

    monkeypatch.setattr(settings, "GEOIP_API_URL", None)
    assert isinstance(get_geo_lookup(), NullGeoLookup)

    monkeypatch.setattr(settings, "GEOIP_API_URL", "http://geo.test/{ip}")
    assert isinstance(get_geo_lookup(), HttpGeoLookup)
