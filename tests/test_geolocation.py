"""
Tests for IpGeolocator against a mocked lookup service.

httpx.MockTransport stands in for the network so every failure mode can
be produced on its own.
"""

import asyncio

import httpx
import pytest

from anonbox.config import Settings
from anonbox.geolocation import IpGeolocator


def lookup(handler, ip="8.8.8.8", **kwargs):
    geolocator = IpGeolocator(
        kwargs.pop("url_template", "http://ip-api.test/json/{ip}"),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )

    async def _run():
        try:
            return await geolocator.lookup(ip)
        finally:
            await geolocator.aclose()

    return asyncio.run(_run())


class TestLookupSuccess:
    def test_city_country_and_coordinates(self):
        seen = []

        def handler(request):
            seen.append(request.url)
            return httpx.Response(200, json={
                "status": "success", "city": "Mumbai", "country": "India", "lat": 19.07, "lon": 72.87,
            })

        result = lookup(handler)

        assert result.ok
        assert result.value.location == "Mumbai, India"
        assert result.value.coordinates.latitude == 19.07
        assert result.value.coordinates.longitude == 72.87
        assert result.value.coordinates.accuracy is None
        assert str(seen[0]) == "http://ip-api.test/json/8.8.8.8"

    def test_api_key_sent_as_query_parameter(self):
        seen = []

        def handler(request):
            seen.append(request.url)
            return httpx.Response(200, json={"status": "success", "city": "Delhi", "country": "India"})

        lookup(handler, api_key="secret")

        assert seen[0].params["key"] == "secret"

    def test_url_without_placeholder_gets_ip_appended(self):
        seen = []

        def handler(request):
            seen.append(request.url)
            return httpx.Response(200, json={"status": "success", "city": "Delhi", "country": "India"})

        lookup(handler, url_template="http://ip-api.test/json/")

        assert seen[0].path == "/json/8.8.8.8"

    def test_missing_coordinates(self):
        def handler(request):
            return httpx.Response(200, json={"status": "success", "city": "Delhi", "country": "India"})

        result = lookup(handler)

        assert result.value.location == "Delhi, India"
        assert result.value.coordinates is None

    def test_missing_city(self):
        def handler(request):
            return httpx.Response(200, json={"status": "success", "country": "India"})

        assert lookup(handler).value.location == "India"


class TestLookupFailure:
    """Each failure mode is reported, never raised."""

    def test_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        result = lookup(handler)

        assert not result.ok
        assert "timed out" in result.error

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = lookup(handler)

        assert not result.ok
        assert "ConnectError" in result.error

    def test_http_error_status(self):
        result = lookup(lambda request: httpx.Response(503, text="busy"))

        assert not result.ok
        assert "503" in result.error

    def test_malformed_body(self):
        result = lookup(lambda request: httpx.Response(200, text="<html>oops</html>"))

        assert not result.ok
        assert "not JSON" in result.error

    def test_non_object_body(self):
        result = lookup(lambda request: httpx.Response(200, json=["success"]))

        assert not result.ok

    def test_unsuccessful_status(self):
        result = lookup(lambda request: httpx.Response(200, json={"status": "fail", "message": "reserved range"}))

        assert not result.ok
        assert "reserved range" in result.error


class TestFromSettings:
    def test_disabled_without_url(self):
        assert IpGeolocator.from_settings(Settings(GEO_API_URL="")) is None

    def test_built_from_settings(self):
        geolocator = IpGeolocator.from_settings(Settings(GEO_API_URL="http://geo.test/{ip}", GEO_API_KEY="k"))

        assert geolocator.url_template == "http://geo.test/{ip}"
        assert geolocator.api_key == "k"
        asyncio.run(geolocator.aclose())
