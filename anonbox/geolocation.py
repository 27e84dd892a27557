"""
IP geolocation lookups against an ip-api.com compatible service.

The service answers GET {url}/{ip} with a JSON body such as:

    {"status": "success", "city": "Pune", "country": "India", "lat": 18.5, "lon": 73.8}

Every way the lookup can go wrong (timeout, connection error, HTTP error,
body that is not JSON, status other than "success") comes back as a failed
StepResult with its own error text; nothing is raised to the caller.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from anonbox.config import Settings
from anonbox.schemas import Coordinates
from anonbox.utils import StepResult

logger = logging.getLogger(__name__)

LOCAL_LOCATION = "Local/Localhost"
UNKNOWN_LOCATION = "Unknown"


@dataclass(frozen=True)
class GeoLocation:
    location: str
    coordinates: Optional[Coordinates] = None


class IpGeolocator:
    """Looks up city/country and approximate coordinates for a public IP address."""

    def __init__(
        self,
        url_template: str,
        api_key: Optional[str] = None,
        timeout: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url_template = url_template
        self.api_key = api_key
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["IpGeolocator"]:
        """Build a geolocator, or None when no lookup URL is configured."""
        if not settings.GEO_API_URL:
            logger.info("GEO_API_URL not set, IP geolocation disabled")
            return None
        return cls(
            url_template=settings.GEO_API_URL,
            api_key=settings.GEO_API_KEY,
            timeout=settings.GEO_TIMEOUT_SECONDS,
        )

    def _url_for(self, ip: str) -> str:
        if "{ip}" in self.url_template:
            return self.url_template.format(ip=ip)
        return f"{self.url_template.rstrip('/')}/{ip}"

    async def lookup(self, ip: str) -> StepResult[GeoLocation]:
        params = {"key": self.api_key} if self.api_key else None
        logger.debug(f"Looking up location for {ip}")

        try:
            response = await self.client.get(self._url_for(ip), params=params)
        except httpx.TimeoutException:
            return StepResult.failure(f"timed out looking up {ip}")
        except httpx.RequestError as e:
            return StepResult.failure(f"request failed for {ip}: {e.__class__.__name__}")

        if response.status_code != 200:
            return StepResult.failure(f"lookup service answered HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            return StepResult.failure("lookup response is not JSON")

        if not isinstance(data, dict):
            return StepResult.failure("lookup response is not an object")
        if data.get("status") != "success":
            return StepResult.failure(f"lookup unsuccessful: {data.get('message', 'no reason given')}")

        city = data.get("city")
        country = data.get("country")
        location = ", ".join(part for part in (city, country) if part) or UNKNOWN_LOCATION

        coordinates = None
        lat, lon = data.get("lat"), data.get("lon")
        if isinstance(lat, (int, float)) and isinstance(lon, (int, float)):
            coordinates = Coordinates(latitude=lat, longitude=lon)

        logger.info(f"Resolved {ip} to {location}")
        return StepResult.success(GeoLocation(location=location, coordinates=coordinates))

    async def aclose(self) -> None:
        await self.client.aclose()
