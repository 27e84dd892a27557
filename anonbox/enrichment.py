"""
Sender metadata enrichment for submitted messages.

Each step looks at the request (headers, connection address, body
coordinates) and returns a StepResult. Steps never raise: the pipeline
logs and counts failures and substitutes the default value. The only
ordering constraint is that the client IP is known before geolocation.
"""

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from user_agents import parse as parse_ua

from anonbox.geolocation import LOCAL_LOCATION, UNKNOWN_LOCATION, GeoLocation, IpGeolocator
from anonbox.metrics import record_enrichment_failure
from anonbox.schemas import (
    AbandonedMessageCreate,
    AbandonedMessageRecord,
    Coordinates,
    MessageCreate,
    MessageRecord,
    UserAgentInfo,
)
from anonbox.utils import Clock, StepResult, count_digits, epoch_millis, iso_timestamp

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"
LOOPBACK_IP = "127.0.0.1"
DIRECT_REFERRER = "Direct"

# Checked in order against "<referrer> <user agent>", lower-cased; first hit wins
SOURCE_KEYS = [
    ("instagram", "Instagram"),
    ("whatsapp", "WhatsApp"),
    ("wa.me", "WhatsApp"),
    ("facebook", "Facebook"),
    ("fb", "Facebook"),
    ("messenger", "Messenger"),
    ("t.me", "Telegram"),
    ("telegram", "Telegram"),
    ("snapchat", "Snapchat"),
    ("twitter", "Twitter/X"),
    ("x.com", "Twitter/X"),
    ("tiktok", "TikTok"),
]
OTHER_REFERRER = "Other Referrer"
DIRECT_SOURCE = "Direct/Unknown"

# Carrier-injected subscriber number headers, checked in order
PHONE_HEADERS = [
    "x-msisdn",
    "x-up-calling-line-id",
    "x-wap-network-client-msisdn",
    "x-nokia-msisdn",
    "x-hts-clid",
    "x-wap-msisdn",
    "x-network-info",
    "msisdn",
]
MIN_PHONE_DIGITS = 7

TELEMETRY_FIELDS = {"share_tag", "time_on_page", "click_patterns", "text_history"}


# =============================================================================
# Steps
# =============================================================================

def normalize_ip(ip: str) -> str:
    """Collapse loopback spellings to 127.0.0.1 and unwrap IPv4-mapped IPv6."""
    ip = ip.strip()
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return ip
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    if address.is_loopback:
        return LOOPBACK_IP
    return str(address)


def is_local_address(ip: str) -> bool:
    """Loopback, private and link-local addresses never go to the lookup service."""
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return address.is_loopback or address.is_private or address.is_link_local


def is_routable_ip(ip: str) -> bool:
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        return False
    return True


def extract_client_ip(headers: Mapping[str, str], client_host: Optional[str]) -> StepResult[str]:
    """First X-Forwarded-For entry if present, else the connection address."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return StepResult.success(normalize_ip(first))
    if client_host:
        return StepResult.success(normalize_ip(client_host))
    return StepResult.failure("no forwarded header and no connection address")


def resolve_coordinates(
    client_coordinates: Optional[Coordinates],
    ip_coordinates: Optional[Coordinates],
) -> Optional[Coordinates]:
    """Coordinates from the device prompt beat the IP estimate."""
    if client_coordinates is not None:
        return client_coordinates
    return ip_coordinates


def _known(value: Optional[str]) -> str:
    if not value or value == "Other":
        return UNKNOWN
    return value


def parse_user_agent(user_agent: str) -> StepResult[UserAgentInfo]:
    if not user_agent:
        return StepResult.failure("no User-Agent header")
    try:
        parsed = parse_ua(user_agent)
    except Exception as e:
        return StepResult.failure(f"unparseable User-Agent: {e}")

    if parsed.is_bot:
        device_type = "Bot"
    elif parsed.is_tablet:
        device_type = "Tablet"
    elif parsed.is_mobile:
        device_type = "Mobile"
    else:
        device_type = "Desktop"

    return StepResult.success(UserAgentInfo(
        browser=_known(parsed.browser.family),
        browser_version=_known(parsed.browser.version_string),
        os=_known(parsed.os.family),
        os_version=_known(parsed.os.version_string),
        device_type=device_type,
    ))


def is_direct_referrer(referrer: Optional[str]) -> bool:
    return not referrer or referrer.strip().lower() in ("", "direct")


def detect_source(referrer: Optional[str], user_agent: Optional[str]) -> StepResult[str]:
    """Classify where the visitor came from by substring match on referrer and user agent."""
    haystack = f"{referrer or ''} {user_agent or ''}".lower()
    for key, label in SOURCE_KEYS:
        if key in haystack:
            return StepResult.success(label)
    if is_direct_referrer(referrer):
        return StepResult.success(DIRECT_SOURCE)
    return StepResult.success(OTHER_REFERRER)


def sniff_phone(headers: Mapping[str, str]) -> StepResult[Optional[str]]:
    """
    Return the first carrier header value carrying at least MIN_PHONE_DIGITS
    digits, verbatim. Absence is a success with no value.
    """
    for name in PHONE_HEADERS:
        value = headers.get(name)
        if value and count_digits(value) >= MIN_PHONE_DIGITS:
            logger.info(f"Phone number found in {name} header")
            return StepResult.success(value.strip())
    return StepResult.success(None)


def detect_language(accept_language: Optional[str]) -> StepResult[str]:
    """First language tag of Accept-Language, without its quality value."""
    if not accept_language:
        return StepResult.failure("no Accept-Language header")
    first = accept_language.split(",")[0].split(";")[0].strip()
    if not first or first == "*":
        return StepResult.failure(f"no usable language in {accept_language!r}")
    return StepResult.success(first)


# =============================================================================
# Pipeline
# =============================================================================

@dataclass
class Enrichment:
    ip: str = UNKNOWN
    location: str = UNKNOWN_LOCATION
    coordinates: Optional[Coordinates] = None
    user_agent: UserAgentInfo = field(default_factory=UserAgentInfo)
    referrer: str = DIRECT_REFERRER
    source: str = DIRECT_SOURCE
    language: str = UNKNOWN
    phone: Optional[str] = None

    def as_fields(self) -> dict:
        return {
            "ip": self.ip,
            "location": self.location,
            "coordinates": self.coordinates,
            "user_agent": self.user_agent,
            "referrer": self.referrer,
            "source": self.source,
            "language": self.language,
            "phone": self.phone,
        }


class EnrichmentPipeline:
    """Runs every enrichment step for one request and composes the results."""

    def __init__(self, geolocator: Optional[IpGeolocator] = None):
        self.geolocator = geolocator

    @staticmethod
    def _settle(step: str, result: StepResult) -> StepResult:
        if not result.ok:
            logger.warning(f"Enrichment step '{step}' fell back to default: {result.error}")
            record_enrichment_failure(step)
        return result

    async def locate(self, ip: str) -> StepResult[GeoLocation]:
        if is_local_address(ip):
            logger.debug(f"Skipping geolocation for local address {ip}")
            return StepResult.success(GeoLocation(location=LOCAL_LOCATION))
        if not is_routable_ip(ip):
            return StepResult.failure(f"not an IP address: {ip!r}")
        if self.geolocator is None:
            return StepResult.success(GeoLocation(location=UNKNOWN_LOCATION))
        return await self.geolocator.lookup(ip)

    async def enrich(
        self,
        headers: Mapping[str, str],
        client_host: Optional[str],
        client_coordinates: Optional[Coordinates] = None,
    ) -> Enrichment:
        """
        Derive sender metadata from request headers and connection address.

        Args:
            headers: Request headers (lower-case lookups)
            client_host: Address of the connecting peer, if known
            client_coordinates: Coordinates sent by the browser, if any

        Returns:
            Enrichment with defaults in place of every failed step
        """
        ip = self._settle("ip", extract_client_ip(headers, client_host)).value_or(UNKNOWN)

        geo = self._settle("geolocation", await self.locate(ip)).value_or(
            GeoLocation(location=UNKNOWN_LOCATION)
        )

        user_agent = headers.get("user-agent", "")
        user_agent_info = self._settle("user_agent", parse_user_agent(user_agent)).value_or(UserAgentInfo())

        referrer = headers.get("referer") or headers.get("referrer") or ""
        source = self._settle("source", detect_source(referrer, user_agent)).value_or(DIRECT_SOURCE)

        language = self._settle("language", detect_language(headers.get("accept-language"))).value_or(UNKNOWN)
        phone = self._settle("phone", sniff_phone(headers)).value

        enrichment = Enrichment(
            ip=ip,
            location=geo.location,
            coordinates=resolve_coordinates(client_coordinates, geo.coordinates),
            user_agent=user_agent_info,
            referrer=referrer or DIRECT_REFERRER,
            source=source,
            language=language,
            phone=phone,
        )
        logger.debug(f"Enriched request from {ip}: location={enrichment.location}, source={source}")
        return enrichment


# =============================================================================
# Record Composition
# =============================================================================

def build_message_record(
    text: str,
    enrichment: Enrichment,
    payload: MessageCreate,
    clock: Clock,
) -> MessageRecord:
    now = clock()
    return MessageRecord(
        id=epoch_millis(now),
        timestamp=iso_timestamp(now),
        message=text,
        **enrichment.as_fields(),
        **payload.model_dump(include=TELEMETRY_FIELDS),
    )


def build_abandoned_record(
    text: str,
    enrichment: Enrichment,
    payload: AbandonedMessageCreate,
    clock: Clock,
) -> AbandonedMessageRecord:
    now = clock()
    return AbandonedMessageRecord(
        id=epoch_millis(now),
        timestamp=iso_timestamp(now),
        partial_message=text,
        reason=payload.reason,
        **enrichment.as_fields(),
        **payload.model_dump(include=TELEMETRY_FIELDS),
    )
