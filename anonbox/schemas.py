"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming submissions
- Record models for stored messages and abandoned drafts
- Response models for the remaining endpoints

All models use camelCase on the wire (userAgent, partialMessage, ...)
and snake_case in Python.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


AbandonReason = Literal["page_exit", "tab_switched", "inactivity_2min"]


# =============================================================================
# Shared Value Models
# =============================================================================

class Coordinates(CamelModel):
    """Point estimate, either from the browser geolocation prompt or from the IP lookup."""
    latitude: float
    longitude: float
    accuracy: Optional[float] = Field(None, description="Radius in meters, when known")


class UserAgentInfo(CamelModel):
    """Browser/device classification parsed from the User-Agent header."""
    browser: str = "Unknown"
    browser_version: str = "Unknown"
    os: str = "Unknown"
    os_version: str = "Unknown"
    device_type: str = "Desktop"


# =============================================================================
# Pydantic Request Models
# =============================================================================

class TelemetryFields(CamelModel):
    """Client telemetry passed through without validation."""
    share_tag: Optional[Any] = None
    time_on_page: Optional[Any] = None
    click_patterns: Optional[Any] = None
    text_history: Optional[Any] = None


class MessageCreate(TelemetryFields):
    """
    Body of POST /message.

    The message text is checked by the route rather than by the schema so
    that an empty or missing message yields 400 instead of 422.
    """
    message: Optional[str] = None
    coordinates: Optional[Coordinates] = None

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "message": "You are doing great",
                    "coordinates": {"latitude": 28.61, "longitude": 77.2, "accuracy": 35},
                    "shareTag": "story-1",
                    "timeOnPage": 42,
                }
            ]
        }
    )


class AbandonedMessageCreate(TelemetryFields):
    """Body of POST /abandoned-message."""
    partial_message: Optional[str] = None
    reason: AbandonReason = "page_exit"
    coordinates: Optional[Coordinates] = None


# =============================================================================
# Stored Records
# =============================================================================

class EnrichedFields(TelemetryFields):
    """Sender metadata shared by messages and abandoned drafts."""
    id: int = Field(..., description="Creation time in epoch milliseconds")
    timestamp: str = Field(..., description="Creation time, ISO-8601 UTC")
    ip: str
    location: str
    coordinates: Optional[Coordinates] = None
    user_agent: UserAgentInfo = Field(default_factory=UserAgentInfo)
    referrer: str = "Direct"
    source: str = "Direct/Unknown"
    language: str = "Unknown"
    phone: Optional[str] = None


class MessageRecord(EnrichedFields):
    message: str


class AbandonedMessageRecord(EnrichedFields):
    partial_message: str
    reason: AbandonReason = "page_exit"


# =============================================================================
# Pydantic Response Models
# =============================================================================

class DeleteResponse(BaseModel):
    success: bool = True


class SkippedResponse(BaseModel):
    """Returned when an abandoned draft is too short to keep."""
    success: bool = True
    skipped: bool = True


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason when not ready")
