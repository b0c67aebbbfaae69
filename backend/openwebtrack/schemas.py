"""Pydantic schemas for request/response payloads.

The tracking snippet and the dashboard speak camelCase JSON. Models below use
snake_case attributes with camelCase aliases (`CamelModel`), so Python code
reads naturally and the wire format stays what the browser expects.
"""

import json
import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Mapping, Optional, Type, TypeVar, Union
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, EmailStr, Field, constr, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .constants import (
    LOCAL_DOMAINS,
    MAX_EXCLUSION_RULE_LENGTH,
    MAX_EXCLUSION_RULES,
    MAX_STRING_LENGTHS,
    MAX_VIEWPORT_DIMENSION,
    SPIKE_THRESHOLD_RANGE,
    SPIKE_WINDOW_SECONDS_RANGE,
)
from .exceptions import ValidationError
from .models import EventTypeEnum


class CamelModel(BaseModel):
    """Base for every model that crosses the wire in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# VALIDATION HELPERS
# =============================================================================

ModelT = TypeVar("ModelT", bound=BaseModel)


def format_validation_errors(exc: PydanticValidationError) -> List[str]:
    """Render pydantic errors as "dotted.path: message" strings."""
    errors = []
    for error in exc.errors():
        path = ".".join(str(part) for part in error["loc"]) or "value"
        errors.append(f"{path}: {error['msg']}")
    return errors


def validate_model(model: Type[ModelT], data: Any) -> ModelT:
    """Validate `data` against `model`, raising our ValidationError with every
    field problem listed (the first one doubles as the headline)."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        errors = format_validation_errors(exc)
        raise ValidationError(errors[0] if errors else "Validation failed", errors)


def parse_query(model: Type[ModelT], params: Mapping[str, str]) -> ModelT:
    """Validate query-string parameters (last value wins for repeated keys)."""
    return validate_model(model, dict(params))


def parse_json_body(model: Type[ModelT], body: bytes) -> ModelT:
    """Decode a raw request body and validate it; undecodable bodies raise
    ValidationError("Invalid JSON")."""
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON")
    return validate_model(model, data)


# =============================================================================
# TRACKING PAYLOAD
# =============================================================================

class Viewport(BaseModel):
    width: int = Field(ge=0, le=MAX_VIEWPORT_DIMENSION)
    height: int = Field(ge=0, le=MAX_VIEWPORT_DIMENSION)


class TrackingPayload(CamelModel):
    """Body posted by the tracking snippet to /api/track.

    Example:
        {
            "websiteId": "2f1c...",
            "domain": "example.com",
            "type": "pageview",
            "href": "https://example.com/pricing?utm_source=newsletter",
            "referrer": "https://news.ycombinator.com/",
            "visitorId": "b6a3...",
            "sessionId": "91d0...",
            "screenWidth": 1920,
            "screenHeight": 1080,
            "browser": "Firefox",
            "os": "Linux",
            "deviceType": "desktop"
        }
    """

    website_id: Optional[UUID] = Field(None, description="Website UUID; the domain is used when absent")
    domain: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTHS["domain"])
    type: EventTypeEnum = Field(..., description="pageview, custom, identify, heartbeat or payment")
    href: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTHS["href"])
    referrer: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["referrer"])
    visitor_id: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTHS["visitorId"])
    session_id: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTHS["sessionId"])

    viewport: Optional[Viewport] = None
    screen_width: Optional[int] = Field(None, ge=0, le=MAX_VIEWPORT_DIMENSION)
    screen_height: Optional[int] = Field(None, ge=0, le=MAX_VIEWPORT_DIMENSION)
    language: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["language"])
    timezone: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["timezone"])
    browser: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["browser"])
    browser_version: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["browserVersion"])
    os: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["os"])
    os_version: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["osVersion"])
    device_type: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["deviceType"])
    is_pwa: Optional[bool] = None

    title: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["title"])
    name: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["eventName"])
    data: Optional[Dict[str, Any]] = None

    amount: Optional[int] = Field(None, ge=0, description="Minor currency units")
    currency: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["currency"])
    transaction_id: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["transactionId"])


_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

# Field name -> MAX_STRING_LENGTHS key
_SANITIZED_FIELDS = {
    "domain": "domain",
    "href": "href",
    "referrer": "referrer",
    "visitor_id": "visitorId",
    "session_id": "sessionId",
    "language": "language",
    "timezone": "timezone",
    "browser": "browser",
    "browser_version": "browserVersion",
    "os": "os",
    "os_version": "osVersion",
    "device_type": "deviceType",
    "title": "title",
    "name": "eventName",
    "currency": "currency",
    "transaction_id": "transactionId",
}


def sanitize_string(value: Optional[str], max_length: int = 2048) -> str:
    """Truncate to `max_length`, then strip ASCII control characters."""
    if value is None:
        return ""
    return _CONTROL_CHARS.sub("", str(value)[:max_length])


def parse_tracking_payload(body: bytes) -> TrackingPayload:
    """Parse, validate and sanitize a raw /api/track body.

    Raises:
        ValidationError: "Invalid JSON", or every schema violation found
    """
    payload = parse_json_body(TrackingPayload, body)

    if payload.type == EventTypeEnum.payment and payload.amount is None:
        raise ValidationError("amount: Amount is required for payment events")

    updates: Dict[str, Any] = {}
    for field_name, limit_key in _SANITIZED_FIELDS.items():
        value = getattr(payload, field_name)
        if value is None:
            continue
        # Fields that sanitize to nothing are treated as absent
        updates[field_name] = sanitize_string(value, MAX_STRING_LENGTHS[limit_key]) or None

    for required in ("domain", "href", "visitor_id", "session_id"):
        if not updates.get(required):
            raise ValidationError(f"{to_camel(required)}: Value is empty after sanitization")

    return payload.model_copy(update=updates)


class TrackResponse(BaseModel):
    success: bool = True
    excluded: Optional[bool] = None


# =============================================================================
# DASHBOARD QUERIES
# =============================================================================

GranularityLiteral = Literal["hourly", "daily", "weekly", "monthly"]

MetricTypeLiteral = Literal[
    "pages",
    "entry_pages",
    "exit_links",
    "referrers",
    "channels",
    "campaigns",
    "countries",
    "regions",
    "cities",
    "browsers",
    "os",
    "devices",
    "screens",
    "hostnames",
]


class StatsQuery(CamelModel):
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    granularity: Optional[GranularityLiteral] = None
    filters: Optional[str] = None


class MetricsQuery(CamelModel):
    type: MetricTypeLiteral
    search: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["search"])
    limit: int = Field(50, ge=1, le=1000)
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    filters: Optional[str] = None


class EventsQuery(CamelModel):
    limit: int = Field(20, ge=1, le=100)
    offset: int = Field(0, ge=0, le=10000)


# =============================================================================
# DASHBOARD RESPONSES
# =============================================================================

class LabelValue(BaseModel):
    label: str
    value: Union[int, float]


class WebsiteSummary(CamelModel):
    id: UUID
    domain: str
    timezone: str


class StatsSummary(CamelModel):
    visitors: int = 0
    pageviews: int = 0
    sessions: int = 0
    avg_session_duration: int = Field(0, description="Milliseconds")
    online: int = 0
    revenue: int = Field(0, description="Minor currency units")
    customers: int = 0


class CustomEventCount(BaseModel):
    type: str
    name: Optional[str] = None
    value: int


class RecentSession(CamelModel):
    id: str
    started_at: datetime
    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    language: Optional[str] = None


class TimeSeriesPoint(BaseModel):
    date: str
    visitors: int = 0
    pageviews: int = 0
    revenue: int = 0


class DateRangeOut(BaseModel):
    start: str
    end: str


class StatsResponse(CamelModel):
    """Everything the dashboard overview needs in one round trip."""

    website: WebsiteSummary
    stats: StatsSummary
    top_pages: List[LabelValue] = []
    entry_pages: List[LabelValue] = []
    exit_links: List[LabelValue] = []
    top_referrers: List[LabelValue] = []
    channel_data: List[LabelValue] = []
    revenue_by_channel: List[LabelValue] = []
    campaign_data: List[LabelValue] = []
    custom_events: List[CustomEventCount] = []
    recent_sessions: List[RecentSession] = []
    device_stats: List[LabelValue] = []
    browser_stats: List[LabelValue] = []
    os_stats: List[LabelValue] = []
    device_type_stats: List[LabelValue] = []
    country_stats: List[LabelValue] = []
    region_stats: List[LabelValue] = []
    city_stats: List[LabelValue] = []
    revenue_by_country: List[LabelValue] = []
    revenue_by_region: List[LabelValue] = []
    revenue_by_city: List[LabelValue] = []
    revenue_by_os: List[LabelValue] = []
    revenue_by_browser: List[LabelValue] = []
    revenue_by_device_type: List[LabelValue] = []
    revenue_by_hostname: List[LabelValue] = []
    revenue_by_page: List[LabelValue] = []
    time_series: List[TimeSeriesPoint] = []
    timezone: str
    date_range: DateRangeOut


class EventVisitor(CamelModel):
    id: str
    name: str
    avatar: str
    country: str
    city: Optional[str] = None


class EventFeedItem(CamelModel):
    id: UUID
    type: str
    name: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime
    visitor: EventVisitor


class VisitorListItem(CamelModel):
    visitor_id: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    is_customer: bool = False
    last_activity_at: datetime
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    device: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    referrer: Optional[str] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    is_pwa: bool = False


# =============================================================================
# WEBSITE MANAGEMENT
# =============================================================================

_DOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)*$")
_LOOPBACK_RE = re.compile(r"^127(\.\d+){0,3}$")

ExclusionRule = constr(max_length=MAX_EXCLUSION_RULE_LENGTH)


def normalize_website_domain(value: str) -> str:
    """Reduce "https://www.Example.com/pricing" to "example.com"."""
    domain = value.strip().lower()
    domain = re.sub(r"^https?://", "", domain)
    if domain.startswith("www."):
        domain = domain[4:]
    return domain.split("/", 1)[0][:MAX_STRING_LENGTHS["domain"]]


def is_local_domain(domain: str) -> bool:
    hostname = domain.split(":")[0]
    return (
        domain in LOCAL_DOMAINS
        or hostname in LOCAL_DOMAINS
        or hostname.endswith((".local", ".localhost"))
        or _LOOPBACK_RE.match(hostname) is not None
    )


def is_valid_domain(domain: str, allow_local: bool = False) -> bool:
    """Hostname syntax check. Local development hosts pass only with `allow_local`."""
    if not domain or len(domain) > MAX_STRING_LENGTHS["domain"]:
        return False
    if is_local_domain(domain):
        return allow_local
    return _DOMAIN_RE.match(domain.split(":")[0]) is not None


def _check_timezone(value: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone '{value}'")
    return value


class TrafficSpikeSettings(CamelModel):
    enabled: bool = False
    threshold: int = Field(100, ge=SPIKE_THRESHOLD_RANGE[0], le=SPIKE_THRESHOLD_RANGE[1])
    window_seconds: int = Field(60, ge=SPIKE_WINDOW_SECONDS_RANGE[0], le=SPIKE_WINDOW_SECONDS_RANGE[1])


class WeeklySummarySettings(CamelModel):
    enabled: bool = False


class NotificationSettings(CamelModel):
    """Stored on Website.notifications in its camelCase wire form."""

    traffic_spike: TrafficSpikeSettings = Field(default_factory=TrafficSpikeSettings)
    weekly_summary: WeeklySummarySettings = Field(default_factory=WeeklySummarySettings)


class WebsiteCreate(CamelModel):
    domain: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTHS["domain"])
    timezone: str = Field("UTC", max_length=MAX_STRING_LENGTHS["timezone"])

    @field_validator("domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        return normalize_website_domain(value)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        return _check_timezone(value)


class WebsiteUpdate(CamelModel):
    """Partial update: only the fields present in the body are written."""

    domain: Optional[str] = Field(None, min_length=1, max_length=MAX_STRING_LENGTHS["domain"])
    timezone: Optional[str] = Field(None, max_length=MAX_STRING_LENGTHS["timezone"])
    excluded_ips: Optional[List[ExclusionRule]] = Field(None, max_length=MAX_EXCLUSION_RULES)
    excluded_paths: Optional[List[ExclusionRule]] = Field(None, max_length=MAX_EXCLUSION_RULES)
    excluded_countries: Optional[List[ExclusionRule]] = Field(None, max_length=MAX_EXCLUSION_RULES)
    notifications: Optional[NotificationSettings] = None

    @field_validator("domain")
    @classmethod
    def _normalize_domain(cls, value: Optional[str]) -> Optional[str]:
        return normalize_website_domain(value) if value is not None else None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: Optional[str]) -> Optional[str]:
        return _check_timezone(value) if value is not None else None


class WebsiteOut(CamelModel):
    id: UUID
    domain: str
    user_id: UUID
    timezone: str
    excluded_ips: List[str] = []
    excluded_paths: List[str] = []
    excluded_countries: List[str] = []
    notifications: Dict[str, Any] = {}
    created_at: datetime
    is_owner: Optional[bool] = None
    visitors24h: Optional[int] = Field(None, description="Visitors seen in the last 24 hours")


class TeamInvite(BaseModel):
    email: EmailStr

    @field_validator("email")
    @classmethod
    def _lowercase(cls, value: str) -> str:
        return value.strip().lower()


class TeamMemberOut(CamelModel):
    id: UUID
    user_id: UUID
    email: str
    name: Optional[str] = None
    created_at: datetime


class SuccessResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None


class VisitorProfileOut(CamelModel):
    id: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    is_customer: bool = False
    first_seen: datetime
    last_seen: datetime


class JourneyActivity(CamelModel):
    """A pageview or an event inside one session, in time order."""

    activity_type: Literal["pageview", "event"]
    id: UUID
    timestamp: datetime
    pathname: Optional[str] = None
    url: Optional[str] = None
    title: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class JourneySession(CamelModel):
    id: str
    started_at: datetime
    last_activity_at: datetime
    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    device_type: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    is_pwa: bool = False
    activities: List[JourneyActivity] = []


class VisitorDetailResponse(CamelModel):
    visitor: VisitorProfileOut
    journey: List[JourneySession]


class CronResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])
