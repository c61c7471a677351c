"""
Pydantic models for site events, tenants and dashboard results.
"""
import json
import re
from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from .dates import resolve_end, to_utc

ISO_DATE_PATTERN = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")


class DBAdapter(str, Enum):
    """Storage technology a tenant's events live in."""
    SQLITE = "sqlite"  # embedded per-site store
    POSTGRES = "postgres"  # shared relational server
    SINGLESTORE = "singlestore"  # column store, not implemented yet
    ANALYTICS_ENGINE = "analytics_engine"  # not implemented yet


def _coerce_datetime(value: Any) -> Any:
    """Accept dates and YYYY-MM-DD strings as midnight UTC."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, str) and ISO_DATE_PATTERN.fullmatch(value.strip()):
        return to_utc(date.fromisoformat(value.strip()))
    return value


# =============================================================================
# Raw Data Models
# =============================================================================

TEXT_FIELDS = (
    "page_url", "client_page_url", "referer",
    "browser", "operating_system", "device_type",
    "country", "region", "city", "postal",
    "rid",
)
MAP_FIELDS = ("query_params", "custom_data", "bot_data")

# Names the pixel has historically sent
_PAYLOAD_ALIASES = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "os": "operating_system",
    "referrer": "referer",
}


class EventRecord(BaseModel):
    """A canonical site event.

    Every optional field is present and None when unknown, so each backend
    adapter receives the same shape. Build these with canonicalize().
    """
    model_config = ConfigDict(extra="ignore")

    # Tenancy
    site_id: int | None = None
    tag_id: str
    account_id: int | None = None
    team_id: int | None = None

    # Classification
    event: str

    # Context
    page_url: str | None = None
    client_page_url: str | None = None
    referer: str | None = None
    query_params: dict[str, Any] | None = None
    custom_data: dict[str, Any] | None = None
    bot_data: dict[str, Any] | None = None

    # Client / device
    browser: str | None = None
    operating_system: str | None = None
    device_type: str | None = None
    screen_width: int | None = None
    screen_height: int | None = None

    # Geography
    country: str | None = None
    region: str | None = None
    city: str | None = None
    postal: str | None = None

    # Session (None means no session aggregates)
    rid: str | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator(*MAP_FIELDS, mode="before")
    @classmethod
    def _parse_map(cls, value: Any) -> Any:
        if isinstance(value, str):
            if not value.strip():
                return None
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                raise ValueError("expected a JSON object") from None
        return value

    @field_validator("created_at", "updated_at")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return to_utc(value) if value is not None else None


class StoredEvent(EventRecord):
    """An event as persisted, with its store-assigned id and timestamps."""
    id: int
    site_id: int
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="before")
    @classmethod
    def _mirror_account(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and data.get("account_id") is None:
            data = dict(data)
            data["account_id"] = data.get("team_id")
        return data


def _clean_text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _clean_dimension(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def canonicalize(payload: Mapping[str, Any] | EventRecord) -> EventRecord:
    """Normalize a loosely-typed inbound payload into an EventRecord.

    Blank strings and zero screen sizes become None, account_id and team_id
    are kept in step, timestamps are converted to UTC. Canonicalizing an
    EventRecord returns an equal record.

    Raises:
        ValidationError: If event or tag_id is missing, or a field has a
            shape that cannot be coerced
    """
    if isinstance(payload, EventRecord):
        payload = payload.model_dump()
    if not isinstance(payload, Mapping):
        raise ValidationError("Event payload must be a mapping")

    data = dict(payload)
    for alias, name in _PAYLOAD_ALIASES.items():
        if data.get(name) is None and alias in data:
            data[name] = data.pop(alias)

    for name in ("event", "tag_id"):
        value = _clean_text(data.get(name))
        if value is None:
            raise ValidationError(f"Event payload is missing required field '{name}'")
        data[name] = value

    for name in TEXT_FIELDS:
        data[name] = _clean_text(data.get(name))
    for name in ("screen_width", "screen_height"):
        data[name] = _clean_dimension(data.get(name))

    team_id = data.get("team_id")
    if team_id is None:
        team_id = data.get("account_id")
    data["team_id"] = data["account_id"] = team_id

    try:
        return EventRecord.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Invalid event payload field '{location}': {first.get('msg')}") from exc


# =============================================================================
# Tenancy
# =============================================================================

class Site(BaseModel):
    """A tracked property belonging to one team."""
    site_id: int
    team_id: int
    tag_id: str  # public key used by the pixel
    domain: str | None = None
    name: str | None = None
    db_adapter: DBAdapter = DBAdapter.SQLITE


class TenantContext(BaseModel):
    """Resolved caller identity handed over by the auth/session layer."""
    team_id: int
    db_adapter: DBAdapter = DBAdapter.SQLITE
    site_ids: list[int] = Field(default_factory=list)

    def owns(self, site: Site) -> bool:
        """Check whether a site belongs to this tenant."""
        if site.team_id != self.team_id:
            return False
        return not self.site_ids or site.site_id in self.site_ids


# =============================================================================
# Query Options
# =============================================================================

class DateRange(BaseModel):
    """Date range for queries.

    The end bound covers the whole day unless end_is_exact is set, so a
    range of Jan 1 to Jan 1 includes every event on Jan 1.
    """
    start: datetime | None = None
    end: datetime | None = None
    end_is_exact: bool = False

    @field_validator("start", "end", mode="before")
    @classmethod
    def _coerce(cls, value: Any) -> Any:
        return _coerce_datetime(value)

    @field_validator("start", "end")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return to_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        start, end = self.bounds()
        if start is not None and end is not None and end < start:
            raise ValueError("End date must be on or after start date")
        return self

    def bounds(self) -> tuple[datetime | None, datetime | None]:
        """Return (start, inclusive_end) in UTC."""
        end = resolve_end(self.end, self.end_is_exact) if self.end is not None else None
        return self.start, end


class DashboardOptions(BaseModel):
    """Options for BackendAdapter.query_dashboard.

    Exactly one of site_id (authenticated lookups) or tag_id (pixel-facing
    lookups) identifies the site.
    """
    site_id: int | None = None
    tag_id: str | None = None
    team_id: int
    date_range: DateRange | None = None
    limit: int = Field(default=100, ge=1)
    offset: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _one_site_identity(self) -> "DashboardOptions":
        if (self.site_id is None) == (self.tag_id is None):
            raise ValueError("Exactly one of site_id or tag_id must be provided")
        return self


class EventListFilters(BaseModel):
    """Filters for listing events from a single site.

    Multiple filters are AND'd together. Absent filters impose nothing.
    """
    FILTER_FIELDS: ClassVar[tuple[str, ...]] = (
        "start_date", "end_date", "event_type", "country", "device_type", "referer",
    )

    start_date: datetime | None = None
    end_date: datetime | None = None
    end_is_exact: bool = False
    event_type: str | None = None
    country: str | None = None
    device_type: str | None = None
    referer: str | None = None
    limit: int = Field(default=100, ge=1)
    offset: int = Field(default=0, ge=0)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _coerce(cls, value: Any) -> Any:
        return _coerce_datetime(value)

    @field_validator("start_date", "end_date")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return to_utc(value) if value is not None else None

    @field_validator("event_type", "country", "device_type", "referer", mode="before")
    @classmethod
    def _blank_is_absent(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def resolved_end(self) -> datetime | None:
        """End bound after the end-of-day adjustment."""
        if self.end_date is None:
            return None
        return resolve_end(self.end_date, self.end_is_exact)

    def active_filters(self) -> dict[str, Any]:
        """Return dict of active (non-None) filters.

        Blank text filters were already normalized to None.
        """
        return {
            name: getattr(self, name) for name in self.FILTER_FIELDS
            if getattr(self, name) is not None
        }

    def is_empty(self) -> bool:
        """Check if all filters are None."""
        return not self.active_filters()


# =============================================================================
# Results
# =============================================================================

class Pagination(BaseModel):
    """Page position plus the count of rows matching every active filter."""
    offset: int
    limit: int
    total: int
    has_more: bool

    @classmethod
    def build(cls, offset: int, limit: int, total: int) -> "Pagination":
        # Based on the total, not on whether this page came back full
        return cls(offset=offset, limit=limit, total=total, has_more=offset + limit < total)


class EventListResult(BaseModel):
    """A page of events.

    error is True (and events None) when the store failed to return a row
    set; the pagination block is still present so callers can retry.
    total_all_time equals pagination.total when no filter is active.
    """
    error: bool = False
    events: list[StoredEvent] | None = None
    pagination: Pagination
    total_all_time: int | None = None


class DashboardQueryResult(BaseModel):
    """What a backend adapter returns for a dashboard query.

    date_range is the window the adapter actually applied, which is the
    rolling default when the caller gave no bounds.
    """
    rows: list[StoredEvent]
    total_matching: int
    total_all_time: int
    pagination: Pagination
    date_range: DateRange | None = None


# =============================================================================
# Aggregates
# =============================================================================

class CountByValue(BaseModel):
    """One group of a top-N breakdown. value is None for unknown."""
    value: str | None
    count: int


class SiteStats(BaseModel):
    """Event total plus the top values of the main dimensions."""
    total_events: int = 0
    events_by_type: list[CountByValue] = Field(default_factory=list)
    events_by_country: list[CountByValue] = Field(default_factory=list)
    events_by_device: list[CountByValue] = Field(default_factory=list)
    top_referers: list[CountByValue] = Field(default_factory=list)


class SummarySort(str, Enum):
    COUNT = "count"
    FIRST_SEEN = "first_seen"
    LAST_SEEN = "last_seen"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class EventSummaryOptions(BaseModel):
    """Options for the per-event-name summary.

    Out of range limits and offsets are clamped rather than rejected.
    """
    date_range: DateRange | None = None
    search: str | None = None
    sort_by: SummarySort = SummarySort.COUNT
    sort_direction: SortDirection = SortDirection.DESC
    limit: int = 50
    offset: int = 0

    @field_validator("search", mode="before")
    @classmethod
    def _blank_search(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("limit", mode="before")
    @classmethod
    def _clamp_limit(cls, value: Any) -> Any:
        if value is None:
            return 50
        return min(max(1, int(value)), 500)

    @field_validator("offset", mode="before")
    @classmethod
    def _clamp_offset(cls, value: Any) -> Any:
        return max(0, int(value or 0))


class EventSummaryRow(BaseModel):
    event: str
    count: int
    first_seen: datetime
    last_seen: datetime

    @field_validator("first_seen", "last_seen")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return to_utc(value)


class EventSummaryResult(BaseModel):
    """One page of event names, paginated over the distinct names."""
    summary: list[EventSummaryRow] = Field(default_factory=list)
    pagination: Pagination
    total_events: int = 0
    total_event_types: int = 0

    @classmethod
    def empty(cls, options: EventSummaryOptions) -> "EventSummaryResult":
        return cls(pagination=Pagination.build(options.offset, options.limit, 0))


class Granularity(str, Enum):
    """Time series bucket size."""
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class TimeSeriesPoint(BaseModel):
    date: str  # bucket label, e.g. 2024-01-15 or 2024-01
    count: int
    event: str | None = None


class TimeSeriesResult(BaseModel):
    data: list[TimeSeriesPoint] = Field(default_factory=list)
    granularity: Granularity = Granularity.DAY
    by_event: bool = False


class DashboardData(BaseModel):
    """Complete dashboard response."""
    site_id: int | None
    team_id: int
    date_range: DateRange
    rows: list[StoredEvent]
    pagination: Pagination
    total_all_time: int = 0

    # False means the site has never recorded an event, as opposed to
    # filters excluding everything.
    site_has_events: bool = False

    @classmethod
    def empty(cls, team_id: int, date_range: DateRange, limit: int, offset: int) -> "DashboardData":
        return cls(
            site_id=None,
            team_id=team_id,
            date_range=date_range,
            rows=[],
            pagination=Pagination.build(offset, limit, 0),
        )
