"""
Query helpers shared by the relational adapter and the per-site stores.

Both backend variants build their statements here, so pagination, ordering
and count semantics are identical whichever store serves a tenant.
"""
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Sequence

from sqlalchemy import and_, desc, func, insert, literal_column, select, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.sql.elements import ColumnElement

from ..core.dates import to_storage
from ..core.models import (
    CountByValue, DateRange, EventListFilters, EventListResult, EventRecord, EventSummaryOptions,
    EventSummaryResult, EventSummaryRow, Granularity, Pagination, SiteStats, SortDirection,
    StoredEvent, SummarySort, TimeSeriesPoint, TimeSeriesResult,
)
from ..errors import BackendUnavailableError, ValidationError
from .schema import site_events

logger = logging.getLogger(__name__)

# Read-only query guard
SQL_ALLOWED_PREFIX = re.compile(r"(select|with)\s", re.IGNORECASE)
SQL_FORBIDDEN_PATTERN = re.compile(
    r"\b(insert|update|delete|drop|alter|create|pragma|attach|detach|replace|truncate|vacuum|grant)\b",
    re.IGNORECASE,
)
SQL_REQUIRED_TABLE = re.compile(r"\bsite_events\b", re.IGNORECASE)
SQL_LIMIT_PATTERN = re.compile(r"\blimit\s+[0-9]+", re.IGNORECASE)
SQL_WITH_PREFIX = re.compile(r"with\s", re.IGNORECASE)
SQL_RECURSIVE_PREFIX = re.compile(r"with\s+recursive\b", re.IGNORECASE)
# site_events must always resolve to the tenant-scoped view
SQL_QUALIFIED_TABLE = re.compile(r'\.\s*"?site_events\b', re.IGNORECASE)
SQL_TABLE_REDEFINED = re.compile(r'\bsite_events"?\s*(\([^)]*\))?\s*as\s*\(', re.IGNORECASE)
_QUOTED_LITERAL = re.compile(r"'(?:[^']|'')*'")

STATS_TOP_N = 10

# Time series bucket formats per dialect
_SQLITE_BUCKETS = {
    Granularity.HOUR: "%Y-%m-%d %H:00:00",
    Granularity.DAY: "%Y-%m-%d",
    Granularity.WEEK: "%Y-W%W",
    Granularity.MONTH: "%Y-%m",
}
_POSTGRES_BUCKETS = {
    Granularity.HOUR: "YYYY-MM-DD HH24:00:00",
    Granularity.DAY: "YYYY-MM-DD",
    Granularity.WEEK: 'IYYY-"W"IW',
    Granularity.MONTH: "YYYY-MM",
}


@asynccontextmanager
async def backend_errors(source: str) -> AsyncIterator[None]:
    """Translate driver failures into BackendUnavailableError."""
    try:
        yield
    except (DBAPIError, OSError) as exc:
        logger.error(f"{source} unavailable: {exc}")
        raise BackendUnavailableError(f"{source} is unavailable") from exc


# =============================================================================
# Writes
# =============================================================================

def record_values(record: EventRecord, site_id: int, team_id: int | None, now: datetime) -> dict[str, Any]:
    """Column values for one canonical record."""
    values = record.model_dump(exclude={"account_id"})
    values["site_id"] = site_id
    values["team_id"] = team_id
    values["created_at"] = to_storage(record.created_at or now)
    values["updated_at"] = to_storage(record.updated_at or now)
    return values


async def insert_event(conn: AsyncConnection, values: dict[str, Any]) -> StoredEvent:
    """Insert one row and return it with its assigned id."""
    result = await conn.execute(insert(site_events).values(**values))
    return StoredEvent.model_validate({**values, "id": result.inserted_primary_key[0]})


# =============================================================================
# Reads
# =============================================================================

def site_condition(site: int | str) -> ColumnElement:
    """Tenant predicate for either a numeric site_id or a public tag_id."""
    if isinstance(site, str):
        return site_events.c.tag_id == site
    return site_events.c.site_id == site


def filter_conditions(filters: EventListFilters) -> list[ColumnElement]:
    """Build WHERE clauses from filters. Absent filters add nothing."""
    c = site_events.c
    conditions = []

    if filters.start_date is not None:
        conditions.append(c.created_at >= to_storage(filters.start_date))
    if filters.end_date is not None:
        conditions.append(c.created_at <= to_storage(filters.resolved_end))
    if filters.event_type:
        conditions.append(c.event == filters.event_type)
    if filters.country:
        conditions.append(c.country == filters.country)
    if filters.device_type:
        conditions.append(c.device_type == filters.device_type)
    if filters.referer:
        conditions.append(c.referer == filters.referer)

    return conditions


def range_conditions(date_range: DateRange | None) -> list[ColumnElement]:
    if date_range is None:
        return []
    start, end = date_range.bounds()
    conditions = []
    if start is not None:
        conditions.append(site_events.c.created_at >= to_storage(start))
    if end is not None:
        conditions.append(site_events.c.created_at <= to_storage(end))
    return conditions


def _where(conditions: Sequence[ColumnElement]) -> ColumnElement | None:
    return and_(*conditions) if conditions else None


def row_to_event(row: Any) -> StoredEvent:
    return StoredEvent.model_validate(dict(row._mapping))


async def count_rows(conn: AsyncConnection, conditions: Sequence[ColumnElement] = ()) -> int:
    stmt = select(func.count()).select_from(site_events)
    where = _where(conditions)
    if where is not None:
        stmt = stmt.where(where)
    return (await conn.execute(stmt)).scalar_one() or 0


async def has_rows(conn: AsyncConnection, conditions: Sequence[ColumnElement] = ()) -> bool:
    stmt = select(site_events.c.id).limit(1)
    where = _where(conditions)
    if where is not None:
        stmt = stmt.where(where)
    return (await conn.execute(stmt)).first() is not None


async def list_page(
    conn: AsyncConnection,
    filters: EventListFilters,
    base_conditions: Sequence[ColumnElement] = (),
) -> EventListResult:
    """Fetch one page of events, newest first, with its counts.

    base_conditions scope the query to a tenant and are part of both counts.
    The unfiltered count is only issued when a filter is active.
    """
    conditions = filter_conditions(filters)
    scoped = [*base_conditions, *conditions]

    stmt = (
        select(site_events)
        .order_by(desc(site_events.c.created_at), desc(site_events.c.id))
        .limit(filters.limit)
        .offset(filters.offset)
    )
    where = _where(scoped)
    if where is not None:
        stmt = stmt.where(where)

    try:
        rows = (await conn.execute(stmt)).fetchall()
    except DBAPIError as exc:
        logger.error(f"Event page query failed: {exc}")
        return EventListResult(
            error=True,
            events=None,
            pagination=Pagination.build(filters.offset, filters.limit, 0),
        )

    total = await count_rows(conn, scoped)
    total_all_time = await count_rows(conn, base_conditions) if conditions else total

    return EventListResult(
        events=[row_to_event(row) for row in rows],
        pagination=Pagination.build(filters.offset, filters.limit, total),
        total_all_time=total_all_time,
    )


# =============================================================================
# Aggregates
# =============================================================================

async def top_values(
    conn: AsyncConnection,
    column: ColumnElement,
    conditions: Sequence[ColumnElement] = (),
    limit: int = STATS_TOP_N,
) -> list[CountByValue]:
    """Most frequent values of one column, unknown (NULL) included."""
    total = func.count().label("count")
    stmt = (
        select(column.label("value"), total)
        .group_by(column)
        .order_by(total.desc(), column.asc().nulls_last())
        .limit(limit)
    )
    where = _where(conditions)
    if where is not None:
        stmt = stmt.where(where)
    rows = (await conn.execute(stmt)).fetchall()
    return [CountByValue(**row._mapping) for row in rows]


async def site_stats(
    conn: AsyncConnection,
    base_conditions: Sequence[ColumnElement] = (),
    date_range: DateRange | None = None,
) -> SiteStats:
    conditions = [*base_conditions, *range_conditions(date_range)]
    c = site_events.c
    return SiteStats(
        total_events=await count_rows(conn, conditions),
        events_by_type=await top_values(conn, c.event, conditions),
        events_by_country=await top_values(conn, c.country, conditions),
        events_by_device=await top_values(conn, c.device_type, conditions),
        top_referers=await top_values(conn, c.referer, conditions),
    )


async def event_summary(
    conn: AsyncConnection,
    options: EventSummaryOptions,
    base_conditions: Sequence[ColumnElement] = (),
) -> EventSummaryResult:
    """Per-event-name counts with first and last sighting.

    Pagination runs over distinct event names. Ties on the sort key fall
    back to the most recent sighting (or the larger count when sorting by
    time), then to the event name.
    """
    c = site_events.c
    conditions = [*base_conditions, *range_conditions(options.date_range)]
    if options.search:
        conditions.append(c.event.icontains(options.search, autoescape=True))
    where = _where(conditions)

    total = func.count().label("count")
    first_seen = func.min(c.created_at).label("first_seen")
    last_seen = func.max(c.created_at).label("last_seen")
    sort_key = {
        SummarySort.COUNT: total,
        SummarySort.FIRST_SEEN: first_seen,
        SummarySort.LAST_SEEN: last_seen,
    }[options.sort_by]
    primary = sort_key.asc() if options.sort_direction is SortDirection.ASC else sort_key.desc()
    secondary = last_seen.desc() if options.sort_by is SummarySort.COUNT else total.desc()

    stmt = (
        select(c.event, total, first_seen, last_seen)
        .group_by(c.event)
        .order_by(primary, secondary, c.event.asc())
        .limit(options.limit)
        .offset(options.offset)
    )
    totals = select(func.count(), func.count(c.event.distinct()))
    if where is not None:
        stmt = stmt.where(where)
        totals = totals.where(where)

    rows = (await conn.execute(stmt)).fetchall()
    total_events, total_event_types = (await conn.execute(totals)).one()
    return EventSummaryResult(
        summary=[
            EventSummaryRow.model_validate(dict(row._mapping))
            for row in rows
        ],
        pagination=Pagination.build(options.offset, options.limit, total_event_types or 0),
        total_events=total_events or 0,
        total_event_types=total_event_types or 0,
    )


def time_bucket(granularity: Granularity, dialect: str) -> ColumnElement:
    """Bucket label expression for created_at.

    The format is rendered inline so the SELECT and GROUP BY texts match.
    """
    if dialect == "postgresql":
        pattern = _POSTGRES_BUCKETS[granularity]
        return func.to_char(site_events.c.created_at, literal_column(f"'{pattern}'"))
    pattern = _SQLITE_BUCKETS[granularity]
    return func.strftime(literal_column(f"'{pattern}'"), site_events.c.created_at)


async def time_series(
    conn: AsyncConnection,
    granularity: Granularity = Granularity.DAY,
    by_event: bool = False,
    base_conditions: Sequence[ColumnElement] = (),
    date_range: DateRange | None = None,
) -> TimeSeriesResult:
    """Event counts per time bucket, optionally split by event name."""
    bucket = time_bucket(granularity, conn.dialect.name)
    total = func.count().label("count")
    if by_event:
        stmt = (
            select(bucket.label("date"), site_events.c.event, total)
            .group_by(bucket, site_events.c.event)
            .order_by(bucket, site_events.c.event)
        )
    else:
        stmt = select(bucket.label("date"), total).group_by(bucket).order_by(bucket)
    where = _where([*base_conditions, *range_conditions(date_range)])
    if where is not None:
        stmt = stmt.where(where)

    rows = (await conn.execute(stmt)).fetchall()
    return TimeSeriesResult(
        data=[
            TimeSeriesPoint.model_validate(dict(row._mapping))
            for row in rows
        ],
        granularity=granularity,
        by_event=by_event,
    )


# =============================================================================
# Ad-hoc read-only SQL
# =============================================================================

def normalize_sql_query(query: str) -> str:
    return re.sub(r";\s*$", "", query.strip())


def validate_sql_query(query: str) -> str | None:
    """Return an error message when a query is not a single read-only SELECT.

    Quoted literals are blanked before the keyword checks, so escaped filter
    values cannot trip or bypass them.
    """
    if not query:
        return "Query is required"
    structure = _QUOTED_LITERAL.sub("''", query)
    if ";" in structure:
        return "Multiple statements are not allowed"
    if not SQL_ALLOWED_PREFIX.match(structure):
        return "Only SELECT queries are allowed"
    if SQL_FORBIDDEN_PATTERN.search(structure):
        return "Only read-only SELECT queries are allowed"
    if not SQL_REQUIRED_TABLE.search(structure):
        return "Query must reference site_events"
    if SQL_RECURSIVE_PREFIX.match(structure):
        return "Recursive queries are not allowed"
    if SQL_QUALIFIED_TABLE.search(structure) or SQL_TABLE_REDEFINED.search(structure):
        return "site_events must be referenced by its plain name"
    return None


def check_read_query(query: str) -> str:
    """Normalize a query and raise ValidationError unless it is allowed."""
    normalized = normalize_sql_query(query or "")
    error = validate_sql_query(normalized)
    if error:
        raise ValidationError(error)
    return normalized


def apply_row_limit(query: str, max_rows: int) -> str:
    """Append a LIMIT unless the query already carries one."""
    structure = _QUOTED_LITERAL.sub("''", query)
    if SQL_LIMIT_PATTERN.search(structure):
        return query
    return f"{query} LIMIT {int(max_rows)}"


def scope_to_site(query: str, site_id: int, team_id: int | None = None, dialect: str = "sqlite") -> str:
    """Make site_events inside a validated query mean one tenant's rows.

    A leading CTE named site_events shadows the table. SQLite would read an
    unqualified self reference as recursion, so it selects from main.site_events;
    PostgreSQL does not see a non-recursive CTE inside its own body.
    """
    source = "main.site_events" if dialect == "sqlite" else "site_events"
    predicate = f"site_id = {int(site_id)}"
    if team_id is not None:
        predicate += f" AND team_id = {int(team_id)}"
    scoped = f"site_events AS (SELECT * FROM {source} WHERE {predicate})"

    prefix = SQL_WITH_PREFIX.match(query)
    if prefix:
        return f"WITH {scoped}, {query[prefix.end():]}"
    return f"WITH {scoped} {query}"


async def run_read_query(
    conn: AsyncConnection,
    query: str,
    max_rows: int,
    site_id: int | None = None,
    team_id: int | None = None,
) -> list[dict[str, Any]]:
    """Validate and execute a read-only query, returning plain dict rows.

    With a site_id the query only sees that site's rows (and only the
    team's, when team_id is given).

    Raises:
        ValidationError: If the query is not a single read-only SELECT
    """
    limited = apply_row_limit(check_read_query(query), max_rows)
    if site_id is not None:
        limited = scope_to_site(limited, site_id, team_id, conn.dialect.name)
    # Colons inside literals must not be read as bind parameters
    result = await conn.execute(text(limited.replace(":", "\\:")))
    return [dict(row._mapping) for row in result.fetchall()]
