"""
Backend adapters: one implementation of the event storage contract per
storage technology.

Variant A (RelationalServerAdapter) keeps every tenant in one shared table,
so every statement it issues carries a team/site predicate. Variant B
(EmbeddedPerTenantAdapter) routes each site to its own DurableEventStore.
NoDataAdapter stands in for kinds that are not implemented yet.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncEngine

from ..config import MAX_QUERY_ROWS
from ..core.dates import default_window_start, utcnow
from ..core.models import (
    DashboardOptions, DashboardQueryResult, DateRange, DBAdapter, EventListFilters,
    EventListResult, EventRecord, EventSummaryOptions, EventSummaryResult, Granularity,
    Pagination, SiteStats, StoredEvent, TimeSeriesResult,
)
from ..errors import BackendUnavailableError, ValidationError
from . import queries
from .durable import DurableEventStore, SiteStoreRegistry
from .schema import QUERYABLE_COLUMNS, metadata, site_events

logger = logging.getLogger(__name__)


def dashboard_filters(options: DashboardOptions, default_days: int = 7) -> EventListFilters:
    """Translate dashboard options into list filters.

    Without a date range the window is the rolling default ending now.
    """
    date_range = options.date_range
    if date_range is None or (date_range.start is None and date_range.end is None):
        return EventListFilters(
            start_date=default_window_start(utcnow(), default_days),
            limit=options.limit,
            offset=options.offset,
        )
    return EventListFilters(
        start_date=date_range.start,
        end_date=date_range.end,
        end_is_exact=date_range.end_is_exact,
        limit=options.limit,
        offset=options.offset,
    )


def applied_range(filters: EventListFilters) -> DateRange:
    """The window a dashboard query actually used."""
    return DateRange(start=filters.start_date, end=filters.end_date, end_is_exact=filters.end_is_exact)


def _dashboard_result(page: EventListResult, filters: EventListFilters, source: str) -> DashboardQueryResult:
    if page.error or page.events is None:
        raise BackendUnavailableError(f"{source} did not return a row set")
    return DashboardQueryResult(
        rows=page.events,
        total_matching=page.pagination.total,
        total_all_time=page.total_all_time or 0,
        pagination=page.pagination,
        date_range=applied_range(filters),
    )


def _empty_dashboard(filters: EventListFilters) -> DashboardQueryResult:
    return DashboardQueryResult(
        rows=[], total_matching=0, total_all_time=0,
        pagination=Pagination.build(filters.offset, filters.limit, 0),
        date_range=applied_range(filters),
    )


class BackendAdapter(ABC):
    """Storage contract implemented once per storage technology."""

    kind: DBAdapter
    # SQL dialect compiled widget queries must be rendered in
    dialect: str = "sqlite"
    # True when tenants share tables and compiled SQL needs a tenant predicate
    shared_tables: bool = False
    # Read-only snapshot consulted by the widget compiler
    allowed_columns: frozenset[str] = QUERYABLE_COLUMNS

    def __init__(self, default_window_days: int = 7):
        self.default_window_days = default_window_days

    @abstractmethod
    async def insert(self, record: EventRecord) -> StoredEvent | None:
        """Persist one canonical event atomically."""

    @abstractmethod
    async def insert_many(self, records: Iterable[EventRecord]) -> list[StoredEvent]:
        """Persist a batch of canonical events in one transaction."""

    @abstractmethod
    async def query_dashboard(self, options: DashboardOptions) -> DashboardQueryResult:
        """Rows for one tenant's site within the window, plus counts."""

    @abstractmethod
    async def list_events(self, site_id: int, team_id: int, filters: EventListFilters) -> EventListResult:
        """Filtered, paginated events for one site."""

    @abstractmethod
    async def site_has_any_events(self, site_id: int | str, team_id: int) -> bool:
        """Has this team's site ever recorded an event?"""

    @abstractmethod
    async def run_sql_query(
        self, site_id: int, team_id: int, query: str, limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Execute a read-only query that only sees one team's site."""

    @abstractmethod
    async def get_stats(self, site_id: int, team_id: int, date_range: DateRange | None = None) -> SiteStats:
        """Total events and top values of the main dimensions."""

    @abstractmethod
    async def get_event_summary(
        self, site_id: int, team_id: int, options: EventSummaryOptions
    ) -> EventSummaryResult:
        """Per-event-name counts with first and last sighting."""

    @abstractmethod
    async def get_time_series(
        self,
        site_id: int,
        team_id: int,
        date_range: DateRange | None = None,
        granularity: Granularity = Granularity.DAY,
        by_event: bool = False,
    ) -> TimeSeriesResult:
        """Event counts per time bucket."""


# =============================================================================
# Variant A: shared relational server
# =============================================================================

class RelationalServerAdapter(BackendAdapter):
    """All tenants in one site_events table, isolated by predicate only."""

    kind = DBAdapter.POSTGRES
    shared_tables = True

    def __init__(self, engine: AsyncEngine, default_window_days: int = 7, max_query_rows: int = MAX_QUERY_ROWS):
        super().__init__(default_window_days)
        self.engine = engine
        self.max_query_rows = max_query_rows
        self.dialect = engine.dialect.name

    async def create_schema(self) -> None:
        """Create tables (development and tests; use migrations in production)."""
        async with queries.backend_errors("Relational store"):
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.create_all, checkfirst=True)

    async def close(self) -> None:
        await self.engine.dispose()

    @staticmethod
    def _require_tenant(record: EventRecord) -> None:
        if record.site_id is None or record.team_id is None:
            raise ValidationError("site_id and team_id are required to store an event")

    @staticmethod
    def _tenant(site: int | str, team_id: int) -> list:
        return [site_events.c.team_id == team_id, queries.site_condition(site)]

    async def insert(self, record: EventRecord) -> StoredEvent:
        return (await self.insert_many([record]))[0]

    async def insert_many(self, records: Iterable[EventRecord]) -> list[StoredEvent]:
        records = list(records)
        if not records:
            raise ValidationError("No events provided")
        for record in records:
            self._require_tenant(record)

        now = utcnow()
        stored = []
        async with queries.backend_errors("Relational store"):
            async with self.engine.begin() as conn:
                for record in records:
                    values = queries.record_values(record, record.site_id, record.team_id, now)
                    stored.append(await queries.insert_event(conn, values))
        return stored

    async def query_dashboard(self, options: DashboardOptions) -> DashboardQueryResult:
        site = options.site_id if options.site_id is not None else options.tag_id
        filters = dashboard_filters(options, self.default_window_days)
        page = await self._list(site, options.team_id, filters)
        return _dashboard_result(page, filters, "Relational store")

    async def list_events(self, site_id: int, team_id: int, filters: EventListFilters) -> EventListResult:
        return await self._list(site_id, team_id, filters)

    async def _list(self, site: int | str, team_id: int, filters: EventListFilters) -> EventListResult:
        async with queries.backend_errors("Relational store"):
            async with self.engine.connect() as conn:
                return await queries.list_page(conn, filters, self._tenant(site, team_id))

    async def site_has_any_events(self, site_id: int | str, team_id: int) -> bool:
        async with queries.backend_errors("Relational store"):
            async with self.engine.connect() as conn:
                return await queries.has_rows(conn, self._tenant(site_id, team_id))

    async def run_sql_query(
        self, site_id: int, team_id: int, query: str, limit: int | None = None
    ) -> list[dict[str, Any]]:
        max_rows = min(limit or self.max_query_rows, self.max_query_rows)
        async with queries.backend_errors("Relational store"):
            async with self.engine.connect() as conn:
                return await queries.run_read_query(conn, query, max_rows, site_id=site_id, team_id=team_id)

    async def get_stats(self, site_id: int, team_id: int, date_range: DateRange | None = None) -> SiteStats:
        async with queries.backend_errors("Relational store"):
            async with self.engine.connect() as conn:
                return await queries.site_stats(conn, self._tenant(site_id, team_id), date_range)

    async def get_event_summary(
        self, site_id: int, team_id: int, options: EventSummaryOptions
    ) -> EventSummaryResult:
        async with queries.backend_errors("Relational store"):
            async with self.engine.connect() as conn:
                return await queries.event_summary(conn, options, self._tenant(site_id, team_id))

    async def get_time_series(
        self,
        site_id: int,
        team_id: int,
        date_range: DateRange | None = None,
        granularity: Granularity = Granularity.DAY,
        by_event: bool = False,
    ) -> TimeSeriesResult:
        async with queries.backend_errors("Relational store"):
            async with self.engine.connect() as conn:
                return await queries.time_series(
                    conn, granularity, by_event, self._tenant(site_id, team_id), date_range,
                )


# =============================================================================
# Variant B: embedded per-site stores
# =============================================================================

class EmbeddedPerTenantAdapter(BackendAdapter):
    """One DurableEventStore per site; isolation is structural.

    Reads never create a store. A site whose store belongs to another team
    reads as empty.
    """

    kind = DBAdapter.SQLITE
    dialect = "sqlite"

    def __init__(self, registry: SiteStoreRegistry, default_window_days: int = 7):
        super().__init__(default_window_days)
        self.registry = registry

    async def close(self) -> None:
        await self.registry.close()

    async def insert(self, record: EventRecord) -> StoredEvent:
        return (await self.insert_many([record]))[0]

    async def insert_many(self, records: Iterable[EventRecord]) -> list[StoredEvent]:
        by_site: dict[int, list[EventRecord]] = {}
        for record in records:
            if record.site_id is None:
                raise ValidationError("site_id is required to route an event to its store")
            by_site.setdefault(record.site_id, []).append(record)
        if not by_site:
            raise ValidationError("No events provided")

        stored = []
        for site_id, batch in by_site.items():
            first = batch[0]
            store = self.registry.get(site_id, tag_id=first.tag_id, team_id=first.team_id)
            stored.extend(await store.insert_many(batch))
        return stored

    async def _store_for(self, site: int | str, team_id: int) -> DurableEventStore | None:
        if isinstance(site, str):
            store = await self.registry.find_by_tag(site)
        else:
            store = await self.registry.open(site)
        if store is None:
            return None
        if store.team_id is not None and store.team_id != team_id:
            logger.warning(f"Team {team_id} asked for site {store.site_id} owned by another team")
            return None
        return store

    async def query_dashboard(self, options: DashboardOptions) -> DashboardQueryResult:
        filters = dashboard_filters(options, self.default_window_days)
        site = options.site_id if options.site_id is not None else options.tag_id
        store = await self._store_for(site, options.team_id)
        if store is None:
            return _empty_dashboard(filters)
        page = await store.list_events(filters)
        return _dashboard_result(page, filters, f"Site store {store.site_id}")

    async def list_events(self, site_id: int, team_id: int, filters: EventListFilters) -> EventListResult:
        store = await self._store_for(site_id, team_id)
        if store is None:
            return EventListResult(
                events=[], pagination=Pagination.build(filters.offset, filters.limit, 0), total_all_time=0,
            )
        return await store.list_events(filters)

    async def site_has_any_events(self, site_id: int | str, team_id: int) -> bool:
        store = await self._store_for(site_id, team_id)
        return await store.has_events() if store is not None else False

    async def run_sql_query(
        self, site_id: int, team_id: int, query: str, limit: int | None = None
    ) -> list[dict[str, Any]]:
        store = await self._store_for(site_id, team_id)
        if store is None:
            queries.check_read_query(query)
            return []
        return await store.run_sql_query(query, limit)

    async def get_stats(self, site_id: int, team_id: int, date_range: DateRange | None = None) -> SiteStats:
        store = await self._store_for(site_id, team_id)
        return await store.get_stats(date_range) if store is not None else SiteStats()

    async def get_event_summary(
        self, site_id: int, team_id: int, options: EventSummaryOptions
    ) -> EventSummaryResult:
        store = await self._store_for(site_id, team_id)
        if store is None:
            return EventSummaryResult.empty(options)
        return await store.get_event_summary(options)

    async def get_time_series(
        self,
        site_id: int,
        team_id: int,
        date_range: DateRange | None = None,
        granularity: Granularity = Granularity.DAY,
        by_event: bool = False,
    ) -> TimeSeriesResult:
        store = await self._store_for(site_id, team_id)
        if store is None:
            return TimeSeriesResult(granularity=granularity, by_event=by_event)
        return await store.get_time_series(date_range, granularity, by_event)


# =============================================================================
# Not yet implemented kinds
# =============================================================================

class NoDataAdapter(BackendAdapter):
    """Stand-in for a storage kind without an implementation.

    Every read reports no data and writes are dropped with a warning, so
    dashboards keep rendering.
    """

    def __init__(self, kind: DBAdapter | str, default_window_days: int = 7):
        super().__init__(default_window_days)
        self.kind = kind

    async def insert(self, record: EventRecord) -> StoredEvent | None:
        logger.warning(f"Dropping '{record.event}' event: no store implemented for adapter {self.kind}")
        return None

    async def insert_many(self, records: Iterable[EventRecord]) -> list[StoredEvent]:
        records = list(records)
        if records:
            logger.warning(f"Dropping {len(records)} events: no store implemented for adapter {self.kind}")
        return []

    async def query_dashboard(self, options: DashboardOptions) -> DashboardQueryResult:
        return _empty_dashboard(dashboard_filters(options, self.default_window_days))

    async def list_events(self, site_id: int, team_id: int, filters: EventListFilters) -> EventListResult:
        return EventListResult(
            events=[], pagination=Pagination.build(filters.offset, filters.limit, 0), total_all_time=0,
        )

    async def site_has_any_events(self, site_id: int | str, team_id: int) -> bool:
        return False

    async def run_sql_query(
        self, site_id: int, team_id: int, query: str, limit: int | None = None
    ) -> list[dict[str, Any]]:
        return []

    async def get_stats(self, site_id: int, team_id: int, date_range: DateRange | None = None) -> SiteStats:
        return SiteStats()

    async def get_event_summary(
        self, site_id: int, team_id: int, options: EventSummaryOptions
    ) -> EventSummaryResult:
        return EventSummaryResult.empty(options)

    async def get_time_series(
        self,
        site_id: int,
        team_id: int,
        date_range: DateRange | None = None,
        granularity: Granularity = Granularity.DAY,
        by_event: bool = False,
    ) -> TimeSeriesResult:
        return TimeSeriesResult(granularity=granularity, by_event=by_event)
