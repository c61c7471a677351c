"""
Durable per-site event stores.

Each site gets one physically separate SQLite database, so tenant isolation
is structural and queries carry no tenant predicate. A store becomes ACTIVE
on its first write, or when a database that already holds rows is reopened,
and stays ACTIVE for the life of the process. Teardown is owned by whoever
hosts the registry.
"""
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable

from sqlalchemy import and_, delete, func, inspect, select
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from ..config import MAX_QUERY_ROWS, CoreConfig
from ..core.dates import to_storage, utcnow
from ..core.models import (
    DateRange, EventListFilters, EventListResult, EventRecord, EventSummaryOptions,
    EventSummaryResult, Granularity, SiteStats, StoredEvent, TimeSeriesResult,
)
from ..errors import ValidationError
from . import queries
from .schema import SITE_EVENTS_TABLE, metadata, site_events

logger = logging.getLogger(__name__)

DEFAULT_VISITOR_WINDOW_SECONDS = 5 * 60


class StoreState(str, Enum):
    """Lifecycle of a per-site store."""
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"


class DurableEventStore:
    """Authoritative event storage for exactly one site."""

    def __init__(
        self,
        site_id: int,
        engine: AsyncEngine,
        tag_id: str | None = None,
        team_id: int | None = None,
        max_query_rows: int = MAX_QUERY_ROWS,
    ):
        self.site_id = site_id
        self.tag_id = tag_id
        self.team_id = team_id
        self.engine = engine
        self.max_query_rows = max_query_rows
        self._state = StoreState.UNINITIALIZED
        self._schema_ready = False
        self._identity_loaded = False

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def _source(self) -> str:
        return f"Site store {self.site_id}"

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with queries.backend_errors(self._source):
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.create_all, checkfirst=True)
        self._schema_ready = True

    def _activate(self) -> None:
        if self._state is StoreState.UNINITIALIZED:
            self._state = StoreState.ACTIVE
            logger.info(f"Site store {self.site_id} is now active")

    async def load_identity(self) -> None:
        """Recover tag_id and team_id from the oldest stored event.

        Values already known are kept. A store with rows is ACTIVE, so a
        reopened database comes back in that state.
        """
        if self._identity_loaded:
            return
        c = site_events.c
        await self._ensure_schema()
        async with queries.backend_errors(self._source):
            async with self.engine.connect() as conn:
                row = (await conn.execute(select(c.tag_id, c.team_id).order_by(c.id).limit(1))).first()
        if row is None:
            return
        if self.tag_id is None:
            self.tag_id = row.tag_id
        if self.team_id is None:
            self.team_id = row.team_id
        self._identity_loaded = True
        self._activate()

    def _check_record(self, record: EventRecord) -> None:
        if record.site_id is not None and record.site_id != self.site_id:
            raise ValidationError(
                f"Event for site {record.site_id} cannot be written to the store of site {self.site_id}"
            )
        if record.team_id is not None and self.team_id is not None and record.team_id != self.team_id:
            raise ValidationError(
                f"Event for team {record.team_id} cannot be written to the store of site {self.site_id}"
            )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def insert(self, record: EventRecord) -> StoredEvent:
        """Persist one canonical event atomically."""
        stored = await self.insert_many([record])
        return stored[0]

    async def insert_many(self, records: Iterable[EventRecord]) -> list[StoredEvent]:
        """Persist a batch of events in a single transaction."""
        records = list(records)
        if not records:
            raise ValidationError("No events provided")
        for record in records:
            self._check_record(record)

        await self._ensure_schema()
        now = utcnow()
        stored = []
        async with queries.backend_errors(self._source):
            async with self.engine.begin() as conn:
                for record in records:
                    team_id = record.team_id if record.team_id is not None else self.team_id
                    values = queries.record_values(record, self.site_id, team_id, now)
                    stored.append(await queries.insert_event(conn, values))

        self._activate()
        return stored

    async def delete_events(
        self,
        older_than: datetime | None = None,
        event_type: str | None = None,
    ) -> int:
        """Delete events older than a date and/or of one event type.

        Raises:
            ValidationError: If neither criterion is given
        """
        if older_than is None and not event_type:
            raise ValidationError("Must specify either older_than or event_type for deletion")

        conditions = []
        if older_than is not None:
            conditions.append(site_events.c.created_at <= to_storage(older_than))
        if event_type:
            conditions.append(site_events.c.event == event_type)

        await self._ensure_schema()
        async with queries.backend_errors(self._source):
            async with self.engine.begin() as conn:
                result = await conn.execute(delete(site_events).where(and_(*conditions)))
        return result.rowcount or 0

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def list_events(self, filters: EventListFilters | None = None) -> EventListResult:
        """Page through events, newest first, with filtered and all-time counts."""
        filters = filters or EventListFilters()
        await self._ensure_schema()
        async with queries.backend_errors(self._source):
            async with self.engine.connect() as conn:
                return await queries.list_page(conn, filters)

    async def has_events(self) -> bool:
        await self._ensure_schema()
        async with queries.backend_errors(self._source):
            async with self.engine.connect() as conn:
                return await queries.has_rows(conn)

    async def count_events_since(self, start: datetime, end: datetime | None = None) -> int:
        conditions = [site_events.c.created_at >= to_storage(start)]
        if end is not None:
            conditions.append(site_events.c.created_at <= to_storage(end))
        await self._ensure_schema()
        async with queries.backend_errors(self._source):
            async with self.engine.connect() as conn:
                return await queries.count_rows(conn, conditions)

    async def current_visitors(self, window_seconds: int = DEFAULT_VISITOR_WINDOW_SECONDS) -> int:
        """Approximate current visitors: distinct non-empty rid in a rolling window."""
        window_seconds = max(1, window_seconds)
        start = utcnow() - timedelta(seconds=window_seconds)
        c = site_events.c
        stmt = select(func.count(c.rid.distinct())).where(
            c.created_at >= to_storage(start),
            c.rid.is_not(None),
            c.rid != "",
        )
        await self._ensure_schema()
        async with queries.backend_errors(self._source):
            async with self.engine.connect() as conn:
                return (await conn.execute(stmt)).scalar_one() or 0

    async def get_stats(self, date_range: DateRange | None = None) -> SiteStats:
        """Total events and top 10 events, countries, devices and referers."""
        await self._ensure_schema()
        async with queries.backend_errors(self._source):
            async with self.engine.connect() as conn:
                return await queries.site_stats(conn, date_range=date_range)

    async def get_event_summary(self, options: EventSummaryOptions | None = None) -> EventSummaryResult:
        await self._ensure_schema()
        async with queries.backend_errors(self._source):
            async with self.engine.connect() as conn:
                return await queries.event_summary(conn, options or EventSummaryOptions())

    async def get_time_series(
        self,
        date_range: DateRange | None = None,
        granularity: Granularity = Granularity.DAY,
        by_event: bool = False,
    ) -> TimeSeriesResult:
        await self._ensure_schema()
        async with queries.backend_errors(self._source):
            async with self.engine.connect() as conn:
                return await queries.time_series(conn, granularity, by_event, date_range=date_range)

    async def run_sql_query(self, query: str, limit: int | None = None) -> list[dict[str, Any]]:
        """Run a read-only SELECT against this site's events."""
        max_rows = min(limit or self.max_query_rows, self.max_query_rows)
        await self._ensure_schema()
        async with queries.backend_errors(self._source):
            async with self.engine.connect() as conn:
                return await queries.run_read_query(conn, query, max_rows, site_id=self.site_id)

    async def describe_schema(self) -> list[dict[str, Any]]:
        """Column definitions of the events table as seen by the database."""
        await self._ensure_schema()
        async with queries.backend_errors(self._source):
            async with self.engine.connect() as conn:
                return await conn.run_sync(_describe_columns)

    async def health_check(self) -> dict[str, Any]:
        await self._ensure_schema()
        async with queries.backend_errors(self._source):
            async with self.engine.connect() as conn:
                total = await queries.count_rows(conn)
        return {
            "status": "healthy",
            "site_id": self.site_id,
            "state": self._state.value,
            "total_events": total,
            "timestamp": utcnow().isoformat(),
        }

    async def close(self) -> None:
        await self.engine.dispose()


def _describe_columns(sync_conn: Any) -> list[dict[str, Any]]:
    columns = inspect(sync_conn).get_columns(SITE_EVENTS_TABLE)
    primary = set(inspect(sync_conn).get_pk_constraint(SITE_EVENTS_TABLE).get("constrained_columns") or [])
    return [
        {
            "name": column["name"],
            "type": str(column["type"]),
            "nullable": bool(column.get("nullable", True)),
            "primary_key": column["name"] in primary,
            "default": column.get("default"),
        }
        for column in columns
    ]


def sqlite_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an aiosqlite engine; in-memory databases share one connection."""
    if ":memory:" in url:
        return create_async_engine(url, echo=echo, poolclass=StaticPool)
    return create_async_engine(url, echo=echo)


class SiteStoreRegistry:
    """Hands out the single DurableEventStore for each site.

    engine_factory receives a site_id and returns the engine for that
    site's database. persisted_sites, when given, lists the site ids that
    already have a database on disk; reads open those lazily and never
    create a store for any other site.
    """

    def __init__(
        self,
        engine_factory: Callable[[int], AsyncEngine],
        max_query_rows: int = MAX_QUERY_ROWS,
        persisted_sites: Callable[[], Iterable[int]] | None = None,
    ):
        self.engine_factory = engine_factory
        self.max_query_rows = max_query_rows
        self.persisted_sites = persisted_sites
        self._stores: dict[int, DurableEventStore] = {}
        self._tags: dict[str, int] = {}

    @classmethod
    def from_config(cls, config: CoreConfig) -> "SiteStoreRegistry":
        return cls(
            lambda site_id: sqlite_engine(config.durable_store_url(site_id), echo=config.echo_sql),
            max_query_rows=config.max_query_rows,
            persisted_sites=config.persisted_site_ids if config.durable_store_dir else None,
        )

    def _persisted(self) -> set[int]:
        return set(self.persisted_sites()) if self.persisted_sites is not None else set()

    def _remember_tag(self, store: DurableEventStore) -> None:
        if store.tag_id:
            self._tags[store.tag_id] = store.site_id

    def get(self, site_id: int, tag_id: str | None = None, team_id: int | None = None) -> DurableEventStore:
        """Return the store for a site, creating it on first use.

        Only the write path should call this; reads go through open().
        """
        store = self._stores.get(site_id)
        if store is None:
            store = DurableEventStore(
                site_id,
                self.engine_factory(site_id),
                tag_id=tag_id,
                team_id=team_id,
                max_query_rows=self.max_query_rows,
            )
            self._stores[site_id] = store
        if tag_id and store.tag_id is None:
            store.tag_id = tag_id
        if team_id is not None and store.team_id is None:
            store.team_id = team_id
        self._remember_tag(store)
        return store

    def find(self, site_id: int) -> DurableEventStore | None:
        """Return an already open store without creating one."""
        return self._stores.get(site_id)

    async def open(self, site_id: int) -> DurableEventStore | None:
        """Return the store for a site that has one, with its identity loaded.

        Returns None for a site that has neither an open store nor a
        database on disk.
        """
        store = self._stores.get(site_id)
        if store is None:
            if site_id not in self._persisted():
                return None
            logger.info(f"Reopening persisted store for site {site_id}")
            store = self.get(site_id)
        await store.load_identity()
        self._remember_tag(store)
        return store

    async def find_by_tag(self, tag_id: str) -> DurableEventStore | None:
        """Look a store up by its public tag, opening persisted stores as needed."""
        site_id = self._tags.get(tag_id)
        if site_id is not None:
            return await self.open(site_id)
        for site_id in sorted(self._persisted() - set(self._stores)):
            store = await self.open(site_id)
            if store is not None and store.tag_id == tag_id:
                return store
        return None

    async def close(self) -> None:
        for store in self._stores.values():
            await store.close()
        self._stores.clear()
        self._tags.clear()
