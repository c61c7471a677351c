"""Tests for the per-site durable event store."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import DBAPIError

from site_analytics.config import CoreConfig
from site_analytics.core.models import EventListFilters, EventSummaryOptions, Granularity, canonicalize
from site_analytics.db import queries
from site_analytics.db.durable import DurableEventStore, SiteStoreRegistry, StoreState, sqlite_engine
from site_analytics.errors import ValidationError

MEMORY_URL = "sqlite+aiosqlite:///:memory:"


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def make_store(site_id=1, team_id=10):
    return DurableEventStore(site_id, sqlite_engine(MEMORY_URL), tag_id=f"tag-{site_id}", team_id=team_id)


def make_event(event="page_view", at=None, site_id=1, **fields):
    payload = {"event": event, "tag_id": f"tag-{site_id}", "site_id": site_id, "team_id": 10, **fields}
    if at is not None:
        payload["created_at"] = at
    return canonicalize(payload)


def with_store(scenario, **store_kwargs):
    """Run scenario(store) against a fresh in-memory store and dispose it."""
    async def runner():
        store = make_store(**store_kwargs)
        try:
            return await scenario(store)
        finally:
            await store.close()
    return run_async(runner())


BASE = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


class TestInsert:
    """Test writes and the store lifecycle."""

    def test_insert_assigns_id_and_timestamps(self):
        async def scenario(store):
            assert store.state is StoreState.UNINITIALIZED
            stored = await store.insert(make_event(page_url="https://example.com/"))
            return store, stored

        store, stored = with_store(scenario)
        assert stored.id == 1
        assert stored.site_id == 1
        assert stored.team_id == 10
        assert stored.account_id == 10
        assert stored.created_at.tzinfo == timezone.utc
        assert stored.page_url == "https://example.com/"
        assert store.state is StoreState.ACTIVE

    def test_reads_do_not_activate(self):
        async def scenario(store):
            await store.list_events()
            return store.state

        assert with_store(scenario) is StoreState.UNINITIALIZED

    def test_insert_many_single_transaction(self):
        async def scenario(store):
            stored = await store.insert_many([make_event("a"), make_event("b"), make_event("c")])
            page = await store.list_events()
            return stored, page

        stored, page = with_store(scenario)
        assert [event.id for event in stored] == [1, 2, 3]
        assert page.pagination.total == 3

    def test_empty_batch_rejected(self):
        async def scenario(store):
            with pytest.raises(ValidationError):
                await store.insert_many([])

        with_store(scenario)

    def test_foreign_site_rejected(self):
        """A store never accepts another site's event."""
        async def scenario(store):
            with pytest.raises(ValidationError):
                await store.insert(make_event(site_id=2))
            return await store.has_events()

        assert with_store(scenario) is False

    def test_maps_round_trip(self):
        async def scenario(store):
            await store.insert(make_event("conversion", custom_data={"plan": "pro"}))
            return await store.list_events()

        page = with_store(scenario)
        assert page.events[0].custom_data == {"plan": "pro"}
        assert page.events[0].query_params is None

    def test_foreign_team_rejected(self):
        async def scenario(store):
            with pytest.raises(ValidationError):
                await store.insert(make_event(team_id=20))
            return await store.has_events()

        assert with_store(scenario) is False


class TestListEvents:
    """Test filtering, ordering and pagination."""

    def test_conversion_filter_counts(self):
        """Filtered total and all-time total are reported separately."""
        async def scenario(store):
            for minute in range(3):
                await store.insert(make_event("page_view", at=BASE + timedelta(minutes=minute)))
            await store.insert(make_event("conversion", at=BASE + timedelta(minutes=5)))
            return await store.list_events(EventListFilters(event_type="conversion"))

        page = with_store(scenario)
        assert page.error is False
        assert len(page.events) == 1
        assert page.events[0].event == "conversion"
        assert page.pagination.total == 1
        assert page.total_all_time == 4

    def test_newest_first(self):
        async def scenario(store):
            await store.insert(make_event("first", at=BASE))
            await store.insert(make_event("third", at=BASE + timedelta(hours=2)))
            await store.insert(make_event("second", at=BASE + timedelta(hours=1)))
            return await store.list_events()

        page = with_store(scenario)
        assert [event.event for event in page.events] == ["third", "second", "first"]

    def test_ties_ordered_by_id(self):
        async def scenario(store):
            await store.insert(make_event("a", at=BASE))
            await store.insert(make_event("b", at=BASE))
            return await store.list_events()

        page = with_store(scenario)
        assert [event.event for event in page.events] == ["b", "a"]

    def test_unfiltered_all_time_equals_total(self):
        async def scenario(store):
            await store.insert_many([make_event(at=BASE), make_event(at=BASE)])
            return await store.list_events()

        page = with_store(scenario)
        assert page.pagination.total == 2
        assert page.total_all_time == 2

    def test_has_more_boundaries(self):
        async def scenario(store):
            await store.insert_many([make_event(at=BASE + timedelta(seconds=i)) for i in range(25)])
            first = await store.list_events(EventListFilters(limit=10, offset=0))
            last = await store.list_events(EventListFilters(limit=5, offset=20))
            beyond = await store.list_events(EventListFilters(limit=10, offset=30))
            return first, last, beyond

        first, last, beyond = with_store(scenario)
        assert len(first.events) == 10
        assert first.pagination.has_more is True
        assert len(last.events) == 5
        assert last.pagination.has_more is False
        assert beyond.events == []
        assert beyond.pagination.total == 25

    def test_end_date_covers_whole_day(self):
        """An end date includes 23:59:59.5 but not midnight of the next day."""
        async def scenario(store):
            await store.insert(make_event("late", at=datetime(2024, 1, 15, 23, 59, 59, 500000, tzinfo=timezone.utc)))
            await store.insert(make_event("next", at=datetime(2024, 1, 16, tzinfo=timezone.utc)))
            return await store.list_events(EventListFilters(start_date="2024-01-15", end_date="2024-01-15"))

        page = with_store(scenario)
        assert [event.event for event in page.events] == ["late"]
        assert page.total_all_time == 2

    def test_filters_are_anded(self):
        async def scenario(store):
            await store.insert(make_event("page_view", country="US", device_type="mobile"))
            await store.insert(make_event("page_view", country="US", device_type="desktop"))
            await store.insert(make_event("page_view", country="DE", device_type="mobile"))
            return await store.list_events(EventListFilters(country="US", device_type="mobile"))

        page = with_store(scenario)
        assert page.pagination.total == 1
        assert page.events[0].country == "US"
        assert page.events[0].device_type == "mobile"

    def test_empty_store(self):
        page = with_store(lambda store: store.list_events(EventListFilters(event_type="x")))
        assert page.events == []
        assert page.pagination.total == 0
        assert page.total_all_time == 0

    def test_failed_row_fetch_reports_error(self):
        """A failed page query yields error=True with no rows and a pagination block."""
        conn = AsyncMock()
        conn.execute.side_effect = DBAPIError("SELECT", {}, Exception("disk I/O error"))

        page = run_async(queries.list_page(conn, EventListFilters(limit=20, offset=40)))
        assert page.error is True
        assert page.events is None
        assert page.pagination.offset == 40
        assert page.pagination.limit == 20
        assert page.pagination.total == 0
        assert page.pagination.has_more is False


class TestMaintenance:
    """Test deletion, visitors, schema and health."""

    def test_delete_requires_criterion(self):
        async def scenario(store):
            with pytest.raises(ValidationError):
                await store.delete_events()

        with_store(scenario)

    def test_delete_by_type(self):
        async def scenario(store):
            await store.insert_many([make_event("page_view"), make_event("conversion"), make_event("conversion")])
            deleted = await store.delete_events(event_type="conversion")
            remaining = await store.list_events()
            return deleted, remaining

        deleted, remaining = with_store(scenario)
        assert deleted == 2
        assert remaining.pagination.total == 1

    def test_delete_older_than(self):
        async def scenario(store):
            await store.insert(make_event("old", at=BASE - timedelta(days=60)))
            await store.insert(make_event("new", at=BASE))
            deleted = await store.delete_events(older_than=BASE - timedelta(days=30))
            remaining = await store.list_events()
            return deleted, remaining

        deleted, remaining = with_store(scenario)
        assert deleted == 1
        assert [event.event for event in remaining.events] == ["new"]

    def test_current_visitors(self):
        """Distinct non-empty rids within the last five minutes."""
        async def scenario(store):
            await store.insert_many([
                make_event(rid="visitor-a"),
                make_event(rid="visitor-a"),
                make_event(rid="visitor-b"),
                make_event(rid=""),
                make_event(),
                make_event(rid="visitor-c", at=datetime.now(timezone.utc) - timedelta(hours=1)),
            ])
            return await store.current_visitors()

        assert with_store(scenario) == 2

    def test_count_events_since(self):
        async def scenario(store):
            await store.insert(make_event(at=BASE - timedelta(days=2)))
            await store.insert(make_event(at=BASE))
            return await store.count_events_since(BASE - timedelta(days=1))

        assert with_store(scenario) == 1

    def test_describe_schema(self):
        columns = with_store(lambda store: store.describe_schema())
        by_name = {column["name"]: column for column in columns}
        assert by_name["id"]["primary_key"] is True
        assert by_name["event"]["nullable"] is False
        assert "created_at" in by_name
        assert "rid" in by_name

    def test_health_check(self):
        async def scenario(store):
            await store.insert(make_event())
            return await store.health_check()

        health = with_store(scenario)
        assert health["status"] == "healthy"
        assert health["state"] == "active"
        assert health["total_events"] == 1


class TestRunSqlQuery:
    """Test the read-only SQL guard."""

    def test_select_runs_with_limit(self):
        async def scenario(store):
            await store.insert_many([make_event("page_view"), make_event("page_view"), make_event("conversion")])
            return await store.run_sql_query(
                "SELECT event, COUNT(*) AS n FROM site_events GROUP BY event ORDER BY n DESC;"
            )

        rows = with_store(scenario)
        assert rows == [{"event": "page_view", "n": 2}, {"event": "conversion", "n": 1}]

    def test_colon_inside_literal(self):
        async def scenario(store):
            await store.insert(make_event(page_url="https://example.com/a"))
            return await store.run_sql_query(
                "SELECT COUNT(*) AS n FROM site_events WHERE page_url = 'https://example.com/a'"
            )

        assert with_store(scenario) == [{"n": 1}]

    @pytest.mark.parametrize("query", [
        "DELETE FROM site_events",
        "SELECT * FROM site_events; DROP TABLE site_events",
        "SELECT 1",
        "PRAGMA table_info(site_events)",
        "",
    ])
    def test_rejected(self, query):
        async def scenario(store):
            with pytest.raises(ValidationError):
                await store.run_sql_query(query)

        with_store(scenario)

    def test_keyword_inside_literal_allowed(self):
        """Quoted values are not mistaken for statements."""
        error = queries.validate_sql_query("SELECT * FROM site_events WHERE event = 'delete; drop'")
        assert error is None

    def test_existing_limit_kept(self):
        assert queries.apply_row_limit("SELECT * FROM site_events LIMIT 5", 500).endswith("LIMIT 5")
        assert queries.apply_row_limit("SELECT * FROM site_events", 500).endswith("LIMIT 500")


class TestSiteStoreRegistry:
    """One store per site, looked up by id or tag."""

    def test_same_store_per_site(self):
        async def scenario():
            registry = SiteStoreRegistry(lambda site_id: sqlite_engine(MEMORY_URL))
            try:
                first = registry.get(1, tag_id="tag-1", team_id=10)
                again = registry.get(1)
                other = registry.get(2, tag_id="tag-2")
                return first, again, other, await registry.find_by_tag("tag-1"), await registry.open(3)
            finally:
                await registry.close()

        first, again, other, by_tag, missing = run_async(scenario())
        assert first is again
        assert first is not other
        assert by_tag is first
        assert missing is None

    def test_stores_are_isolated(self):
        async def scenario():
            registry = SiteStoreRegistry(lambda site_id: sqlite_engine(MEMORY_URL))
            try:
                await registry.get(1).insert(make_event(site_id=1))
                return await registry.get(2).has_events()
            finally:
                await registry.close()

        assert run_async(scenario()) is False

    def test_reopened_database_recovers_identity(self, tmp_path):
        """Tag, team and state come back from a store file written earlier."""
        path = tmp_path / "site-4.db"
        config = CoreConfig(durable_store_dir=str(tmp_path))

        async def write():
            registry = SiteStoreRegistry.from_config(config)
            try:
                await registry.get(4, tag_id="tag-4", team_id=40).insert(make_event(site_id=4, team_id=40))
            finally:
                await registry.close()

        async def reopen():
            registry = SiteStoreRegistry.from_config(config)
            try:
                store = await registry.find_by_tag("tag-4")
                return store.site_id, store.tag_id, store.team_id, store.state, await registry.open(9)
            finally:
                await registry.close()

        run_async(write())
        assert path.exists()
        assert run_async(reopen()) == (4, "tag-4", 40, StoreState.ACTIVE, None)
        assert config.persisted_site_ids() == [4]


class TestScopedSqlQuery:
    """Ad-hoc queries only ever see the store's own site."""

    def test_leading_cte_merged(self):
        scoped = queries.scope_to_site("WITH e AS (SELECT * FROM site_events) SELECT * FROM e", 3, 7)
        assert scoped == (
            "WITH site_events AS (SELECT * FROM main.site_events WHERE site_id = 3 AND team_id = 7), "
            "e AS (SELECT * FROM site_events) SELECT * FROM e"
        )

    def test_postgresql_source_unqualified(self):
        scoped = queries.scope_to_site("SELECT * FROM site_events", 3, dialect="postgresql")
        assert scoped == (
            "WITH site_events AS (SELECT * FROM site_events WHERE site_id = 3) SELECT * FROM site_events"
        )

    def test_rows_of_other_sites_hidden(self):
        async def scenario(store):
            await store.insert(make_event())
            # a row another process wrote under a different site id
            async with store.engine.begin() as conn:
                values = queries.record_values(make_event(site_id=2), 2, 10, datetime.now(timezone.utc))
                await queries.insert_event(conn, values)
            return await store.run_sql_query("SELECT site_id FROM site_events")

        assert with_store(scenario) == [{"site_id": 1}]


class TestAggregates:
    """Stats, summary and time series straight from one store."""

    def test_stats_top_values(self):
        async def scenario(store):
            await store.insert_many(
                [make_event("page_view", referer="https://google.com") for _ in range(12)]
                + [make_event(f"event_{n:02d}") for n in range(11)]
            )
            return await store.get_stats()

        stats = with_store(scenario)
        assert stats.total_events == 23
        assert len(stats.events_by_type) == 10
        assert stats.events_by_type[0].value == "page_view"
        assert stats.events_by_type[1].value == "event_00"
        assert stats.top_referers[0].value == "https://google.com"

    def test_summary_limits_clamped(self):
        async def scenario(store):
            await store.insert(make_event())
            return await store.get_event_summary(EventSummaryOptions(limit=10_000, offset=-5))

        result = with_store(scenario)
        assert result.pagination.limit == 500
        assert result.pagination.offset == 0
        assert [row.event for row in result.summary] == ["page_view"]

    def test_weekly_buckets(self):
        async def scenario(store):
            await store.insert_many([
                make_event(at="2024-01-01T10:00:00Z"),
                make_event(at="2024-01-07T10:00:00Z"),
                make_event(at="2024-01-08T10:00:00Z"),
            ])
            return await store.get_time_series(granularity=Granularity.WEEK)

        series = with_store(scenario)
        assert [(point.date, point.count) for point in series.data] == [("2024-W01", 2), ("2024-W02", 1)]
