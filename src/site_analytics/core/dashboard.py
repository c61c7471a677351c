"""
Dashboard query service.

Turns request-level inputs (tenant, site, date range, filters, widgets) into
adapter calls, and keeps "no data" distinct from "new site" for callers.
"""
import logging
from typing import Any, Iterable, Mapping

from pydantic import BaseModel

from ..db.dispatcher import AdapterDispatcher
from ..db.sites import SiteDirectory
from ..errors import TenantMismatchError, ValidationError, with_deadline
from ..reports.compiler import TenantScope, compile_widget_query, shape_widget_rows
from ..reports.models import ReportWidgetConfig, WidgetFilters
from .models import (
    DashboardData, DashboardOptions, DateRange, EventListFilters, EventListResult,
    EventSummaryOptions, EventSummaryResult, Granularity, Pagination, Site, SiteStats,
    StoredEvent, TenantContext, TimeSeriesResult, canonicalize,
)

logger = logging.getLogger(__name__)


class WidgetResult(BaseModel):
    """Chart data for one widget."""
    widget_id: str
    chart_type: str
    query: str
    data: list[dict[str, Any]]


class DashboardQueryService:
    """Entry point for ingestion, dashboards, event lists and widgets."""

    def __init__(
        self,
        dispatcher: AdapterDispatcher,
        sites: SiteDirectory,
        query_timeout: float | None = None,
    ):
        self.dispatcher = dispatcher
        self.sites = sites
        self.query_timeout = query_timeout

    # =========================================================================
    # SITE RESOLUTION
    # =========================================================================

    async def _resolve_site(
        self,
        tenant: TenantContext,
        site_id: int | None = None,
        tag_id: str | None = None,
    ) -> Site:
        """Resolve either identity to a Site owned by the tenant.

        Raises:
            TenantMismatchError: If the site is unknown or owned by another team
        """
        if (site_id is None) == (tag_id is None):
            raise ValidationError("Exactly one of site_id or tag_id must be provided")

        if site_id is not None:
            site = await self.sites.get_site(site_id)
        else:
            site = await self.sites.get_site_for_tag(tag_id)

        if site is None or not tenant.owns(site):
            logger.warning(f"Team {tenant.team_id} requested site {site_id or tag_id} it does not own")
            raise TenantMismatchError("Site not found for this team")
        return site

    # =========================================================================
    # INGESTION
    # =========================================================================

    async def ingest(self, payload: Mapping[str, Any]) -> StoredEvent | None:
        """Canonicalize a pixel payload and store it in its site's backend.

        The site is resolved from the public tag_id. Returns None when the
        site's backend has no implementation yet.

        Raises:
            ValidationError: For malformed payloads, unknown tags, or a
                payload whose site_id disagrees with its tag_id
        """
        record = canonicalize(payload)
        site = await self.sites.get_site_for_tag(record.tag_id)
        if site is None:
            raise ValidationError(f"Unknown tag_id: {record.tag_id}")
        if record.site_id is not None and record.site_id != site.site_id:
            raise ValidationError("site_id does not match the site for this tag_id")

        record = record.model_copy(update={
            "site_id": site.site_id,
            "team_id": site.team_id,
            "account_id": site.team_id,
        })
        return await self.dispatcher.insert(site.db_adapter, record)

    async def ingest_many(self, payloads: Iterable[Mapping[str, Any]]) -> list[StoredEvent]:
        """Ingest a batch. Every payload is validated before anything is stored."""
        records = [canonicalize(payload) for payload in payloads]
        grouped: dict[int, tuple[Site, list]] = {}
        for record in records:
            site = await self.sites.get_site_for_tag(record.tag_id)
            if site is None:
                raise ValidationError(f"Unknown tag_id: {record.tag_id}")
            if record.site_id is not None and record.site_id != site.site_id:
                raise ValidationError("site_id does not match the site for this tag_id")
            entry = grouped.setdefault(site.site_id, (site, []))
            entry[1].append(record.model_copy(update={
                "site_id": site.site_id,
                "team_id": site.team_id,
                "account_id": site.team_id,
            }))

        stored = []
        for site, batch in grouped.values():
            stored.extend(await self.dispatcher.insert_many(site.db_adapter, batch))
        return stored

    # =========================================================================
    # DASHBOARD
    # =========================================================================

    async def get_dashboard_data(
        self,
        tenant: TenantContext,
        site_id: int | None = None,
        tag_id: str | None = None,
        date_range: DateRange | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> DashboardData:
        """Rows for a site's dashboard plus whether it has ever received events.

        Unknown sites and sites owned by another team produce an empty result
        with site_has_events False, never an error.
        """
        date_range = date_range or DateRange()
        try:
            site = await self._resolve_site(tenant, site_id=site_id, tag_id=tag_id)
        except TenantMismatchError:
            return DashboardData.empty(tenant.team_id, date_range, limit, offset)

        adapter = self.dispatcher.get_adapter(tenant.db_adapter)
        options = DashboardOptions(
            site_id=site.site_id,
            team_id=tenant.team_id,
            date_range=date_range,
            limit=limit,
            offset=offset,
        )
        result = await with_deadline(adapter.query_dashboard(options), self.query_timeout)

        has_events = result.total_all_time > 0
        if not has_events:
            has_events = await with_deadline(
                adapter.site_has_any_events(site.site_id, tenant.team_id), self.query_timeout
            )

        return DashboardData(
            site_id=site.site_id,
            team_id=tenant.team_id,
            date_range=result.date_range or date_range,
            rows=result.rows,
            pagination=result.pagination,
            total_all_time=result.total_all_time,
            site_has_events=has_events,
        )

    async def list_events(
        self,
        tenant: TenantContext,
        site_id: int,
        filters: EventListFilters | None = None,
    ) -> EventListResult:
        """Filtered, paginated events for one of the tenant's sites."""
        filters = filters or EventListFilters()
        try:
            site = await self._resolve_site(tenant, site_id=site_id)
        except TenantMismatchError:
            return EventListResult(
                events=[], pagination=Pagination.build(filters.offset, filters.limit, 0), total_all_time=0,
            )
        adapter = self.dispatcher.get_adapter(tenant.db_adapter)
        return await with_deadline(
            adapter.list_events(site.site_id, tenant.team_id, filters), self.query_timeout
        )

    # =========================================================================
    # AGGREGATES
    # =========================================================================

    async def get_stats(
        self,
        tenant: TenantContext,
        site_id: int,
        date_range: DateRange | None = None,
    ) -> SiteStats:
        """Totals and top values for one of the tenant's sites."""
        try:
            site = await self._resolve_site(tenant, site_id=site_id)
        except TenantMismatchError:
            return SiteStats()
        adapter = self.dispatcher.get_adapter(tenant.db_adapter)
        return await with_deadline(
            adapter.get_stats(site.site_id, tenant.team_id, date_range), self.query_timeout
        )

    async def get_event_summary(
        self,
        tenant: TenantContext,
        site_id: int,
        options: EventSummaryOptions | None = None,
    ) -> EventSummaryResult:
        options = options or EventSummaryOptions()
        try:
            site = await self._resolve_site(tenant, site_id=site_id)
        except TenantMismatchError:
            return EventSummaryResult.empty(options)
        adapter = self.dispatcher.get_adapter(tenant.db_adapter)
        return await with_deadline(
            adapter.get_event_summary(site.site_id, tenant.team_id, options), self.query_timeout
        )

    async def get_time_series(
        self,
        tenant: TenantContext,
        site_id: int,
        date_range: DateRange | None = None,
        granularity: Granularity = Granularity.DAY,
        by_event: bool = False,
    ) -> TimeSeriesResult:
        try:
            site = await self._resolve_site(tenant, site_id=site_id)
        except TenantMismatchError:
            return TimeSeriesResult(granularity=granularity, by_event=by_event)
        adapter = self.dispatcher.get_adapter(tenant.db_adapter)
        return await with_deadline(
            adapter.get_time_series(site.site_id, tenant.team_id, date_range, granularity, by_event),
            self.query_timeout,
        )

    # =========================================================================
    # REPORT WIDGETS
    # =========================================================================

    async def run_widget(
        self,
        tenant: TenantContext,
        site_id: int,
        widget: ReportWidgetConfig,
        filters: WidgetFilters | None = None,
    ) -> WidgetResult:
        """Compile a widget for the tenant's backend, execute it and shape rows.

        Raises:
            TenantMismatchError: If the site is not the tenant's
            InvalidFieldError: If the widget references a disallowed field
        """
        site = await self._resolve_site(tenant, site_id=site_id)
        adapter = self.dispatcher.get_adapter(tenant.db_adapter)

        scope = TenantScope(site.site_id, tenant.team_id) if adapter.shared_tables else None
        query = compile_widget_query(
            widget, adapter.allowed_columns, filters, dialect=adapter.dialect, scope=scope,
        )
        rows = await with_deadline(
            adapter.run_sql_query(site.site_id, tenant.team_id, query), self.query_timeout
        )
        return WidgetResult(
            widget_id=widget.id,
            chart_type=widget.chart_type.value,
            query=query,
            data=shape_widget_rows(widget, rows),
        )
