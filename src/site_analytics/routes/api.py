"""
HTTP routes for ingestion, dashboards, event lists, aggregates and report
widgets.

Authentication is the host application's concern: it supplies a
resolve_tenant dependency that returns the caller's TenantContext.
"""

import logging
from datetime import date
from typing import Any, Callable

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel

from ..core.dashboard import DashboardQueryService, WidgetResult
from ..core.models import (
    DashboardData, DateRange, EventListFilters, EventListResult, EventSummaryOptions, EventSummaryResult,
    Granularity, SiteStats, SortDirection, SummarySort, TenantContext, TimeSeriesResult,
)
from ..errors import (
    BackendUnavailableError, CancellationError, InvalidFieldError,
    SiteAnalyticsError, TenantMismatchError, ValidationError,
)
from ..reports.models import ReportWidgetConfig, WidgetFilters

logger = logging.getLogger(__name__)


class WidgetQueryRequest(BaseModel):
    site_id: int
    widget: ReportWidgetConfig
    filters: WidgetFilters | None = None


def _parse_date_range(start: str | None = None, end: str | None = None) -> DateRange:
    """Parse optional YYYY-MM-DD bounds into a DateRange.

    An end date covers the whole day.

    Raises:
        HTTPException: If a date is malformed or the range is inverted
    """
    try:
        start_date = date.fromisoformat(start) if start else None
        end_date = date.fromisoformat(end) if end else None
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail="Invalid date format. Use YYYY-MM-DD (e.g., 2024-01-15)"
        ) from None

    if start_date and end_date and end_date < start_date:
        raise HTTPException(
            status_code=400,
            detail="End date must be on or after start date"
        )

    return DateRange(start=start_date, end=end_date)


def _http_error(exc: SiteAnalyticsError) -> HTTPException:
    """Map a library error onto an HTTP status."""
    if isinstance(exc, (ValidationError, InvalidFieldError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, TenantMismatchError):
        return HTTPException(status_code=404, detail="Site not found")
    if isinstance(exc, CancellationError):
        return HTTPException(status_code=504, detail="Query timed out")
    if isinstance(exc, BackendUnavailableError):
        logger.error(f"Backend unavailable: {exc}")
        return HTTPException(status_code=503, detail="Analytics storage is unavailable")
    logger.error(f"Unhandled analytics error: {exc}")
    return HTTPException(status_code=500, detail="Internal error")


def create_events_router(
    service: DashboardQueryService,
    resolve_tenant: Callable[..., Any],
) -> APIRouter:
    """Create the analytics API router.

    Args:
        service: Configured DashboardQueryService
        resolve_tenant: FastAPI dependency returning the caller's TenantContext

    Returns:
        FastAPI APIRouter with the analytics endpoints
    """
    router = APIRouter()

    @router.post("/events", status_code=202)
    async def ingest_events(payload: dict[str, Any] | list[dict[str, Any]] = Body(...)):
        """Accept one pixel payload or a batch."""
        try:
            if isinstance(payload, list):
                stored = await service.ingest_many(payload)
                return {"accepted": len(payload), "stored": len(stored)}
            event = await service.ingest(payload)
        except SiteAnalyticsError as exc:
            raise _http_error(exc) from exc
        return {"accepted": 1, "stored": 0 if event is None else 1}

    @router.get("/dashboard", response_model=DashboardData)
    async def dashboard(
        site_id: int | None = Query(None, description="Internal site id"),
        tag_id: str | None = Query(None, description="Public site tag"),
        start: str | None = Query(None, description="Start date (YYYY-MM-DD)"),
        end: str | None = Query(None, description="End date (YYYY-MM-DD)"),
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
        tenant: TenantContext = Depends(resolve_tenant),
    ):
        date_range = _parse_date_range(start, end)
        try:
            return await service.get_dashboard_data(
                tenant, site_id=site_id, tag_id=tag_id,
                date_range=date_range, limit=limit, offset=offset,
            )
        except SiteAnalyticsError as exc:
            raise _http_error(exc) from exc

    @router.get("/events", response_model=EventListResult)
    async def list_events(
        site_id: int = Query(..., description="Internal site id"),
        start: str | None = Query(None, description="Start date (YYYY-MM-DD)"),
        end: str | None = Query(None, description="End date (YYYY-MM-DD)"),
        event_type: str | None = Query(None),
        country: str | None = Query(None),
        device_type: str | None = Query(None),
        referer: str | None = Query(None),
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
        tenant: TenantContext = Depends(resolve_tenant),
    ):
        date_range = _parse_date_range(start, end)
        filters = EventListFilters(
            start_date=date_range.start,
            end_date=date_range.end,
            event_type=event_type,
            country=country,
            device_type=device_type,
            referer=referer,
            limit=limit,
            offset=offset,
        )
        try:
            return await service.list_events(tenant, site_id, filters)
        except SiteAnalyticsError as exc:
            raise _http_error(exc) from exc

    @router.get("/stats", response_model=SiteStats)
    async def stats(
        site_id: int = Query(..., description="Internal site id"),
        start: str | None = Query(None, description="Start date (YYYY-MM-DD)"),
        end: str | None = Query(None, description="End date (YYYY-MM-DD)"),
        tenant: TenantContext = Depends(resolve_tenant),
    ):
        date_range = _parse_date_range(start, end)
        try:
            return await service.get_stats(tenant, site_id, date_range)
        except SiteAnalyticsError as exc:
            raise _http_error(exc) from exc

    @router.get("/events/summary", response_model=EventSummaryResult)
    async def event_summary(
        site_id: int = Query(..., description="Internal site id"),
        start: str | None = Query(None, description="Start date (YYYY-MM-DD)"),
        end: str | None = Query(None, description="End date (YYYY-MM-DD)"),
        search: str | None = Query(None, description="Substring of the event name"),
        sort_by: SummarySort = Query(SummarySort.COUNT),
        sort_direction: SortDirection = Query(SortDirection.DESC),
        limit: int = Query(50),
        offset: int = Query(0),
        tenant: TenantContext = Depends(resolve_tenant),
    ):
        options = EventSummaryOptions(
            date_range=_parse_date_range(start, end),
            search=search,
            sort_by=sort_by,
            sort_direction=sort_direction,
            limit=limit,
            offset=offset,
        )
        try:
            return await service.get_event_summary(tenant, site_id, options)
        except SiteAnalyticsError as exc:
            raise _http_error(exc) from exc

    @router.get("/timeseries", response_model=TimeSeriesResult)
    async def time_series(
        site_id: int = Query(..., description="Internal site id"),
        start: str | None = Query(None, description="Start date (YYYY-MM-DD)"),
        end: str | None = Query(None, description="End date (YYYY-MM-DD)"),
        granularity: Granularity = Query(Granularity.DAY),
        by_event: bool = Query(False),
        tenant: TenantContext = Depends(resolve_tenant),
    ):
        date_range = _parse_date_range(start, end)
        try:
            return await service.get_time_series(tenant, site_id, date_range, granularity, by_event)
        except SiteAnalyticsError as exc:
            raise _http_error(exc) from exc

    @router.post("/reports/widgets/query", response_model=WidgetResult)
    async def query_widget(
        request: WidgetQueryRequest,
        tenant: TenantContext = Depends(resolve_tenant),
    ):
        try:
            return await service.run_widget(tenant, request.site_id, request.widget, request.filters)
        except SiteAnalyticsError as exc:
            raise _http_error(exc) from exc

    return router
