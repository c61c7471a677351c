"""Core models and the dashboard query service."""

from .dashboard import DashboardQueryService, WidgetResult
from .models import (
    DashboardData, DashboardOptions, DashboardQueryResult, DateRange, DBAdapter,
    EventListFilters, EventListResult, EventRecord, Pagination, Site,
    StoredEvent, TenantContext, canonicalize,
)

__all__ = [
    "DashboardQueryService",
    "WidgetResult",
    "DashboardData",
    "DashboardOptions",
    "DashboardQueryResult",
    "DateRange",
    "DBAdapter",
    "EventListFilters",
    "EventListResult",
    "EventRecord",
    "Pagination",
    "Site",
    "StoredEvent",
    "TenantContext",
    "canonicalize",
]
