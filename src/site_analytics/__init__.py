"""
Multi-tenant web analytics core: event storage, dashboard queries and
custom report widgets.

Usage:
    from site_analytics import CoreConfig, setup_core

    core = setup_core(CoreConfig.from_env())

    # Mount the API behind your own authentication
    app.include_router(
        core.events_router(resolve_tenant=current_tenant),
        prefix="/api/analytics",
    )

    # Or call the service directly
    data = await core.service.get_dashboard_data(tenant, site_id=42)
"""

from typing import Any, Callable

from .config import CoreConfig
from .core.dashboard import DashboardQueryService, WidgetResult
from .core.models import (
    DashboardData, DateRange, DBAdapter, EventListFilters, EventListResult, EventRecord,
    EventSummaryOptions, EventSummaryResult, Granularity, Site, SiteStats, StoredEvent,
    TenantContext, TimeSeriesResult, canonicalize,
)
from .db.dispatcher import AdapterDispatcher, build_dispatcher
from .db.sites import D1SiteDirectory, SiteDirectory, StaticSiteDirectory
from .errors import (
    BackendUnavailableError, CancellationError, InvalidFieldError,
    SiteAnalyticsError, TenantMismatchError, ValidationError,
)
from .reports.compiler import compile_widget_query

__version__ = "0.1.0"
__all__ = [
    "setup_core",
    "AnalyticsCore",
    "CoreConfig",
    "DashboardQueryService",
    "WidgetResult",
    "DashboardData",
    "DateRange",
    "DBAdapter",
    "EventListFilters",
    "EventListResult",
    "EventRecord",
    "EventSummaryOptions",
    "EventSummaryResult",
    "Granularity",
    "SiteStats",
    "TimeSeriesResult",
    "Site",
    "StoredEvent",
    "TenantContext",
    "canonicalize",
    "compile_widget_query",
    "AdapterDispatcher",
    "SiteDirectory",
    "StaticSiteDirectory",
    "D1SiteDirectory",
    "SiteAnalyticsError",
    "ValidationError",
    "InvalidFieldError",
    "TenantMismatchError",
    "BackendUnavailableError",
    "CancellationError",
]


class AnalyticsCore:
    """Wired-up analytics core: dispatcher, site directory and service."""

    def __init__(self, config: CoreConfig, sites: SiteDirectory, dispatcher: AdapterDispatcher):
        self.config = config
        self.sites = sites
        self.dispatcher = dispatcher
        self.service = DashboardQueryService(
            dispatcher, sites, query_timeout=config.query_timeout_seconds,
        )

    def events_router(self, resolve_tenant: Callable[..., Any]):
        """Create the FastAPI router for this core."""
        from .routes import create_events_router
        return create_events_router(self.service, resolve_tenant)

    async def close(self) -> None:
        await self.dispatcher.close()


def setup_core(config: CoreConfig | None = None, sites: SiteDirectory | None = None) -> AnalyticsCore:
    """Set up the analytics core.

    Args:
        config: Core configuration (defaults to CoreConfig.from_env())
        sites: Site directory; defaults to the D1 directory when configured

    Returns:
        AnalyticsCore instance
    """
    config = config or CoreConfig.from_env()
    if sites is None:
        if not config.has_site_directory:
            raise ValueError("A site directory is required: pass sites= or configure D1 credentials")
        sites = D1SiteDirectory.from_config(config)
    return AnalyticsCore(config, sites, build_dispatcher(config))
