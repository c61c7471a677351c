"""Event storage: per-site stores, backend adapters and the dispatcher."""

from .adapters import BackendAdapter, EmbeddedPerTenantAdapter, NoDataAdapter, RelationalServerAdapter
from .dispatcher import AdapterDispatcher, build_dispatcher
from .durable import DurableEventStore, SiteStoreRegistry
from .sites import D1SiteDirectory, SiteDirectory, StaticSiteDirectory

__all__ = [
    "BackendAdapter",
    "EmbeddedPerTenantAdapter",
    "NoDataAdapter",
    "RelationalServerAdapter",
    "AdapterDispatcher",
    "build_dispatcher",
    "DurableEventStore",
    "SiteStoreRegistry",
    "D1SiteDirectory",
    "SiteDirectory",
    "StaticSiteDirectory",
]
