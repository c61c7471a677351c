"""
Adapter dispatch: one interface for callers regardless of backend.

The adapter kind is stored on the tenant when it is created and does not
change afterwards, so lookups are a pure mapping from kind to adapter.
"""
import logging
from typing import Any, Iterable, Mapping

from sqlalchemy.ext.asyncio import create_async_engine

from ..config import CoreConfig
from ..core.models import DashboardOptions, DashboardQueryResult, DBAdapter, EventRecord, StoredEvent
from .adapters import BackendAdapter, EmbeddedPerTenantAdapter, NoDataAdapter, RelationalServerAdapter
from .durable import SiteStoreRegistry

logger = logging.getLogger(__name__)


class AdapterDispatcher:
    """Select the backend adapter for a tenant's stored adapter kind.

    Unrecognized kinds fall back to the default (embedded) adapter. Known
    kinds without a configured adapter get a NoDataAdapter, so dashboards
    render empty instead of failing.
    """

    def __init__(
        self,
        adapters: Mapping[DBAdapter, BackendAdapter],
        default_kind: DBAdapter = DBAdapter.SQLITE,
    ):
        self._adapters = dict(adapters)
        self.default_kind = default_kind
        self._stubs: dict[DBAdapter, NoDataAdapter] = {}

    def _stub(self, kind: DBAdapter) -> NoDataAdapter:
        if kind not in self._stubs:
            logger.warning(f"No adapter configured for '{kind.value}', serving empty results")
            self._stubs[kind] = NoDataAdapter(kind)
        return self._stubs[kind]

    def get_adapter(self, kind: DBAdapter | str | None) -> BackendAdapter:
        try:
            resolved = DBAdapter(kind)
        except ValueError:
            logger.warning(f"Unrecognized adapter kind {kind!r}, using '{self.default_kind.value}'")
            resolved = self.default_kind

        adapter = self._adapters.get(resolved)
        if adapter is None:
            return self._stub(resolved)
        return adapter

    async def insert(self, kind: DBAdapter | str, record: EventRecord) -> StoredEvent | None:
        return await self.get_adapter(kind).insert(record)

    async def insert_many(self, kind: DBAdapter | str, records: Iterable[EventRecord]) -> list[StoredEvent]:
        return await self.get_adapter(kind).insert_many(records)

    async def query_dashboard(self, kind: DBAdapter | str, options: DashboardOptions) -> DashboardQueryResult:
        return await self.get_adapter(kind).query_dashboard(options)

    async def site_has_any_events(self, kind: DBAdapter | str, site_id: int | str, team_id: int) -> bool:
        return await self.get_adapter(kind).site_has_any_events(site_id, team_id)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            close: Any = getattr(adapter, "close", None)
            if close is not None:
                await close()


def build_dispatcher(config: CoreConfig, registry: SiteStoreRegistry | None = None) -> AdapterDispatcher:
    """Build a dispatcher from explicit storage handles in the config."""
    adapters: dict[DBAdapter, BackendAdapter] = {
        DBAdapter.SQLITE: EmbeddedPerTenantAdapter(
            registry or SiteStoreRegistry.from_config(config),
            default_window_days=config.default_window_days,
        ),
    }

    url = config.relational_async_url
    if url:
        engine_kwargs: dict[str, Any] = {"echo": config.echo_sql}
        # Pool parameters only for non-SQLite databases
        if not url.startswith("sqlite"):
            engine_kwargs.update({
                "pool_pre_ping": True,
                "pool_size": 10,
                "max_overflow": 20,
                "pool_recycle": 3600,
            })
        adapters[DBAdapter.POSTGRES] = RelationalServerAdapter(
            create_async_engine(url, **engine_kwargs),
            default_window_days=config.default_window_days,
            max_query_rows=config.max_query_rows,
        )

    return AdapterDispatcher(adapters)
