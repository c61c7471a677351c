"""
Site directory: resolves numeric site ids and public tag ids to Site records.

Account administration (teams, sites, adapter kinds) lives in a Cloudflare
D1 database and is read through the D1 REST API.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

import httpx

from ..config import CoreConfig
from ..core.models import DBAdapter, Site
from ..errors import BackendUnavailableError

logger = logging.getLogger(__name__)

_SITE_COLUMNS = """
    SELECT s.site_id, s.tag_id, s.team_id, s.domain, s.name, t.db_adapter
    FROM sites s
    LEFT JOIN team t ON t.id = s.team_id
"""


class SiteDirectory(ABC):
    """Lookup of sites and their owning team."""

    @abstractmethod
    async def get_site(self, site_id: int) -> Site | None:
        """Site by numeric id, for authenticated callers."""

    @abstractmethod
    async def get_site_for_tag(self, tag_id: str) -> Site | None:
        """Site by public tag id. Only for pixel-facing ingestion."""

    @abstractmethod
    async def list_team_sites(self, team_id: int) -> list[Site]:
        """All sites owned by a team."""


class StaticSiteDirectory(SiteDirectory):
    """In-process directory over a fixed set of sites."""

    def __init__(self, sites: Iterable[Site] = ()):
        self._by_id: dict[int, Site] = {}
        self._by_tag: dict[str, Site] = {}
        for site in sites:
            self.add(site)

    def add(self, site: Site) -> None:
        self._by_id[site.site_id] = site
        self._by_tag[site.tag_id] = site

    async def get_site(self, site_id: int) -> Site | None:
        return self._by_id.get(site_id)

    async def get_site_for_tag(self, tag_id: str) -> Site | None:
        return self._by_tag.get(tag_id)

    async def list_team_sites(self, team_id: int) -> list[Site]:
        return [site for site in self._by_id.values() if site.team_id == team_id]


class D1SiteDirectory(SiteDirectory):
    """Site directory backed by Cloudflare D1."""

    def __init__(
        self,
        d1_database_id: str,
        cf_account_id: str,
        cf_api_token: str,
        timeout: float = 30.0,
    ):
        self.database_id = d1_database_id
        self.account_id = cf_account_id
        self.api_token = cf_api_token
        self.timeout = timeout
        self.base_url = f"https://api.cloudflare.com/client/v4/accounts/{cf_account_id}/d1/database/{d1_database_id}"

    @classmethod
    def from_config(cls, config: CoreConfig) -> "D1SiteDirectory":
        return cls(
            d1_database_id=config.d1_database_id,
            cf_account_id=config.cf_account_id,
            cf_api_token=config.cf_api_token,
            timeout=config.query_timeout_seconds or 30.0,
        )

    async def _query(self, sql: str, params: Optional[list] = None) -> list[dict]:
        """Execute a SQL query against D1."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/query",
                    headers={
                        "Authorization": f"Bearer {self.api_token}",
                        "Content-Type": "application/json",
                    },
                    json={"sql": sql, "params": params or []},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"D1 request failed: {e}")
            raise BackendUnavailableError("Site directory is unavailable") from e

        if not data.get("success"):
            raise BackendUnavailableError(f"D1 query failed: {data.get('errors')}")

        results = data.get("result", [])
        if results and len(results) > 0:
            return results[0].get("results", [])
        return []

    @staticmethod
    def _row_to_site(row: dict[str, Any]) -> Site:
        adapter = row.get("db_adapter") or DBAdapter.SQLITE.value
        try:
            kind = DBAdapter(adapter)
        except ValueError:
            logger.warning(f"Site {row.get('site_id')} has unknown adapter {adapter!r}")
            kind = DBAdapter.SQLITE
        return Site(
            site_id=row["site_id"],
            team_id=row["team_id"],
            tag_id=row["tag_id"],
            domain=row.get("domain"),
            name=row.get("name"),
            db_adapter=kind,
        )

    async def get_site(self, site_id: int) -> Site | None:
        rows = await self._query(f"{_SITE_COLUMNS} WHERE s.site_id = ? LIMIT 1", [site_id])
        return self._row_to_site(rows[0]) if rows else None

    async def get_site_for_tag(self, tag_id: str) -> Site | None:
        rows = await self._query(f"{_SITE_COLUMNS} WHERE s.tag_id = ? LIMIT 1", [tag_id])
        return self._row_to_site(rows[0]) if rows else None

    async def list_team_sites(self, team_id: int) -> list[Site]:
        rows = await self._query(f"{_SITE_COLUMNS} WHERE s.team_id = ? ORDER BY s.site_id", [team_id])
        return [self._row_to_site(row) for row in rows]
