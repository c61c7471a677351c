"""Tests for site directories."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from site_analytics.core.models import DBAdapter, Site
from site_analytics.db.sites import D1SiteDirectory, StaticSiteDirectory
from site_analytics.errors import BackendUnavailableError


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _get_directory():
    return D1SiteDirectory(
        d1_database_id="test-db",
        cf_account_id="test-account",
        cf_api_token="test-token",
    )


SITE_ROW = {
    "site_id": 42, "tag_id": "abc123", "team_id": 7,
    "domain": "example.com", "name": "Example", "db_adapter": "postgres",
}


class TestD1SiteDirectory:
    """Test D1-backed site lookups."""

    def test_get_site(self):
        directory = _get_directory()
        directory._query = AsyncMock(return_value=[SITE_ROW])

        site = run_async(directory.get_site(42))

        assert site == Site(
            site_id=42, team_id=7, tag_id="abc123",
            domain="example.com", name="Example", db_adapter=DBAdapter.POSTGRES,
        )
        sql, params = directory._query.call_args[0]
        assert "WHERE s.site_id = ?" in sql
        assert params == [42]

    def test_get_site_for_tag(self):
        directory = _get_directory()
        directory._query = AsyncMock(return_value=[SITE_ROW])

        site = run_async(directory.get_site_for_tag("abc123"))

        assert site.site_id == 42
        sql, params = directory._query.call_args[0]
        assert "WHERE s.tag_id = ?" in sql
        assert params == ["abc123"]

    def test_missing_site(self):
        directory = _get_directory()
        directory._query = AsyncMock(return_value=[])
        assert run_async(directory.get_site(1)) is None

    def test_team_without_adapter_defaults_to_sqlite(self):
        directory = _get_directory()
        directory._query = AsyncMock(return_value=[{**SITE_ROW, "db_adapter": None}])
        assert run_async(directory.get_site(42)).db_adapter is DBAdapter.SQLITE

    def test_unknown_adapter_defaults_to_sqlite(self):
        directory = _get_directory()
        directory._query = AsyncMock(return_value=[{**SITE_ROW, "db_adapter": "clickhouse"}])
        assert run_async(directory.get_site(42)).db_adapter is DBAdapter.SQLITE

    def test_list_team_sites(self):
        directory = _get_directory()
        directory._query = AsyncMock(return_value=[SITE_ROW, {**SITE_ROW, "site_id": 43, "tag_id": "def456"}])

        sites = run_async(directory.list_team_sites(7))

        assert [site.site_id for site in sites] == [42, 43]
        assert directory._query.call_args[0][1] == [7]

    def test_network_failure(self):
        directory = _get_directory()
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ConnectError("refused"))):
            with pytest.raises(BackendUnavailableError):
                run_async(directory.get_site(42))

    def test_unsuccessful_response(self):
        directory = _get_directory()
        response = httpx.Response(
            200,
            json={"success": False, "errors": [{"message": "no such table"}]},
            request=httpx.Request("POST", f"{directory.base_url}/query"),
        )
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=response)):
            with pytest.raises(BackendUnavailableError, match="no such table"):
                run_async(directory.get_site(42))

    def test_successful_response(self):
        directory = _get_directory()
        response = httpx.Response(
            200,
            json={"success": True, "result": [{"results": [SITE_ROW]}]},
            request=httpx.Request("POST", f"{directory.base_url}/query"),
        )
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=response)) as post:
            site = run_async(directory.get_site_for_tag("abc123"))

        assert site.tag_id == "abc123"
        assert post.call_args.kwargs["json"]["params"] == ["abc123"]
        assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer test-token"


class TestStaticSiteDirectory:
    """Test the in-process directory."""

    def test_lookups(self):
        one = Site(site_id=1, team_id=10, tag_id="a")
        two = Site(site_id=2, team_id=20, tag_id="b")
        directory = StaticSiteDirectory([one, two])

        assert run_async(directory.get_site(1)) is one
        assert run_async(directory.get_site_for_tag("b")) is two
        assert run_async(directory.get_site(3)) is None
        assert run_async(directory.list_team_sites(10)) == [one]
