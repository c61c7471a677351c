"""
SQLAlchemy table definition for stored site events.

The same table layout is used by the shared relational server (one table for
every tenant) and by each embedded per-site store.
"""
from sqlalchemy import JSON, Column, DateTime, Index, Integer, MetaData, String, Table, Text

metadata = MetaData()

SITE_EVENTS_TABLE = "site_events"

site_events = Table(
    SITE_EVENTS_TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # Tenancy
    Column("site_id", Integer, nullable=False, index=True),
    Column("tag_id", String(64), nullable=False, index=True),
    Column("team_id", Integer, nullable=True, index=True),
    # Classification
    Column("event", String(255), nullable=False),
    # Context
    Column("page_url", Text),
    Column("client_page_url", Text),
    Column("referer", Text),
    Column("query_params", JSON),
    Column("custom_data", JSON),
    Column("bot_data", JSON),
    # Client / device
    Column("browser", String(64)),
    Column("operating_system", String(64)),
    Column("device_type", String(32)),
    Column("screen_width", Integer),
    Column("screen_height", Integer),
    # Geography
    Column("country", String(64)),
    Column("region", String(128)),
    Column("city", String(128)),
    Column("postal", String(32)),
    # Session
    Column("rid", String(128)),
    # Naive UTC
    Column("created_at", DateTime, nullable=False, index=True),
    Column("updated_at", DateTime, nullable=False),
    Index("idx_site_events_site_created", "site_id", "created_at"),
    Index("idx_site_events_team_site", "team_id", "site_id"),
)

# Read-only allow-list for report widgets, derived once from the table.
QUERYABLE_COLUMNS: frozenset[str] = frozenset(column.name for column in site_events.columns)
