"""
Configuration for the site analytics core.
"""
import logging
import os
import re
from dataclasses import dataclass
from typing import Mapping

logger = logging.getLogger(__name__)

ENV_PREFIX = "SITE_ANALYTICS_"

# Widget and ad-hoc query row caps
DEFAULT_WIDGET_LIMIT = 25
MAX_QUERY_ROWS = 500

# One SQLite file per site in durable_store_dir
STORE_FILE_PATTERN = re.compile(r"site-([0-9]+)\.db")


class InvalidConfigError(ValueError):
    """Raised when configuration values are out of range."""
    pass


@dataclass
class CoreConfig:
    """Storage handles and query defaults for one deployment.

    Usage:
        config = CoreConfig(
            relational_database_url="postgresql://user:pass@db/analytics",
            durable_store_dir="/var/lib/site-analytics",
        )
        service = setup_core(config)
    """

    # Variant A: shared relational server. None disables the postgres kind.
    relational_database_url: str | None = None

    # Variant B: one SQLite file per site. None keeps stores in memory.
    durable_store_dir: str | None = None

    # Site directory (Cloudflare D1 REST API)
    d1_database_id: str | None = None
    cf_account_id: str | None = None
    cf_api_token: str | None = None

    # Query defaults
    default_window_days: int = 7
    query_timeout_seconds: float | None = 30.0
    max_query_rows: int = MAX_QUERY_ROWS

    # Debug
    echo_sql: bool = False

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.default_window_days < 1:
            raise InvalidConfigError(
                f"default_window_days must be at least 1. Got {self.default_window_days}."
            )
        if not 1 <= self.max_query_rows <= MAX_QUERY_ROWS:
            raise InvalidConfigError(
                f"max_query_rows must be between 1 and {MAX_QUERY_ROWS}. "
                f"Got {self.max_query_rows}."
            )
        if self.query_timeout_seconds is not None and self.query_timeout_seconds <= 0:
            raise InvalidConfigError("query_timeout_seconds must be positive or None")
        if self.durable_store_dir is None:
            logger.debug("No durable_store_dir set: per-site stores are in-memory")

    @property
    def has_site_directory(self) -> bool:
        """Check if D1 credentials for the site directory are configured."""
        return bool(self.d1_database_id and self.cf_account_id and self.cf_api_token)

    @property
    def relational_async_url(self) -> str | None:
        """Relational URL rewritten for the asyncpg driver."""
        url = self.relational_database_url
        if url and url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif url and url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        return url

    def durable_store_url(self, site_id: int) -> str:
        """SQLAlchemy URL of the embedded store for one site."""
        if self.durable_store_dir is None:
            return "sqlite+aiosqlite:///:memory:"
        path = os.path.join(self.durable_store_dir, f"site-{int(site_id)}.db")
        return f"sqlite+aiosqlite:///{path}"

    def persisted_site_ids(self) -> list[int]:
        """Site ids that already have a store file in durable_store_dir."""
        if self.durable_store_dir is None or not os.path.isdir(self.durable_store_dir):
            return []
        site_ids = []
        for name in os.listdir(self.durable_store_dir):
            match = STORE_FILE_PATTERN.fullmatch(name)
            if match:
                site_ids.append(int(match.group(1)))
        return sorted(site_ids)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "CoreConfig":
        """Build a config from SITE_ANALYTICS_* environment variables."""
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value if value else None

        timeout = get("QUERY_TIMEOUT_SECONDS")
        return cls(
            relational_database_url=get("DATABASE_URL"),
            durable_store_dir=get("STORE_DIR"),
            d1_database_id=get("D1_DATABASE_ID"),
            cf_account_id=get("CF_ACCOUNT_ID"),
            cf_api_token=get("CF_API_TOKEN"),
            default_window_days=int(get("DEFAULT_WINDOW_DAYS") or 7),
            query_timeout_seconds=float(timeout) if timeout else 30.0,
            max_query_rows=int(get("MAX_QUERY_ROWS") or MAX_QUERY_ROWS),
            echo_sql=(get("ECHO_SQL") or "").lower() in ("1", "true", "yes"),
        )
