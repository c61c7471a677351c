"""
Compile report widget configurations into aggregate SQL.

The compiler only produces a query string. Executing it, and mapping raw
rows to chart data, belongs to the resolved backend adapter and the caller.
"""
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import AbstractSet, Any, Mapping

from pydantic import ValidationError as PydanticValidationError

from ..db.schema import SITE_EVENTS_TABLE
from ..errors import ValidationError
from .models import Aggregation, ChartType, ReportWidgetConfig, WidgetFilters
from .validation import (
    TIMESTAMP_FIELD, clamp_limit, escape_literal, is_iso_date,
    quote_identifier, validate_widget_fields,
)

logger = logging.getLogger(__name__)

# Widget filter -> site_events column
FILTER_COLUMNS = {
    "device_type": "device_type",
    "country": "country",
    "city": "city",
    "region": "region",
    "source": "referer",
    "page_url": "page_url",
    "event_name": "event",
}


@dataclass(frozen=True)
class SqlDialect:
    """Backend-specific SQL fragments."""
    name: str

    def as_text(self, column: str) -> str:
        return f"CAST({column} AS TEXT)"

    def as_number(self, column: str) -> str:
        """Numeric value of a column, 0 for NULL or non-numeric values."""
        if self.name == "postgresql":
            text_value = self.as_text(column)
            return (
                f"CASE WHEN {text_value} ~ '^-?[0-9]+(\\.[0-9]+)?$' "
                f"THEN CAST({text_value} AS DOUBLE PRECISION) ELSE 0 END"
            )
        return f"COALESCE(CAST({column} AS REAL), 0)"

    def day_bucket(self, column: str) -> str:
        if self.name == "postgresql":
            return f"to_char({column}, 'YYYY-MM-DD')"
        return f"strftime('%Y-%m-%d', {column})"


SQLITE = SqlDialect("sqlite")
POSTGRESQL = SqlDialect("postgresql")

DIALECTS = {
    "sqlite": SQLITE,
    "postgresql": POSTGRESQL,
    "postgres": POSTGRESQL,
}


@dataclass(frozen=True)
class TenantScope:
    """Tenant predicate for backends that share one table across tenants."""
    site_id: int
    team_id: int

    def predicates(self) -> list[str]:
        return [
            f"{quote_identifier('site_id')} = {int(self.site_id)}",
            f"{quote_identifier('team_id')} = {int(self.team_id)}",
        ]


def metric_expression(widget: ReportWidgetConfig, fields: Mapping[str, str], dialect: SqlDialect) -> str:
    """Aggregate expression for the widget's aggregation kind."""
    if widget.aggregation is Aggregation.COUNT:
        return "COUNT(*)"
    if widget.aggregation is Aggregation.UNIQUE_USERS:
        return f"COUNT(DISTINCT {quote_identifier('rid')})"

    value = dialect.as_number(quote_identifier(fields["y_field"]))
    if widget.aggregation is Aggregation.SUM:
        return f"SUM({value})"
    return f"AVG({value})"


def _day_range(start: Any, end: Any) -> tuple[date, date] | None:
    if not (is_iso_date(start) and is_iso_date(end)):
        return None
    try:
        return date.fromisoformat(start), date.fromisoformat(end) + timedelta(days=1)
    except ValueError:
        return None


def filter_predicates(filters: WidgetFilters | None, dialect: SqlDialect) -> list[str]:
    """Equality predicates for active filters, plus the date range.

    The date range is used only when both bounds are real YYYY-MM-DD dates;
    otherwise it is treated as not supplied. The end day is covered by an
    exclusive bound at midnight of the following day, so every stored
    fraction of its last second is included.
    """
    if filters is None:
        return []

    predicates = []
    created_at = quote_identifier(TIMESTAMP_FIELD)
    day_range = _day_range(filters.start_date, filters.end_date)
    if day_range is not None:
        start, end_exclusive = day_range
        predicates.append(f"{created_at} >= {escape_literal(f'{start.isoformat()} 00:00:00')}")
        predicates.append(f"{created_at} < {escape_literal(f'{end_exclusive.isoformat()} 00:00:00')}")

    for name, column in FILTER_COLUMNS.items():
        value = getattr(filters, name)
        if value is None or value == "":
            continue
        predicates.append(f"{dialect.as_text(quote_identifier(column))} = {escape_literal(value)}")

    return predicates


def _coerce_widget(widget: ReportWidgetConfig | Mapping[str, Any]) -> ReportWidgetConfig:
    if isinstance(widget, ReportWidgetConfig):
        return widget
    try:
        return ReportWidgetConfig.model_validate(widget)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid widget config: {exc.errors()[0].get('msg')}") from exc


def compile_widget_query(
    widget: ReportWidgetConfig | Mapping[str, Any],
    allowed_columns: AbstractSet[str],
    filters: WidgetFilters | None = None,
    dialect: str = "sqlite",
    scope: TenantScope | None = None,
) -> str:
    """Compile one widget into a single aggregate query.

    Args:
        widget: Widget config (untrusted)
        allowed_columns: Names of the columns actually present on site_events
        filters: Optional dashboard filters
        dialect: "sqlite" or "postgresql"
        scope: Tenant predicate, required when the target table is shared

    Returns:
        SQL text ready to execute verbatim

    Raises:
        InvalidFieldError: If a referenced field fails validation
    """
    widget = _coerce_widget(widget)
    sql_dialect = DIALECTS.get(dialect)
    if sql_dialect is None:
        raise ValueError(f"Unsupported SQL dialect: {dialect}")

    fields = validate_widget_fields(widget, allowed_columns)
    metric = metric_expression(widget, fields, sql_dialect)

    predicates = (scope.predicates() if scope else []) + filter_predicates(filters, sql_dialect)
    where = f"WHERE {' AND '.join(predicates)}" if predicates else ""
    limit = clamp_limit(widget.limit)

    if widget.chart_type is ChartType.SANKEY:
        source = sql_dialect.as_text(quote_identifier(fields["source_field"]))
        target = sql_dialect.as_text(quote_identifier(fields["target_field"]))
        parts = [
            f"SELECT COALESCE({source}, 'Unknown') AS source,",
            f"COALESCE({target}, 'Unknown') AS target,",
            f"{metric} AS value",
            f"FROM {SITE_EVENTS_TABLE}",
            where,
            "GROUP BY 1, 2",
            "ORDER BY value DESC",
            f"LIMIT {limit}",
        ]
    elif fields["x_field"] == TIMESTAMP_FIELD:
        parts = [
            f"SELECT {sql_dialect.day_bucket(quote_identifier(TIMESTAMP_FIELD))} AS x,",
            f"{metric} AS y",
            f"FROM {SITE_EVENTS_TABLE}",
            where,
            "GROUP BY 1",
            "ORDER BY 1 ASC",
        ]
    else:
        x_value = sql_dialect.as_text(quote_identifier(fields["x_field"]))
        parts = [
            f"SELECT COALESCE({x_value}, 'Unknown') AS x,",
            f"{metric} AS y",
            f"FROM {SITE_EVENTS_TABLE}",
            where,
            "GROUP BY 1",
            "ORDER BY y DESC",
            f"LIMIT {limit}",
        ]

    query = " ".join(part for part in parts if part)
    logger.debug(f"Compiled widget {widget.id or '<unsaved>'}: {query}")
    return query


def _number(value: Any) -> int | float:
    if value is None:
        return 0
    number = float(value)
    return int(number) if number.is_integer() else number


def shape_widget_rows(widget: ReportWidgetConfig, rows: list[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Map raw rows to chart data: {source, target, value} or {x, y}."""
    if widget.chart_type is ChartType.SANKEY:
        return [
            {"source": str(row["source"]), "target": str(row["target"]), "value": _number(row["value"])}
            for row in rows
        ]
    return [{"x": row["x"], "y": _number(row["y"])} for row in rows]
