"""
Validation for user-controlled parts of widget queries.

Identifiers (column names) cannot be bound as query parameters, so every
field a widget references must pass two checks before any SQL is built:
a strict identifier pattern, then membership in the allow-list of real
columns. Literal values are defended separately by escaping.
"""
import math
import re
from typing import AbstractSet, Any

from ..config import DEFAULT_WIDGET_LIMIT, MAX_QUERY_ROWS
from ..errors import InvalidFieldError
from .models import Aggregation, ChartType, ReportWidgetConfig

SAFE_IDENTIFIER_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
ISO_DATE_PATTERN = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")

# Creation timestamp; an x_field of this column makes a time series
TIMESTAMP_FIELD = "created_at"


def validate_field(name: Any, allowed_columns: AbstractSet[str]) -> str:
    """Return name if it is a bare identifier naming an allowed column.

    Raises:
        InvalidFieldError: If either rule rejects the name
    """
    if not isinstance(name, str) or not SAFE_IDENTIFIER_PATTERN.fullmatch(name):
        raise InvalidFieldError(name, "Invalid field name")
    if name not in allowed_columns:
        raise InvalidFieldError(name, "Field is not available in site_events")
    return name


def validate_widget_fields(widget: ReportWidgetConfig, allowed_columns: AbstractSet[str]) -> dict[str, str]:
    """Validate every field the widget's query will reference.

    Returns a dict with the validated names under the keys x_field, y_field,
    source_field and target_field, for the ones this widget uses.
    """
    fields = {}
    if widget.chart_type is ChartType.SANKEY:
        fields["source_field"] = validate_field(widget.source_field, allowed_columns)
        fields["target_field"] = validate_field(widget.target_field, allowed_columns)
    else:
        fields["x_field"] = validate_field(widget.x_field, allowed_columns)
    if widget.aggregation in (Aggregation.SUM, Aggregation.AVG):
        fields["y_field"] = validate_field(widget.y_field, allowed_columns)
    return fields


def quote_identifier(name: str) -> str:
    """Double-quote an already validated identifier."""
    return f'"{name}"'


def escape_literal(value: Any) -> str:
    """Render a value as a single-quoted SQL string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def is_iso_date(value: Any) -> bool:
    """True for strings of the exact form YYYY-MM-DD."""
    return isinstance(value, str) and ISO_DATE_PATTERN.fullmatch(value) is not None


def clamp_limit(value: Any) -> int:
    """Clamp a widget row limit to [1, 500].

    Fractions are floored; non-numeric or non-finite values use the default.
    """
    if isinstance(value, bool):
        return DEFAULT_WIDGET_LIMIT
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_WIDGET_LIMIT
    if not math.isfinite(number):
        return DEFAULT_WIDGET_LIMIT
    return min(max(math.floor(number), 1), MAX_QUERY_ROWS)
