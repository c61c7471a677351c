"""
Report widget documents.

Reports are stored as versioned JSON (version 1) and recompiled to SQL on
every render; compiled SQL is never persisted. The report UI writes
camelCase keys, so every field also accepts its camelCase alias.
"""
import json
from enum import Enum
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..errors import ValidationError

REPORT_CONFIG_VERSION = 1


class ChartType(str, Enum):
    BAR = "bar"
    LINE = "line"
    PIE = "pie"
    FUNNEL = "funnel"
    SANKEY = "sankey"


class Aggregation(str, Enum):
    COUNT = "count"
    UNIQUE_USERS = "unique_users"
    SUM = "sum"
    AVG = "avg"


class ColorPalette(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    MIXED = "mixed"
    LINE = "line"
    FUNNEL = "funnel"


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class WidgetLayout(_Document):
    x: int = 0
    y: int = 0
    w: int = 6
    h: int = 4


class ReportWidgetConfig(_Document):
    """A single chart definition. Field names in it are untrusted input."""
    id: str = ""
    title: str = ""
    chart_type: ChartType = ChartType.BAR
    x_field: str = ""
    y_field: str = ""
    aggregation: Aggregation = Aggregation.COUNT
    source_field: str = ""
    target_field: str = ""
    color_palette: ColorPalette = ColorPalette.PRIMARY
    custom_primary_color: str | None = None
    custom_secondary_color: str | None = None
    # Clamped at compile time; may arrive as anything numeric, NaN included
    limit: float = 25
    layout: WidgetLayout = Field(default_factory=WidgetLayout)


class ReportConfig(_Document):
    version: Literal[1] = REPORT_CONFIG_VERSION
    widgets: list[ReportWidgetConfig] = Field(default_factory=list)


class ReportRecord(_Document):
    """A named report owned by one site and team."""
    uuid: str
    site_id: int
    team_id: int
    name: str
    description: str | None = None
    config: ReportConfig


class WidgetFilters(_Document):
    """Dashboard filters applied to a widget query.

    Dates are YYYY-MM-DD strings; anything else is ignored at compile time.
    """
    start_date: str | None = None
    end_date: str | None = None
    device_type: str | None = None
    country: str | None = None
    city: str | None = None
    region: str | None = None
    source: str | None = None
    page_url: str | None = None
    event_name: str | None = None


def parse_report_config(document: str | bytes | Mapping[str, Any]) -> ReportConfig:
    """Read a stored report document.

    Raises:
        ValidationError: If the document is not valid JSON, has an unknown
            version, or a widget has the wrong shape
    """
    if isinstance(document, (str, bytes)):
        try:
            document = json.loads(document)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Report config is not valid JSON: {exc.msg}") from exc
    if not isinstance(document, Mapping):
        raise ValidationError("Report config must be a JSON object")
    if document.get("version") != REPORT_CONFIG_VERSION:
        raise ValidationError(f"Unsupported report config version: {document.get('version')!r}")
    try:
        return ReportConfig.model_validate(document)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid report config: {exc.errors()[0].get('msg')}") from exc
