"""Custom report documents and the widget SQL compiler."""

from .compiler import TenantScope, compile_widget_query, shape_widget_rows
from .models import ReportConfig, ReportWidgetConfig, WidgetFilters, parse_report_config

__all__ = [
    "TenantScope",
    "compile_widget_query",
    "shape_widget_rows",
    "ReportConfig",
    "ReportWidgetConfig",
    "WidgetFilters",
    "parse_report_config",
]
