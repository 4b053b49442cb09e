"""Marker report building and report parameters."""

from .builder import (
    MarkerReport,
    deduplicate_descriptions,
    annotate_markers,
    reorder_columns,
    sort_markers,
    top_n_per_group,
    add_mean_fold_change,
    export_report,
    build_report,
)
from .parameters import (
    ReportParameters,
    get_default_parameters,
    validate_parameters,
    load_parameters,
)

__all__ = [
    "MarkerReport",
    "deduplicate_descriptions",
    "annotate_markers",
    "reorder_columns",
    "sort_markers",
    "top_n_per_group",
    "add_mean_fold_change",
    "export_report",
    "build_report",
    "ReportParameters",
    "get_default_parameters",
    "validate_parameters",
    "load_parameters",
]
