"""I/O utilities for loading and validating AnnData objects and marker tables."""

from .loader import (
    load_h5ad,
    load_marker_table,
    load_annotations,
    read_table,
    detect_marker_columns,
    detect_annotation_columns,
    detect_condition_columns,
    standardize_marker_table,
    standardize_annotation_table,
)
from .validator import (
    SchemaError,
    require_columns,
    validate_marker_table,
    validate_annotation_table,
)

__all__ = [
    "load_h5ad",
    "load_marker_table",
    "load_annotations",
    "read_table",
    "detect_marker_columns",
    "detect_annotation_columns",
    "detect_condition_columns",
    "standardize_marker_table",
    "standardize_annotation_table",
    "SchemaError",
    "require_columns",
    "validate_marker_table",
    "validate_annotation_table",
]
