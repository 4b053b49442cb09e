"""Marker gene finding for clusters."""

from .finders import find_all_markers, find_markers, filter_markers
from .conserved import (
    find_conserved_markers,
    find_conserved_markers_for_clusters,
    combine_pvalues,
)
from .utils import (
    InsufficientCellsError,
    get_candidate_label_columns,
    get_sample_column,
)

__all__ = [
    "find_all_markers",
    "find_markers",
    "filter_markers",
    "find_conserved_markers",
    "find_conserved_markers_for_clusters",
    "combine_pvalues",
    "InsufficientCellsError",
    "get_candidate_label_columns",
    "get_sample_column",
]
