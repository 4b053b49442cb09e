"""Cluster identity relabeling, subsetting and summaries."""

from .rename import rename_idents, rename_labels, subset_clusters, load_ident_mapping
from .summaries import compute_cluster_summary

__all__ = [
    "rename_idents",
    "rename_labels",
    "subset_clusters",
    "load_ident_mapping",
    "compute_cluster_summary",
]
