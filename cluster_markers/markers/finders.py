"""Marker gene finding for clusters, delegated to scanpy's rank_genes_groups."""

import logging
from typing import Optional

import anndata
import numpy as np
import pandas as pd

from .utils import (
    SUPPORTED_METHODS,
    InsufficientCellsError,
    coerce_ident,
    fraction_expressing,
    testing_view,
)

logger = logging.getLogger(__name__)

MARKER_COLUMNS = [
    "gene",
    "score",
    "logFC",
    "p_value",
    "adj_p_value",
    "pct_in_group",
    "pct_out_group",
]

_RANK_KEY = "cluster_markers_rank"


def _run_rank_genes_groups(
    view: anndata.AnnData,
    groupby: str,
    groups,
    reference: str,
    method: str,
) -> dict:
    import scanpy as sc

    if method not in SUPPORTED_METHODS:
        raise ValueError(f"Unsupported method '{method}'. Choose from {SUPPORTED_METHODS}")

    sc.tl.rank_genes_groups(
        view,
        groupby=groupby,
        groups=groups,
        reference=reference,
        method=method,
        use_raw=False,
        key_added=_RANK_KEY,
    )
    return view.uns[_RANK_KEY]


def _group_table(
    result: dict,
    view: anndata.AnnData,
    groupby: str,
    group: str,
    reference: str,
) -> pd.DataFrame:
    """Turn one group of a rank_genes_groups result into a marker table."""
    labels = view.obs[groupby]
    in_mask = (labels == group).values
    if reference == "rest":
        out_mask = (labels != group).values
    else:
        out_mask = (labels == reference).values

    table = pd.DataFrame({
        "gene": np.asarray(result["names"][group]).astype(str),
        "score": np.asarray(result["scores"][group], dtype=float),
        "logFC": np.asarray(result["logfoldchanges"][group], dtype=float),
        "p_value": np.asarray(result["pvals"][group], dtype=float),
        "adj_p_value": np.asarray(result["pvals_adj"][group], dtype=float),
    })

    pct_in = fraction_expressing(view, in_mask)
    pct_out = fraction_expressing(view, out_mask)
    table["pct_in_group"] = pct_in.reindex(table["gene"]).values
    table["pct_out_group"] = pct_out.reindex(table["gene"]).values

    return table[MARKER_COLUMNS]


def filter_markers(
    table: pd.DataFrame,
    only_pos: bool = False,
    logfc_threshold: float = 0.25,
    min_pct: float = 0.1,
) -> pd.DataFrame:
    """
    Apply fold-change and detection-rate cutoffs to a marker table.

    Parameters
    ----------
    table : pd.DataFrame
        Marker table with logFC, pct_in_group and pct_out_group.
    only_pos : bool
        If True, keep only genes with logFC > 0.
    logfc_threshold : float
        Keep genes with |logFC| >= this value.
    min_pct : float
        Keep genes detected in at least this fraction of cells in either
        group.

    Returns
    -------
    pd.DataFrame
        Filtered table.
    """
    keep = table["logFC"].abs() >= logfc_threshold
    keep &= table[["pct_in_group", "pct_out_group"]].max(axis=1) >= min_pct * 100
    if only_pos:
        keep &= table["logFC"] > 0

    return table[keep.fillna(False)].reset_index(drop=True)


def _empty_table(label_col: Optional[str] = None) -> pd.DataFrame:
    columns = ([label_col] if label_col else []) + MARKER_COLUMNS
    return pd.DataFrame(columns=columns)


def find_all_markers(
    adata: anndata.AnnData,
    groupby: str,
    only_pos: bool = True,
    logfc_threshold: float = 0.25,
    min_pct: float = 0.1,
    method: str = "wilcoxon",
    layer: Optional[str] = None,
    min_cells_group: int = 3,
) -> pd.DataFrame:
    """
    Find marker genes of every cluster against all other cells.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object with log-normalized expression.
    groupby : str
        Column in adata.obs containing cluster labels.
    only_pos : bool
        If True, keep only upregulated genes (default: True).
    logfc_threshold : float
        Minimum absolute log2 fold change (default: 0.25).
    min_pct : float
        Minimum detection fraction in either group (default: 0.1).
    method : str
        Test passed to scanpy (default: 'wilcoxon').
    layer : str, optional
        Layer to use for expression data. If None, uses adata.X.
    min_cells_group : int
        Clusters with fewer cells are skipped (default: 3).

    Returns
    -------
    pd.DataFrame
        Columns: cluster, gene, score, logFC, p_value, adj_p_value,
        pct_in_group, pct_out_group. Rows grouped by cluster in label order.
    """
    view = testing_view(adata, groupby, layer=layer)
    labels = view.obs[groupby]
    counts = labels.value_counts()

    groups = []
    for cluster in labels.cat.categories:
        if counts.get(cluster, 0) < min_cells_group:
            logger.warning(
                f"Skipping cluster '{cluster}': {counts.get(cluster, 0)} cells "
                f"(< {min_cells_group})"
            )
            continue
        groups.append(cluster)

    if len(groups) == 0 or len(labels.cat.categories) < 2:
        logger.warning(f"No testable clusters in '{groupby}'")
        return _empty_table("cluster")

    logger.info(f"Finding markers for {len(groups)} clusters in '{groupby}' ({method})")
    result = _run_rank_genes_groups(view, groupby, groups, "rest", method)

    frames = []
    for cluster in groups:
        table = _group_table(result, view, groupby, cluster, "rest")
        table = filter_markers(
            table, only_pos=only_pos, logfc_threshold=logfc_threshold, min_pct=min_pct
        )
        table.insert(0, "cluster", cluster)
        logger.info(f"Cluster {cluster}: {len(table)} markers")
        frames.append(table)

    markers = pd.concat(frames, ignore_index=True)
    logger.info(f"Found {len(markers)} markers across {len(groups)} clusters")

    return markers


def compute_markers_for_group(
    view: anndata.AnnData,
    groupby: str,
    ident_1: str,
    ident_2: Optional[str] = None,
    method: str = "wilcoxon",
    min_cells_group: int = 3,
) -> pd.DataFrame:
    """
    Test one cluster against another cluster (or the rest) on a testing view.

    Raises InsufficientCellsError if either side has too few cells.
    """
    labels = view.obs[groupby]
    reference = "rest" if ident_2 is None else ident_2

    n_in = int((labels == ident_1).sum())
    n_out = int((labels != ident_1).sum()) if ident_2 is None else int((labels == ident_2).sum())

    if n_in < min_cells_group:
        raise InsufficientCellsError(
            f"Cluster '{ident_1}' has {n_in} cells (< {min_cells_group})"
        )
    if n_out < min_cells_group:
        raise InsufficientCellsError(
            f"Reference '{reference}' has {n_out} cells (< {min_cells_group})"
        )

    logger.debug(f"Testing {ident_1} ({n_in} cells) vs {reference} ({n_out} cells)")
    result = _run_rank_genes_groups(view, groupby, [ident_1], reference, method)

    return _group_table(result, view, groupby, ident_1, reference)


def find_markers(
    adata: anndata.AnnData,
    groupby: str,
    ident_1,
    ident_2=None,
    only_pos: bool = False,
    logfc_threshold: float = 0.25,
    min_pct: float = 0.1,
    method: str = "wilcoxon",
    layer: Optional[str] = None,
    min_cells_group: int = 3,
) -> pd.DataFrame:
    """
    Find genes differentially expressed between two clusters.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object with log-normalized expression.
    groupby : str
        Column in adata.obs containing cluster labels.
    ident_1 : str or int
        Cluster to test.
    ident_2 : str or int, optional
        Cluster to compare against. If None, all other cells.
    only_pos : bool
        If True, keep only genes upregulated in ident_1.
    logfc_threshold, min_pct, method, layer, min_cells_group
        As in :func:`find_all_markers`.

    Returns
    -------
    pd.DataFrame
        Columns: comparison, gene, score, logFC, p_value, adj_p_value,
        pct_in_group, pct_out_group. ``comparison`` is '<ident_1>_vs_<ident_2>'.
    """
    view = testing_view(adata, groupby, layer=layer)
    categories = list(view.obs[groupby].cat.categories)

    ident_1 = coerce_ident(ident_1, categories, groupby)
    if ident_2 is not None:
        ident_2 = coerce_ident(ident_2, categories, groupby)
        if ident_2 == ident_1:
            raise ValueError("ident_1 and ident_2 must differ")

    comparison = f"{ident_1}_vs_{ident_2 if ident_2 is not None else 'rest'}"
    logger.info(f"Finding markers for {comparison} in '{groupby}' ({method})")

    table = compute_markers_for_group(
        view, groupby, ident_1, ident_2, method=method, min_cells_group=min_cells_group
    )
    table = filter_markers(
        table, only_pos=only_pos, logfc_threshold=logfc_threshold, min_pct=min_pct
    )
    table.insert(0, "comparison", comparison)

    logger.info(f"Found {len(table)} markers for {comparison}")

    return table
