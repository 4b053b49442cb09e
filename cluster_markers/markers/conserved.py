"""Markers conserved across conditions (samples, treatments, donors)."""

import logging
from typing import Iterable, Optional

import anndata
import numpy as np
import pandas as pd
from scipy import stats

from .finders import compute_markers_for_group, filter_markers
from .utils import InsufficientCellsError, coerce_ident, ordered_labels, testing_view

logger = logging.getLogger(__name__)

_CONDITION_STATS = ["score", "logFC", "p_value", "adj_p_value", "pct_in_group", "pct_out_group"]


def combine_pvalues(p_values: pd.DataFrame, method: str = "tippett") -> pd.Series:
    """
    Combine per-condition p-values row by row.

    Parameters
    ----------
    p_values : pd.DataFrame
        One column of p-values per condition.
    method : str
        Method for ``scipy.stats.combine_pvalues``. 'tippett' is the
        minimum-p method: 1 - (1 - min(p)) ** k.

    Returns
    -------
    pd.Series
        Combined p-value per row.
    """
    tiny = np.finfo(float).tiny
    combined = []
    for row in p_values.to_numpy(dtype=float):
        row = np.clip(row, tiny, 1.0)
        _, p = stats.combine_pvalues(row, method=method)
        combined.append(float(p))

    return pd.Series(combined, index=p_values.index, dtype=float)


def find_conserved_markers(
    adata: anndata.AnnData,
    groupby: str,
    ident_1,
    grouping_var: str,
    ident_2=None,
    only_pos: bool = False,
    logfc_threshold: float = 0.25,
    min_pct: float = 0.1,
    method: str = "wilcoxon",
    meta_method: str = "tippett",
    layer: Optional[str] = None,
    min_cells_group: int = 3,
) -> pd.DataFrame:
    """
    Find markers of a cluster that hold in every condition.

    The cluster is tested separately within each level of ``grouping_var``.
    Conditions where either side has fewer than ``min_cells_group`` cells
    are skipped. Only genes passing the cutoffs in every tested condition
    are kept.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object with log-normalized expression.
    groupby : str
        Column in adata.obs containing cluster labels.
    ident_1 : str or int
        Cluster to test.
    grouping_var : str
        Column in adata.obs holding the condition of each cell.
    ident_2 : str or int, optional
        Cluster to compare against. If None, all other cells.
    only_pos, logfc_threshold, min_pct, method, layer, min_cells_group
        As in :func:`cluster_markers.markers.find_markers`.
    meta_method : str
        How per-condition p-values are combined (default: 'tippett').

    Returns
    -------
    pd.DataFrame
        Columns: gene, <condition>_score, <condition>_logFC, ...,
        max_p_value, <meta_method>_p_value; sorted by the combined p-value.

    Raises
    ------
    InsufficientCellsError
        If no condition has enough cells to test.
    """
    view = testing_view(adata, groupby, layer=layer, extra_obs=[grouping_var])
    categories = list(view.obs[groupby].cat.categories)

    ident_1 = coerce_ident(ident_1, categories, groupby)
    if ident_2 is not None:
        ident_2 = coerce_ident(ident_2, categories, groupby)

    conditions = ordered_labels(view.obs[grouping_var])
    tested = []
    merged = None

    for condition in conditions.categories:
        mask = np.asarray(conditions == condition)
        sub = view[mask].copy()
        try:
            table = compute_markers_for_group(
                sub, groupby, ident_1, ident_2, method=method, min_cells_group=min_cells_group
            )
        except InsufficientCellsError as e:
            logger.warning(f"Skipping condition '{condition}' for cluster {ident_1}: {e}")
            continue

        table = filter_markers(
            table, only_pos=only_pos, logfc_threshold=logfc_threshold, min_pct=min_pct
        )
        table = table.rename(columns={col: f"{condition}_{col}" for col in _CONDITION_STATS})
        logger.info(f"Cluster {ident_1}, condition '{condition}': {len(table)} markers")

        merged = table if merged is None else merged.merge(table, on="gene", how="inner")
        tested.append(condition)

    if not tested:
        raise InsufficientCellsError(
            f"Cluster '{ident_1}' has fewer than {min_cells_group} cells in every "
            f"level of '{grouping_var}'"
        )

    p_cols = [f"{cond}_p_value" for cond in tested]
    merged["max_p_value"] = merged[p_cols].max(axis=1)
    combined_col = f"{meta_method}_p_value"
    if len(merged):
        merged[combined_col] = combine_pvalues(merged[p_cols], method=meta_method)
    else:
        merged[combined_col] = pd.Series(dtype=float)

    merged = merged.sort_values(combined_col, kind="mergesort").reset_index(drop=True)

    logger.info(
        f"Found {len(merged)} conserved markers for cluster {ident_1} "
        f"across {len(tested)} conditions"
    )

    return merged


def find_conserved_markers_for_clusters(
    adata: anndata.AnnData,
    groupby: str,
    grouping_var: str,
    clusters: Optional[Iterable] = None,
    **kwargs,
) -> pd.DataFrame:
    """
    Run :func:`find_conserved_markers` for several clusters and stack the results.

    Clusters are processed in the order given and their rows concatenated in
    that order, each prefixed with a ``cluster`` column. Clusters that cannot
    be tested in any condition are skipped with a warning.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    groupby : str
        Column in adata.obs containing cluster labels.
    grouping_var : str
        Column in adata.obs holding the condition of each cell.
    clusters : iterable, optional
        Cluster labels to test. Defaults to every cluster in label order.
    **kwargs
        Passed to :func:`find_conserved_markers`.

    Returns
    -------
    pd.DataFrame
        Stacked conserved marker table.
    """
    for col in (groupby, grouping_var):
        if col not in adata.obs.columns:
            raise ValueError(f"Column '{col}' not found in adata.obs")

    if clusters is None:
        clusters = list(ordered_labels(adata.obs[groupby]).categories)

    frames = []
    for cluster in clusters:
        try:
            table = find_conserved_markers(adata, groupby, cluster, grouping_var, **kwargs)
        except InsufficientCellsError as e:
            logger.warning(f"Skipping cluster {cluster}: {e}")
            continue
        table.insert(0, "cluster", str(cluster))
        frames.append(table)

    if not frames:
        logger.warning("No cluster could be tested for conserved markers")
        return pd.DataFrame(columns=["cluster", "gene"])

    # Conditions tested can differ between clusters; missing stats stay empty
    return pd.concat(frames, ignore_index=True, sort=False)
