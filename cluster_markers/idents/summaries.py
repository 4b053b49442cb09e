"""Cluster summary computation."""

import logging
from typing import Optional

import anndata
import pandas as pd

from ..markers.utils import ordered_labels

logger = logging.getLogger(__name__)


def compute_cluster_summary(
    adata: anndata.AnnData,
    label_col: str,
    sample_col: Optional[str] = None,
    exclude_na: bool = True,
) -> pd.DataFrame:
    """
    Compute cells per cluster.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    label_col : str
        Column in adata.obs containing cluster labels.
    sample_col : str, optional
        Column in adata.obs containing sample IDs.
        If provided, per-sample counts will be included.
    exclude_na : bool
        If True, exclude cells with NA/missing values in label_col.

    Returns
    -------
    pd.DataFrame
        Columns: cluster, n_cells, percent_of_total, [one column per sample].
        Rows follow the cluster label order.
    """
    if label_col not in adata.obs.columns:
        raise ValueError(f"Label column '{label_col}' not found in adata.obs")

    obs_data = adata.obs.copy()
    obs_data[label_col] = ordered_labels(obs_data[label_col])
    if exclude_na:
        obs_data = obs_data[obs_data[label_col].notna()]

    total_cells = len(obs_data)
    group_counts = obs_data[label_col].value_counts(sort=False)

    summary = pd.DataFrame({
        "cluster": group_counts.index.astype(str),
        "n_cells": group_counts.values,
        "percent_of_total": (
            (group_counts.values / total_cells * 100).round(2) if total_cells else 0.0
        ),
    })

    if sample_col:
        if sample_col not in obs_data.columns:
            raise ValueError(f"Sample column '{sample_col}' not found in adata.obs")
        crosstab = pd.crosstab(obs_data[label_col], obs_data[sample_col])
        crosstab.index = crosstab.index.astype(str)
        crosstab.columns = crosstab.columns.astype(str)
        crosstab_reset = crosstab.rename_axis(index="cluster", columns=None).reset_index()
        summary = summary.merge(crosstab_reset, on="cluster", how="left")

        logger.info(f"Added per-sample counts for {len(crosstab.columns)} samples")

    summary = summary[summary["n_cells"] > 0].reset_index(drop=True)

    logger.info(f"Computed summary for {len(summary)} clusters in '{label_col}'")

    return summary
