"""Utility functions for marker finding."""

import logging
from typing import List, Optional, Sequence

import anndata
import numpy as np
import pandas as pd
from scipy.sparse import issparse

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = ("wilcoxon", "t-test", "t-test_overestim_var")


class InsufficientCellsError(ValueError):
    """Raised when a group has too few cells to be tested."""

    pass


def get_candidate_label_columns(adata: anndata.AnnData) -> List[str]:
    """
    Get candidate cluster label columns from adata.obs.

    Prioritizes columns containing keywords: cluster, leiden, louvain,
    seurat_clusters, ident, cell_type.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.

    Returns
    -------
    list of str
        List of candidate column names, with prioritized ones first.
    """
    keywords = ["cluster", "leiden", "louvain", "ident", "cell_type"]

    priority_cols = []
    for col in adata.obs.columns:
        col_lower = col.lower()
        if any(kw in col_lower for kw in keywords):
            priority_cols.append(col)

    priority_cols = list(dict.fromkeys(priority_cols))
    all_cols = [col for col in adata.obs.columns if col not in priority_cols]

    return priority_cols + all_cols


def get_sample_column(adata: anndata.AnnData) -> Optional[str]:
    """
    Detect the sample/condition column in adata.obs.

    Returns
    -------
    str or None
        Name of sample column, or None if not found.
    """
    sample_candidates = ["sample", "sample_id", "SampleID", "condition", "stim", "orig.ident"]

    for candidate in sample_candidates:
        if candidate in adata.obs.columns:
            return candidate

    return None


def ordered_labels(values: pd.Series) -> pd.Categorical:
    """
    Convert cluster labels to a string categorical with a stable order.

    Existing categorical order is kept; otherwise labels that all look
    numeric are ordered numerically, the rest lexically. Missing labels stay
    missing.
    """
    # Integer ids stored as floats (because of missing values) print as "0", not "0.0"
    if pd.api.types.is_float_dtype(values) and (values.dropna() % 1 == 0).all():
        values = values.astype("Int64")

    if isinstance(values.dtype, pd.CategoricalDtype):
        categories = [str(c) for c in values.cat.categories]
    else:
        unique = [str(v) for v in pd.unique(values.dropna())]
        numeric = pd.to_numeric(pd.Series(unique, dtype=object), errors="coerce")
        if len(unique) and numeric.notna().all():
            categories = [u for _, u in sorted(zip(numeric, unique))]
        else:
            categories = sorted(unique)

    as_str = values.astype(object).map(lambda v: None if pd.isna(v) else str(v))
    return pd.Categorical(as_str, categories=categories)


def coerce_ident(ident, categories: Sequence[str], groupby: str) -> str:
    """Match a cluster identifier (numeric or string) to a label category."""
    ident = str(ident)
    if ident not in categories:
        raise ValueError(
            f"Identity '{ident}' not found in '{groupby}'. Available: {list(categories)}"
        )
    return ident


def testing_view(
    adata: anndata.AnnData,
    groupby: str,
    layer: Optional[str] = None,
    extra_obs: Sequence[str] = (),
) -> anndata.AnnData:
    """
    Build a minimal AnnData for testing that shares the expression matrix.

    The returned object carries only ``groupby`` (as a string categorical)
    and ``extra_obs`` in obs, so results written by scanpy never touch the
    caller's object. Cells with a missing label are dropped.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    groupby : str
        Column in adata.obs containing cluster labels.
    layer : str, optional
        Layer to test on. If None, uses adata.X.
    extra_obs : sequence of str
        Further obs columns to carry over.

    Returns
    -------
    anndata.AnnData
        Minimal AnnData object.
    """
    for col in [groupby, *extra_obs]:
        if col not in adata.obs.columns:
            raise ValueError(f"Column '{col}' not found in adata.obs")

    if layer is not None:
        if layer not in adata.layers:
            raise ValueError(f"Layer '{layer}' not found in adata.layers")
        X = adata.layers[layer]
        logger.info(f"Using layer '{layer}' for expression data")
    else:
        X = adata.X

    obs = adata.obs[[groupby, *extra_obs]].copy()
    obs[groupby] = ordered_labels(adata.obs[groupby])

    view = anndata.AnnData(X=X, obs=obs, var=pd.DataFrame(index=adata.var_names.copy()))

    keep = view.obs[groupby].notna().values
    if not keep.all():
        logger.warning(f"Dropping {int((~keep).sum())} cells with no '{groupby}' label")
        view = view[keep].copy()

    return view


def fraction_expressing(adata: anndata.AnnData, mask: np.ndarray) -> pd.Series:
    """
    Percent of cells in ``mask`` with non-zero expression, per gene.

    Parameters
    ----------
    adata : anndata.AnnData
        AnnData whose X is used.
    mask : np.ndarray
        Boolean cell mask.

    Returns
    -------
    pd.Series
        Percentages indexed by gene name.
    """
    n_cells = int(np.sum(mask))
    if n_cells == 0:
        return pd.Series(np.nan, index=adata.var_names)

    sub = adata.X[mask]
    if issparse(sub):
        counts = np.asarray((sub > 0).sum(axis=0)).ravel()
    else:
        counts = (np.asarray(sub) > 0).sum(axis=0)

    return pd.Series(counts / n_cells * 100, index=adata.var_names)
