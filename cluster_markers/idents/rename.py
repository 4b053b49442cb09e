"""Relabeling and subsetting of cluster identities."""

import logging
from pathlib import Path
from typing import Dict, Iterable, Optional

import anndata
import pandas as pd

from ..io.loader import read_table
from ..io.validator import require_columns
from ..markers.utils import ordered_labels

logger = logging.getLogger(__name__)


def _normalize_mapping(mapping: Dict) -> Dict[str, str]:
    # Cluster ids may arrive as ints (0) or strings ("0")
    return {str(old): str(new) for old, new in mapping.items()}


def rename_labels(table: pd.DataFrame, column: str, mapping: Dict) -> pd.DataFrame:
    """
    Substitute labels in one column of a table.

    Parameters
    ----------
    table : pd.DataFrame
        Any table with a label column (e.g. a marker table).
    column : str
        Label column.
    mapping : dict
        Old label -> new label. Labels not in the mapping are kept.

    Returns
    -------
    pd.DataFrame
        Copy of ``table`` with relabeled column.
    """
    require_columns(table, [column], "table")
    mapping = _normalize_mapping(mapping)

    result = table.copy()
    labels = result[column]
    result[column] = labels.astype(object).map(lambda v: v if pd.isna(v) else mapping.get(str(v), str(v)))

    n_changed = int(labels.astype(str).isin(list(mapping)).sum())
    logger.info(f"Relabeled {n_changed} rows in '{column}'")

    return result


def rename_idents(
    adata: anndata.AnnData,
    label_col: str,
    mapping: Dict,
    new_col: Optional[str] = None,
) -> anndata.AnnData:
    """
    Rename cluster identities, e.g. cluster numbers to cell-type names.

    Several old labels may map to the same new label (merging clusters).
    Category order follows the first appearance of each new label in the
    old category order.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    label_col : str
        Column in adata.obs containing cluster labels.
    mapping : dict
        Old label -> new label. Labels not in the mapping are kept.
    new_col : str, optional
        Column to write. If None, ``label_col`` is overwritten.

    Returns
    -------
    anndata.AnnData
        Copy of ``adata`` with renamed labels.
    """
    if label_col not in adata.obs.columns:
        raise ValueError(f"Label column '{label_col}' not found in adata.obs")

    mapping = _normalize_mapping(mapping)
    labels = ordered_labels(adata.obs[label_col])

    unknown = [old for old in mapping if old not in labels.categories]
    if unknown:
        logger.warning(f"Mapping keys not found in '{label_col}': {unknown}")

    new_categories = list(dict.fromkeys(mapping.get(c, c) for c in labels.categories))
    renamed = pd.Categorical(
        [None if pd.isna(v) else mapping.get(v, v) for v in labels],
        categories=new_categories,
    )

    result = adata.copy()
    target = new_col or label_col
    result.obs[target] = renamed
    logger.info(
        f"Renamed {len(mapping)} identities in '{label_col}' -> '{target}' "
        f"({len(new_categories)} categories)"
    )

    return result


def subset_clusters(
    adata: anndata.AnnData,
    label_col: str,
    idents: Iterable,
    invert: bool = False,
) -> anndata.AnnData:
    """
    Keep (or remove) the cells of the listed clusters.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    label_col : str
        Column in adata.obs containing cluster labels.
    idents : iterable
        Cluster labels to keep, or to remove if ``invert``.
    invert : bool
        If True, remove the listed clusters instead.

    Returns
    -------
    anndata.AnnData
        Subset copy with unused categories dropped.
    """
    if label_col not in adata.obs.columns:
        raise ValueError(f"Label column '{label_col}' not found in adata.obs")

    wanted = {str(i) for i in idents}
    labels = adata.obs[label_col]
    in_set = labels.astype(object).map(lambda v: not pd.isna(v) and str(v) in wanted).to_numpy(dtype=bool)

    missing = wanted - set(labels.dropna().astype(str))
    if missing:
        logger.warning(f"Identities not found in '{label_col}': {sorted(missing)}")

    mask = ~in_set if invert else in_set
    result = adata[mask].copy()
    if isinstance(result.obs[label_col].dtype, pd.CategoricalDtype):
        result.obs[label_col] = result.obs[label_col].cat.remove_unused_categories()

    logger.info(
        f"{'Removed' if invert else 'Kept'} clusters {sorted(wanted)}: "
        f"{result.n_obs} of {adata.n_obs} cells remaining"
    )

    return result


def _is_header_row(first_label: str, labels: Optional[Iterable]) -> bool:
    # Cluster ids are numbers or known labels; column names are neither
    if pd.notna(pd.to_numeric(first_label, errors="coerce")):
        return False
    if labels is not None and first_label in {str(label) for label in labels}:
        return False
    return True


def load_ident_mapping(file_path: str, labels: Optional[Iterable] = None) -> Dict[str, str]:
    """
    Load an old-label -> new-label mapping.

    TOML files are read as a flat table (or an ``[idents]`` table); other
    files as a delimited table whose first two columns are old and new
    label. A header row is optional: the first row is taken as data when
    its old label is numeric or one of ``labels``, and as a header
    otherwise.

    Parameters
    ----------
    file_path : str
        Mapping file (.toml, .tsv, .csv, ...).
    labels : iterable, optional
        Labels present in the data, used to recognise a headerless file.

    Returns
    -------
    dict
        Old label -> new label, both as strings.
    """
    if Path(file_path).suffix.lower() == ".toml":
        import toml

        data = toml.load(file_path)
        mapping = data.get("idents", data)
    else:
        df = read_table(file_path, header=None, dtype=str)
        if df.shape[1] < 2:
            raise ValueError(f"Mapping file {file_path} needs two columns (old, new)")
        if len(df) and _is_header_row(str(df.iloc[0, 0]), labels):
            logger.debug(f"Treating first row of {file_path} as a header")
            df = df.iloc[1:]
        old = df.iloc[:, 0].astype(str)
        new = df.iloc[:, 1].astype(str)
        mapping = dict(zip(old, new))

    logger.info(f"Loaded {len(mapping)} identity mappings from {file_path}")
    return _normalize_mapping(mapping)
