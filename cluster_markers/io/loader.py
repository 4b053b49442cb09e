"""Loaders for H5AD files and marker/annotation tables with column detection."""

import logging
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

import anndata
import pandas as pd

logger = logging.getLogger(__name__)

# Canonical column -> known aliases, in priority order
MARKER_COLUMN_ALIASES = {
    "cluster": ["cluster", "group", "cluster_id", "ident"],
    "comparison": ["comparison", "contrast"],
    "gene": ["gene", "names", "gene_symbol", "gene_name", "symbol", "feature"],
    "logFC": [
        "logFC",
        "avg_log2FC",
        "avg_logFC",
        "logfoldchanges",
        "log2_fold_change",
        "log2FoldChange",
    ],
    "score": ["score", "scores"],
    "p_value": ["p_value", "p_val", "pvals", "pval", "pvalue"],
    "adj_p_value": ["adj_p_value", "p_val_adj", "pvals_adj", "pval_adj", "padj", "FDR"],
    "pct_in_group": ["pct_in_group", "pct.1", "pct_nz_group", "pct_in_cluster"],
    "pct_out_group": ["pct_out_group", "pct.2", "pct_nz_reference", "pct_out_cluster"],
}

ANNOTATION_COLUMN_ALIASES = {
    "gene": ["gene_name", "gene", "symbol", "gene_symbol", "external_gene_name"],
    "description": ["description", "gene_description", "desc"],
}

# Summary columns of conserved tables; Seurat's minimump is Tippett's method
CONSERVED_COLUMN_ALIASES = {
    "max_p_value": ["max_p_value", "max_pval"],
    "tippett_p_value": ["tippett_p_value", "minimump_p_val"],
}

# Per-condition statistics recognised as "<condition>_<alias>"
CONDITION_STATS = ["score", "logFC", "p_value", "adj_p_value", "pct_in_group", "pct_out_group"]

# Aliases whose values are fractions in [0, 1] rather than percentages
FRACTION_COLUMNS = {"pct.1", "pct.2", "pct_nz_group", "pct_nz_reference", "pct_in_cluster", "pct_out_cluster"}


def load_h5ad(file_path: str) -> anndata.AnnData:
    """
    Load an H5AD file.

    Parameters
    ----------
    file_path : str
        Path to H5AD file.

    Returns
    -------
    anndata.AnnData
        Loaded AnnData object.
    """
    logger.info(f"Loading H5AD file: {file_path}")
    adata = anndata.read_h5ad(file_path)
    logger.info(
        f"Loaded {adata.n_obs} cells × {adata.n_vars} features from {file_path}"
    )
    return adata


def infer_delimiter(file_path: str) -> str:
    """Comma for .csv files, tab for everything else."""
    suffixes = [s.lower() for s in Path(file_path).suffixes]
    if ".csv" in suffixes:
        return ","
    return "\t"


def read_table(file_path: str, sep: Optional[str] = None, **kwargs) -> pd.DataFrame:
    """Read a delimited text table, inferring the delimiter from the extension."""
    sep = sep or infer_delimiter(file_path)
    df = pd.read_csv(file_path, sep=sep, **kwargs)
    logger.info(f"Read {len(df)} rows × {df.shape[1]} columns from {file_path}")
    return df


def _detect(df: pd.DataFrame, aliases: Dict[str, list]) -> Dict[str, Optional[str]]:
    mappings = {}
    cols = df.columns.tolist()
    claimed = set()
    for canonical, candidates in aliases.items():
        mappings[canonical] = None
        for candidate in candidates:
            if candidate in cols and candidate not in claimed:
                mappings[canonical] = candidate
                claimed.add(candidate)
                break
    return mappings


def detect_marker_columns(df: pd.DataFrame) -> Dict[str, Optional[str]]:
    """
    Auto-detect which columns of a marker table hold the canonical fields.

    Recognises the column names written by Seurat (``avg_log2FC``,
    ``p_val_adj``, ``pct.1``), by ``scanpy.get.rank_genes_groups_df``
    (``names``, ``logfoldchanges``, ``pvals_adj``) and by this package.

    Parameters
    ----------
    df : pd.DataFrame
        Marker table as read from disk.

    Returns
    -------
    dict
        Canonical column name -> detected source column (or None).
    """
    mappings = _detect(df, MARKER_COLUMN_ALIASES)

    # Tables written from R carry gene names as unnamed row names
    if mappings["gene"] is None and len(df.columns) and str(df.columns[0]).startswith("Unnamed"):
        mappings["gene"] = df.columns[0]

    for canonical, source in mappings.items():
        if source is not None:
            logger.debug(f"Detected {canonical} column: {source}")

    return mappings


def detect_annotation_columns(df: pd.DataFrame) -> Dict[str, Optional[str]]:
    """Auto-detect the gene identifier and description columns of an annotation table."""
    mappings = _detect(df, ANNOTATION_COLUMN_ALIASES)
    for canonical, source in mappings.items():
        if source is not None:
            logger.debug(f"Detected annotation {canonical} column: {source}")
    return mappings


def _split_condition_column(column: str) -> Optional[Tuple[str, str, str]]:
    """Split '<condition>_<alias>' into (condition, canonical, alias), longest alias first."""
    best = None
    for canonical in CONDITION_STATS:
        for alias in MARKER_COLUMN_ALIASES[canonical]:
            suffix = f"_{alias}"
            if column.endswith(suffix) and len(column) > len(suffix):
                if best is None or len(alias) > len(best[2]):
                    best = (column[: -len(suffix)], canonical, alias)
    return best


def detect_condition_columns(df: pd.DataFrame, claimed: Iterable[str] = ()) -> Dict[str, str]:
    """
    Detect the per-condition and summary columns of a conserved marker table.

    Seurat's ``FindConservedMarkers`` writes ``ctrl_avg_log2FC``,
    ``stim_p_val_adj``, ``ctrl_pct.1``, ``max_pval`` and ``minimump_p_val``;
    these map to ``ctrl_logFC``, ``stim_adj_p_value``, ``ctrl_pct_in_group``,
    ``max_p_value`` and ``tippett_p_value``.

    Parameters
    ----------
    df : pd.DataFrame
        Marker table as read from disk.
    claimed : iterable of str
        Columns already mapped by :func:`detect_marker_columns`.

    Returns
    -------
    dict
        Source column -> canonical column, only for columns that change name.
    """
    claimed = set(claimed)
    summary = _detect(df.drop(columns=list(claimed & set(df.columns))), CONSERVED_COLUMN_ALIASES)
    rename = {source: canonical for canonical, source in summary.items() if source is not None}
    claimed |= set(rename)

    for col in df.columns:
        if col in claimed or not isinstance(col, str):
            continue
        match = _split_condition_column(col)
        if match is None:
            continue
        condition, canonical, _ = match
        target = f"{condition}_{canonical}"
        if target == col:
            continue
        if target in df.columns or target in rename.values():
            logger.debug(f"Not renaming {col}: {target} already present")
            continue
        rename[col] = target

    for source, target in rename.items():
        logger.debug(f"Detected conserved column {source} -> {target}")

    return {source: target for source, target in rename.items() if source != target}


def standardize_marker_table(df: pd.DataFrame) -> pd.DataFrame:
    """
    Rename detected marker columns to their canonical names.

    Per-condition columns of conserved tables (``<condition>_<alias>``) are
    renamed to ``<condition>_<canonical>``. Fraction-valued percentage
    columns are scaled to percent. Columns that match no alias are kept
    unchanged.
    """
    mappings = detect_marker_columns(df)
    rename = {source: canonical for canonical, source in mappings.items() if source is not None}
    rename.update(detect_condition_columns(df, claimed=rename))

    result = df.copy()
    for source in rename:
        match = _split_condition_column(source) if source not in mappings.values() else None
        alias = match[2] if match else source
        if alias in FRACTION_COLUMNS:
            result[source] = result[source] * 100

    result = result.rename(columns=rename)
    for col in ("cluster", "comparison", "gene"):
        if col in result.columns:
            result[col] = result[col].astype(str)

    return result


def standardize_annotation_table(df: pd.DataFrame) -> pd.DataFrame:
    """Rename detected annotation columns to ``gene`` and ``description``."""
    mappings = detect_annotation_columns(df)
    rename = {source: canonical for canonical, source in mappings.items() if source is not None}
    # Drop other columns that would collide with the canonical names
    collisions = [c for c in rename.values() if c in df.columns and c not in rename]
    result = df.drop(columns=collisions).rename(columns=rename)
    return result


def load_marker_table(file_path: str, sep: Optional[str] = None) -> pd.DataFrame:
    """
    Load a marker table from disk and standardize its column names.

    Parameters
    ----------
    file_path : str
        Path to a csv/tsv marker table.
    sep : str, optional
        Delimiter. Inferred from the extension if None.

    Returns
    -------
    pd.DataFrame
        Marker table with canonical column names.
    """
    df = read_table(file_path, sep=sep)
    return standardize_marker_table(df)


def load_annotations(file_path: str, sep: Optional[str] = None) -> pd.DataFrame:
    """
    Load a gene annotation table (e.g. an AnnotationHub/Ensembl export).

    Only the standardized ``gene`` and ``description`` columns are needed
    downstream; other columns are kept.
    """
    df = read_table(file_path, sep=sep)
    df = standardize_annotation_table(df)
    logger.info(f"Loaded annotations for {df['gene'].nunique() if 'gene' in df else 0} genes")
    return df
