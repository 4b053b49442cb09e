"""Validator for marker and annotation table schemas."""

import logging
from typing import Iterable, List, Tuple

import pandas as pd

logger = logging.getLogger(__name__)


class SchemaError(ValueError):
    """Raised when a required key column is missing from a table."""

    pass


def require_columns(df: pd.DataFrame, columns: Iterable[str], table: str = "table") -> None:
    """
    Raise SchemaError if any of ``columns`` is missing from ``df``.

    Parameters
    ----------
    df : pd.DataFrame
        Table to check.
    columns : iterable of str
        Column names that must be present.
    table : str
        Name of the table, used in the error message.

    Raises
    ------
    SchemaError
        If one or more columns are missing.
    """
    missing = [col for col in columns if col not in df.columns]
    if missing:
        raise SchemaError(
            f"Column(s) {missing} not found in {table}. "
            f"Available columns: {df.columns.tolist()}"
        )


def validate_marker_table(
    df: pd.DataFrame,
    label_col: str = "cluster",
    gene_col: str = "gene",
    logfc_col: str = "logFC",
    adj_p_col: str = "adj_p_value",
) -> Tuple[bool, List[str]]:
    """
    Validate that a marker table has the columns a report needs.

    Parameters
    ----------
    df : pd.DataFrame
        Standardized marker table.
    label_col : str
        Cluster or comparison label column.
    gene_col : str
        Gene identifier column.
    logfc_col : str
        Fold-change column.
    adj_p_col : str
        Adjusted p-value column.

    Returns
    -------
    tuple of (bool, list)
        (is_valid, list of warning/error messages)
    """
    messages = []
    is_valid = True

    for col in (label_col, gene_col, logfc_col):
        if col not in df.columns:
            messages.append(f"ERROR: Required column '{col}' is missing.")
            is_valid = False

    if adj_p_col not in df.columns:
        messages.append(
            f"WARNING: Column '{adj_p_col}' is missing; cluster reports cannot be sorted."
        )

    if len(df) == 0:
        messages.append("WARNING: Marker table has no rows.")

    if is_valid:
        n_dup = int(df.duplicated(subset=[label_col, gene_col]).sum())
        if n_dup > 0:
            messages.append(
                f"ERROR: {n_dup} duplicated ({label_col}, {gene_col}) pairs."
            )
            is_valid = False

        for col in (adj_p_col, "p_value"):
            if col in df.columns:
                values = pd.to_numeric(df[col], errors="coerce")
                if ((values < 0) | (values > 1)).any():
                    messages.append(f"ERROR: Column '{col}' has values outside [0, 1].")
                    is_valid = False

    logger.info(f"Marker table validation: {'PASSED' if is_valid else 'FAILED'}")
    for msg in messages:
        if msg.startswith("ERROR"):
            logger.error(msg)
        else:
            logger.warning(msg)

    return is_valid, messages


def validate_annotation_table(
    df: pd.DataFrame,
    gene_col: str = "gene",
    description_col: str = "description",
) -> Tuple[bool, List[str]]:
    """
    Validate a gene description table.

    Duplicate gene identifiers are not an error (they are collapsed before
    every join) but are reported so the deduplication policy can be chosen.

    Returns
    -------
    tuple of (bool, list)
        (is_valid, list of warning/error messages)
    """
    messages = []
    is_valid = True

    for col in (gene_col, description_col):
        if col not in df.columns:
            messages.append(f"ERROR: Required column '{col}' is missing.")
            is_valid = False

    if is_valid:
        dup_genes = df.loc[df[gene_col].duplicated(), gene_col].unique()
        if len(dup_genes) > 0:
            preview = ", ".join(str(g) for g in dup_genes[:5])
            messages.append(
                f"WARNING: {len(dup_genes)} genes have more than one description "
                f"(e.g. {preview}); they will be collapsed before joining."
            )
        n_missing = int(df[gene_col].isna().sum())
        if n_missing:
            messages.append(f"WARNING: {n_missing} rows have no gene identifier.")

    logger.info(f"Annotation table validation: {'PASSED' if is_valid else 'FAILED'}")
    for msg in messages:
        if msg.startswith("ERROR"):
            logger.error(msg)
        else:
            logger.warning(msg)

    return is_valid, messages
