"""Marker report building: annotate, reorder, sort, top-N and export."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from ..io.loader import infer_delimiter
from ..io.validator import SchemaError, require_columns
from .parameters import ReportParameters, validate_parameters

logger = logging.getLogger(__name__)


@dataclass
class MarkerReport:
    """Result of a report build."""

    table: pd.DataFrame
    top_markers: Optional[pd.DataFrame]
    params: ReportParameters
    n_markers_in: int

    @property
    def n_groups(self) -> int:
        label_col = self.params.resolved_label_col()
        if label_col not in self.table.columns:
            return 0
        return int(self.table[label_col].nunique())


def deduplicate_descriptions(
    annotations: pd.DataFrame,
    gene_col: str = "gene",
    description_col: str = "description",
    policy: str = "first",
) -> pd.DataFrame:
    """
    Collapse a gene description table to one row per gene.

    Parameters
    ----------
    annotations : pd.DataFrame
        Gene description table, possibly with repeated genes.
    gene_col : str
        Gene identifier column.
    description_col : str
        Description column.
    policy : {'first', 'join'}
        'first' keeps the first description seen for a gene; 'join'
        concatenates the distinct descriptions with '; '.

    Returns
    -------
    pd.DataFrame
        Two-column table (gene_col, description_col), unique on gene_col.
    """
    require_columns(annotations, [gene_col, description_col], "annotation table")

    desc = annotations[[gene_col, description_col]].dropna(subset=[gene_col]).copy()
    desc[gene_col] = desc[gene_col].astype(str)

    if policy == "first":
        unique = desc.drop_duplicates(subset=gene_col, keep="first")
    elif policy == "join":
        def _join(values: pd.Series):
            distinct = list(dict.fromkeys(values.dropna().astype(str)))
            return "; ".join(distinct) if distinct else np.nan

        unique = (
            desc.groupby(gene_col, sort=False)[description_col]
            .agg(_join)
            .reset_index()
        )
    else:
        raise ValueError(f"Unknown deduplication policy: {policy}")

    n_dropped = len(desc) - len(unique)
    if n_dropped:
        logger.info(f"Collapsed {n_dropped} duplicate description rows ({policy})")

    return unique.reset_index(drop=True)


def annotate_markers(
    markers: pd.DataFrame,
    annotations: pd.DataFrame,
    how: str = "left",
    gene_col: str = "gene",
    annotation_gene_col: str = "gene",
    description_col: str = "description",
    dedup_policy: str = "first",
) -> pd.DataFrame:
    """
    Join marker records to gene descriptions.

    The description table is deduplicated by gene before the join, so a
    left join keeps exactly one output row per marker row and an inner join
    never adds rows. An existing description column on ``markers`` is
    replaced.

    Parameters
    ----------
    markers : pd.DataFrame
        Marker table.
    annotations : pd.DataFrame
        Gene description table.
    how : {'inner', 'left'}
        'inner' drops markers with no description; 'left' keeps them with
        a missing description.
    gene_col : str
        Gene identifier column in ``markers``.
    annotation_gene_col : str
        Gene identifier column in ``annotations``.
    description_col : str
        Description column in ``annotations``; also the output column.
    dedup_policy : {'first', 'join'}
        Passed to :func:`deduplicate_descriptions`.

    Returns
    -------
    pd.DataFrame
        Annotated marker table in the input row order.
    """
    if how not in ("inner", "left"):
        raise ValueError(f"Join mode must be 'inner' or 'left', got '{how}'")

    require_columns(markers, [gene_col], "marker table")
    desc = deduplicate_descriptions(
        annotations,
        gene_col=annotation_gene_col,
        description_col=description_col,
        policy=dedup_policy,
    )
    desc = desc.rename(columns={annotation_gene_col: "_join_gene"})

    base = markers.drop(columns=[description_col], errors="ignore").copy()
    base["_join_gene"] = base[gene_col].astype(str)

    annotated = base.merge(desc, on="_join_gene", how=how, sort=False)
    annotated = annotated.drop(columns="_join_gene").reset_index(drop=True)

    n_missing = int(annotated[description_col].isna().sum())
    logger.info(
        f"Annotated {len(markers)} markers ({how} join): {len(annotated)} rows kept, "
        f"{n_missing} without description"
    )

    return annotated


def reorder_columns(
    df: pd.DataFrame,
    order: Sequence[str],
    last: Sequence[str] = ("description",),
    strict: bool = False,
) -> pd.DataFrame:
    """
    Put columns in a fixed presentational order.

    Named columns come first in the given order, then all remaining
    columns in their existing order, then the ``last`` columns. Rows are
    not touched.

    Parameters
    ----------
    df : pd.DataFrame
        Input table.
    order : sequence of str
        Leading columns.
    last : sequence of str
        Trailing columns (skipped if absent).
    strict : bool
        If True, raise SchemaError when a column in ``order`` is missing;
        otherwise missing columns are skipped.

    Returns
    -------
    pd.DataFrame
        Same table with reordered columns.
    """
    if strict:
        require_columns(df, order, "marker table")

    head = [c for c in order if c in df.columns]
    tail = [c for c in last if c in df.columns and c not in head]
    middle = [c for c in df.columns if c not in head and c not in tail]

    return df[head + middle + tail]


def _label_sort_key(values: pd.Series) -> pd.Series:
    """Sort categoricals by category order and numeric-looking labels numerically.

    Missing labels map to NaN so they sort last.
    """
    present = values.notna()
    if isinstance(values.dtype, pd.CategoricalDtype):
        codes = pd.Series(values.cat.codes, index=values.index)
        return codes.where(codes >= 0)
    if pd.api.types.is_numeric_dtype(values):
        return values
    numeric = pd.to_numeric(values, errors="coerce")
    if numeric[present].notna().all():
        return numeric
    return values.astype(str).where(present)


def sort_markers(
    df: pd.DataFrame,
    by: Union[str, List[str]],
    ascending: Union[bool, List[bool]] = True,
) -> pd.DataFrame:
    """
    Stable sort of a marker table.

    Rows with equal keys keep their input order. Label-like string columns
    holding numbers ("0", "2", "10") are sorted numerically.

    Parameters
    ----------
    df : pd.DataFrame
        Marker table.
    by : str or list of str
        Sort keys, most significant first.
    ascending : bool or list of bool
        Direction per key.

    Returns
    -------
    pd.DataFrame
        Sorted table with a fresh index.
    """
    keys = [by] if isinstance(by, str) else list(by)
    require_columns(df, keys, "marker table")

    if isinstance(ascending, bool):
        directions = [ascending] * len(keys)
    else:
        directions = list(ascending)
        if len(directions) != len(keys):
            raise ValueError("ascending must have one entry per sort key")

    # Successive stable sorts from the least significant key
    result = df
    for key, asc in reversed(list(zip(keys, directions))):
        result = result.sort_values(
            key, ascending=asc, kind="mergesort", key=_label_sort_key
        )

    return result.reset_index(drop=True)


def top_n_per_group(
    df: pd.DataFrame,
    n: int = 5,
    group_col: str = "cluster",
    rank_col: str = "logFC",
    largest: bool = True,
    keep_ties: bool = False,
) -> pd.DataFrame:
    """
    Keep the top ``n`` rows of each group by a ranking column.

    Groups are emitted in order of first appearance. Within a group rows are
    ordered by ``rank_col`` (descending if ``largest``); among equal values
    the earlier input row wins. Rows with a missing ranking value are never
    kept.

    Parameters
    ----------
    df : pd.DataFrame
        Marker table.
    n : int
        Rows to keep per group. 0 keeps nothing.
    group_col : str
        Grouping column (cluster or comparison).
    rank_col : str
        Ranking column (usually the fold change).
    largest : bool
        If True keep the largest values, otherwise the smallest.
    keep_ties : bool
        If True, rows tied with the nth value are all kept, so a group may
        contribute more than ``n`` rows.

    Returns
    -------
    pd.DataFrame
        Filtered table with a fresh index.
    """
    require_columns(df, [group_col, rank_col], "marker table")
    if n < 0:
        raise ValueError(f"n must be >= 0, got {n}")

    frames = []
    for label in pd.unique(df[group_col]):
        if pd.isna(label):
            continue
        group = df[df[group_col] == label]
        group = group[group[rank_col].notna()]
        ordered = group.sort_values(rank_col, ascending=not largest, kind="mergesort")

        if keep_ties:
            ranks = ordered[rank_col].rank(method="min", ascending=not largest)
            kept = ordered[ranks <= n]
        else:
            kept = ordered.head(n)

        if len(kept) == 0:
            logger.debug(f"Group '{label}' contributes no rows")
            continue
        frames.append(kept)

    if not frames:
        return df.iloc[0:0].reset_index(drop=True)

    return pd.concat(frames).reset_index(drop=True)


def add_mean_fold_change(
    df: pd.DataFrame,
    conditions: Optional[Sequence[str]] = None,
    suffix: str = "_logFC",
    column: str = "mean_logFC",
) -> pd.DataFrame:
    """
    Add the row mean of per-condition fold changes to a conserved table.

    Parameters
    ----------
    df : pd.DataFrame
        Conserved marker table with ``<condition>_logFC`` columns.
    conditions : sequence of str, optional
        Condition prefixes to average. Detected from the columns if None.
    suffix : str
        Suffix of the per-condition fold-change columns.
    column : str
        Output column name.

    Returns
    -------
    pd.DataFrame
        Copy of ``df`` with the new column.
    """
    if conditions is None:
        fc_cols = [c for c in df.columns if c.endswith(suffix) and c != column]
    else:
        fc_cols = [f"{cond}{suffix}" for cond in conditions]
        require_columns(df, fc_cols, "conserved marker table")

    if not fc_cols:
        raise SchemaError(f"No '*{suffix}' columns found in conserved marker table")

    result = df.copy()
    result[column] = result[fc_cols].mean(axis=1)
    return result


def _format_field(value, sep: str) -> str:
    if not isinstance(value, str) and pd.isna(value):
        return ""
    text = str(value)
    if sep in text:
        return '"' + text.replace('"', '""') + '"'
    return text


def export_report(
    df: pd.DataFrame,
    output_file: Union[str, Path],
    sep: Optional[str] = None,
) -> str:
    """
    Write a report to a delimited text file.

    No index column is written and a field is quoted only when it contains
    the delimiter; quotes inside such a field are doubled. Other fields,
    including ones holding quote characters, are written as is. Missing
    values are written as empty fields.

    Parameters
    ----------
    df : pd.DataFrame
        Report table.
    output_file : str or Path
        Output path. '.csv' gives comma-separated output, anything else tab.
    sep : str, optional
        Explicit delimiter.

    Returns
    -------
    str
        Path of the written file.
    """
    output_file = Path(output_file)
    sep = sep or infer_delimiter(str(output_file))
    output_file.parent.mkdir(parents=True, exist_ok=True)

    lines = [sep.join(_format_field(col, sep) for col in df.columns)]
    for row in df.astype(object).itertuples(index=False, name=None):
        lines.append(sep.join(_format_field(value, sep) for value in row))

    with open(output_file, "w", newline="") as f:
        f.write("\n".join(lines) + "\n")

    logger.info(f"Wrote {len(df)} rows to {output_file}")
    return str(output_file)


def build_report(
    markers: pd.DataFrame,
    annotations: pd.DataFrame,
    params: Optional[ReportParameters] = None,
    output_file: Optional[Union[str, Path]] = None,
    top_output_file: Optional[Union[str, Path]] = None,
) -> MarkerReport:
    """
    Build an annotated marker report.

    Runs annotate -> reorder -> sort -> top-N, and writes the report (and
    the top-N table) when output paths are given. All key columns are
    checked before anything is written.

    Parameters
    ----------
    markers : pd.DataFrame
        Standardized marker table.
    annotations : pd.DataFrame
        Gene description table.
    params : ReportParameters, optional
        Report settings. Defaults to a whole-cluster report.
    output_file : str or Path, optional
        Where to write the full report.
    top_output_file : str or Path, optional
        Where to write the top-N table.

    Returns
    -------
    MarkerReport
        Full report and top-N table.
    """
    params = params or ReportParameters()
    is_valid, errors = validate_parameters(params)
    if not is_valid:
        raise ValueError("Invalid report parameters: " + "; ".join(errors))

    label_col = params.resolved_label_col()
    sort_by = params.resolved_sort_by()
    rank_col = params.resolved_rank_col()

    logger.info(f"Building '{params.kind}' report from {len(markers)} markers")

    table = markers
    if params.kind == "conserved" and rank_col == "mean_logFC" and rank_col not in table.columns:
        table = add_mean_fold_change(table)

    require_columns(table, [label_col, params.gene_col] + sort_by, "marker table")
    if params.top_n is not None:
        require_columns(table, [rank_col], "marker table")

    table = annotate_markers(
        table,
        annotations,
        how=params.join,
        gene_col=params.gene_col,
        description_col=params.description_col,
        dedup_policy=params.dedup_policy,
    )
    table = reorder_columns(
        table, params.resolved_column_order(), last=(params.description_col,)
    )
    table = sort_markers(table, sort_by, ascending=params.sort_ascending)

    top = None
    if params.top_n is not None:
        top = top_n_per_group(
            table,
            n=params.top_n,
            group_col=label_col,
            rank_col=rank_col,
            largest=params.largest,
            keep_ties=params.keep_ties,
        )
        logger.info(f"Kept {len(top)} top markers (n={params.top_n} per {label_col})")

    if output_file is not None:
        export_report(table, output_file, sep=params.delimiter)
    if top is not None and top_output_file is not None:
        export_report(top, top_output_file, sep=params.delimiter)

    return MarkerReport(
        table=table,
        top_markers=top,
        params=params,
        n_markers_in=len(markers),
    )
