"""Parameter management for marker finding and report building."""

import logging
from dataclasses import asdict, dataclass
from typing import List, Literal, Optional

logger = logging.getLogger(__name__)

REPORT_KINDS = ("all", "conserved", "pairwise")
JOIN_MODES = ("inner", "left")
DEDUP_POLICIES = ("first", "join")
META_METHODS = ("tippett", "fisher", "pearson", "stouffer", "mudholkar_george")


@dataclass
class ReportParameters:
    """Parameters for a marker report run."""

    # Report kind
    kind: Literal["all", "conserved", "pairwise"] = "all"

    # Annotation
    join: Literal["inner", "left"] = "left"
    dedup_policy: Literal["first", "join"] = "first"
    gene_col: str = "gene"
    description_col: str = "description"

    # Layout
    label_col: Optional[str] = None  # "cluster", or "comparison" for pairwise
    column_order: Optional[List[str]] = None
    sort_by: Optional[List[str]] = None
    sort_ascending: bool = True

    # Top-N per group
    top_n: Optional[int] = 5
    rank_col: Optional[str] = None
    largest: bool = True
    keep_ties: bool = False

    # Export
    delimiter: Optional[str] = None  # inferred from the output extension

    # Marker finding
    method: str = "wilcoxon"
    only_pos: bool = True
    logfc_threshold: float = 0.25
    min_pct: float = 0.1
    layer: Optional[str] = None
    meta_method: str = "tippett"
    min_cells_group: int = 3

    def resolved_label_col(self) -> str:
        if self.label_col:
            return self.label_col
        return "comparison" if self.kind == "pairwise" else "cluster"

    def resolved_sort_by(self) -> List[str]:
        if self.sort_by:
            return list(self.sort_by)
        if self.kind == "pairwise":
            return ["logFC"]
        if self.kind == "conserved":
            return [self.resolved_label_col(), "max_p_value"]
        return [self.resolved_label_col(), "adj_p_value"]

    def resolved_rank_col(self) -> str:
        if self.rank_col:
            return self.rank_col
        return "mean_logFC" if self.kind == "conserved" else "logFC"

    def resolved_column_order(self) -> List[str]:
        if self.column_order:
            return list(self.column_order)
        lead = [self.resolved_label_col(), self.gene_col]
        if self.kind == "conserved":
            return lead
        return lead + [
            "logFC",
            "pct_in_group",
            "pct_out_group",
            "p_value",
            "adj_p_value",
        ]

    def to_dict(self):
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict):
        """Create from dictionary."""
        return cls(**{k: v for k, v in d.items() if k in cls.__annotations__})


def get_default_parameters(kind: Literal["all", "conserved", "pairwise"] = "all") -> ReportParameters:
    """
    Get default parameters for a report kind.

    Parameters
    ----------
    kind : {'all', 'conserved', 'pairwise'}
        Which marker source the report is built from.

    Returns
    -------
    ReportParameters
        Default parameters for the specified kind.
    """
    if kind == "all":
        return ReportParameters(kind="all", join="left", top_n=5)
    elif kind == "conserved":
        return ReportParameters(kind="conserved", join="left", top_n=5, only_pos=True)
    elif kind == "pairwise":
        # Both directions are of interest when comparing two clusters
        return ReportParameters(kind="pairwise", join="inner", top_n=None, only_pos=False)
    else:
        raise ValueError(f"Unknown report kind: {kind}")


def validate_parameters(params: ReportParameters) -> tuple[bool, list[str]]:
    """
    Validate parameters.

    Parameters
    ----------
    params : ReportParameters
        Parameters to validate.

    Returns
    -------
    tuple of (bool, list)
        (is_valid, list of error messages)
    """
    errors = []

    if params.kind not in REPORT_KINDS:
        errors.append(f"kind must be one of {REPORT_KINDS}, got '{params.kind}'")
    if params.join not in JOIN_MODES:
        errors.append(f"join must be one of {JOIN_MODES}, got '{params.join}'")
    if params.dedup_policy not in DEDUP_POLICIES:
        errors.append(f"dedup_policy must be one of {DEDUP_POLICIES}, got '{params.dedup_policy}'")

    if params.top_n is not None and params.top_n < 0:
        errors.append("top_n must be >= 0")

    if params.logfc_threshold < 0:
        errors.append("logfc_threshold must be >= 0")
    if not 0 <= params.min_pct <= 1:
        errors.append("min_pct must be between 0 and 1")
    if params.min_cells_group < 1:
        errors.append("min_cells_group must be >= 1")
    if params.meta_method not in META_METHODS:
        errors.append(f"meta_method must be one of {META_METHODS}, got '{params.meta_method}'")

    is_valid = len(errors) == 0

    return is_valid, errors


def load_parameters(config_file: str, kind: Optional[str] = None) -> ReportParameters:
    """
    Load parameters from a TOML file.

    Values are read from a ``[report]`` table if present, otherwise from the
    top level. Keys not in the file fall back to the defaults for ``kind``.

    Parameters
    ----------
    config_file : str
        Path to TOML file.
    kind : str, optional
        Report kind; overrides any ``kind`` in the file.

    Returns
    -------
    ReportParameters
        Parameters with file values applied.
    """
    import toml

    logger.info(f"Loading parameters from {config_file}")
    data = toml.load(config_file)
    values = data.get("report", data)

    unknown = [k for k in values if k not in ReportParameters.__annotations__]
    if unknown:
        logger.warning(f"Ignoring unknown parameters in {config_file}: {unknown}")

    kind = kind or values.get("kind", "all")
    merged = get_default_parameters(kind).to_dict()
    merged.update({k: v for k, v in values.items() if k in ReportParameters.__annotations__})
    merged["kind"] = kind

    return ReportParameters.from_dict(merged)
