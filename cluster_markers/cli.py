"""Command-line interface for cluster-markers."""

import logging
import sys
from pathlib import Path
from typing import Optional

import click

from . import __version__, export, idents, io, markers, report


# Configure logging
def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def report_options(func):
    """Options shared by every command that writes a marker report."""
    options = [
        click.option("--annotations", "-a", type=click.Path(exists=True), required=True,
                     help="Gene annotation table (gene name + description)"),
        click.option("--output", "-o", type=click.Path(), required=True,
                     help="Report file (.tsv/.txt tab-separated, .csv comma-separated)"),
        click.option("--top-output", type=click.Path(), default=None,
                     help="Top-N file [default: <output>_top<N>]"),
        click.option("--join", type=click.Choice(["inner", "left"]), default=None,
                     help="inner drops genes without description, left keeps them"),
        click.option("--dedup", type=click.Choice(["first", "join"]), default=None,
                     help="How to collapse genes with several descriptions"),
        click.option("--top-n", type=int, default=None, help="Top markers per group"),
        click.option("--keep-ties", is_flag=True, default=None,
                     help="Keep every marker tied at the Nth fold change"),
        click.option("--config", "config_file", type=click.Path(exists=True), default=None,
                     help="TOML file with report parameters"),
        click.option("--no-manifest", is_flag=True, help="Do not write a run manifest"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def resolve_parameters(kind: str, config_file: Optional[str] = None, **overrides) -> report.ReportParameters:
    """Defaults for ``kind``, then the config file, then command-line values."""
    if config_file:
        params = report.load_parameters(config_file, kind=kind)
    else:
        params = report.get_default_parameters(kind)

    values = params.to_dict()
    values.update({k: v for k, v in overrides.items() if v is not None})
    params = report.ReportParameters.from_dict(values)

    is_valid, errors = report.validate_parameters(params)
    if not is_valid:
        for err in errors:
            click.echo(f"ERROR: {err}", err=True)
        sys.exit(1)

    return params


def default_top_output(output: str, top_n: int) -> str:
    path = Path(output)
    return str(path.with_name(f"{path.stem}_top{top_n}{path.suffix}"))


def write_report(
    marker_table,
    annotations_file: str,
    params: report.ReportParameters,
    output: str,
    top_output: Optional[str],
    input_files: list,
    no_manifest: bool,
):
    """Build, export and document a report; exit with status 1 on schema errors."""
    logger = logging.getLogger(__name__)

    annotations = io.load_annotations(annotations_file)
    if params.top_n is not None and top_output is None:
        top_output = default_top_output(output, params.top_n)

    try:
        result = report.build_report(
            marker_table,
            annotations,
            params=params,
            output_file=output,
            top_output_file=top_output,
        )
    except (io.SchemaError, ValueError) as e:
        click.echo("\nERROR: Report failed", err=True)
        click.echo(str(e), err=True)
        sys.exit(1)

    outputs = {"report": output}
    if result.top_markers is not None:
        outputs["top_markers"] = top_output

    if not no_manifest:
        manifest = export.create_manifest(
            input_files=input_files + [annotations_file],
            parameters=params.to_dict(),
            n_markers_in=result.n_markers_in,
            n_markers_out=len(result.table),
            n_top_markers=len(result.top_markers) if result.top_markers is not None else None,
            n_groups=result.n_groups,
            output_files=outputs,
        )
        manifest_file = str(Path(output).with_name(f"{Path(output).stem}_manifest.json"))
        export.save_manifest(manifest, manifest_file)
        outputs["manifest"] = manifest_file

    logger.info(f"Report complete: {len(result.table)} markers in {result.n_groups} groups")

    click.echo("\n=== Report Files ===")
    for key, path in outputs.items():
        click.echo(f"  {key}: {path}")


def resolve_groupby(adata, groupby: str) -> str:
    if groupby != "auto":
        return groupby
    candidates = markers.get_candidate_label_columns(adata)
    if not candidates:
        click.echo("ERROR: adata.obs has no columns to group by", err=True)
        sys.exit(1)
    click.echo(f"Using cluster column: {candidates[0]}")
    return candidates[0]


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def main(verbose):
    """cluster-markers: marker identification and reports for clustered single-cell data."""
    setup_logging(verbose)


@main.command()
@click.argument("markers_file", type=click.Path(exists=True))
@click.option("--annotations", "-a", type=click.Path(exists=True), help="Gene annotation table")
@click.option("--label-col", default="cluster", help="Cluster or comparison column [default: cluster]")
def validate(markers_file, annotations, label_col):
    """
    Validate a marker table (and annotation table).

    MARKERS_FILE: Marker table (tsv/csv from this tool, Seurat or scanpy)
    """
    logger = logging.getLogger(__name__)
    logger.info(f"Validating {markers_file}")

    table = io.load_marker_table(markers_file)
    is_valid, messages = io.validate_marker_table(table, label_col=label_col)

    mappings = io.detect_marker_columns(io.read_table(markers_file))

    if annotations:
        ann = io.load_annotations(annotations)
        ann_valid, ann_messages = io.validate_annotation_table(ann)
        is_valid = is_valid and ann_valid
        messages = messages + ann_messages

    click.echo("\n=== Validation Results ===")
    click.echo(f"Status: {'PASSED' if is_valid else 'FAILED'}")
    click.echo(f"Rows: {len(table)}")
    click.echo("\nMessages:")
    for msg in messages:
        click.echo(f"  {msg}")

    click.echo("\n=== Detected Columns ===")
    for key, value in mappings.items():
        click.echo(f"  {key}: {value}")

    sys.exit(0 if is_valid else 1)


@main.command("all-markers")
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--groupby", "-g", default="auto", help="Cluster column in adata.obs [default: auto-detect]")
@click.option("--method", type=click.Choice(["wilcoxon", "t-test", "t-test_overestim_var"]), default=None)
@click.option("--logfc-threshold", type=float, default=None, help="Minimum |log2 fold change|")
@click.option("--min-pct", type=float, default=None, help="Minimum detection fraction in either group")
@click.option("--all-directions", is_flag=True, help="Also keep downregulated genes")
@click.option("--layer", default=None, help="Layer to test on [default: adata.X]")
@report_options
def all_markers(input_file, groupby, method, logfc_threshold, min_pct, all_directions, layer,
                annotations, output, top_output, join, dedup, top_n, keep_ties, config_file,
                no_manifest):
    """
    Find markers of every cluster vs all other cells and write a report.

    INPUT_FILE: Path to clustered H5AD file
    """
    params = resolve_parameters(
        "all",
        config_file,
        method=method,
        logfc_threshold=logfc_threshold,
        min_pct=min_pct,
        only_pos=False if all_directions else None,
        layer=layer,
        join=join,
        dedup_policy=dedup,
        top_n=top_n,
        keep_ties=keep_ties,
    )

    adata = io.load_h5ad(input_file)
    groupby = resolve_groupby(adata, groupby)

    try:
        table = markers.find_all_markers(
            adata,
            groupby=groupby,
            only_pos=params.only_pos,
            logfc_threshold=params.logfc_threshold,
            min_pct=params.min_pct,
            method=params.method,
            layer=params.layer,
            min_cells_group=params.min_cells_group,
        )
    except ValueError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)

    write_report(table, annotations, params, output, top_output, [input_file], no_manifest)


@main.command("conserved-markers")
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--groupby", "-g", default="auto", help="Cluster column in adata.obs [default: auto-detect]")
@click.option("--grouping-var", default="auto", help="Condition column in adata.obs [default: auto-detect]")
@click.option("--cluster", "clusters", multiple=True, help="Cluster to test (repeatable) [default: all]")
@click.option("--meta-method", type=click.Choice(["tippett", "fisher", "pearson", "stouffer", "mudholkar_george"]),
              default=None, help="How per-condition p-values are combined")
@click.option("--method", type=click.Choice(["wilcoxon", "t-test", "t-test_overestim_var"]), default=None)
@click.option("--logfc-threshold", type=float, default=None, help="Minimum |log2 fold change|")
@click.option("--min-pct", type=float, default=None, help="Minimum detection fraction in either group")
@click.option("--layer", default=None, help="Layer to test on [default: adata.X]")
@report_options
def conserved_markers(input_file, groupby, grouping_var, clusters, meta_method, method,
                      logfc_threshold, min_pct, layer, annotations, output, top_output, join,
                      dedup, top_n, keep_ties, config_file, no_manifest):
    """
    Find markers conserved across conditions for each cluster and write a report.

    INPUT_FILE: Path to clustered H5AD file
    """
    params = resolve_parameters(
        "conserved",
        config_file,
        meta_method=meta_method,
        method=method,
        logfc_threshold=logfc_threshold,
        min_pct=min_pct,
        layer=layer,
        join=join,
        dedup_policy=dedup,
        top_n=top_n,
        keep_ties=keep_ties,
    )

    adata = io.load_h5ad(input_file)
    groupby = resolve_groupby(adata, groupby)
    if grouping_var == "auto":
        grouping_var = markers.get_sample_column(adata)
        if grouping_var is None:
            click.echo("ERROR: No condition column detected; pass --grouping-var", err=True)
            sys.exit(1)
        click.echo(f"Using condition column: {grouping_var}")

    try:
        table = markers.find_conserved_markers_for_clusters(
            adata,
            groupby=groupby,
            grouping_var=grouping_var,
            clusters=list(clusters) or None,
            only_pos=params.only_pos,
            logfc_threshold=params.logfc_threshold,
            min_pct=params.min_pct,
            method=params.method,
            meta_method=params.meta_method,
            layer=params.layer,
            min_cells_group=params.min_cells_group,
        )
    except ValueError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)

    if len(table) == 0:
        click.echo("ERROR: No conserved markers found for any cluster", err=True)
        sys.exit(1)

    write_report(table, annotations, params, output, top_output, [input_file], no_manifest)


@main.command("pairwise-markers")
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--groupby", "-g", default="auto", help="Cluster column in adata.obs [default: auto-detect]")
@click.option("--ident-1", required=True, help="Cluster to test")
@click.option("--ident-2", default=None, help="Cluster to compare against [default: all other cells]")
@click.option("--only-pos", is_flag=True, default=None, help="Keep only genes up in ident-1")
@click.option("--method", type=click.Choice(["wilcoxon", "t-test", "t-test_overestim_var"]), default=None)
@click.option("--logfc-threshold", type=float, default=None, help="Minimum |log2 fold change|")
@click.option("--min-pct", type=float, default=None, help="Minimum detection fraction in either group")
@click.option("--layer", default=None, help="Layer to test on [default: adata.X]")
@report_options
def pairwise_markers(input_file, groupby, ident_1, ident_2, only_pos, method, logfc_threshold,
                     min_pct, layer, annotations, output, top_output, join, dedup, top_n,
                     keep_ties, config_file, no_manifest):
    """
    Find genes differing between two clusters and write a report.

    INPUT_FILE: Path to clustered H5AD file
    """
    params = resolve_parameters(
        "pairwise",
        config_file,
        only_pos=only_pos,
        method=method,
        logfc_threshold=logfc_threshold,
        min_pct=min_pct,
        layer=layer,
        join=join,
        dedup_policy=dedup,
        top_n=top_n,
        keep_ties=keep_ties,
    )

    adata = io.load_h5ad(input_file)
    groupby = resolve_groupby(adata, groupby)

    try:
        table = markers.find_markers(
            adata,
            groupby=groupby,
            ident_1=ident_1,
            ident_2=ident_2,
            only_pos=params.only_pos,
            logfc_threshold=params.logfc_threshold,
            min_pct=params.min_pct,
            method=params.method,
            layer=params.layer,
            min_cells_group=params.min_cells_group,
        )
    except ValueError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)

    write_report(table, annotations, params, output, top_output, [input_file], no_manifest)


@main.command("report")
@click.argument("markers_file", type=click.Path(exists=True))
@click.option("--kind", type=click.Choice(["all", "conserved", "pairwise"]), default="all",
              help="Marker source the table came from [default: all]")
@click.option("--rename", "rename_file", type=click.Path(exists=True), default=None,
              help="Mapping file (old label, new label) applied to cluster labels")
@click.option("--comparison", default=None,
              help="Comparison label for pairwise tables without one [default: file name]")
@report_options
def report_cmd(markers_file, kind, rename_file, comparison, annotations, output, top_output, join, dedup,
               top_n, keep_ties, config_file, no_manifest):
    """
    Build a report from a precomputed marker table.

    MARKERS_FILE: Marker table (tsv/csv from this tool, Seurat or scanpy)
    """
    params = resolve_parameters(
        kind,
        config_file,
        join=join,
        dedup_policy=dedup,
        top_n=top_n,
        keep_ties=keep_ties,
    )

    table = io.load_marker_table(markers_file)
    if kind == "pairwise" and "comparison" not in table.columns:
        table.insert(0, "comparison", comparison or Path(markers_file).stem)
    if rename_file:
        label_col = params.resolved_label_col()
        labels = table[label_col].unique() if label_col in table.columns else None
        mapping = idents.load_ident_mapping(rename_file, labels=labels)
        try:
            table = idents.rename_labels(table, label_col, mapping)
        except io.SchemaError as e:
            click.echo(f"ERROR: {e}", err=True)
            sys.exit(1)

    write_report(table, annotations, params, output, top_output, [markers_file], no_manifest)


@main.command("rename-idents")
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--groupby", "-g", required=True, help="Cluster column in adata.obs")
@click.option("--mapping", "mapping_file", type=click.Path(exists=True), default=None,
              help="Mapping file: TOML table or two-column tsv/csv (old, new)")
@click.option("--new-col", default=None, help="Write labels to this column [default: overwrite]")
@click.option("--remove", multiple=True, help="Cluster to remove (repeatable), after renaming")
@click.option("--output", "-o", type=click.Path(), help="Output H5AD file")
def rename_idents_cmd(input_file, groupby, mapping_file, new_col, remove, output):
    """
    Rename cluster identities to cell types and/or remove clusters.

    INPUT_FILE: Path to clustered H5AD file
    """
    logger = logging.getLogger(__name__)

    if not mapping_file and not remove:
        click.echo("ERROR: Nothing to do; pass --mapping and/or --remove", err=True)
        sys.exit(1)

    adata = io.load_h5ad(input_file)
    label_col = groupby

    try:
        if mapping_file:
            if groupby not in adata.obs.columns:
                raise ValueError(f"Label column '{groupby}' not found in adata.obs")
            mapping = idents.load_ident_mapping(
                mapping_file, labels=adata.obs[groupby].dropna().astype(str).unique()
            )
            adata = idents.rename_idents(adata, groupby, mapping, new_col=new_col)
            label_col = new_col or groupby
        if remove:
            adata = idents.subset_clusters(adata, label_col, remove, invert=True)
    except ValueError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)

    output_file = output or input_file.replace(".h5ad", "_renamed.h5ad")
    logger.info(f"Saving to {output_file}")
    adata.write_h5ad(output_file)

    summary = idents.compute_cluster_summary(adata, label_col)
    click.echo(f"Identities written to: {output_file}")
    for _, row in summary.iterrows():
        click.echo(f"  {row['cluster']}: {row['n_cells']} cells")


@main.command()
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--groupby", "-g", default="auto", help="Cluster column in adata.obs [default: auto-detect]")
@click.option("--sample-col", default=None, help="Sample column for per-sample counts")
@click.option("--output", "-o", type=click.Path(), help="Output table (tsv/csv)")
def summarize(input_file, groupby, sample_col, output):
    """
    Count cells per cluster (and per sample).

    INPUT_FILE: Path to clustered H5AD file
    """
    adata = io.load_h5ad(input_file)
    groupby = resolve_groupby(adata, groupby)

    try:
        summary = idents.compute_cluster_summary(adata, groupby, sample_col=sample_col)
    except ValueError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)

    output_file = output or input_file.replace(".h5ad", "_clusters.tsv")
    export.export_report(summary, output_file)
    click.echo(f"Summary: {output_file}")


if __name__ == "__main__":
    main()
