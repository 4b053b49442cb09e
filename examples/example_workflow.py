"""
Example workflow demonstrating the cluster-markers pipeline.

This script shows how to:
1. Load a clustered H5AD file
2. Find markers of every cluster and write an annotated report
3. Find markers conserved across conditions
4. Compare two clusters
5. Rename clusters to cell types and repeat the per-cluster report
"""

import logging
from pathlib import Path

from cluster_markers import export, idents, io, markers, report

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    """Run the example workflow."""

    # ==================== 1. Load Data ====================
    logger.info("Step 1: Loading H5AD file and gene annotations")

    input_file = "data/clustered.h5ad"  # Replace with your file
    annotations_file = "data/gene_annotations.tsv"  # gene_name + description
    output_dir = Path("results")

    adata = io.load_h5ad(input_file)
    annotations = io.load_annotations(annotations_file)

    is_valid, messages = io.validate_annotation_table(annotations)
    if not is_valid:
        logger.error("Annotation table is not usable!")
        for msg in messages:
            logger.error(msg)
        return

    groupby = markers.get_candidate_label_columns(adata)[0]
    condition_col = markers.get_sample_column(adata)
    logger.info(f"Clusters: '{groupby}', conditions: '{condition_col}'")

    # ==================== 2. All Markers ====================
    logger.info("Step 2: Markers of every cluster")

    params = report.get_default_parameters("all")
    all_markers = markers.find_all_markers(
        adata,
        groupby,
        only_pos=params.only_pos,
        logfc_threshold=params.logfc_threshold,
        min_pct=params.min_pct,
    )
    result = report.build_report(
        all_markers,
        annotations,
        params=params,
        output_file=output_dir / "all_markers.tsv",
        top_output_file=output_dir / "all_markers_top5.tsv",
    )
    logger.info(f"{len(result.table)} markers, {len(result.top_markers)} top markers")

    manifest = export.create_manifest(
        input_files=[input_file, annotations_file],
        parameters=params.to_dict(),
        n_markers_in=result.n_markers_in,
        n_markers_out=len(result.table),
        n_top_markers=len(result.top_markers),
        n_groups=result.n_groups,
    )
    export.save_manifest(manifest, output_dir / "all_markers_manifest.json")

    # ==================== 3. Conserved Markers ====================
    if condition_col:
        logger.info("Step 3: Markers conserved across conditions")

        conserved = markers.find_conserved_markers_for_clusters(adata, groupby, condition_col)
        if len(conserved):
            report.build_report(
                conserved,
                annotations,
                params=report.get_default_parameters("conserved"),
                output_file=output_dir / "conserved_markers.tsv",
                top_output_file=output_dir / "conserved_markers_top5.tsv",
            )
    else:
        logger.info("Step 3: Skipped, no condition column")

    # ==================== 4. Pairwise Comparison ====================
    logger.info("Step 4: Comparing the first two clusters")

    clusters = list(adata.obs[groupby].astype(str).unique())
    if len(clusters) >= 2:
        pairwise = markers.find_markers(adata, groupby, ident_1=clusters[0], ident_2=clusters[1])
        report.build_report(
            pairwise,
            annotations,
            params=report.get_default_parameters("pairwise"),
            output_file=output_dir / f"{clusters[0]}_vs_{clusters[1]}.tsv",
        )

    # ==================== 5. Rename Clusters ====================
    logger.info("Step 5: Renaming clusters to cell types")

    mapping = {clusters[0]: "T cell"}  # Replace with your annotation
    adata = idents.rename_idents(adata, groupby, mapping, new_col="cell_type")
    print(idents.compute_cluster_summary(adata, "cell_type"))

    by_type = markers.find_all_markers(adata, "cell_type")
    report.build_report(
        by_type,
        annotations,
        params=params,
        output_file=output_dir / "cell_type_markers.tsv",
        top_output_file=output_dir / "cell_type_markers_top5.tsv",
    )

    logger.info("=" * 60)
    logger.info("Workflow complete!")
    logger.info(f"Reports written to: {output_dir}")
    logger.info("=" * 60)


if __name__ == "__main__":
    main()
