"""Tests for the marker report builder."""

import tempfile
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from cluster_markers.io import SchemaError
from cluster_markers.report import builder, parameters


def create_test_markers():
    """Three markers in two clusters."""
    return pd.DataFrame({
        "gene": ["g1", "g2", "g3"],
        "cluster": ["0", "0", "1"],
        "logFC": [2.0, 1.0, 3.0],
        "adj_p_value": [0.01, 0.2, 0.001],
    })


def create_test_descriptions():
    return pd.DataFrame({
        "gene": ["g1", "g2", "g3"],
        "description": ["desc1", "desc2", "desc3"],
    })


def create_large_markers(n_clusters=4, n_genes=30, seed=0):
    """Marker table with repeated genes across clusters and tied fold changes."""
    rng = np.random.default_rng(seed)
    rows = []
    for cluster in range(n_clusters):
        for i in range(n_genes):
            rows.append({
                "cluster": str(cluster),
                "gene": f"gene_{i}",
                "logFC": float(rng.integers(0, 5)),
                "p_value": float(rng.uniform(0, 0.05)),
                "adj_p_value": float(rng.uniform(0, 1)),
                "pct_in_group": float(rng.uniform(0, 100)),
                "pct_out_group": float(rng.uniform(0, 100)),
            })
    return pd.DataFrame(rows)


class TestDeduplicate:
    """Tests for description deduplication."""

    def test_first_policy(self):
        """First description wins."""
        ann = pd.DataFrame({
            "gene": ["A", "A", "B"],
            "description": ["alpha", "alpha variant", "beta"],
        })

        dedup = builder.deduplicate_descriptions(ann, policy="first")

        assert dedup["gene"].tolist() == ["A", "B"]
        assert dedup["description"].tolist() == ["alpha", "beta"]

    def test_join_policy(self):
        """Distinct descriptions are concatenated in order."""
        ann = pd.DataFrame({
            "gene": ["A", "A", "A", "B"],
            "description": ["alpha", "alpha variant", "alpha", "beta"],
        })

        dedup = builder.deduplicate_descriptions(ann, policy="join")

        assert dedup.set_index("gene").loc["A", "description"] == "alpha; alpha variant"
        assert dedup["gene"].is_unique

    def test_missing_column(self):
        with pytest.raises(SchemaError):
            builder.deduplicate_descriptions(pd.DataFrame({"gene": ["A"]}))

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            builder.deduplicate_descriptions(create_test_descriptions(), policy="last")


class TestAnnotate:
    """Tests for joining markers to descriptions."""

    def test_left_join_preserves_rows(self):
        """Left join keeps every marker, with missing descriptions for unknown genes."""
        markers = create_large_markers()
        ann = pd.DataFrame({
            "gene": ["gene_0", "gene_0", "gene_1", "gene_2"],
            "description": ["zero", "zero again", "one", "two"],
        })

        annotated = builder.annotate_markers(markers, ann, how="left")

        assert len(annotated) == len(markers)
        assert annotated["gene"].tolist() == markers["gene"].tolist()
        assert annotated["description"].notna().sum() == 3 * 4
        assert (annotated.loc[annotated["gene"] == "gene_0", "description"] == "zero").all()

    def test_inner_join_never_grows(self):
        """Duplicate annotation rows do not fan out an inner join."""
        markers = create_large_markers()
        ann = pd.DataFrame({
            "gene": ["gene_0", "gene_0", "gene_0", "gene_5"],
            "description": ["a", "b", "c", "five"],
        })

        annotated = builder.annotate_markers(markers, ann, how="inner")

        assert len(annotated) <= len(markers)
        assert len(annotated) == 2 * 4
        assert set(annotated["gene"]) == {"gene_0", "gene_5"}

    def test_inner_join_drops_unmatched(self):
        markers = create_test_markers()
        ann = create_test_descriptions().iloc[:2]

        annotated = builder.annotate_markers(markers, ann, how="inner")

        assert annotated["gene"].tolist() == ["g1", "g2"]

    def test_annotate_is_idempotent(self):
        """Annotating an annotated table gives the same table."""
        markers = create_large_markers()
        ann = pd.DataFrame({
            "gene": ["gene_1", "gene_1", "gene_3"],
            "description": ["one", "uno", "three"],
        })

        once = builder.annotate_markers(markers, ann, how="left")
        twice = builder.annotate_markers(once, ann, how="left")

        pd.testing.assert_frame_equal(once, twice)

    def test_annotation_gene_column(self):
        """Description table may use a different gene column name."""
        markers = create_test_markers()
        ann = create_test_descriptions().rename(columns={"gene": "gene_name"})

        annotated = builder.annotate_markers(
            markers, ann, how="inner", annotation_gene_col="gene_name"
        )

        assert "gene_name" not in annotated.columns
        assert annotated["description"].tolist() == ["desc1", "desc2", "desc3"]

    def test_invalid_join_mode(self):
        with pytest.raises(ValueError):
            builder.annotate_markers(create_test_markers(), create_test_descriptions(), how="outer")

    def test_missing_gene_column(self):
        markers = create_test_markers().drop(columns="gene")
        with pytest.raises(SchemaError):
            builder.annotate_markers(markers, create_test_descriptions())


class TestReorder:
    """Tests for column reordering."""

    def test_named_columns_first_description_last(self):
        df = builder.annotate_markers(create_test_markers(), create_test_descriptions())

        reordered = builder.reorder_columns(df, ["cluster", "gene", "logFC"])

        assert reordered.columns.tolist() == [
            "cluster", "gene", "logFC", "adj_p_value", "description"
        ]

    def test_reorder_keeps_row_values(self):
        """Every row keeps the same column values."""
        df = builder.annotate_markers(create_large_markers(), create_test_descriptions())

        reordered = builder.reorder_columns(df, ["cluster", "gene", "adj_p_value"])

        assert set(reordered.columns) == set(df.columns)
        pd.testing.assert_frame_equal(reordered[df.columns], df)

    def test_missing_columns(self):
        df = create_test_markers()

        reordered = builder.reorder_columns(df, ["cluster", "gene", "score"])
        assert reordered.columns[:2].tolist() == ["cluster", "gene"]

        with pytest.raises(SchemaError):
            builder.reorder_columns(df, ["cluster", "gene", "score"], strict=True)


class TestSort:
    """Tests for stable sorting."""

    def test_sort_by_cluster_and_adj_p(self):
        markers = create_test_markers().iloc[[2, 1, 0]]

        sorted_df = builder.sort_markers(markers, ["cluster", "adj_p_value"])

        assert sorted_df["gene"].tolist() == ["g1", "g2", "g3"]

    def test_sort_is_stable(self):
        """Rows with equal keys keep their input order."""
        df = pd.DataFrame({
            "cluster": ["1", "0", "1", "0", "0"],
            "adj_p_value": [0.5, 0.1, 0.5, 0.1, 0.1],
            "gene": ["a", "b", "c", "d", "e"],
        })

        sorted_df = builder.sort_markers(df, ["cluster", "adj_p_value"])

        assert sorted_df["gene"].tolist() == ["b", "d", "e", "a", "c"]

    def test_numeric_labels_sort_numerically(self):
        df = pd.DataFrame({"cluster": ["10", "2", "0"], "adj_p_value": [0.1, 0.1, 0.1]})

        sorted_df = builder.sort_markers(df, ["cluster", "adj_p_value"])

        assert sorted_df["cluster"].tolist() == ["0", "2", "10"]

    def test_sort_by_fold_change_ascending(self):
        sorted_df = builder.sort_markers(create_test_markers(), "logFC")

        assert sorted_df["gene"].tolist() == ["g2", "g1", "g3"]

    def test_missing_labels_sort_last(self):
        """Rows without a label go to the end, for string and categorical labels."""
        strings = pd.DataFrame({
            "cluster": ["b", None, "a"],
            "adj_p_value": [0.1, 0.1, 0.1],
        })
        numbers = pd.DataFrame({
            "cluster": ["10", None, "2"],
            "adj_p_value": [0.1, 0.1, 0.1],
        })
        categories = pd.DataFrame({
            "cluster": pd.Categorical(["B", None, "A"], categories=["B", "A"]),
            "adj_p_value": [0.1, 0.1, 0.1],
        })

        assert builder.sort_markers(strings, ["cluster", "adj_p_value"])["cluster"].tolist()[:2] == ["a", "b"]
        assert builder.sort_markers(numbers, ["cluster", "adj_p_value"])["cluster"].tolist()[:2] == ["2", "10"]
        assert builder.sort_markers(categories, ["cluster", "adj_p_value"])["cluster"].tolist()[:2] == ["B", "A"]
        for df in (strings, numbers, categories):
            assert pd.isna(builder.sort_markers(df, "cluster")["cluster"].iloc[-1])

    def test_missing_sort_key(self):
        with pytest.raises(SchemaError):
            builder.sort_markers(create_test_markers(), ["cluster", "p_value"])


class TestTopN:
    """Tests for top-N per group."""

    def test_top_one_per_cluster(self):
        top = builder.top_n_per_group(create_test_markers(), n=1)

        assert top["gene"].tolist() == ["g1", "g3"]

    def test_n_larger_than_group(self):
        """N >= group size keeps every row of the group."""
        markers = create_large_markers(n_genes=6)

        top = builder.top_n_per_group(markers, n=6)

        assert len(top) == len(markers)
        assert set(map(tuple, top[["cluster", "gene"]].values)) == set(
            map(tuple, markers[["cluster", "gene"]].values)
        )

    def test_n_zero(self):
        top = builder.top_n_per_group(create_large_markers(), n=0)

        assert len(top) == 0
        assert top.columns.tolist() == create_large_markers().columns.tolist()

    def test_ranking_key_non_increasing(self):
        top = builder.top_n_per_group(create_large_markers(), n=5)

        for _, group in top.groupby("cluster"):
            assert len(group) == 5
            assert (np.diff(group["logFC"].to_numpy()) <= 0).all()

    def test_smallest_direction(self):
        top = builder.top_n_per_group(create_large_markers(), n=3, largest=False)

        for _, group in top.groupby("cluster"):
            assert (np.diff(group["logFC"].to_numpy()) >= 0).all()

    def test_ties(self):
        """Exact-N breaks ties by input order; keep_ties keeps every tied row."""
        df = pd.DataFrame({
            "cluster": ["0"] * 4,
            "gene": ["a", "b", "c", "d"],
            "logFC": [3.0, 2.0, 2.0, 1.0],
        })

        exact = builder.top_n_per_group(df, n=2)
        tied = builder.top_n_per_group(df, n=2, keep_ties=True)

        assert exact["gene"].tolist() == ["a", "b"]
        assert tied["gene"].tolist() == ["a", "b", "c"]

    def test_group_order_follows_input(self):
        df = create_test_markers().iloc[[2, 0, 1]]

        top = builder.top_n_per_group(df, n=1)

        assert top["cluster"].tolist() == ["1", "0"]

    def test_missing_columns(self):
        with pytest.raises(SchemaError):
            builder.top_n_per_group(create_test_markers(), group_col="comparison")
        with pytest.raises(SchemaError):
            builder.top_n_per_group(create_test_markers(), rank_col="mean_logFC")

    def test_missing_rank_values_not_kept(self):
        """Rows without a fold change never fill up a short group."""
        df = pd.DataFrame({
            "cluster": ["0", "0", "1"],
            "gene": ["a", "b", "c"],
            "logFC": [np.nan, 1.0, np.nan],
        })

        exact = builder.top_n_per_group(df, n=2)
        tied = builder.top_n_per_group(df, n=2, keep_ties=True)

        assert exact["gene"].tolist() == ["b"]
        assert tied["gene"].tolist() == ["b"]

    def test_negative_n(self):
        with pytest.raises(ValueError):
            builder.top_n_per_group(create_test_markers(), n=-1)


class TestMeanFoldChange:
    """Tests for conserved fold-change averaging."""

    def test_detects_condition_columns(self):
        df = pd.DataFrame({
            "cluster": ["0", "0"],
            "gene": ["a", "b"],
            "ctrl_logFC": [1.0, 2.0],
            "stim_logFC": [3.0, 0.0],
        })

        result = builder.add_mean_fold_change(df)

        assert result["mean_logFC"].tolist() == [2.0, 1.0]
        assert "mean_logFC" not in df.columns

    def test_explicit_conditions(self):
        df = pd.DataFrame({"ctrl_logFC": [1.0], "stim_logFC": [3.0]})

        result = builder.add_mean_fold_change(df, conditions=["ctrl"])

        assert result["mean_logFC"].tolist() == [1.0]

    def test_no_fold_change_columns(self):
        with pytest.raises(SchemaError):
            builder.add_mean_fold_change(pd.DataFrame({"gene": ["a"]}))


class TestExport:
    """Tests for report export."""

    def test_tsv_without_index(self):
        df = builder.annotate_markers(
            create_test_markers(), create_test_descriptions().iloc[:2], how="left"
        )

        with tempfile.TemporaryDirectory() as tmpdir:
            output_file = Path(tmpdir) / "report.tsv"

            builder.export_report(df, output_file)

            lines = output_file.read_text().splitlines()
            assert lines[0] == "gene\tcluster\tlogFC\tadj_p_value\tdescription"
            assert lines[1] == "g1\t0\t2.0\t0.01\tdesc1"
            # Missing description is an empty field
            assert lines[3] == "g3\t1\t3.0\t0.001\t"

    def test_csv_quotes_only_delimiter(self):
        df = pd.DataFrame({
            "gene": ["a", "b"],
            "description": ["plain text", "has, comma"],
        })

        with tempfile.TemporaryDirectory() as tmpdir:
            output_file = Path(tmpdir) / "sub" / "report.csv"

            builder.export_report(df, output_file)

            lines = output_file.read_text().splitlines()
            assert lines[1] == "a,plain text"
            assert lines[2] == 'b,"has, comma"'

            loaded = pd.read_csv(output_file)
            assert loaded["description"].tolist() == ["plain text", "has, comma"]

    def test_quote_characters_written_as_is(self):
        """A field with quotes but no delimiter is not quoted."""
        df = pd.DataFrame({
            "gene": ["a", "b"],
            "description": ['protein "X" homolog', 'tab\tand "quote"'],
        })

        with tempfile.TemporaryDirectory() as tmpdir:
            output_file = Path(tmpdir) / "report.tsv"

            builder.export_report(df, output_file)

            lines = output_file.read_text().splitlines()

        assert lines[1] == 'a\tprotein "X" homolog'
        assert lines[2] == 'b\t"tab\tand ""quote"""'


class TestBuildReport:
    """Tests for the full report pipeline."""

    def test_end_to_end(self):
        """Inner annotate + sort, then top-1 per cluster."""
        params = parameters.ReportParameters(kind="all", join="inner", top_n=1)

        result = builder.build_report(
            create_test_markers(), create_test_descriptions(), params=params
        )

        assert result.table["gene"].tolist() == ["g1", "g2", "g3"]
        assert result.table.columns[:2].tolist() == ["cluster", "gene"]
        assert result.table.columns[-1] == "description"
        assert result.top_markers["gene"].tolist() == ["g1", "g3"]
        assert result.n_groups == 2
        assert result.n_markers_in == 3

    def test_writes_files(self):
        params = parameters.ReportParameters(kind="all", join="left", top_n=2)

        with tempfile.TemporaryDirectory() as tmpdir:
            out = Path(tmpdir) / "report.tsv"
            top_out = Path(tmpdir) / "top.tsv"

            result = builder.build_report(
                create_large_markers(),
                create_test_descriptions(),
                params=params,
                output_file=out,
                top_output_file=top_out,
            )

            assert len(pd.read_csv(out, sep="\t")) == len(result.table)
            assert len(pd.read_csv(top_out, sep="\t")) == 2 * 4

    def test_pairwise_sorted_by_fold_change(self):
        markers = create_test_markers().rename(columns={"cluster": "comparison"})
        markers["comparison"] = "0_vs_1"
        params = parameters.get_default_parameters("pairwise")

        result = builder.build_report(markers, create_test_descriptions(), params=params)

        assert result.table["gene"].tolist() == ["g2", "g1", "g3"]
        assert result.table.columns[0] == "comparison"
        assert result.top_markers is None

    def test_conserved_ranks_by_mean_fold_change(self):
        markers = pd.DataFrame({
            "cluster": ["0", "0", "0"],
            "gene": ["g1", "g2", "g3"],
            "ctrl_logFC": [1.0, 3.0, 0.5],
            "stim_logFC": [1.0, 2.0, 0.5],
            "max_p_value": [0.01, 0.02, 0.03],
            "tippett_p_value": [0.02, 0.04, 0.06],
        })
        params = parameters.ReportParameters(kind="conserved", top_n=1)

        result = builder.build_report(markers, create_test_descriptions(), params=params)

        assert "mean_logFC" in result.table.columns
        assert result.table["gene"].tolist() == ["g1", "g2", "g3"]
        assert result.top_markers["gene"].tolist() == ["g2"]

    def test_schema_error_writes_nothing(self):
        markers = create_test_markers().drop(columns="adj_p_value")

        with tempfile.TemporaryDirectory() as tmpdir:
            out = Path(tmpdir) / "report.tsv"

            with pytest.raises(SchemaError):
                builder.build_report(
                    markers, create_test_descriptions(), output_file=out
                )

            assert not out.exists()

    def test_invalid_parameters(self):
        params = parameters.ReportParameters(top_n=-2)

        with pytest.raises(ValueError):
            builder.build_report(create_test_markers(), create_test_descriptions(), params=params)

    def test_empty_group_after_filter(self):
        """Groups with no surviving rows simply contribute nothing."""
        params = parameters.ReportParameters(kind="all", join="inner", top_n=5)
        ann = create_test_descriptions().iloc[:1]

        result = builder.build_report(create_test_markers(), ann, params=params)

        assert result.table["cluster"].tolist() == ["0"]
        assert result.top_markers["gene"].tolist() == ["g1"]


class TestParameters:
    """Tests for report parameters."""

    def test_defaults_per_kind(self):
        all_params = parameters.get_default_parameters("all")
        pairwise = parameters.get_default_parameters("pairwise")

        assert all_params.resolved_label_col() == "cluster"
        assert all_params.resolved_sort_by() == ["cluster", "adj_p_value"]
        assert pairwise.resolved_label_col() == "comparison"
        assert pairwise.resolved_sort_by() == ["logFC"]
        assert parameters.get_default_parameters("conserved").resolved_rank_col() == "mean_logFC"

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            parameters.get_default_parameters("heatmap")

    def test_round_trip_dict(self):
        params = parameters.ReportParameters(kind="conserved", top_n=10, keep_ties=True)

        restored = parameters.ReportParameters.from_dict(
            {**params.to_dict(), "unknown_key": 1}
        )

        assert restored == params

    def test_validate_parameters(self):
        params = parameters.ReportParameters(join="outer", top_n=-1, min_pct=2.0)

        is_valid, errors = parameters.validate_parameters(params)

        assert not is_valid
        assert len(errors) == 3

    def test_load_parameters_from_toml(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = Path(tmpdir) / "report.toml"
            config.write_text('[report]\njoin = "inner"\ntop_n = 10\nkeep_ties = true\n')

            params = parameters.load_parameters(str(config), kind="pairwise")

        assert params.kind == "pairwise"
        assert params.join == "inner"
        assert params.top_n == 10
        assert params.keep_ties is True
        assert params.only_pos is False
