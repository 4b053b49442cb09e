"""Tests for export module."""

import json
import tempfile
from pathlib import Path

import pandas as pd

from cluster_markers.export import manifest
from cluster_markers.report import ReportParameters


def create_test_inputs(tmpdir):
    """Write a marker and an annotation table, return their paths."""
    markers_file = Path(tmpdir) / "markers.tsv"
    annotations_file = Path(tmpdir) / "annotations.tsv"

    pd.DataFrame({
        "cluster": ["0", "1"],
        "gene": ["a", "b"],
        "logFC": [1.0, 2.0],
        "adj_p_value": [0.01, 0.02],
    }).to_csv(markers_file, sep="\t", index=False)
    pd.DataFrame({"gene": ["a"], "description": ["alpha"]}).to_csv(
        annotations_file, sep="\t", index=False
    )

    return str(markers_file), str(annotations_file)


class TestManifest:
    """Tests for manifest creation."""

    def test_create_manifest(self):
        """Test creating a run manifest."""
        with tempfile.TemporaryDirectory() as tmpdir:
            input_files = create_test_inputs(tmpdir)

            manifest_data = manifest.create_manifest(
                list(input_files),
                parameters=ReportParameters().to_dict(),
                n_markers_in=2,
                n_markers_out=1,
                n_top_markers=1,
                n_groups=1,
            )

        assert "timestamp" in manifest_data
        assert "version" in manifest_data
        assert "software" in manifest_data
        assert len(manifest_data["input"]["files"]) == 2
        assert len(manifest_data["input"]["files"][0]["sha256"]) == 64

        # Check processing stats
        assert manifest_data["processing"]["n_markers_dropped"] == 1
        assert manifest_data["parameters"]["join"] == "left"

    def test_missing_input_file(self):
        """Missing inputs are skipped, not hashed."""
        manifest_data = manifest.create_manifest(["does_not_exist.tsv"])

        assert manifest_data["input"]["files"] == []
        assert manifest_data["processing"]["n_markers_dropped"] is None

    def test_file_hash_is_stable(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            markers_file, _ = create_test_inputs(tmpdir)

            first = manifest.compute_file_hash(markers_file)
            second = manifest.compute_file_hash(markers_file)
            md5 = manifest.compute_file_hash(markers_file, "md5")

        assert first == second
        assert len(md5) == 32

    def test_save_manifest(self):
        """Test saving manifest to JSON."""
        manifest_data = manifest.create_manifest([], n_markers_out=3)

        with tempfile.TemporaryDirectory() as tmpdir:
            output_file = Path(tmpdir) / "run" / "manifest.json"

            manifest.save_manifest(manifest_data, str(output_file))

            assert output_file.exists()

            with open(output_file) as f:
                loaded = json.load(f)

        assert loaded["version"] == manifest_data["version"]
        assert loaded["processing"]["n_markers_out"] == 3

    def test_validate_manifest(self):
        """Test manifest validation."""
        manifest_data = manifest.create_manifest([])

        is_valid, errors = manifest.validate_manifest(manifest_data)

        assert is_valid
        assert len(errors) == 0

    def test_validate_incomplete_manifest(self):
        is_valid, errors = manifest.validate_manifest({"input": {}, "processing": {}})

        assert not is_valid
        assert "Missing 'files' in input section" in errors
        assert "Missing 'n_markers_out' in processing section" in errors
