"""Manifest creation for documenting report runs."""

import hashlib
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .. import __version__

logger = logging.getLogger(__name__)


def compute_file_hash(file_path: str, algorithm: str = "sha256") -> str:
    """
    Compute hash of a file.

    Parameters
    ----------
    file_path : str
        Path to file.
    algorithm : str
        Hash algorithm ('md5', 'sha256').

    Returns
    -------
    str
        Hex digest of file hash.
    """
    hash_func = hashlib.new(algorithm)

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(4096), b""):
            hash_func.update(chunk)

    return hash_func.hexdigest()


def create_manifest(
    input_files: list,
    parameters: Optional[Dict[str, Any]] = None,
    n_markers_in: Optional[int] = None,
    n_markers_out: Optional[int] = None,
    n_top_markers: Optional[int] = None,
    n_groups: Optional[int] = None,
    output_files: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """
    Create a manifest documenting a report run.

    Parameters
    ----------
    input_files : list
        List of input file paths (h5ad, marker table, annotations).
    parameters : dict, optional
        Report parameters (``ReportParameters.to_dict()``).
    n_markers_in : int, optional
        Marker rows before annotation.
    n_markers_out : int, optional
        Rows in the final report.
    n_top_markers : int, optional
        Rows in the top-N table.
    n_groups : int, optional
        Number of clusters or comparisons in the report.
    output_files : dict, optional
        Name -> path of files written.

    Returns
    -------
    dict
        Manifest dictionary.
    """
    manifest = {
        "timestamp": datetime.now().isoformat(),
        "version": __version__,
        "input": {
            "files": [],
        },
        "processing": {
            "n_markers_in": n_markers_in,
            "n_markers_out": n_markers_out,
            "n_markers_dropped": (
                n_markers_in - n_markers_out
                if n_markers_in is not None and n_markers_out is not None
                else None
            ),
            "n_top_markers": n_top_markers,
            "n_groups": n_groups,
        },
        "parameters": parameters or {},
        "output": output_files or {},
    }

    for file_path in input_files:
        if Path(file_path).exists():
            file_info = {
                "path": str(file_path),
                "name": Path(file_path).name,
                "size_bytes": Path(file_path).stat().st_size,
                "sha256": compute_file_hash(file_path, "sha256"),
            }
            manifest["input"]["files"].append(file_info)
        else:
            logger.warning(f"Input file not found, not hashed: {file_path}")

    try:
        import anndata as ad
        import pandas as pd
        import scanpy as sc

        manifest["software"] = {
            "python_version": sys.version,
            "cluster_markers_version": __version__,
            "scanpy_version": sc.__version__,
            "anndata_version": ad.__version__,
            "pandas_version": pd.__version__,
        }
    except ImportError as e:
        logger.warning(f"Could not retrieve software versions: {e}")

    return manifest


def save_manifest(manifest: Dict[str, Any], output_file: str) -> None:
    """
    Save manifest to JSON file.

    Parameters
    ----------
    manifest : dict
        Manifest dictionary.
    output_file : str
        Output JSON file path.
    """
    logger.info(f"Saving manifest to {output_file}")

    Path(output_file).parent.mkdir(parents=True, exist_ok=True)
    with open(output_file, "w") as f:
        json.dump(manifest, f, indent=2, default=str)

    logger.info("Manifest saved")


def validate_manifest(manifest: Dict[str, Any]) -> tuple[bool, list]:
    """
    Validate manifest structure.

    Parameters
    ----------
    manifest : dict
        Manifest dictionary to validate.

    Returns
    -------
    tuple of (bool, list)
        (is_valid, list of error messages)
    """
    errors = []

    required_keys = ["timestamp", "version", "input", "processing", "parameters"]
    for key in required_keys:
        if key not in manifest:
            errors.append(f"Missing required key: {key}")

    if "input" in manifest:
        if "files" not in manifest["input"]:
            errors.append("Missing 'files' in input section")

    if "processing" in manifest:
        if "n_markers_out" not in manifest["processing"]:
            errors.append("Missing 'n_markers_out' in processing section")

    is_valid = len(errors) == 0

    return is_valid, errors
