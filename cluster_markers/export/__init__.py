"""Export utilities: report files and run manifests."""

from ..report.builder import export_report
from .manifest import create_manifest, save_manifest, validate_manifest

__all__ = [
    "export_report",
    "create_manifest",
    "save_manifest",
    "validate_manifest",
]
