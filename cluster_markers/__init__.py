"""
cluster-markers: marker gene identification and reporting for clustered single-cell data.

This package provides tools to:
- Find marker genes of every cluster, of one cluster vs another, and
  markers conserved across conditions (delegated to scanpy)
- Annotate marker tables with gene descriptions
- Reorder, sort and filter top markers per cluster
- Export reports as delimited text files with a run manifest
- Rename cluster identities to cell types and subset clusters
"""

__version__ = "0.1.0"

from . import io, markers, report, idents, export

__all__ = ["io", "markers", "report", "idents", "export", "__version__"]
