"""Test fixtures for ko_scrna.

Provides synthetic count matrices and helpers.
"""

from .synthetic import (
    create_counts_adata,
    create_lognorm_adata,
    lognormalize,
    marker_genes,
    write_10x_dir,
    write_h5_counts,
)

__all__ = [
    "create_counts_adata",
    "create_lognorm_adata",
    "lognormalize",
    "marker_genes",
    "write_10x_dir",
    "write_h5_counts",
]
