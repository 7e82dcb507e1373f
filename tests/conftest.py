"""Pytest configuration and shared fixtures for ko_scrna tests."""

import sys
from pathlib import Path

import matplotlib
import pytest

matplotlib.use("Agg")

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ko_scrna.pipeline_params import build_params
from tests.fixtures import create_counts_adata, create_lognorm_adata, marker_genes


# ============================================================================
# Parameter Fixtures
# ============================================================================


SMALL_OVERRIDES = {
    "cell_filters": {"min_features": 200, "max_mt_pct": 5},
    "normalization": {"n_variable_features": 300},
    "embedding": {"n_pcs": 10, "dims": 10, "k": 10, "umap_n_neighbors": 15},
    "doublet": {"pK_grid": [0.02, 0.05, 0.1], "n_variable_features": 300, "n_pcs": 10},
    "gsea": {"n_permutations": 100, "min_size": 5, "max_size": 100},
}


@pytest.fixture
def small_params() -> dict:
    """Parameters scaled down for a few hundred synthetic cells."""
    return build_params(SMALL_OVERRIDES)


# ============================================================================
# Data Fixtures
# ============================================================================


@pytest.fixture
def counts_adata():
    """300 raw-count cells in 3 clusters, 10 with a high mitochondrial fraction."""
    return create_counts_adata(n_cells=300, n_bad=10, seed=7)


@pytest.fixture
def wt_counts():
    return create_counts_adata(n_cells=250, genotype="WT", seed=11)


@pytest.fixture
def ko_counts():
    return create_counts_adata(n_cells=250, genotype="KO", seed=12)


@pytest.fixture
def lognorm_adata():
    """Log-normalized WT + KO cells with ``genotype`` and ``true_cluster``."""
    return create_lognorm_adata(n_cells=300, seed=3)


@pytest.fixture
def markers() -> dict:
    return marker_genes()
