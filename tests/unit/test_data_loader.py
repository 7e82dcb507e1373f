"""Unit tests for cohort loading and merging."""

import h5py
import numpy as np
import pytest
from scipy import sparse

from ko_scrna.data_loader import (
    build_cohort,
    load_cellbender_h5,
    load_cohort,
    merge_cohorts,
    read_counts,
)
from ko_scrna.errors import DataError
from tests.fixtures import create_counts_adata, write_10x_dir, write_h5_counts


class TestReadCounts:
    """Tests for reading matrices from disk."""

    def test_reads_10x_directory(self, tmp_path, wt_counts):
        path = write_10x_dir(wt_counts, tmp_path / "WT")
        adata = read_counts(path)
        assert adata.shape == wt_counts.shape
        assert list(adata.var_names) == list(wt_counts.var_names)
        assert sparse.isspmatrix_csr(adata.X)
        np.testing.assert_allclose(adata.X.toarray(), wt_counts.X.toarray())

    def test_reads_h5(self, tmp_path, wt_counts):
        path = write_h5_counts(wt_counts, tmp_path / "wt.h5")
        adata = read_counts(path)
        assert adata.shape == wt_counts.shape
        assert list(adata.obs_names) == list(wt_counts.obs_names)
        np.testing.assert_allclose(adata.X.toarray(), wt_counts.X.toarray())
        assert adata.var["gene_ids"].iloc[0] == "ENSMUSG00000000000"

    def test_reads_legacy_h5(self, tmp_path, wt_counts):
        path = write_h5_counts(wt_counts, tmp_path / "wt_v2.h5", layout="v2")
        adata = load_cellbender_h5(path)
        assert list(adata.var_names) == list(wt_counts.var_names)
        assert list(adata.obs_names) == list(wt_counts.obs_names)
        np.testing.assert_allclose(adata.X.toarray(), wt_counts.X.toarray())

    def test_h5_shape_mismatch(self, tmp_path, wt_counts):
        path = write_h5_counts(wt_counts, tmp_path / "wt.h5")
        with h5py.File(path, "r+") as f:
            del f["matrix/barcodes"]
            f["matrix"].create_dataset("barcodes", data=np.array([b"A-1", b"B-1"]))
        with pytest.raises(DataError, match="lists"):
            load_cellbender_h5(path)

    def test_rejects_other_files(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text("a,b\n")
        with pytest.raises(DataError):
            read_counts(path)

    def test_load_cohort_tags_cohort_on_error(self, tmp_path):
        path = tmp_path / "counts.txt"
        path.write_text("")
        with pytest.raises(DataError) as excinfo:
            load_cohort(path, "KO", "KO")
        assert excinfo.value.cohort == "KO"


class TestBuildCohort:
    """Tests for cohort construction."""

    def test_prefix_and_labels(self, wt_counts):
        cohort = build_cohort(wt_counts, "WT", "WT")
        assert all(name.startswith("WT_") for name in cohort.obs_names)
        assert set(cohort.obs["genotype"]) == {"WT"}
        assert set(cohort.obs["cohort"]) == {"WT"}

    def test_gene_support_filter(self):
        adata = create_counts_adata(n_cells=50, seed=1)
        X = adata.X.toarray()
        X[:, 0] = 0
        X[:2, 0] = 1  # detected in only two cells
        adata.X = sparse.csr_matrix(X)
        cohort = build_cohort(adata, "WT", "WT", min_cells=3)
        assert adata.var_names[0] not in cohort.var_names
        support = np.asarray((cohort.X > 0).sum(axis=0)).ravel()
        assert support.min() >= 3

    def test_input_not_modified(self, wt_counts):
        names = list(wt_counts.obs_names)
        build_cohort(wt_counts, "WT", "WT")
        assert list(wt_counts.obs_names) == names
        assert "genotype" not in wt_counts.obs

    def test_duplicate_barcodes(self, wt_counts):
        adata = wt_counts.copy()
        names = list(adata.obs_names)
        names[1] = names[0]
        adata.obs_names = names
        with pytest.raises(DataError, match="duplicate"):
            build_cohort(adata, "WT", "WT")

    def test_negative_counts(self, wt_counts):
        adata = wt_counts.copy()
        X = adata.X.toarray()
        X[0, 0] = -1
        adata.X = sparse.csr_matrix(X)
        with pytest.raises(DataError, match="negative"):
            build_cohort(adata, "WT", "WT")

    def test_empty_matrix(self, wt_counts):
        with pytest.raises(DataError, match="empty"):
            build_cohort(wt_counts[:0].copy(), "WT", "WT")


def test_merge_cohorts_outer_join(wt_counts, ko_counts):
    wt = build_cohort(wt_counts, "WT", "WT")
    ko = build_cohort(ko_counts[:, 5:].copy(), "KO", "KO")
    merged = merge_cohorts([wt, ko])
    assert merged.n_obs == wt.n_obs + ko.n_obs
    assert set(merged.var_names) == set(wt.var_names) | set(ko.var_names)
    missing_gene = ko_counts.var_names[0]
    if missing_gene in merged.var_names:
        ko_cells = (merged.obs["cohort"] == "KO").to_numpy()
        col = merged[:, missing_gene].X
        assert np.asarray(col[ko_cells].sum()) == 0
    assert set(merged.obs["genotype"]) == {"WT", "KO"}
