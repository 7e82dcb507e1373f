"""Unit tests for pN/pK doublet detection."""

import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from ko_scrna.data_loader import build_cohort, merge_cohorts
from ko_scrna.doublet_detection import (
    DOUBLET,
    SINGLET,
    UNSCORED,
    artificial_neighbor_fractions,
    bimodality_coefficient,
    classify_doublets,
    detect_doublets,
    detect_doublets_cohort,
    expected_doublets,
    find_optimal_pk,
    homotypic_proportion,
    neighbor_ks,
    param_sweep,
    remove_doublets,
    simulate_doublets,
    summarize_sweep,
)
from ko_scrna.errors import DataError, StatisticalDegeneracy
from tests.fixtures import create_counts_adata


class TestExpectedDoublets:
    """Tests for the expected doublet count."""

    def test_five_thousand_cells(self):
        n_exp, n_adj = expected_doublets(5000, 0.05, 0.0)
        assert n_exp == 250
        assert n_adj == 250

    def test_homotypic_adjustment(self):
        n_exp, n_adj = expected_doublets(5000, 0.05, 0.2)
        assert n_exp == 250
        assert n_adj == 200

    @pytest.mark.parametrize("homotypic", [0.0, 0.1, 0.5, 1.0])
    def test_adjusted_never_exceeds_expected(self, homotypic):
        n_exp, n_adj = expected_doublets(1234, 0.05, homotypic)
        assert 0 <= n_adj <= n_exp

    def test_homotypic_proportion(self):
        labels = ["a"] * 50 + ["b"] * 30 + ["c"] * 20
        assert homotypic_proportion(labels) == pytest.approx(0.25 + 0.09 + 0.04)

    def test_single_cluster_is_fully_homotypic(self):
        assert homotypic_proportion(["a"] * 10) == 1.0


class TestClassify:
    """Tests for fixed top-N classification."""

    def test_top_n(self):
        pann = np.array([0.1, 0.9, 0.5, 0.7, 0.0])
        labels = classify_doublets(pann, 2)
        assert list(labels) == [SINGLET, DOUBLET, SINGLET, DOUBLET, SINGLET]

    def test_ties_keep_cell_order(self):
        pann = np.array([0.5, 0.5, 0.5, 0.1])
        labels = classify_doublets(pann, 2)
        assert list(labels) == [DOUBLET, DOUBLET, SINGLET, SINGLET]

    def test_zero_doublets(self):
        labels = classify_doublets(np.array([0.3, 0.2]), 0)
        assert set(labels) == {SINGLET}


class TestBimodality:
    """Tests for the bimodality coefficient."""

    def test_constant_is_undefined(self):
        assert np.isnan(bimodality_coefficient(np.zeros(50)))

    def test_too_few_values(self):
        assert np.isnan(bimodality_coefficient([0.1, 0.2, 0.3]))

    def test_bimodal_beats_unimodal(self):
        rng = np.random.default_rng(0)
        unimodal = rng.normal(0, 1, 500)
        bimodal = np.concatenate([rng.normal(-3, 0.5, 250), rng.normal(3, 0.5, 250)])
        assert bimodality_coefficient(bimodal) > 0.555 > bimodality_coefficient(unimodal)


class TestSweepSummary:
    """Tests for BCmetric and optimal pK selection."""

    def test_single_pn_uses_bc(self):
        sweep = pd.DataFrame({"pN": [0.25] * 3, "pK": [0.01, 0.02, 0.03], "k": [1, 2, 3], "bc": [0.3, 0.6, 0.4]})
        summary = summarize_sweep(sweep)
        np.testing.assert_allclose(summary["bc_metric"], [0.3, 0.6, 0.4])
        assert find_optimal_pk(summary) == 0.02

    def test_multiple_pn_mean_over_variance(self):
        sweep = pd.DataFrame(
            {
                "pN": [0.1, 0.2, 0.1, 0.2],
                "pK": [0.01, 0.01, 0.02, 0.02],
                "k": [1, 1, 2, 2],
                "bc": [0.4, 0.6, 0.5, 0.52],
            }
        )
        summary = summarize_sweep(sweep)
        expected_first = 0.5 / np.var([0.4, 0.6], ddof=1)
        assert summary["bc_metric"].iloc[0] == pytest.approx(expected_first)
        assert find_optimal_pk(summary) == 0.02

    def test_first_maximum_wins(self):
        summary = pd.DataFrame({"pK": [0.01, 0.02, 0.03], "bc_metric": [0.5, 0.7, 0.7]})
        assert find_optimal_pk(summary) == 0.02

    def test_all_undefined(self):
        summary = pd.DataFrame({"pK": [0.01, 0.02], "bc_metric": [np.nan, np.nan]})
        with pytest.raises(StatisticalDegeneracy):
            find_optimal_pk(summary)


class TestSimulation:
    """Tests for synthetic doublets and neighbour fractions."""

    def test_simulated_count_and_profiles(self):
        counts = sparse.csr_matrix(np.arange(1, 31, dtype=float).reshape(10, 3))
        merged, n_synthetic = simulate_doublets(counts, 0.25, np.random.default_rng(0))
        assert n_synthetic == round(10 / 0.75 - 10)
        assert merged.shape == (10 + n_synthetic, 3)
        np.testing.assert_allclose(merged[:10].toarray(), counts.toarray())
        real = counts.toarray()
        pair_means = {
            tuple((real[i] + real[j]) / 2) for i in range(10) for j in range(10)
        }
        for row in merged[10:].toarray():
            assert tuple(row) in pair_means

    def test_neighbor_ks_drop_empty(self):
        ks = neighbor_ks(400, [0.0005, 0.01, 0.1])
        assert 0.0005 not in ks
        assert ks[0.01] == 4
        assert ks[0.1] == 40

    def test_fractions_separated(self):
        rng = np.random.default_rng(1)
        real = rng.normal(0, 0.1, size=(50, 2))
        synthetic = rng.normal(10, 0.1, size=(20, 2))
        coords = np.vstack([real, synthetic])
        fractions = artificial_neighbor_fractions(coords, 50, [5, 10])
        np.testing.assert_array_equal(fractions[5], 0)
        np.testing.assert_array_equal(fractions[10], 0)

    def test_fractions_exclude_self(self):
        coords = np.array([[0.0], [0.1], [0.2], [5.0], [5.1]])
        fractions = artificial_neighbor_fractions(coords, 3, [2], chunk_size=2)
        np.testing.assert_allclose(fractions[2], [0.0, 0.0, 0.0])
        fractions = artificial_neighbor_fractions(coords, 3, [3])
        np.testing.assert_allclose(fractions[3], [1 / 3, 1 / 3, 1 / 3])

    def test_fractions_bounded(self):
        rng = np.random.default_rng(2)
        coords = rng.normal(size=(80, 3))
        fractions = artificial_neighbor_fractions(coords, 60, [1, 7, 30])
        for values in fractions.values():
            assert values.shape == (60,)
            assert ((values >= 0) & (values <= 1)).all()


@pytest.fixture
def cohort(small_params):
    adata = build_cohort(create_counts_adata(n_cells=300, seed=21), "WT", "WT")
    return adata


class TestCohortDetection:
    """Tests for the per-cohort procedure."""

    def test_counts_add_up(self, cohort, small_params):
        cells, audit, summary = detect_doublets_cohort(cohort, small_params, seed=5, cohort="WT")
        assert audit.doublet_count + audit.singlet_count == cohort.n_obs
        assert audit.unscored_count == 0
        assert audit.n_exp == round(cohort.n_obs * 0.05)
        assert audit.n_exp_adjusted <= audit.n_exp
        assert audit.doublet_count == audit.n_exp_adjusted
        assert (cells["doublet_class"] == DOUBLET).sum() == audit.doublet_count
        assert audit.optimal_pK in small_params["doublet"]["pK_grid"]
        assert list(summary["pK"]) == sorted(summary["pK"])

    def test_sweep_over_several_pn(self, cohort, small_params):
        dp = dict(small_params["doublet"], sweep_pN=[0.15, 0.25])
        serial = param_sweep(cohort, dp, seed=5, cohort="WT", n_jobs=1)
        threaded = param_sweep(cohort, dp, seed=5, cohort="WT", n_jobs=2)
        assert set(serial["pN"]) == {0.15, 0.25}
        assert len(serial) == 2 * len(dp["pK_grid"])
        assert list(serial["pK"]) == sorted(serial["pK"])
        pd.testing.assert_frame_equal(serial, threaded)

    def test_deterministic(self, cohort, small_params):
        first, audit_1, _ = detect_doublets_cohort(cohort, small_params, seed=5, cohort="WT")
        second, audit_2, _ = detect_doublets_cohort(cohort, small_params, seed=5, cohort="WT")
        pd.testing.assert_frame_equal(first, second)
        assert audit_1 == audit_2

    def test_doublets_have_highest_pann(self, cohort, small_params):
        cells, _, _ = detect_doublets_cohort(cohort, small_params, seed=5, cohort="WT")
        doublets = cells.loc[cells["doublet_class"] == DOUBLET, "pANN"]
        singlets = cells.loc[cells["doublet_class"] == SINGLET, "pANN"]
        assert doublets.min() >= singlets.max()

    def test_too_few_cells(self, small_params):
        small = build_cohort(create_counts_adata(n_cells=60, seed=3), "KO", "KO")
        with pytest.raises(StatisticalDegeneracy) as excinfo:
            param_sweep(small, small_params["doublet"], cohort="KO")
        assert excinfo.value.cohort == "KO"


class TestDetectDoublets:
    """Tests for detection over all cohorts."""

    def test_small_cohort_skipped(self, small_params):
        wt = build_cohort(create_counts_adata(n_cells=240, seed=1), "WT", "WT")
        ko = build_cohort(create_counts_adata(n_cells=60, genotype="KO", seed=2), "KO", "KO")
        merged = merge_cohorts([wt, ko])
        scored, audit, sweeps = detect_doublets(merged, small_params)

        audit = audit.set_index("cohort")
        assert audit.loc["KO", "status"] == "skipped"
        assert audit.loc["WT", "status"] == "ok"
        assert audit.loc["KO", "singlet_count"] == 0
        assert audit.loc["KO", "unscored_count"] == 60
        assert audit.loc["WT", "unscored_count"] == 0
        totals = audit["doublet_count"] + audit["singlet_count"] + audit["unscored_count"]
        assert (totals == audit["n_cells"]).all()
        ko_cells = scored.obs["cohort"] == "KO"
        assert (scored.obs.loc[ko_cells, "doublet_class"] == UNSCORED).all()
        assert scored.obs.loc[ko_cells, "pANN"].isna().all()
        assert sweeps["KO"].empty
        assert "doublet_class" not in merged.obs

        singlets = remove_doublets(scored)
        assert singlets.n_obs == merged.n_obs - audit.loc["WT", "doublet_count"]
        assert (singlets.obs["cohort"] == "KO").sum() == 60

    def test_remove_requires_classification(self, cohort):
        with pytest.raises(DataError):
            remove_doublets(cohort)
