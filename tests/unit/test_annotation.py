"""Unit tests for cell type annotation."""

import json

import numpy as np
import pandas as pd
import pytest

from ko_scrna.annotation import (
    PREDICTION_COLUMNS,
    MarkerScoreAnnotator,
    apply_annotation,
    subset_subpopulation,
)
from ko_scrna.errors import DataError


class StaticAnnotator:
    """Returns a fixed prediction table."""

    def __init__(self, predictions):
        self.predictions = predictions

    def annotate(self, adata):
        return self.predictions


def _predictions(adata, subclass="L4/5 IT"):
    n = adata.n_obs
    return pd.DataFrame(
        {
            "predicted_class": ["Glutamatergic"] * n,
            "predicted_subclass": [subclass] * n,
            "prediction_score": np.linspace(0.5, 1.0, n),
            "ref_umap_1": np.arange(n, dtype=float),
            "ref_umap_2": -np.arange(n, dtype=float),
        },
        index=adata.obs_names,
    )


@pytest.fixture
def embedded(lognorm_adata):
    adata = lognorm_adata.copy()
    adata.obsm["X_umap"] = np.random.default_rng(0).normal(size=(adata.n_obs, 2))
    return adata


class TestMarkerScoreAnnotator:
    """Tests for the marker module score annotator."""

    def test_recovers_synthetic_types(self, embedded, markers):
        annotator = MarkerScoreAnnotator(markers)
        predictions = annotator.annotate(embedded)
        for col in PREDICTION_COLUMNS:
            assert col in predictions
        accuracy = (predictions["predicted_class"] == embedded.obs["true_cluster"]).mean()
        assert accuracy > 0.95

    def test_subclasses_refine_within_class(self, embedded, markers):
        subclasses = {"Type0": {"Type0_a": markers["Type0"][:7], "Type0_b": markers["Type0"][7:]}}
        predictions = MarkerScoreAnnotator(markers, subclasses).annotate(embedded)
        type0 = predictions["predicted_class"] == "Type0"
        assert set(predictions.loc[type0, "predicted_subclass"]) <= {"Type0_a", "Type0_b"}
        others = predictions.loc[~type0]
        assert (others["predicted_subclass"] == others["predicted_class"]).all()

    def test_coordinates_from_umap(self, embedded, markers):
        predictions = MarkerScoreAnnotator(markers).annotate(embedded)
        np.testing.assert_allclose(predictions["ref_umap_1"], embedded.obsm["X_umap"][:, 0])

    def test_from_json(self, tmp_path, embedded, markers):
        path = tmp_path / "markers.json"
        path.write_text(json.dumps({"classes": markers}))
        annotator = MarkerScoreAnnotator.from_json(path)
        assert set(annotator.annotate(embedded)["predicted_class"]) == set(markers)

    def test_no_markers_detected(self, embedded):
        with pytest.raises(DataError):
            MarkerScoreAnnotator({"Ghost": ["NotAGene"]}).annotate(embedded)


class TestApplyAnnotation:
    """Tests for transferring predictions onto the dataset."""

    def test_columns_and_coordinates(self, embedded):
        out = apply_annotation(embedded, StaticAnnotator(_predictions(embedded)))
        assert (out.obs["predicted_class"] == "Glutamatergic").all()
        assert out.obsm["X_ref_umap"].shape == (embedded.n_obs, 2)
        assert "predicted_class" not in embedded.obs

    def test_label_merge(self, embedded):
        out = apply_annotation(
            embedded, StaticAnnotator(_predictions(embedded)), label_merge={"L4/5 IT": "L2/3 IT"}
        )
        assert set(out.obs["predicted_subclass"]) == {"L2/3 IT"}

    def test_reordered_rows_aligned(self, embedded):
        predictions = _predictions(embedded).iloc[::-1]
        out = apply_annotation(embedded, StaticAnnotator(predictions))
        np.testing.assert_allclose(out.obsm["X_ref_umap"][:, 0], np.arange(embedded.n_obs))

    def test_missing_column(self, embedded):
        predictions = _predictions(embedded).drop(columns="ref_umap_2")
        with pytest.raises(DataError, match="lacks columns"):
            apply_annotation(embedded, StaticAnnotator(predictions))

    def test_missing_cells(self, embedded):
        predictions = _predictions(embedded).iloc[1:]
        with pytest.raises(DataError, match="misses"):
            apply_annotation(embedded, StaticAnnotator(predictions))

    def test_non_finite_scores(self, embedded):
        predictions = _predictions(embedded)
        predictions.iloc[0, predictions.columns.get_loc("prediction_score")] = np.nan
        with pytest.raises(DataError, match="not finite"):
            apply_annotation(embedded, StaticAnnotator(predictions))

    def test_not_a_dataframe(self, embedded):
        with pytest.raises(DataError):
            apply_annotation(embedded, StaticAnnotator([1, 2, 3]))


class TestSubset:
    """Tests for subpopulation selection."""

    def test_all_cells_when_none(self, lognorm_adata):
        assert subset_subpopulation(lognorm_adata, "true_cluster", None).n_obs == lognorm_adata.n_obs

    def test_selection(self, lognorm_adata):
        subset = subset_subpopulation(lognorm_adata, "true_cluster", "Type1")
        assert set(subset.obs["true_cluster"]) == {"Type1"}

    def test_empty_selection(self, lognorm_adata):
        with pytest.raises(DataError):
            subset_subpopulation(lognorm_adata, "true_cluster", ["Nothing"])
