"""Unit tests for the parameter module."""

import json

import pytest

from ko_scrna.errors import ParameterError
from ko_scrna.pipeline_params import (
    DOUBLET_PARAMS,
    build_params,
    default_params,
    get_params_summary,
    validate_params,
)


class TestDefaults:
    """Tests for the default parameter set."""

    def test_defaults_validate(self):
        assert validate_params(default_params()) is True

    def test_default_values(self):
        params = default_params()
        assert params["cell_filters"] == {"min_features": 400, "max_mt_pct": 5}
        assert params["doublet"]["doublet_rate"] == 0.05
        assert params["de"]["min_pct"] == 0.1
        assert params["de"]["logfc_threshold"] == 0.25
        assert params["gsea"]["min_size"] == 50
        assert params["gsea"]["max_size"] == 500

    def test_pk_grid_ascending(self):
        grid = list(DOUBLET_PARAMS["pK_grid"])
        assert grid == sorted(grid)
        assert grid[0] == 0.0005
        assert grid[-1] == 0.3

    def test_default_params_are_copies(self):
        params = default_params()
        params["cell_filters"]["min_features"] = 0
        assert default_params()["cell_filters"]["min_features"] == 400


class TestBuildParams:
    """Tests for override merging."""

    def test_nested_override(self):
        params = build_params({"cell_filters": {"min_features": 200}})
        assert params["cell_filters"]["min_features"] == 200
        assert params["cell_filters"]["max_mt_pct"] == 5

    def test_json_override(self, tmp_path):
        path = tmp_path / "params.json"
        path.write_text(json.dumps({"seed": 7, "label_merge": {"A": "B"}}))
        params = build_params(path)
        assert params["seed"] == 7
        assert params["label_merge"] == {"A": "B"}

    def test_unknown_key_rejected(self):
        with pytest.raises(ParameterError, match="Unknown parameter"):
            build_params({"cell_filters": {"min_genes": 10}})

    @pytest.mark.parametrize(
        "overrides",
        [
            {"de": {"min_pct": -0.1}},
            {"embedding": {"resolution": 0}},
            {"doublet": {"doublet_rate": 1.5}},
            {"cell_filters": {"max_mt_pct": 0}},
            {"gsea": {"min_size": 600}},
            {"de": {"test": "deseq"}},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ParameterError) as excinfo:
            build_params(overrides)
        assert excinfo.value.stage == "config"

    def test_all_violations_reported(self):
        with pytest.raises(ParameterError) as excinfo:
            build_params({"de": {"min_pct": 2, "pseudocount": 0}})
        message = str(excinfo.value)
        assert "min_pct" in message
        assert "pseudocount" in message


def test_summary_mentions_thresholds():
    summary = get_params_summary(build_params({"label_merge": {"L4/5 IT": "L2/3 IT"}}))
    assert "> 400" in summary
    assert "< 5%" in summary
    assert "L4/5 IT" in summary
