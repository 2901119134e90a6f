import numpy as np
import pytest

from geneflux.errors import InvalidDataError
from geneflux.workflow.preprocessing import (
    Preprocessor,
    detect_log_scale,
    normalize_scale,
    variance_filter,
)
from tests.conftest import make_adata


def _linear_adata(seed=0):
    rng = np.random.default_rng(seed)
    values = rng.uniform(50.0, 5000.0, size=(30, 6))
    return make_adata(values, ["A"] * 3 + ["B"] * 3)


class TestScaleNormalizer:
    def test_detect_log_scale(self):
        assert detect_log_scale(np.array([[1.0, 15.9]]), threshold=16.0)
        assert not detect_log_scale(np.array([[1.0, 300.0]]), threshold=16.0)

    def test_auto_applies_log2_on_linear_data(self):
        adata = _linear_adata()
        out = normalize_scale(adata)
        np.testing.assert_allclose(out.X, np.log2(adata.X))
        np.testing.assert_array_equal(out.layers["raw"], adata.X)
        assert out.uns["preprocessing"]["scale"]["log2_applied"] is True

    def test_input_is_not_modified(self):
        adata = _linear_adata()
        before = adata.X.copy()
        normalize_scale(adata)
        np.testing.assert_array_equal(adata.X, before)
        assert "preprocessing" not in adata.uns

    def test_idempotent_once_on_log_scale(self):
        once = normalize_scale(_linear_adata())
        twice = normalize_scale(once)
        np.testing.assert_array_equal(once.X, twice.X)
        assert twice.uns["preprocessing"]["scale"]["log2_applied"] is False

    @pytest.mark.parametrize("seed", range(5))
    def test_idempotent_on_random_log_matrices(self, seed):
        rng = np.random.default_rng(seed)
        adata = make_adata(rng.uniform(0.0, 16.0, size=(20, 4)), ["A", "A", "B", "B"])
        out = normalize_scale(adata, threshold=16.0)
        np.testing.assert_array_equal(out.X, adata.X)

    def test_non_positive_values_with_log_requested(self):
        values = np.full((3, 4), 100.0)
        values[1, 2] = 0.0
        adata = make_adata(values, ["A", "A", "B", "B"])
        with pytest.raises(InvalidDataError, match="F2"):
            normalize_scale(adata, transform="log2")

    def test_transform_none_and_unknown(self):
        adata = _linear_adata()
        out = normalize_scale(adata, transform="none")
        np.testing.assert_array_equal(out.X, adata.X)
        with pytest.raises(ValueError):
            normalize_scale(adata, transform="log10")


class TestVarianceFilter:
    @pytest.mark.parametrize("seed", range(5))
    @pytest.mark.parametrize("keep_fraction", [0.1, 0.25, 0.5, 0.73, 1.0])
    def test_count_and_top_set(self, seed, keep_fraction):
        rng = np.random.default_rng(seed)
        n_features = 57
        adata = make_adata(rng.normal(size=(n_features, 6)) * rng.uniform(0.1, 3, size=(n_features, 1)),
                           ["A"] * 3 + ["B"] * 3)
        out = variance_filter(adata, keep_fraction=keep_fraction)

        n_keep = round(keep_fraction * n_features)
        assert out.n_vars == n_keep

        variances = np.var(adata.X, axis=0, ddof=1)
        kept = set(out.var_names)
        dropped = [v for name, v in zip(adata.var_names, variances) if name not in kept]
        if dropped and kept:
            assert out.var["VARIANCE"].min() >= max(dropped)

    def test_original_order_and_samples_preserved(self):
        values = np.array([
            [1.0, 1.0, 1.0, 1.0],
            [0.0, 5.0, 0.0, 5.0],
            [0.0, 1.0, 0.0, 1.0],
            [0.0, 9.0, 0.0, 9.0],
        ])
        adata = make_adata(values, ["A", "A", "B", "B"])
        out = variance_filter(adata, keep_fraction=0.5)
        assert list(out.var_names) == ["F2", "F4"]
        assert list(out.obs_names) == list(adata.obs_names)

    def test_ties_keep_original_order(self):
        values = np.tile([0.0, 1.0, 0.0, 1.0], (4, 1))
        adata = make_adata(values, ["A", "A", "B", "B"])
        out = variance_filter(adata, keep_fraction=0.5)
        assert list(out.var_names) == ["F1", "F2"]

    @pytest.mark.parametrize("bad", [0.0, -0.1, 1.5])
    def test_keep_fraction_out_of_range(self, bad):
        with pytest.raises(ValueError):
            variance_filter(_linear_adata(), keep_fraction=bad)


def test_preprocessor_from_config():
    adata = _linear_adata()
    out = Preprocessor({"variance_filter": {"keep_fraction": 0.2}}).fit_transform(adata)
    assert out.n_vars == 6
    assert set(out.uns["preprocessing"]) == {"scale", "variance_filter"}
