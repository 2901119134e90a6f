import numpy as np
import pytest

from geneflux.analysis.clustering import (
    clustering_pipeline,
    hierarchical_order,
    run_pca,
    sample_correlation,
)
from tests.conftest import make_adata


def test_sample_correlation(random_adata):
    corr = sample_correlation(random_adata)
    assert corr.shape == (8, 8)
    assert list(corr.index) == list(random_adata.obs_names)
    np.testing.assert_allclose(np.diag(corr.to_numpy()), 1.0)
    np.testing.assert_allclose(corr.to_numpy(), corr.to_numpy().T)
    assert sample_correlation(random_adata, "spearman").shape == (8, 8)
    with pytest.raises(ValueError):
        sample_correlation(random_adata, "kendall")


def test_pca_on_copy(random_adata):
    out = run_pca(random_adata, n_comps=3)
    assert out.obsm["X_pca"].shape == (8, 3)
    assert "X_pca" not in random_adata.obsm
    assert len(out.uns["pca"]["variance_ratio"]) == 3


def test_pca_skipped_without_enough_samples():
    adata = make_adata(np.array([[1.0], [2.0], [3.0]]), ["A"])
    out = run_pca(adata)
    assert "X_pca" not in out.obsm


def test_hierarchical_order_separates_groups():
    rng = np.random.default_rng(3)
    base = rng.normal(8, 1, size=(50, 1))
    values = np.hstack([base + rng.normal(0, 0.05, size=(50, 3)),
                        base + 3.0 + rng.normal(0, 0.05, size=(50, 3))])
    adata = make_adata(values, ["A"] * 3 + ["B"] * 3)
    linkage, order = hierarchical_order(adata)
    assert linkage.shape == (5, 4)
    assert sorted(order) == sorted(adata.obs_names)
    halves = [set(order[:3]), set(order[3:])]
    assert {"S1", "S2", "S3"} in halves


def test_clustering_pipeline(random_adata):
    out = clustering_pipeline(random_adata, correlation_method="spearman")
    assert out.uns["correlation_method"] == "spearman"
    assert out.uns["sample_correlation"].shape == (8, 8)
    assert len(out.uns["sample_order"]) == 8
    assert "X_pca" in out.obsm
    assert "X_pca" not in random_adata.obsm
