import numpy as np
import pytest

from geneflux.analysis.stats_ops import adjust_pvalues, bh_qvalues, two_sided_pvalues


def _bh_reference(p):
    """Step-up BH written out: q_(i) = min_{j >= i} p_(j) * n / j."""
    n = len(p)
    order = np.argsort(p, kind="stable")
    ranked = p[order] * n / np.arange(1, n + 1)
    ranked = np.minimum.accumulate(ranked[::-1])[::-1]
    q = np.empty(n)
    q[order] = np.minimum(ranked, 1.0)
    return q


@pytest.mark.parametrize("seed", range(10))
def test_bh_is_monotone_in_rank(seed):
    rng = np.random.default_rng(seed)
    p = np.concatenate([rng.uniform(size=80), rng.uniform(0, 1e-3, size=20)])
    q = adjust_pvalues(p)
    order = np.argsort(p, kind="stable")
    assert np.all(np.diff(q[order]) >= 0)
    assert np.all(q >= p)
    assert np.all(q <= 1)
    np.testing.assert_allclose(q, _bh_reference(p))


def test_bh_is_deterministic_and_order_preserving():
    p = np.array([0.01, 0.04, 0.03, 0.2, 0.001])
    q1 = adjust_pvalues(p)
    q2 = adjust_pvalues(p.copy())
    np.testing.assert_array_equal(q1, q2)
    np.testing.assert_allclose(q1, [0.025, 0.05, 0.05, 0.2, 0.005])


def test_nan_pvalues_stay_nan_and_are_not_counted():
    p = np.array([0.01, np.nan, 0.02])
    q = adjust_pvalues(p)
    assert np.isnan(q[1])
    np.testing.assert_allclose(q[[0, 2]], [0.02, 0.02])
    assert np.all(np.isnan(adjust_pvalues(np.array([np.nan, np.nan]))))


@pytest.mark.parametrize("method, expected", [
    ("bonferroni", [0.03, 0.06, 0.9]),
    ("holm", [0.03, 0.04, 0.3]),
    ("none", [0.01, 0.02, 0.3]),
])
def test_other_methods(method, expected):
    np.testing.assert_allclose(adjust_pvalues(np.array([0.01, 0.02, 0.3]), method), expected)


def test_unknown_method():
    with pytest.raises(ValueError):
        adjust_pvalues(np.array([0.1]), "qvalue")


def test_bh_qvalues_per_column():
    p = np.array([[0.01, 0.5], [0.02, 0.01], [0.03, 0.04]])
    q = bh_qvalues(p)
    np.testing.assert_allclose(q[:, 0], adjust_pvalues(p[:, 0]))
    np.testing.assert_allclose(q[:, 1], adjust_pvalues(p[:, 1]))
    with pytest.raises(ValueError):
        bh_qvalues(p[:, 0])


def test_two_sided_pvalues_infinite_df_is_normal():
    p = two_sided_pvalues(np.array([1.959963984540054, -1.959963984540054]), np.inf)
    np.testing.assert_allclose(p, [0.05, 0.05])
    p_t = two_sided_pvalues(np.array([2.776445105]), 4)
    np.testing.assert_allclose(p_t, [0.05], rtol=1e-6)
