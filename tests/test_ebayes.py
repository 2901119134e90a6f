import warnings

import numpy as np
import pytest
from scipy.special import polygamma

from geneflux.analysis.ebayes_moderator import EbayesModerator
from geneflux.analysis.ebayes_prior import (
    fit_fdist,
    squeeze_var_input_filter,
    tmixture_vector,
    trigamma_inverse,
)
from geneflux.analysis.linearmodelfitter import LinearModelFitter
from geneflux.analysis.stats_ops import raw_stats_from_fit
from geneflux.design.contrast import apply_contrasts
from geneflux.design.contrastbuilder import ContrastBuilder
from geneflux.design.designmatrixbuilder import DesignMatrixBuilder
from geneflux.errors import EstimationFallbackWarning
from tests.conftest import make_adata


@pytest.mark.parametrize("y", [1e-4, 0.05, 0.5, 1.0, 3.0, 50.0, 1e4])
def test_trigamma_inverse(y):
    x = trigamma_inverse(y)
    assert polygamma(1, x) == pytest.approx(y, rel=1e-6)


def test_input_filter_drops_unusable_variances():
    s2, df = squeeze_var_input_filter(np.array([0.5, 0.0, -1.0, np.nan, np.inf, 2.0]), 4)
    np.testing.assert_array_equal(s2, [0.5, 2.0])
    np.testing.assert_array_equal(df, [4.0, 4.0])


def test_fit_fdist_recovers_prior():
    rng = np.random.default_rng(11)
    n, d, d0, s0_sq = 40000, 4, 6.0, 0.3
    true_var = s0_sq * d0 / rng.chisquare(d0, size=n)
    s2 = true_var * rng.chisquare(d, size=n) / d

    s20_hat, d0_hat = fit_fdist(s2, d)
    assert d0_hat == pytest.approx(d0, rel=0.2)
    assert s20_hat == pytest.approx(s0_sq, rel=0.1)


def test_fit_fdist_without_extra_spread_gives_infinite_d0():
    rng = np.random.default_rng(12)
    s2 = 0.7 * rng.chisquare(50, size=5000) / 50
    s20, d0 = fit_fdist(s2, 50)
    # spread of log variances fully explained by sampling noise
    assert np.isinf(d0) or d0 > 200
    assert s20 == pytest.approx(0.7, rel=0.05)


def test_tmixture_respects_limits():
    rng = np.random.default_rng(13)
    t = rng.standard_t(6, size=500)
    t[:10] += 8
    v = tmixture_vector(t, 0.5, 6, proportion=0.05, v0_lim=(0.2, 3.0))
    assert 0.2 <= v <= 3.0
    assert np.isnan(tmixture_vector(np.array([]), 0.5, 6))


def _fit(values, groups):
    design = DesignMatrixBuilder(make_adata(values, groups).obs).build()
    fit = LinearModelFitter(np.asarray(values).T, design).fit().get_results()
    return fit, apply_contrasts(fit, ContrastBuilder(design).build())


class TestFallback:
    def _identical_variance_data(self):
        noise = np.array([-0.5, 0.0, 0.5])
        rows = []
        for g in range(12):
            shift = 0.25 * g
            rows.append(np.concatenate([5.0 + g + noise, 5.0 + g + shift + noise]))
        return np.array(rows)

    def test_identical_variances_fall_back_to_no_shrinkage(self):
        fit, cfit = _fit(self._identical_variance_data(), ["N"] * 3 + ["T"] * 3)
        moderator = EbayesModerator(fit.residual_variance, fit.df_residual)
        with pytest.warns(EstimationFallbackWarning):
            d0, _ = moderator.fit()
        assert d0 == 0.0
        assert moderator.fallback

        stats = moderator.apply_to_contrasts(cfit)
        _, t_raw, p_raw = raw_stats_from_fit(
            coefs=cfit.log2fc, stdu=cfit.stdev_unscaled, sigma=fit.sigma, df_res=fit.df_residual
        )
        np.testing.assert_allclose(stats.t, t_raw, rtol=1e-12)
        np.testing.assert_allclose(stats.p, p_raw, rtol=1e-12)
        assert stats.df_total == fit.df_residual
        assert stats.fallback

    def test_too_few_variances(self):
        moderator = EbayesModerator(np.array([0.4, 0.0, np.nan]), 4)
        with pytest.warns(EstimationFallbackWarning):
            moderator.fit()
        s2_post, df_total = moderator.moderate()
        np.testing.assert_array_equal(s2_post[:1], [0.4])
        assert df_total == 4.0

    def test_no_warning_on_regular_data(self, random_adata):
        groups = list(random_adata.obs["group"])
        fit, cfit = _fit(random_adata.X.T, groups)
        moderator = EbayesModerator(fit.residual_variance, fit.df_residual)
        with warnings.catch_warnings():
            warnings.simplefilter("error", EstimationFallbackWarning)
            d0, s0_sq = moderator.fit()
        assert 0 < d0
        assert s0_sq > 0
        assert not moderator.fallback


class TestModeration:
    def test_posterior_variance_is_shrunk(self, random_adata):
        fit, cfit = _fit(random_adata.X.T, list(random_adata.obs["group"]))
        moderator = EbayesModerator(fit.residual_variance, fit.df_residual)
        d0, s0_sq = moderator.fit()
        s2_post, df_total = moderator.moderate()

        d = fit.df_residual
        if np.isinf(d0):
            np.testing.assert_allclose(s2_post, s0_sq)
        else:
            np.testing.assert_allclose(s2_post, (d0 * s0_sq + d * fit.residual_variance) / (d0 + d))
            lo = np.minimum(fit.residual_variance, s0_sq)
            hi = np.maximum(fit.residual_variance, s0_sq)
            assert np.all((s2_post >= lo - 1e-12) & (s2_post <= hi + 1e-12))
        assert df_total == pytest.approx(min(d0 + d, d * fit.n_features))

    def test_statistics_shapes_and_ranges(self, random_adata):
        fit, cfit = _fit(random_adata.X.T, list(random_adata.obs["group"]))
        stats = EbayesModerator(fit.residual_variance, fit.df_residual).apply_to_contrasts(cfit)
        assert stats.t.shape == (200, 1)
        assert np.all((stats.p > 0) & (stats.p <= 1))
        assert np.all(stats.q >= stats.p - 1e-15)
        assert np.all(np.isfinite(stats.B))
        assert stats.var_prior.shape == (1,)

        # B and |t| rank features the same way for a single contrast
        order_b = np.argsort(-stats.B[:, 0], kind="stable")
        order_t = np.argsort(-np.abs(stats.t[:, 0]), kind="stable")
        np.testing.assert_array_equal(order_b[:20], order_t[:20])

    def test_true_positives_on_top(self, random_adata):
        fit, cfit = _fit(random_adata.X.T, list(random_adata.obs["group"]))
        stats = EbayesModerator(fit.residual_variance, fit.df_residual).apply_to_contrasts(cfit)
        top = np.argsort(-stats.B[:, 0], kind="stable")[:20]
        assert len(set(top) & set(range(20))) >= 14

    def test_infinite_t_gives_finite_b(self):
        moderator = EbayesModerator(np.array([0.0, 0.5, 0.8, 1.2]), 4)
        moderator.d0, moderator.s0_sq = 3.0, 0.7
        t = np.array([[np.inf], [1.0], [-2.0], [0.1]])
        B, _ = moderator.lods(t, np.array([0.8]), 7.0)
        assert np.all(np.isfinite(B))
        assert B[0, 0] > B[2, 0] > B[1, 0]

    def test_invalid_proportion(self):
        with pytest.raises(ValueError):
            EbayesModerator(np.ones(3), 4, proportion=1.0)
