import numpy as np
from scipy.special import polygamma, digamma
from scipy.stats import t as t_dist
from typing import Optional, Tuple


def squeeze_var_input_filter(s2: np.ndarray, df) -> tuple[np.ndarray, np.ndarray]:
    # If df is scalar, broadcast it to shape of s2
    s2 = np.asarray(s2, dtype=np.float64)
    if np.isscalar(df) or np.ndim(df) == 0:
        df = np.full_like(s2, df)
    df = np.asarray(df, dtype=np.float64)

    mask = np.isfinite(s2) & (s2 > 0) & np.isfinite(df) & (df > 0)
    return s2[mask], df[mask]


def trigamma_inverse(y: float, tol: float = 1e-8) -> float:
    """Solve trigamma(x) = y for x (Newton iteration, as in limma)."""
    if y > 1e7:
        return 1.0 / np.sqrt(y)
    if y < 1e-6:
        return 1.0 / y

    x = 0.5 + 1.0 / y
    for _ in range(50):
        tri = polygamma(1, x)
        delta = tri * (1 - tri / y) / polygamma(2, x)
        x = x + delta
        if -delta / x < tol:
            return float(x)
    return float(x)


def log_variance_is_degenerate(s2: np.ndarray, tol: float = 1e-10) -> bool:
    """True when fewer than two usable variances, or all of them (numerically) identical."""
    if s2.size < 2:
        return True
    z = np.log(s2)
    return bool(np.ptp(z) <= tol * max(1.0, float(np.max(np.abs(z)))))


def fit_fdist(s2: np.ndarray, df1) -> Tuple[float, float]:
    """
    Moment estimation of the scaled F prior of limma (`fitFDist`, no covariate).

    s2 ~ s0^2 * F(df1, d0): returns (s0^2, d0). d0 = inf when the observed spread
    of log variances is fully explained by sampling noise. (nan, nan) when
    there is nothing to estimate from.
    """
    x, d = squeeze_var_input_filter(s2, df1)
    if x.size < 2:
        return np.nan, np.nan

    # Avoid near-zero variances like limma does
    x = np.maximum(x, 1e-5 * np.median(x))
    z = np.log(x)

    e = z - digamma(d / 2.0) + np.log(d / 2.0)
    emean = np.mean(e)
    evar = np.var(e, ddof=1)

    evar_adj = evar - np.mean(polygamma(1, d / 2.0))

    if evar_adj > 0:
        df2 = 2 * trigamma_inverse(evar_adj)
        s20 = np.exp(emean + digamma(df2 / 2.0) - np.log(df2 / 2.0))
    else:
        df2 = np.inf
        s20 = np.exp(emean)

    return float(s20), float(df2)


def tmixture_vector(
    t_stat: np.ndarray,
    stdev_unscaled: np.ndarray,
    df: float,
    proportion: float = 0.01,
    v0_lim: Optional[Tuple[float, float]] = None,
) -> float:
    """
    Prior variance of the non-null log fold-changes for one contrast,
    matching limma's tmixture.vector().

    Parameters:
    - t_stat: moderated t-values (n_features,)
    - stdev_unscaled: sqrt(c'(X'WX)^-1 c), scalar or (n_features,)
    - df: total degrees of freedom of the moderated t
    - proportion: assumed proportion of DE features
    - v0_lim: optional (lower, upper) clamp on the per-feature estimates
    """
    t_stat = np.asarray(t_stat, dtype=np.float64)
    stdev_unscaled = np.broadcast_to(np.asarray(stdev_unscaled, dtype=np.float64), t_stat.shape)

    ok = ~np.isnan(t_stat)
    t_stat = np.abs(t_stat[ok])
    stdev_unscaled = stdev_unscaled[ok]

    n_features = t_stat.size
    ntarget = int(np.ceil(proportion / 2 * n_features))
    if ntarget < 1:
        return np.nan

    # If ntarget is very small, p at least matches the selected proportion
    p = max(ntarget / n_features, proportion)

    top = np.argsort(-t_stat, kind="stable")[:ntarget]
    t_top = t_stat[top]
    v1 = stdev_unscaled[top] ** 2

    r = np.arange(1, ntarget + 1)
    p0 = 2 * t_dist.sf(t_top, df=df)
    ptarget = ((r - 0.5) / n_features - (1 - p) * p0) / p

    v0 = np.zeros(ntarget)
    pos = ptarget > p0
    if np.any(pos):
        qtarget = t_dist.isf(ptarget[pos] / 2, df=df)
        with np.errstate(over="ignore", invalid="ignore"):
            v0[pos] = v1[pos] * ((t_top[pos] / qtarget) ** 2 - 1)

    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])
    return float(np.mean(v0))
