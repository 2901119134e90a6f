from __future__ import annotations

import numpy as np
from scipy.stats import norm
from scipy.stats import t as t_dist
from statsmodels.stats.multitest import multipletests

from geneflux.utils.semantics import P_ADJUST_METHODS


def two_sided_pvalues(t: np.ndarray, df) -> np.ndarray:
    """2 * P(T > |t|); infinite df falls back to the normal tail."""
    t = np.abs(np.asarray(t, dtype=np.float64))
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), t.shape)
    p = np.empty_like(t)
    inf_df = np.isinf(df)
    p[inf_df] = 2 * norm.sf(t[inf_df])
    p[~inf_df] = 2 * t_dist.sf(t[~inf_df], df=df[~inf_df])
    return p


def raw_stats_from_fit(
    *,
    coefs: np.ndarray,
    stdu: np.ndarray,
    sigma: np.ndarray,
    df_res,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Ordinary (unmoderated) statistics:
      se = stdu * sigma[:, None]
      t  = coefs / se
      p  = 2 * t.sf(|t|, df=df_res)
    """
    se = np.outer(sigma, stdu)
    with np.errstate(divide="ignore", invalid="ignore"):
        t = coefs / se
    p = two_sided_pvalues(t, df_res)
    return se, t, p


def adjust_pvalues(p: np.ndarray, method: str = "fdr_bh") -> np.ndarray:
    """
    Multiple-testing adjustment of a 1D p-value vector.
    NaN p-values are left out of the count and stay NaN.
    """
    if method not in P_ADJUST_METHODS:
        raise ValueError(f"Unknown p_adjust method '{method}', expected one of {P_ADJUST_METHODS}")

    p = np.asarray(p, dtype=np.float64)
    q = np.full_like(p, np.nan)
    ok = ~np.isnan(p)
    if not ok.any():
        return q
    if method == "none":
        q[ok] = p[ok]
    else:
        q[ok] = multipletests(p[ok], method=method)[1]
    return q


def bh_qvalues(p: np.ndarray, method: str = "fdr_bh") -> np.ndarray:
    """Benjamini-Hochberg q-values, applied per contrast/column."""
    if p.ndim != 2:
        raise ValueError(f"Expected 2D p-value array (n_features x n_contrasts), got shape {p.shape}")
    return np.column_stack([adjust_pvalues(p[:, j], method) for j in range(p.shape[1])])
