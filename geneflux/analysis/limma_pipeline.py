"""Limma-style differential expression on an expression AnnData.

This module provides:
  - `run_limma_pipeline`: design -> linear model -> contrasts -> eBayes -> q-values
  - `clustering_pipeline`: sample correlation, PCA and hierarchical order (re-exported)

Two engines compute the statistics: the native numpy implementation (default)
and `inmoose.limma`, kept for cross-checking.
"""

import anndata as ad
import numpy as np
import pandas as pd
from typing import Any, Dict, Optional

from geneflux.analysis.clustering import clustering_pipeline
from geneflux.analysis.ebayes_moderator import EbayesModerator
from geneflux.analysis.linearmodelfitter import LinearModelFitter
from geneflux.analysis.stats_ops import bh_qvalues, raw_stats_from_fit, two_sided_pvalues
from geneflux.design.contrast import apply_contrasts
from geneflux.design.contrastbuilder import ContrastBuilder, ContrastSet
from geneflux.design.designmatrixbuilder import DesignMatrixBuilder
from geneflux.errors import InvalidDataError
from geneflux.utils.semantics import (
    COL_AVE_EXPR,
    DEFAULT_P_ADJUST,
    DEFAULT_PROPORTION_DE,
    DEFAULT_STDEV_COEF_LIM,
    ENGINES,
)
from geneflux.utils.utils import log_info, log_time, log_warning

__all__ = ["run_limma_pipeline", "clustering_pipeline", "sample_weights"]


def sample_weights(obs: pd.DataFrame, weight_column: Optional[str]) -> Optional[np.ndarray]:
    """Per-sample weights from an obs column (None when not configured)."""
    if not weight_column:
        return None
    if weight_column not in obs.columns:
        raise InvalidDataError(f"Weight column '{weight_column}' not found in sample metadata.")
    w = pd.to_numeric(obs[weight_column], errors="coerce").to_numpy(dtype=np.float64)
    bad = obs.index[~np.isfinite(w) | (w <= 0)].astype(str).tolist()
    if bad:
        raise InvalidDataError(f"Sample weights must be finite and > 0; offending samples: {bad[:10]}")
    return w


def _run_native(adata: ad.AnnData, design, contrast_set: ContrastSet, weights, ebayes_cfg: dict, p_adjust: str) -> Dict[str, Any]:
    fit = LinearModelFitter(
        adata.X, design, weights=weights, feature_ids=adata.var_names.tolist()
    ).fit().get_results()
    cfit = apply_contrasts(fit, contrast_set)

    se_raw, t_raw, p_raw = raw_stats_from_fit(
        coefs=cfit.log2fc, stdu=cfit.stdev_unscaled, sigma=fit.sigma, df_res=fit.df_residual,
    )

    moderator = EbayesModerator(
        fit.residual_variance,
        fit.df_residual,
        proportion=ebayes_cfg.get("proportion", DEFAULT_PROPORTION_DE),
        stdev_coef_lim=ebayes_cfg.get("stdev_coef_lim", DEFAULT_STDEV_COEF_LIM),
        p_adjust=p_adjust,
    )
    moderator.fit()
    mod = moderator.apply_to_contrasts(cfit)

    return {
        "log2fc": np.asarray(cfit.log2fc),
        "se_raw": se_raw,
        "t_raw": t_raw,
        "p_raw": p_raw,
        "q_raw": bh_qvalues(p_raw, p_adjust),
        "se_ebayes": np.asarray(mod.se),
        "t_ebayes": np.asarray(mod.t),
        "p_ebayes": np.asarray(mod.p),
        "q_ebayes": np.asarray(mod.q),
        "B": np.asarray(mod.B),
        "ave_expr": np.asarray(fit.ave_expr),
        "residual_variance": np.asarray(fit.residual_variance),
        "s2_post": np.asarray(mod.s2_post),
        "prior": {
            "d0": mod.d0,
            "s0_sq": mod.s0_sq,
            "df_residual": float(fit.df_residual),
            "df_total": mod.df_total,
            "var_prior": np.asarray(mod.var_prior),
            "fallback": bool(mod.fallback),
        },
    }


def _run_inmoose(adata: ad.AnnData, builder: DesignMatrixBuilder, contrast_set: ContrastSet, weights, ebayes_cfg: dict, p_adjust: str) -> Dict[str, Any]:
    import inmoose.limma as imo

    if weights is not None:
        raise ValueError("Sample weights are only supported by the native engine.")

    proportion = ebayes_cfg.get("proportion", DEFAULT_PROPORTION_DE)
    stdev_coef_lim = tuple(ebayes_cfg.get("stdev_coef_lim", DEFAULT_STDEV_COEF_LIM))

    design_dm = builder.design_dm
    df_X = pd.DataFrame(np.asarray(adata.X).T, index=adata.var_names, columns=adata.obs_names)

    fit_imo = imo.lmFit(df_X, design=design_dm)
    residual_variance = np.asarray(fit_imo.sigma, dtype=np.float64) ** 2

    contrast_df = pd.DataFrame(
        np.asarray(contrast_set.matrix),
        index=design_dm.design_info.column_names,
        columns=contrast_set.names,
    )
    fit_imo = imo.contrasts_fit(fit_imo, contrasts=contrast_df)

    coefs = np.asarray(fit_imo.coefficients.values, dtype=np.float64)
    stdu = np.asarray(fit_imo.stdev_unscaled.values, dtype=np.float64)
    sigma = fit_imo.sigma.to_numpy()
    df_res = float(np.asarray(fit_imo.df_residual).ravel()[0])

    se_raw, t_raw, p_raw = raw_stats_from_fit(coefs=coefs, stdu=stdu[0], sigma=sigma, df_res=df_res)

    # Prior summary and B statistic from the native estimator (same moment matching)
    moderator = EbayesModerator(residual_variance, df_res, proportion=proportion, stdev_coef_lim=stdev_coef_lim)
    d0, s0_sq = moderator.fit()
    native_s2_post, df_total = moderator.moderate()

    if moderator.fallback or np.isinf(d0):
        # inmoose eBayes cannot handle an infinite prior df and ignores the d0 = 0 fallback
        log_warning(f"d0 = {d0:.4g}: inmoose eBayes skipped, moderated statistics from the native moderator")
        s2_post = native_s2_post
        with np.errstate(divide="ignore", invalid="ignore"):
            t_ebayes = coefs / np.outer(np.sqrt(s2_post), stdu[0])
        p_ebayes = two_sided_pvalues(t_ebayes, df_total)
    else:
        with np.errstate(divide="ignore", invalid="ignore"):
            fit_imo = imo.eBayes(fit_imo, proportion=proportion)
        s2_post = fit_imo.s2_post.to_numpy()
        t_ebayes = np.asarray(fit_imo.t.values, dtype=np.float64)
        p_ebayes = np.asarray(fit_imo.p_value.values, dtype=np.float64)

    B, var_prior = moderator.lods(t_ebayes, stdu[0], df_total)

    return {
        "log2fc": coefs,
        "se_raw": se_raw,
        "t_raw": t_raw,
        "p_raw": p_raw,
        "q_raw": bh_qvalues(p_raw, p_adjust),
        "se_ebayes": stdu * np.sqrt(s2_post[:, None]),
        "t_ebayes": t_ebayes,
        "p_ebayes": p_ebayes,
        "q_ebayes": bh_qvalues(p_ebayes, p_adjust),
        "B": B,
        "ave_expr": np.asarray(adata.X, dtype=np.float64).mean(axis=0),
        "residual_variance": residual_variance,
        "s2_post": s2_post,
        "prior": {
            "d0": d0,
            "s0_sq": s0_sq,
            "df_residual": df_res,
            "df_total": df_total,
            "var_prior": var_prior,
            "fallback": bool(moderator.fallback),
        },
    }


@log_time("Analysis pipeline")
def run_limma_pipeline(adata: ad.AnnData, config: dict) -> ad.AnnData:
    """Linear model + empirical Bayes moderation on `adata.X` (samples x features).

    Returns a new AnnData; per-contrast statistics live in `varm`
    (n_features x n_contrasts, columns in `uns["contrast_names"]`).
    """
    design_cfg = (config or {}).get("design", {}) or {}
    analysis_cfg = (config or {}).get("analysis", {}) or {}
    ebayes_cfg = analysis_cfg.get("ebayes", {}) or {}
    p_adjust = analysis_cfg.get("p_adjust", DEFAULT_P_ADJUST)
    engine = analysis_cfg.get("engine", "native")
    if engine not in ENGINES:
        raise ValueError(f"Unknown engine '{engine}', expected one of {ENGINES}")

    builder = DesignMatrixBuilder(adata.obs, design_cfg)
    design = builder.build()
    contrast_set = ContrastBuilder(design).build(analysis_cfg)
    weights = sample_weights(adata.obs, design_cfg.get("weight_column"))

    log_info(f"Engine: {engine}")
    if engine == "inmoose":
        res = _run_inmoose(adata, builder, contrast_set, weights, ebayes_cfg, p_adjust)
    else:
        res = _run_native(adata, design, contrast_set, weights, ebayes_cfg, p_adjust)

    # Assemble into AnnData
    out = adata.copy()
    for key in ("log2fc", "se_raw", "t_raw", "p_raw", "q_raw", "se_ebayes", "t_ebayes", "p_ebayes", "q_ebayes", "B"):
        out.varm[key] = res[key]

    out.var[COL_AVE_EXPR] = res["ave_expr"]
    out.var["RESIDUAL_VARIANCE"] = res["residual_variance"]
    out.var["S2_POST"] = res["s2_post"]

    out.obsm["design"] = np.asarray(design.matrix)
    out.uns["design"] = {
        "group_column": design.group_column,
        "levels": list(design.column_names),
        "group_sizes": design.group_sizes(),
        "formula": builder.formula,
        "weighted": weights is not None,
    }
    out.uns["contrast_names"] = list(contrast_set.names)
    out.uns["contrast_matrix"] = np.asarray(contrast_set.matrix)
    out.uns["ebayes"] = {
        **res["prior"],
        "engine": engine,
        "proportion": float(ebayes_cfg.get("proportion", DEFAULT_PROPORTION_DE)),
        "p_adjust": p_adjust,
    }
    return out
