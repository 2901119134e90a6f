"""Preprocessing pipeline for GeneFlux.

This module performs:
1) Scale inspection (is the matrix already log2?) and optional log2 transform
2) Variance filtering (keep the most variable fraction of features)

Every step takes an AnnData and returns a new one; inputs are never modified.
Decisions are recorded under `adata.uns["preprocessing"]`.
"""

from copy import deepcopy
from typing import Optional

import anndata as ad
import numpy as np

from geneflux.errors import InvalidDataError
from geneflux.utils.semantics import DEFAULT_KEEP_FRACTION, DEFAULT_LOG_THRESHOLD, SCALE_TRANSFORMS
from geneflux.utils.utils import log_info, log_time, log_warning


def detect_log_scale(X: np.ndarray, threshold: float = DEFAULT_LOG_THRESHOLD) -> bool:
    """Heuristic: values whose maximum is <= threshold are taken to be log2 already.

    Microarray intensities on a linear scale routinely reach the thousands, while
    log2 values rarely exceed ~16-20. This cannot be proven from the data alone.
    """
    return bool(np.nanmax(X) <= threshold)


def _record(adata: ad.AnnData, key: str, value: dict) -> None:
    pre = deepcopy(dict(adata.uns.get("preprocessing", {})))
    pre[key] = value
    adata.uns["preprocessing"] = pre


@log_time("Scale normalization")
def normalize_scale(
    adata: ad.AnnData,
    threshold: float = DEFAULT_LOG_THRESHOLD,
    transform: str = "auto",
) -> ad.AnnData:
    """Return a copy of `adata` on log2 scale.

    transform:
      - "auto": log2 only when max(X) > threshold
      - "log2": always log2
      - "none": leave values untouched
    """
    if transform not in SCALE_TRANSFORMS:
        raise ValueError(f"Unknown scale transform '{transform}'. Options: {SCALE_TRANSFORMS}")

    X = np.asarray(adata.X, dtype=np.float64)
    max_value = float(np.nanmax(X))
    already_log = detect_log_scale(X, threshold)

    apply_log = transform == "log2" or (transform == "auto" and not already_log)

    out = adata.copy()
    if apply_log:
        non_positive = (X <= 0).any(axis=0)
        if non_positive.any():
            bad = adata.var_names[non_positive].tolist()
            raise InvalidDataError(
                f"log2 transform requested but {len(bad)} feature(s) have non-positive values, e.g. {bad[:10]}"
            )
        out.layers["raw"] = X.copy()
        out.X = np.log2(X)
        log_info(f"max={max_value:.4g} > {threshold}: applied log2 (heuristic, please confirm).")
    else:
        if transform == "auto":
            log_info(f"max={max_value:.4g} <= {threshold}: data taken as log2 already (heuristic, please confirm).")
        else:
            log_info("Scale transform disabled.")

    _record(out, "scale", {
        "transform": transform,
        "threshold": float(threshold),
        "max_before": max_value,
        "log2_applied": bool(apply_log),
    })
    return out


@log_time("Variance filtering")
def variance_filter(adata: ad.AnnData, keep_fraction: float = DEFAULT_KEEP_FRACTION) -> ad.AnnData:
    """Keep the `round(keep_fraction * n_features)` most variable features.

    Variance is the per-feature sample variance across samples. Ranking is
    stable, so ties keep their original order; retained features stay in
    their original order.
    """
    if not (0 < keep_fraction <= 1):
        raise ValueError(f"keep_fraction must be in (0, 1], got {keep_fraction}")

    X = np.asarray(adata.X, dtype=np.float64)
    n_features = X.shape[1]
    n_keep = int(round(keep_fraction * n_features))

    ddof = 1 if X.shape[0] > 1 else 0
    variances = np.var(X, axis=0, ddof=ddof)
    order = np.argsort(-variances, kind="stable")
    keep_idx = np.sort(order[:n_keep])

    if n_keep == 0:
        log_warning(f"keep_fraction={keep_fraction} keeps no feature out of {n_features}.")
    log_info(f"kept={n_keep} dropped={n_features - n_keep} (keep_fraction={keep_fraction})")

    out = adata[:, keep_idx].copy()
    out.var["VARIANCE"] = variances[keep_idx]
    _record(out, "variance_filter", {
        "keep_fraction": float(keep_fraction),
        "n_before": int(n_features),
        "n_after": int(n_keep),
    })
    return out


class Preprocessor:
    """Runs the configured preprocessing steps in order."""

    def __init__(self, config: Optional[dict] = None):
        """Initialize from the `preprocessing` section of the config."""
        config = config or {}

        scale_cfg = config.get("scale", {}) or {}
        self.transform = scale_cfg.get("transform", "auto")
        self.log_threshold = float(scale_cfg.get("log_threshold", DEFAULT_LOG_THRESHOLD))

        filter_cfg = config.get("variance_filter", {}) or {}
        self.filter_enabled = bool(filter_cfg.get("enabled", True))
        self.keep_fraction = float(filter_cfg.get("keep_fraction", DEFAULT_KEEP_FRACTION))

    @log_time("Preprocessing")
    def fit_transform(self, adata: ad.AnnData) -> ad.AnnData:
        out = normalize_scale(adata, threshold=self.log_threshold, transform=self.transform)
        if self.filter_enabled:
            out = variance_filter(out, keep_fraction=self.keep_fraction)
        return out
