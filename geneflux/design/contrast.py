import numpy as np
from dataclasses import dataclass
from typing import List

from geneflux.analysis.linearmodelfitter import FitResult
from geneflux.design.contrastbuilder import ContrastSet
from geneflux.utils.utils import log_time


@dataclass(frozen=True)
class ContrastFit:
    log2fc: np.ndarray          # (n_features x m)
    stdev_unscaled: np.ndarray  # (m,) sqrt(c' (X'WX)^-1 c), shared by all features
    se: np.ndarray              # (n_features x m) raw standard errors
    names: List[str]
    fit: FitResult

    def __post_init__(self):
        for arr in (self.log2fc, self.stdev_unscaled, self.se):
            arr.setflags(write=False)


@log_time("Apply Contrasts")
def apply_contrasts(fit: FitResult, contrast_set: ContrastSet) -> ContrastFit:
    """
    Applies a contrast matrix to fitted model results.

    Parameters:
    - fit: FitResult from LinearModelFitter.get_results()
    - contrast_set: (p x m) matrix, p = design coefficients, m = contrasts

    Returns:
    - ContrastFit with log2FC and raw standard errors per feature and contrast.
      The FitResult itself is left untouched.
    """
    C = np.asarray(contrast_set.matrix, dtype=np.float64)  # (p x m)
    if C.shape[0] != fit.coefficients.shape[1]:
        raise ValueError(
            f"Contrast matrix has {C.shape[0]} rows, design has {fit.coefficients.shape[1]} columns"
        )
    if list(contrast_set.column_names) != list(fit.column_names):
        raise ValueError(
            f"Contrast columns {contrast_set.column_names} do not match design columns {fit.column_names}"
        )

    # Log2FCs
    beta_contrasts = fit.coefficients @ C  # (n_features x m)

    # c_j' (X'WX)^-1 c_j, same for all features
    contrast_variances = np.einsum("pm,pq,qm->m", C, fit.cov_unscaled, C)
    stdev_unscaled = np.sqrt(contrast_variances)

    se_matrix = np.outer(fit.sigma, stdev_unscaled)  # (n_features x m)

    return ContrastFit(
        log2fc=beta_contrasts,
        stdev_unscaled=stdev_unscaled,
        se=se_matrix,
        names=list(contrast_set.names),
        fit=fit,
    )
