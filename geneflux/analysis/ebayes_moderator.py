import warnings
import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Tuple

from geneflux.analysis.ebayes_prior import (
    fit_fdist,
    log_variance_is_degenerate,
    squeeze_var_input_filter,
    tmixture_vector,
)
from geneflux.analysis.stats_ops import bh_qvalues, two_sided_pvalues
from geneflux.design.contrast import ContrastFit
from geneflux.errors import EstimationFallbackWarning
from geneflux.utils.semantics import DEFAULT_P_ADJUST, DEFAULT_PROPORTION_DE, DEFAULT_STDEV_COEF_LIM
from geneflux.utils.utils import log_info, log_time, log_warning

# limma switches the B-statistic kernel to its normal limit above this prior df
_LARGE_DF0 = 1e6


@dataclass(frozen=True)
class ModeratedStats:
    log2fc: np.ndarray      # (n_features x m)
    t: np.ndarray
    p: np.ndarray
    q: np.ndarray
    B: np.ndarray
    se: np.ndarray          # moderated standard errors
    s2_post: np.ndarray     # (n_features,)
    df_total: float
    d0: float
    s0_sq: float
    var_prior: np.ndarray   # (m,)
    names: List[str]
    fallback: bool

    def __post_init__(self):
        for arr in (self.log2fc, self.t, self.p, self.q, self.B, self.se, self.s2_post, self.var_prior):
            arr.setflags(write=False)


class EbayesModerator:
    def __init__(
        self,
        sigma2,
        df_residual,
        proportion: float = DEFAULT_PROPORTION_DE,
        stdev_coef_lim: Tuple[float, float] = DEFAULT_STDEV_COEF_LIM,
        p_adjust: str = DEFAULT_P_ADJUST,
    ):
        """
        Parameters:
        - sigma2: (n_features,) vector of residual variances
        - df_residual: residual degrees of freedom (shared by all features)
        - proportion: assumed proportion of differentially expressed features (B statistic)
        - stdev_coef_lim: limits on the prior standard deviation of the log fold-changes
        """
        if not 0 < proportion < 1:
            raise ValueError(f"proportion must be in (0, 1), got {proportion}")
        self.sigma2 = np.asarray(sigma2, dtype=np.float64)
        self.df_residual = float(df_residual)
        self.proportion = float(proportion)
        self.stdev_coef_lim = tuple(float(x) for x in stdev_coef_lim)
        self.p_adjust = p_adjust

        self.d0: Optional[float] = None
        self.s0_sq: Optional[float] = None
        self.fallback = False

    @property
    def df_pooled(self) -> float:
        return self.df_residual * self.sigma2.size

    def fit(self) -> Tuple[float, float]:
        """Estimate prior df d0 and prior variance s0^2 jointly across all features."""
        usable, usable_df = squeeze_var_input_filter(self.sigma2, self.df_residual)
        dropped = self.sigma2.size - usable.size
        if dropped:
            log_info(f"{dropped} zero or non-finite variance(s) left out of the prior estimation")

        if log_variance_is_degenerate(usable):
            reason = (
                f"only {usable.size} usable residual variance(s)"
                if usable.size < 2
                else "all residual variances are identical"
            )
            msg = f"Prior df cannot be estimated ({reason}); falling back to d0 = 0 (no variance shrinkage)."
            warnings.warn(msg, EstimationFallbackWarning, stacklevel=2)
            log_warning(msg)
            self.d0 = 0.0
            self.s0_sq = float(np.median(usable)) if usable.size else np.nan
            self.fallback = True
        else:
            s0_sq, d0 = fit_fdist(usable, usable_df)
            self.d0 = d0
            self.s0_sq = s0_sq
            self.fallback = False

        log_info(f"Prior: d0 = {self.d0:.4g}, s0^2 = {self.s0_sq:.4g}")
        return self.d0, self.s0_sq

    def moderate(self) -> Tuple[np.ndarray, float]:
        """
        Returns:
        - posterior variances s2_post (n_features,)
        - total degrees of freedom min(d0 + d, df_pooled)
        """
        if self.d0 is None:
            self.fit()

        d = self.df_residual
        d0 = self.d0
        if d0 == 0:
            s2_post = self.sigma2.copy()
        elif np.isinf(d0):
            s2_post = np.full_like(self.sigma2, self.s0_sq)
        else:
            s2_post = (d0 * self.s0_sq + d * self.sigma2) / (d0 + d)

        df_total = float(min(d0 + d, self.df_pooled))
        return s2_post, df_total

    def _var_prior(self, t: np.ndarray, stdev_unscaled: np.ndarray, df_total: float) -> np.ndarray:
        s0_sq = self.s0_sq
        lim = None
        if np.isfinite(s0_sq) and s0_sq > 0:
            lo, hi = self.stdev_coef_lim
            lim = (lo**2 / s0_sq, hi**2 / s0_sq)

        var_prior = np.array([
            tmixture_vector(t[:, j], stdev_unscaled[j], df_total, self.proportion, lim)
            for j in range(t.shape[1])
        ])
        if np.any(np.isnan(var_prior)):
            log_warning("Estimation of var.prior failed - set to default value")
            var_prior[np.isnan(var_prior)] = 1.0 / s0_sq if s0_sq else np.nan
        return var_prior

    def lods(self, t: np.ndarray, stdev_unscaled: np.ndarray, df_total: float) -> Tuple[np.ndarray, np.ndarray]:
        """B statistic (log posterior odds of differential expression) and var_prior per contrast."""
        var_prior = self._var_prior(t, stdev_unscaled, df_total)

        v = stdev_unscaled**2
        r = np.broadcast_to((v + var_prior) / v, t.shape)
        t2 = t**2

        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            if self.d0 > _LARGE_DF0:
                kernel = t2 * (1 - 1 / r) / 2
            else:
                kernel = (1 + df_total) / 2 * np.log((t2 + df_total) / (t2 / r + df_total))
                kernel = np.where(np.isinf(t2), (1 + df_total) / 2 * np.log(r), kernel)

        B = np.log(self.proportion / (1 - self.proportion)) - np.log(r) / 2 + kernel
        return B, var_prior

    @log_time("EBayes Computation")
    def apply_to_contrasts(self, contrast_fit: ContrastFit) -> ModeratedStats:
        """
        Recalculate t, p, q and B using moderated variances.

        Parameters:
        - contrast_fit: ContrastFit (log2FC n_features x m, stdev_unscaled m)
        """
        s2_post, df_total = self.moderate()
        stdu = np.asarray(contrast_fit.stdev_unscaled, dtype=np.float64)
        log2fc = np.asarray(contrast_fit.log2fc, dtype=np.float64)

        se = np.outer(np.sqrt(s2_post), stdu)  # (n_features x m)
        with np.errstate(divide="ignore", invalid="ignore"):
            t_stat = log2fc / se

        p_val = two_sided_pvalues(t_stat, df_total)
        q_val = bh_qvalues(p_val, self.p_adjust)
        B, var_prior = self.lods(t_stat, stdu, df_total)

        return ModeratedStats(
            log2fc=log2fc.copy(),
            t=t_stat,
            p=p_val,
            q=q_val,
            B=B,
            se=se,
            s2_post=s2_post,
            df_total=df_total,
            d0=float(self.d0),
            s0_sq=float(self.s0_sq),
            var_prior=var_prior,
            names=list(contrast_fit.names),
            fallback=self.fallback,
        )
