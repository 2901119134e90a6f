import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from geneflux.design.designmatrixbuilder import DesignMatrix
from geneflux.errors import InvalidDataError, RankDeficiencyError
from geneflux.utils.utils import log_time


@dataclass(frozen=True)
class FitResult:
    coefficients: np.ndarray       # (n_features x p)
    residual_variance: np.ndarray  # (n_features,)
    df_residual: int
    cov_unscaled: np.ndarray       # (p x p) = (X'WX)^-1
    weights: np.ndarray            # (n_samples,)
    column_names: List[str]
    feature_ids: List[str]
    ave_expr: np.ndarray           # (n_features,) mean expression

    def __post_init__(self):
        for arr in (self.coefficients, self.residual_variance, self.cov_unscaled, self.weights, self.ave_expr):
            arr.setflags(write=False)

    @property
    def sigma(self) -> np.ndarray:
        return np.sqrt(self.residual_variance)

    @property
    def n_features(self) -> int:
        return self.coefficients.shape[0]


class LinearModelFitter:
    def __init__(
        self,
        expression: np.ndarray,
        design: Union[DesignMatrix, np.ndarray],
        weights: Optional[Sequence[float]] = None,
        column_names: Optional[Sequence[str]] = None,
        feature_ids: Optional[Sequence[str]] = None,
    ):
        """
        Parameters:
        - expression: (n_samples x n_features) matrix (adata.X)
        - design: DesignMatrix (or raw (n_samples x p) array)
        - weights: optional per-sample weights, default all 1.0
        """
        if isinstance(design, DesignMatrix):
            X = np.asarray(design.matrix, dtype=np.float64)
            column_names = list(design.column_names)
        else:
            X = np.asarray(design, dtype=np.float64)
            column_names = list(column_names) if column_names is not None else [f"x{i}" for i in range(X.shape[1])]

        self.Y = np.asarray(expression, dtype=np.float64)
        self.X = X
        self.column_names = column_names
        n_samples, n_features = self.Y.shape
        self.feature_ids = list(feature_ids) if feature_ids is not None else [str(i) for i in range(n_features)]

        if X.shape[0] != n_samples:
            raise ValueError(f"Design has {X.shape[0]} rows, expression has {n_samples} samples")
        if not np.all(np.isfinite(self.Y)):
            raise InvalidDataError("Expression matrix contains missing or non-finite values.")

        if weights is None:
            self.w = np.ones(n_samples)
        else:
            self.w = np.asarray(weights, dtype=np.float64).ravel()
            if self.w.shape[0] != n_samples:
                raise InvalidDataError(f"Expected {n_samples} sample weights, got {self.w.shape[0]}")
            if not np.all(np.isfinite(self.w)) or np.any(self.w <= 0):
                raise InvalidDataError("Sample weights must be finite and strictly positive.")

        self._check_rank()
        self.df_residual = n_samples - X.shape[1]
        self.result: Optional[FitResult] = None

    def _check_rank(self):
        X = self.X
        p = X.shape[1]
        empty = [name for name, col in zip(self.column_names, X.T) if not np.any(col != 0)]
        if empty:
            raise RankDeficiencyError(f"Design columns without any sample: {empty}")
        rank = np.linalg.matrix_rank(X)
        if rank < p:
            raise RankDeficiencyError(
                f"Design matrix has rank {rank} < {p} columns {self.column_names} (collinear columns)."
            )
        if X.shape[0] - p <= 0:
            raise RankDeficiencyError(
                f"{X.shape[0]} samples for {p} coefficients: zero residual degrees of freedom."
            )

    @log_time("Linear Regressions")
    def fit(self):
        """
        Fits weighted least squares for all features simultaneously.
        minimize ||W^(1/2)(y - X beta)||^2, vectorized across features.
        """
        X = self.X
        Y = self.Y  # shape: (n_samples x n_features)
        w = self.w

        Xw = X * w[:, None]
        xtwx_inv = np.linalg.inv(X.T @ Xw)

        # Fit coefficients for all features
        betas = xtwx_inv @ Xw.T @ Y          # shape: (p x n_features)

        fitted = X @ betas                   # shape: (n_samples x n_features)
        resid = Y - fitted

        rss = np.sum(w[:, None] * resid**2, axis=0)  # shape: (n_features,)

        self.result = FitResult(
            coefficients=betas.T.copy(),
            residual_variance=rss / self.df_residual,
            df_residual=int(self.df_residual),
            cov_unscaled=xtwx_inv,
            weights=w.copy(),
            column_names=list(self.column_names),
            feature_ids=list(self.feature_ids),
            ave_expr=Y.mean(axis=0),
        )
        return self

    def get_results(self) -> FitResult:
        if self.result is None:
            self.fit()
        return self.result
