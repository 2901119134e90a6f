"""Unsupervised structure of the samples.

Provides:
  - sample_correlation: samples x samples correlation of the expression profiles.
  - run_pca: scanpy PCA on a copy, sample coordinates in obsm["X_pca"].
  - hierarchical_order: ward clustering of the centered sample profiles.
  - clustering_pipeline: all of the above, used for QC plots in the report.
"""

import numpy as np
import pandas as pd
import scipy.cluster.hierarchy as sch
import scanpy as sc
from anndata import AnnData
from typing import Optional

from geneflux.utils.utils import log_time, log_warning


def sample_correlation(adata: AnnData, method: str = "pearson") -> pd.DataFrame:
    if method not in ("pearson", "spearman"):
        raise ValueError(f"Unknown correlation method: {method}")
    df = pd.DataFrame(np.asarray(adata.X).T, columns=adata.obs_names.astype(str))
    return df.corr(method=method)


def run_pca(adata: AnnData, n_comps: Optional[int] = None) -> AnnData:
    """PCA on samples; returns a copy with obsm['X_pca'] and uns['pca']."""
    A = adata.copy()
    max_comps = min(A.n_obs, A.n_vars) - 1
    if max_comps < 1:
        log_warning(f"PCA skipped: {A.n_obs} samples x {A.n_vars} features")
        return A
    n_comps = min(n_comps or 50, max_comps)
    sc.tl.pca(A, n_comps=n_comps)
    return A


def hierarchical_order(adata: AnnData, method: str = "ward", metric: str = "euclidean"):
    """Sample linkage and leaf order on the feature-centered matrix."""
    X = np.asarray(adata.X, dtype=np.float64)
    Xc = X - X.mean(axis=0, keepdims=True)
    linkage = sch.linkage(Xc, method=method, metric=metric)
    leaves = sch.leaves_list(linkage)
    return linkage, adata.obs_names[leaves].tolist()


@log_time("Clustering")
def clustering_pipeline(adata: AnnData, correlation_method: str = "pearson", n_comps: Optional[int] = None) -> AnnData:
    out = run_pca(adata, n_comps=n_comps)
    out.uns["sample_correlation"] = sample_correlation(adata, method=correlation_method)
    out.uns["correlation_method"] = correlation_method

    if adata.n_obs >= 2:
        linkage, order = hierarchical_order(adata)
        out.uns["sample_linkage"] = linkage
        out.uns["sample_order"] = order
    return out
