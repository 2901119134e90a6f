"""
Shared fixtures: small synthetic Normal/Tumor expression datasets.
"""

import anndata as ad
import numpy as np
import pandas as pd
import pytest


def make_adata(values: np.ndarray, groups, feature_ids=None, sample_ids=None, var=None) -> ad.AnnData:
    """values: features x samples (the way expression tables are laid out)."""
    values = np.asarray(values, dtype=np.float64)
    n_features, n_samples = values.shape
    feature_ids = feature_ids or [f"F{i + 1}" for i in range(n_features)]
    sample_ids = sample_ids or [f"S{j + 1}" for j in range(n_samples)]
    obs = pd.DataFrame({"group": list(groups)}, index=pd.Index(sample_ids, name="SAMPLE_ID"))
    if var is None:
        var = pd.DataFrame(index=pd.Index(feature_ids, name="FEATURE_ID"))
    return ad.AnnData(X=values.T.copy(), obs=obs, var=var)


def two_group_scenario() -> pd.DataFrame:
    """10 features x 6 samples (3 Normal, 3 Tumor).

    F1, F2: mean shift of +5 in Tumor, zero noise.
    F3..F10: noise only; Tumor values are a permutation of the Normal values,
    so the group means are equal.
    """
    rng = np.random.default_rng(7)
    rows = [
        [8.0, 8.0, 8.0, 13.0, 13.0, 13.0],
        [6.0, 6.0, 6.0, 11.0, 11.0, 11.0],
    ]
    for _ in range(8):
        normal = 7.0 + rng.normal(0.0, 0.5, size=3)
        tumor = normal[::-1]
        rows.append(list(normal) + list(tumor))
    return pd.DataFrame(
        rows,
        index=pd.Index([f"F{i + 1}" for i in range(10)], name="FEATURE_ID"),
        columns=[f"S{j + 1}" for j in range(6)],
    )


GROUPS_2x3 = ["Normal", "Normal", "Normal", "Tumor", "Tumor", "Tumor"]


@pytest.fixture
def scenario_adata():
    df = two_group_scenario()
    var = pd.DataFrame(
        {"SYMBOL": [f"GENE{i + 1}" for i in range(10)]},
        index=pd.Index(df.index, name="FEATURE_ID"),
    )
    return make_adata(df.to_numpy(), GROUPS_2x3, feature_ids=list(df.index), sample_ids=list(df.columns), var=var)


@pytest.fixture
def random_adata():
    """200 features, 4 + 4 samples, 20 features truly shifted by 2."""
    rng = np.random.default_rng(42)
    n_features = 200
    groups = ["Normal"] * 4 + ["Tumor"] * 4
    sd = np.sqrt(rng.gamma(4.0, 0.05, size=n_features))[:, None]
    values = 8.0 + rng.normal(0.0, 1.0, size=(n_features, 8)) * sd
    values[:20, 4:] += 2.0
    return make_adata(values, groups)


@pytest.fixture
def scenario_files(tmp_path):
    """Expression / samples / annotation CSVs for the 10 x 6 scenario."""
    df = two_group_scenario()
    expr_path = tmp_path / "expression.csv"
    df.to_csv(expr_path)

    samples = pd.DataFrame({"sample": df.columns, "group": GROUPS_2x3})
    # shuffled on purpose: metadata order must not matter
    samples = samples.iloc[[3, 0, 5, 1, 4, 2]]
    sample_path = tmp_path / "samples.csv"
    samples.to_csv(sample_path, index=False)

    ann = pd.DataFrame({
        "probe": ["F1", "F2", "F3", "F99"],
        "SYMBOL": ["TP53", "MYC", "EGFR", "NOPE"],
        "CHROMOSOME": ["17", "8", "7", "1"],
    })
    ann_path = tmp_path / "annotation.csv"
    ann.to_csv(ann_path, index=False)
    return {"expression": expr_path, "samples": sample_path, "annotation": ann_path}


@pytest.fixture
def base_config(scenario_files, tmp_path):
    out = tmp_path / "out"
    return {
        "dataset": {
            "expression_file": str(scenario_files["expression"]),
            "sample_file": str(scenario_files["samples"]),
            "annotation_file": str(scenario_files["annotation"]),
        },
        "preprocessing": {
            "scale": {"transform": "auto"},
            "variance_filter": {"enabled": False},
        },
        "design": {"group_column": "group", "levels": ["Normal", "Tumor"]},
        "analysis": {
            "export_plot": False,
            "exports": {
                "path_table": str(out / "de.csv"),
                "path_h5ad": str(out / "de.h5ad"),
                "path_plot": str(out / "report.pdf"),
            },
        },
    }


@pytest.fixture
def noisy_scenario_adata():
    """Same layout as the scenario, with independent noise on F3..F10."""
    rng = np.random.default_rng(2024)
    df = two_group_scenario()
    df.iloc[2:, :] = 7.0 + rng.normal(0.0, 0.5, size=(8, 6))
    return make_adata(df.to_numpy(), GROUPS_2x3, feature_ids=list(df.index), sample_ids=list(df.columns))


def spread_variance_values(n_features: int = 30) -> np.ndarray:
    """Features x 6 samples whose residual variances differ by a few percent only.

    The log-variance spread stays well below sampling noise, so the prior df
    estimate is infinite.
    """
    noise = np.array([-0.5, 0.1, 0.4])
    rows = []
    for g in range(n_features):
        scale = 1.0 + 0.01 * g
        rows.append(np.concatenate([6.0 + 0.1 * g + scale * noise, 6.5 + 0.1 * g + scale * noise[::-1]]))
    return np.array(rows)
