import anndata as ad
import numpy as np
import pandas as pd
import polars as pl
import pyarrow.csv as pv_csv
from pathlib import Path
from typing import Optional, Union

from geneflux.errors import InvalidDataError, SampleMismatchError
from geneflux.workflow.series_matrix import load_series_matrices, select_platform
from geneflux.utils.utils import log_time, log_info, log_warning, polars_matrix_to_numpy

NULL_VALUES = ["NA", "NaN", "N/A", "null", ""]


def _duplicates(labels) -> list:
    s = pd.Index(labels)
    return s[s.duplicated()].unique().tolist()


def build_expression_anndata(
    expression: pd.DataFrame,
    samples: pd.DataFrame,
    annotation: Optional[pd.DataFrame] = None,
    drop_incomplete: bool = False,
) -> ad.AnnData:
    """Validate and assemble (features × samples) expression + sample metadata.

    Args:
        expression: features × samples numeric frame, index = feature ids.
        samples: sample metadata indexed by sample id.
        annotation: optional feature annotation indexed by feature id (left join).
        drop_incomplete: drop features with missing values instead of failing.

    Returns:
        AnnData with obs = samples (in matrix column order), var = features.
    """
    expression = expression.copy()
    expression.index = expression.index.astype(str)
    expression.columns = expression.columns.astype(str)
    samples = samples.copy()
    samples.index = samples.index.astype(str)

    dup_f = _duplicates(expression.index)
    if dup_f:
        raise InvalidDataError(f"Duplicated feature ids: {dup_f[:10]}")
    dup_s = _duplicates(expression.columns)
    if dup_s:
        raise InvalidDataError(f"Duplicated sample ids in expression matrix: {dup_s[:10]}")
    dup_m = _duplicates(samples.index)
    if dup_m:
        raise InvalidDataError(f"Duplicated sample ids in metadata: {dup_m[:10]}")

    # exact set equality, order-independent, before any join
    in_matrix, in_meta = set(expression.columns), set(samples.index)
    if in_matrix != in_meta:
        raise SampleMismatchError(in_matrix - in_meta, in_meta - in_matrix)

    non_numeric = [c for c in expression.columns if not pd.api.types.is_numeric_dtype(expression[c])]
    if non_numeric:
        raise InvalidDataError(f"Non-numeric expression values in samples {non_numeric[:10]}")

    values = expression.to_numpy(dtype=np.float64)
    incomplete = ~np.isfinite(values).all(axis=1)
    if incomplete.any():
        bad = expression.index[incomplete].tolist()
        if not drop_incomplete:
            raise InvalidDataError(
                f"{len(bad)} feature(s) with missing or non-finite values, e.g. {bad[:10]}"
            )
        log_warning(f"Dropping {len(bad)} feature(s) with missing values.")
        expression = expression.loc[~incomplete]
        values = values[~incomplete]

    obs = samples.loc[list(expression.columns)].copy()

    if annotation is not None:
        annotation = annotation.copy()
        annotation.index = annotation.index.astype(str)
        annotation = annotation[~annotation.index.duplicated(keep="first")]
        # left join: unmatched features keep null annotation
        var = annotation.reindex(expression.index)
        n_unmatched = int(var.isna().all(axis=1).sum()) if var.shape[1] else len(var)
        if n_unmatched:
            log_info(f"Annotation: {n_unmatched} feature(s) without a match.")
    else:
        var = pd.DataFrame(index=expression.index)
    var.index.name = "FEATURE_ID"
    obs.index.name = "SAMPLE_ID"

    # object columns -> str so .h5ad export does not choke on mixed types
    for frame in (obs, var):
        for col in frame.columns:
            if frame[col].dtype == object:
                frame[col] = frame[col].where(frame[col].isna(), frame[col].astype(str))

    return ad.AnnData(X=values.T.copy(), obs=obs, var=var)


class Dataset:
    """Load an expression dataset from tables or GEO series-matrix files into AnnData."""

    def __init__(self, **kwargs):
        """
        Initialize the dataset object.

        Args:
            kwargs: dict with all the config elements
        """
        dataset_cfg = kwargs.get("dataset", {}) or {}

        self.expression_file = dataset_cfg.get("expression_file")
        self.sample_file = dataset_cfg.get("sample_file")
        self.annotation_file = dataset_cfg.get("annotation_file")
        self.series_matrix_files = dataset_cfg.get("series_matrix_files") or []
        if isinstance(self.series_matrix_files, str):
            self.series_matrix_files = [self.series_matrix_files]
        self.platform_index = dataset_cfg.get("platform_index", 0)

        self.feature_column = dataset_cfg.get("feature_column")
        self.sample_column = dataset_cfg.get("sample_column")
        self.annotation_key = dataset_cfg.get("annotation_key")
        self.load_method = dataset_cfg.get("load_method", "polars")
        self.drop_incomplete = bool(dataset_cfg.get("drop_incomplete_features", True))

        if not self.series_matrix_files and not (self.expression_file and self.sample_file):
            raise ValueError(
                "dataset: provide either 'series_matrix_files' or both 'expression_file' and 'sample_file'."
            )

        self.platform = None
        self._load_and_process()

    def _load_and_process(self):
        if self.series_matrix_files:
            expression, samples = self._load_series_matrix()
        else:
            expression, samples = self._load_tables()

        annotation = None
        if self.annotation_file:
            annotation = self._load_annotation(self.annotation_file)

        self._convert_to_anndata(expression, samples, annotation)

    @log_time("Data Loading")
    def _load_table(self, file_path: Union[str, Path]) -> pl.DataFrame:
        """Load a CSV or TSV file (optionally gzipped)."""
        name = str(file_path)
        stem = name[:-3] if name.endswith(".gz") else name
        if not stem.endswith((".csv", ".tsv", ".txt")):
            raise ValueError("Only CSV, TSV or TXT files are supported.")

        delimiter = "," if stem.endswith(".csv") else "\t"

        if self.load_method == "polars":
            return pl.read_csv(name,
                               separator=delimiter,
                               infer_schema_length=10000,
                               null_values=NULL_VALUES)
        elif self.load_method == "pyarrow":
            parse_options = pv_csv.ParseOptions(delimiter=delimiter)
            convert_options = pv_csv.ConvertOptions(null_values=NULL_VALUES, strings_can_be_null=True)
            arrow_table = pv_csv.read_csv(name, parse_options=parse_options, convert_options=convert_options)
            return pl.from_arrow(arrow_table)
        else:
            raise ValueError(f"Unknown load method: {self.load_method}")

    def _load_tables(self):
        expr_pl = self._load_table(self.expression_file)
        feature_col = self.feature_column or expr_pl.columns[0]
        if feature_col not in expr_pl.columns:
            raise ValueError(f"feature_column '{feature_col}' not found in {self.expression_file}")

        sample_cols = [c for c in expr_pl.columns if c != feature_col]
        non_numeric = [c for c in sample_cols if not expr_pl.schema[c].is_numeric()]
        if non_numeric:
            raise InvalidDataError(f"Non-numeric expression values in samples {non_numeric[:10]}")

        mat, feature_ids = polars_matrix_to_numpy(expr_pl.select([feature_col] + sample_cols), index_col=feature_col)
        expression = pd.DataFrame(mat, index=pd.Index(feature_ids, name="FEATURE_ID"), columns=sample_cols)

        meta_pl = self._load_table(self.sample_file)
        sample_col = self.sample_column or meta_pl.columns[0]
        if sample_col not in meta_pl.columns:
            raise ValueError(f"sample_column '{sample_col}' not found in {self.sample_file}")
        samples = meta_pl.with_columns(pl.col(sample_col).cast(pl.Utf8)).to_pandas().set_index(sample_col)

        log_info(f"Loaded {expression.shape[0]} features × {expression.shape[1]} samples")
        return expression, samples

    def _load_series_matrix(self):
        platforms = load_series_matrices(self.series_matrix_files)
        self.platform = select_platform(platforms, self.platform_index)
        if len(platforms) > 1:
            log_info(f"{len(platforms)} platforms available, using #{self.platform_index} ({self.platform.platform_id})")
        return self.platform.expression, self.platform.samples

    def _load_annotation(self, file_path) -> pd.DataFrame:
        ann_pl = self._load_table(file_path)
        key = self.annotation_key or ann_pl.columns[0]
        if key not in ann_pl.columns:
            raise ValueError(f"annotation_key '{key}' not found in {file_path}")
        ann_pl = ann_pl.with_columns(pl.col(key).cast(pl.Utf8))
        return ann_pl.to_pandas().set_index(key)

    @log_time("Conversion to AnnData")
    def _convert_to_anndata(self, expression, samples, annotation):
        self.adata = build_expression_anndata(
            expression,
            samples,
            annotation=annotation,
            drop_incomplete=self.drop_incomplete,
        )
        self.adata.uns["dataset"] = {
            "source": "series_matrix" if self.series_matrix_files else "tables",
            "platform_id": getattr(self.platform, "platform_id", None) or "",
            "accession": getattr(self.platform, "accession", None) or "",
            "n_features_loaded": int(expression.shape[0]),
        }

    def get_anndata(self) -> ad.AnnData:
        """Export the loaded dataset as an AnnData object."""
        return self.adata
