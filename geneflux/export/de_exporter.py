"""Export differential-expression results to CSV/Excel and write .h5ad.

One ranked table per contrast (`<prefix>_<contrast>.csv`) plus a wide
"Summary" table (annotation, average expression, per-contrast statistics and
processed intensities). With `use_xlsx`, all tables go into a single workbook
with a README sheet.
"""
import numpy as np
import pandas as pd
from pathlib import Path
from datetime import datetime
from typing import Dict, List, Optional
from importlib.metadata import version as _pkg_version, PackageNotFoundError

from geneflux.utils.semantics import (
    ANNOTATION_COLUMNS,
    COL_AVE_EXPR,
    COL_B,
    COL_FEATURE,
    COL_LOG2FC,
    COL_PVALUE,
    COL_QVALUE,
    COL_T,
    DEFAULT_LFC_THRESHOLD,
    DEFAULT_P_THRESHOLD,
    DEFAULT_SORT_BY,
    RESULT_COLUMNS,
    SORT_KEYS,
)
from geneflux.utils.utils import log_info, log_time

# varm matrix -> result column
_STAT_MATRICES = {
    COL_LOG2FC: "log2fc",
    COL_T: "t_ebayes",
    COL_PVALUE: "p_ebayes",
    COL_QVALUE: "q_ebayes",
    COL_B: "B",
}

_XLSX_SHEET_MAX = 31


def rank_order(values: np.ndarray, sort_by: str) -> np.ndarray:
    """Stable ranking: B descending or p ascending; NaN last, ties keep feature order."""
    values = np.asarray(values, dtype=np.float64)
    if sort_by == "B":
        return np.argsort(-values, kind="stable")
    if sort_by == "p":
        return np.argsort(values, kind="stable")
    raise ValueError(f"Unknown sort key '{sort_by}', expected one of {SORT_KEYS}")


def read_top_table(path) -> pd.DataFrame:
    """Re-read an exported per-contrast CSV (exact float round trip)."""
    df = pd.read_csv(path, index_col=0, float_precision="round_trip")
    df.index = df.index.astype(str)
    df.index.name = COL_FEATURE
    return df


class DEExporter:
    def __init__(
        self,
        adata,
        output_path,
        use_xlsx: bool = False,
        p_threshold: float = DEFAULT_P_THRESHOLD,
        lfc_threshold: float = DEFAULT_LFC_THRESHOLD,
        sort_by: str = DEFAULT_SORT_BY,
        config: Optional[dict] = None,
    ):
        """CSV/Excel and .h5ad exporter for an AnnData returned by `run_limma_pipeline`."""
        if sort_by not in SORT_KEYS:
            raise ValueError(f"Unknown sort key '{sort_by}', expected one of {SORT_KEYS}")
        self.adata = adata
        self.output_path = Path(output_path)
        self.use_xlsx = use_xlsx
        self.p_threshold = p_threshold
        self.lfc_threshold = lfc_threshold
        self.sort_by = sort_by
        self.contrasts: List[str] = list(self.adata.uns.get("contrast_names", []))
        self.config = config or {}

    def _get_dataframe(self, matrix_name: str) -> Optional[pd.DataFrame]:
        """Return varm[matrix_name] as a (features x contrasts) DataFrame, or None."""
        if matrix_name in self.adata.varm:
            return pd.DataFrame(np.asarray(self.adata.varm[matrix_name]),
                                index=self.adata.var_names.astype(str),
                                columns=self.contrasts)
        return None

    def _annotation(self) -> pd.DataFrame:
        cols = [c for c in ANNOTATION_COLUMNS if c in self.adata.var.columns]
        meta = self.adata.var[cols].copy()
        meta.index = self.adata.var_names.astype(str)
        return meta

    def _contrast_index(self, contrast: str) -> int:
        if contrast not in self.contrasts:
            raise KeyError(f"Unknown contrast '{contrast}', available: {self.contrasts}")
        return self.contrasts.index(contrast)

    def top_table(self, contrast: str, sort_by: Optional[str] = None, filter: bool = False) -> pd.DataFrame:
        """Ranked, annotated result table for one contrast."""
        j = self._contrast_index(contrast)
        sort_by = sort_by or self.sort_by
        var = self.adata.var

        stats = {col: np.asarray(self.adata.varm[key])[:, j] for col, key in _STAT_MATRICES.items()}
        if COL_AVE_EXPR in var.columns:
            stats[COL_AVE_EXPR] = var[COL_AVE_EXPR].to_numpy(dtype=np.float64)
        else:
            stats[COL_AVE_EXPR] = np.asarray(self.adata.X, dtype=np.float64).mean(axis=0)

        table = pd.DataFrame(stats, index=self.adata.var_names.astype(str))[list(RESULT_COLUMNS)]
        table = pd.concat([table, self._annotation()], axis=1)
        table.index.name = COL_FEATURE

        key = table[COL_B] if sort_by == "B" else table[COL_PVALUE]
        table = table.iloc[rank_order(key.to_numpy(), sort_by)]

        if filter:
            table = self._filter(table)
        return table

    def _filter(self, table: pd.DataFrame, p_threshold=None, lfc_threshold=None) -> pd.DataFrame:
        p_thr = self.p_threshold if p_threshold is None else p_threshold
        lfc_thr = self.lfc_threshold if lfc_threshold is None else lfc_threshold
        keep = (table[COL_QVALUE] < p_thr) & (table[COL_LOG2FC].abs() > lfc_thr)
        return table[keep.to_numpy()]

    def significant(self, contrast: str, p_threshold=None, lfc_threshold=None, sort_by=None) -> pd.DataFrame:
        """Features with QVALUE < p_threshold and |LOG2FC| > lfc_threshold, ranked."""
        return self._filter(self.top_table(contrast, sort_by=sort_by), p_threshold, lfc_threshold)

    def summary_table(self) -> pd.DataFrame:
        """Wide table: annotation, AVE_EXPR, per-contrast statistics, processed intensities."""
        blocks = [self._annotation()]
        if COL_AVE_EXPR in self.adata.var.columns:
            ave = self.adata.var[COL_AVE_EXPR].copy()
            ave.index = self.adata.var_names.astype(str)
            blocks.append(ave.to_frame())

        for col, key in _STAT_MATRICES.items():
            df = self._get_dataframe(key)
            if df is not None:
                blocks.append(df.add_prefix(f"{col}_"))

        n_sig = {}
        for c in self.contrasts:
            n_sig[c] = len(self.significant(c))

        X = pd.DataFrame(np.asarray(self.adata.X), index=self.adata.obs_names.astype(str),
                         columns=self.adata.var_names.astype(str)).T
        blocks.append(X.add_prefix("log2_"))

        summary = pd.concat(blocks, axis=1)
        summary.index.name = COL_FEATURE
        log_info(f"Significant features per contrast: {n_sig}")
        return summary

    def _readme(self) -> str:
        eb = self.adata.uns.get("ebayes", {})
        return (
            "GeneFlux Differential Expression Export\n\n"
            "Sheet Descriptions:\n"
            "- Summary: annotation, average log2 expression, per-contrast statistics, processed intensities.\n"
            "- One sheet per contrast (A_vs_B = A - B), ranked by "
            f"{'B (log-odds) descending' if self.sort_by == 'B' else 'p-value ascending'}.\n\n"
            "Columns: LOG2FC (effect), AVE_EXPR (mean log2 expression), T (moderated t), "
            "PVALUE, QVALUE (adjusted), B (log-odds of differential expression).\n\n"
            f"Prior: d0 = {eb.get('d0', np.nan)}, s0^2 = {eb.get('s0_sq', np.nan)}, "
            f"fallback (no shrinkage) = {eb.get('fallback', False)}\n"
            f"Significance: QVALUE < {self.p_threshold} and |LOG2FC| > {self.lfc_threshold}\n"
        )

    def _export_excel(self, tables: Dict[str, pd.DataFrame], readme: str) -> Path:
        """Write all tables to a single XLSX with a README sheet."""
        out_file = self.output_path.with_suffix(".xlsx")
        with pd.ExcelWriter(out_file, engine="xlsxwriter") as writer:
            writer.book.use_zip64()
            pd.DataFrame({"README": readme.split("\n")}).to_excel(
                writer, index=False, sheet_name="README"
            )
            header_fmt = writer.book.add_format({"bold": False, "align": "left", "border": 0})

            for name, df in tables.items():
                sheet = name[:_XLSX_SHEET_MAX]
                ws = writer.book.add_worksheet(sheet)
                df_out = df.reset_index()
                columns = list(df_out.columns)
                ws.write_row(0, 0, columns, header_fmt)
                df_out.to_excel(writer, sheet_name=sheet, startrow=1, index=False, header=False)
                ws.set_column(0, len(columns) - 1, 14)
        return out_file

    def _export_csvs(self, tables: Dict[str, pd.DataFrame]) -> List[Path]:
        """Write each table to a separate CSV with a shared filename prefix."""
        prefix = self.output_path.with_suffix("")
        paths = []
        for name, df in tables.items():
            path = Path(f"{prefix}_{name}.csv")
            df.to_csv(path)
            paths.append(path)
        return paths

    @log_time("Differential Expression - exporting tables")
    def export(self) -> List[Path]:
        """Export one table per contrast plus the Summary, as CSV (and XLSX if enabled)."""
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

        tables = {c: self.top_table(c) for c in self.contrasts}
        tables["Summary"] = self.summary_table()

        paths = self._export_csvs(tables)
        if self.use_xlsx:
            paths.append(self._export_excel(tables, self._readme()))
        return paths

    @log_time("Exporting .h5ad")
    def export_adata(self, h5ad_path) -> Path:
        """Write a compact .h5ad (categorical metadata, version stamp)."""
        adata = self.adata.copy()
        group_col = adata.uns.get("design", {}).get("group_column")
        for col in [group_col, "SYMBOL", "CHROMOSOME", "CYTOBAND"]:
            if col and col in adata.obs.columns:
                adata.obs[col] = adata.obs[col].astype("category")
            if col and col in adata.var.columns:
                adata.var[col] = adata.var[col].astype("category")

        meta = adata.uns.get("geneflux", {})
        if not isinstance(meta, dict):
            meta = {}
        try:
            gf_version = _pkg_version("geneflux")
        except PackageNotFoundError:
            gf_version = "0+unknown"
        meta.setdefault("gf_version", gf_version)
        meta.setdefault("created_at", datetime.now().isoformat(timespec="seconds") + "Z")
        adata.uns["geneflux"] = meta

        h5ad_path = Path(h5ad_path)
        h5ad_path.parent.mkdir(parents=True, exist_ok=True)
        adata.write(h5ad_path, compression="gzip")
        return h5ad_path
