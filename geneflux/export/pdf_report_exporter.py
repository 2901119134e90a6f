"""PDF report exporter for GeneFlux results.

Generates a multi-page PDF containing:
  1) Title/summary page (pipeline settings, prior estimates, package versions)
  2) Sample correlation clustermap and PCA scatter
  3) Moderated p-value histograms
  4) Volcano plots per contrast (annotated top hits)

All visuals rely on the contents of an AnnData produced by the pipeline.
"""

import os
import platform
import textwrap
from datetime import datetime
from typing import Dict, List, Optional

import anndata
import matplotlib
import numpy as np
import pandas as pd
import polars
import scanpy as sc
import scipy
import seaborn as sns
import statsmodels

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import matplotlib.patches as mpatches  # noqa: E402
from matplotlib.backends.backend_pdf import PdfPages  # noqa: E402

import geneflux
from anndata import AnnData
from geneflux.utils.semantics import DEFAULT_LFC_THRESHOLD, DEFAULT_P_THRESHOLD, DEFAULT_TOP_N
from geneflux.utils.utils import log_time


def get_color_map(labels: List[str], palette: Optional[List[str]] = None) -> Dict[str, str]:
    """Return a stable mapping label -> color (matplotlib cycle, label order)."""
    palette = palette or plt.rcParams["axes.prop_cycle"].by_key()["color"]
    return {lbl: palette[i % len(palette)] for i, lbl in enumerate(labels)}


class ReportPlotter:
    """Prepare plotting context from AnnData and config dict."""
    def __init__(self, adata: AnnData, config: Dict, label_key: str = "SYMBOL"):
        self.config = config
        self.dataset_config = config.get("dataset", {}) or {}
        self.analysis_config = config.get("analysis", {}) or {}
        self.export_config = self.analysis_config.get("exports", {}) or {}

        self.adata = adata
        self.contrast_names = list(adata.uns.get("contrast_names", []))
        self.log2fc = np.asarray(adata.varm["log2fc"])
        self.p_ebayes = np.asarray(adata.varm["p_ebayes"])
        self.q_ebayes = np.asarray(adata.varm["q_ebayes"])

        if label_key in adata.var.columns:
            labels = adata.var[label_key].astype(str)
            labels = labels.where(~labels.isin(["", "nan", "None"]), adata.var_names.astype(str))
            self.labels = labels.to_numpy()
        else:
            self.labels = adata.var_names.astype(str).to_numpy()

        self.group_column = adata.uns.get("design", {}).get("group_column")
        self.p_threshold = self.analysis_config.get("p_threshold", DEFAULT_P_THRESHOLD)
        self.lfc_threshold = self.analysis_config.get("lfc_threshold", DEFAULT_LFC_THRESHOLD)
        self.top_n = self.export_config.get("top_n", DEFAULT_TOP_N)

    @log_time("Preparing Pdf Report")
    def plot_all(self, path: Optional[str] = None):
        """Create the full PDF report at `path` (default: exports.path_plot)."""
        path = path or self.export_config.get("path_plot")
        if not path:
            raise ValueError("No output path for the PDF report (analysis.exports.path_plot).")
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with PdfPages(path) as pdf:
            self.pdf = pdf
            self._plot_title_page()
            self._plot_sample_structure()
            self._plot_pvalue_histograms()
            self._plot_volcano_plots()
        return path

    def _plot_title_page(self):
        """Render title, settings, prior estimates and package versions."""
        fig = plt.figure(figsize=(8.27, 11.69))
        fig.patch.set_facecolor("white")
        x0, y = 0.05, 0.95
        line_height = 0.03

        title = self.analysis_config.get("title", "Differential expression report")
        intro = self.analysis_config.get("intro_text", "")
        preproc = self.adata.uns.get("preprocessing", {})
        ebayes = self.adata.uns.get("ebayes", {})
        design = self.adata.uns.get("design", {})

        fig.text(0.5, y, title, ha="center", va="top", fontsize=20, weight="bold")
        y -= 1.5 * line_height
        fig.text(0.5, y, datetime.now().strftime("%Y-%m-%d"), ha="center", va="top", fontsize=13)
        y -= 1.5 * line_height

        if intro:
            for para in intro.split("\n"):
                fig.text(x0, y, textwrap.fill(para, width=105), ha="left", va="top", fontsize=12)
                y -= 0.8 * line_height

        dataset = self.adata.uns.get("dataset", {})
        fig.text(x0, y, "Input:", ha="left", va="top", fontsize=14, weight="semibold")
        y -= line_height
        src = dataset.get("source", "")
        accession = dataset.get("accession", "")
        platform_id = dataset.get("platform_id", "")
        fig.text(x0 + 0.02, y, f"- {src} {accession} {platform_id}".rstrip(), ha="left", va="top", fontsize=12)
        y -= line_height
        fig.text(x0 + 0.02, y, f"- {self.adata.n_obs} samples, {self.adata.n_vars} features analysed",
                 ha="left", va="top", fontsize=12)
        y -= line_height

        fig.text(x0, y, "Pipeline steps:", ha="left", va="top", fontsize=14, weight="semibold")
        y -= line_height
        scale = preproc.get("scale", {})
        fig.text(x0 + 0.02, y, f"- Scale: log2 applied = {scale.get('log2_applied', False)} "
                 f"(transform={scale.get('transform', 'auto')}, max={scale.get('max_before', np.nan):.4g})",
                 ha="left", va="top", fontsize=12)
        y -= line_height
        vf = preproc.get("variance_filter", {})
        if vf:
            fig.text(x0 + 0.02, y, f"- Variance filter: kept {vf.get('n_after')} of {vf.get('n_before')} "
                     f"(keep_fraction={vf.get('keep_fraction')})", ha="left", va="top", fontsize=12)
            y -= line_height
        fig.text(x0 + 0.02, y, f"- Design: {design.get('group_column')} {design.get('group_sizes', {})}",
                 ha="left", va="top", fontsize=12)
        y -= line_height
        fig.text(x0 + 0.02, y, f"- Contrasts: {', '.join(self.contrast_names)}",
                 ha="left", va="top", fontsize=12)
        y -= line_height
        fig.text(x0 + 0.02, y, f"- Empirical Bayes ({ebayes.get('engine', 'native')}): "
                 f"d0 = {ebayes.get('d0', np.nan):.4g}, s0^2 = {ebayes.get('s0_sq', np.nan):.4g}",
                 ha="left", va="top", fontsize=12)
        y -= line_height
        if ebayes.get("fallback", False):
            fig.text(x0 + 0.02, y, "- Prior df could not be estimated: no variance shrinkage (d0 = 0)",
                     ha="left", va="top", fontsize=12, color="red")
            y -= line_height
        fig.text(x0 + 0.02, y, f"- Significance: q < {self.p_threshold} ({ebayes.get('p_adjust', 'fdr_bh')}), "
                 f"|log2FC| > {self.lfc_threshold}", ha="left", va="top", fontsize=12)
        y -= 1.5 * line_height

        fig.text(x0, y, "Key package versions:", ha="left", va="top", fontsize=14, weight="semibold")
        y -= line_height
        pkgs = {
            "python": platform.python_version(),
            "geneflux": geneflux.__version__,
            "numpy": np.__version__,
            "pandas": pd.__version__,
            "polars": polars.__version__,
            "anndata": anndata.__version__,
            "scanpy": sc.__version__,
            "scipy": scipy.__version__,
            "statsmodels": statsmodels.__version__,
        }
        for name, ver in pkgs.items():
            fig.text(x0 + 0.02, y, f"- {name}: {ver}", ha="left", va="top", fontsize=12)
            y -= 0.8 * line_height

        self.pdf.savefig(fig)
        plt.close(fig)

    def _group_colors(self):
        if not self.group_column or self.group_column not in self.adata.obs.columns:
            return None, {}
        groups = self.adata.obs[self.group_column].astype(str)
        cmap = get_color_map(list(dict.fromkeys(groups.tolist())))
        return groups, cmap

    def _plot_sample_structure(self):
        """Correlation clustermap and PCA scatter, colored by group."""
        groups, cmap = self._group_colors()

        corr = self.adata.uns.get("sample_correlation")
        if corr is not None and len(corr) >= 2:
            corr = pd.DataFrame(corr)
            row_colors = groups.map(cmap).set_axis(corr.index) if groups is not None else None
            g = sns.clustermap(corr, cmap="vlag", method="ward", row_colors=row_colors,
                               col_colors=row_colors, figsize=(10, 10),
                               xticklabels=True, yticklabels=True)
            g.fig.suptitle(f"Sample correlation ({self.adata.uns.get('correlation_method', 'pearson')})")
            self.pdf.savefig(g.fig)
            plt.close(g.fig)

        if "X_pca" in self.adata.obsm:
            pcs = np.asarray(self.adata.obsm["X_pca"])
            if pcs.shape[1] >= 2:
                var_ratio = self.adata.uns.get("pca", {}).get("variance_ratio", [np.nan, np.nan])
                fig, ax = plt.subplots(figsize=(8, 6))
                colors = groups.map(cmap).tolist() if groups is not None else "gray"
                ax.scatter(pcs[:, 0], pcs[:, 1], c=colors, s=40, edgecolor="black", linewidth=0.5)
                for name, (x, yy) in zip(self.adata.obs_names, pcs[:, :2]):
                    ax.text(x, yy, str(name), fontsize=6, ha="left", va="bottom")
                ax.set_xlabel(f"PC1 ({100 * var_ratio[0]:.1f}%)")
                ax.set_ylabel(f"PC2 ({100 * var_ratio[1]:.1f}%)")
                ax.set_title("PCA")
                if cmap:
                    handles = [mpatches.Patch(color=c, label=l) for l, c in cmap.items()]
                    ax.legend(handles=handles, title=self.group_column, loc="best")
                fig.tight_layout()
                self.pdf.savefig(fig)
                plt.close(fig)

    def _plot_pvalue_histograms(self):
        n = len(self.contrast_names)
        if n == 0:
            return
        ncols = min(n, 3)
        nrows = int(np.ceil(n / ncols))
        fig, axes = plt.subplots(nrows, ncols, figsize=(4 * ncols, 3.5 * nrows), squeeze=False)
        for i, name in enumerate(self.contrast_names):
            ax = axes[i // ncols][i % ncols]
            p = self.p_ebayes[:, i]
            ax.hist(p[np.isfinite(p)], bins=np.linspace(0, 1, 21), color="steelblue", edgecolor="white")
            ax.set_title(name, fontsize=10)
            ax.set_xlabel("moderated p-value")
        for k in range(n, nrows * ncols):
            axes[k // ncols][k % ncols].axis("off")
        fig.tight_layout()
        self.pdf.savefig(fig)
        plt.close(fig)

    def _plot_volcano_plots(self):
        """Volcano plots (one per contrast), top hits labelled."""
        for i, name in enumerate(self.contrast_names):
            logfc = self.log2fc[:, i]
            qvals = self.q_ebayes[:, i]
            with np.errstate(divide="ignore"):
                y = -np.log10(np.clip(qvals, 1e-300, None))

            sig = (qvals < self.p_threshold) & (np.abs(logfc) > self.lfc_threshold)
            color = np.where(sig, np.where(logfc > 0, "firebrick", "royalblue"), "gray")

            fig, ax = plt.subplots(1, 1, figsize=(10, 6))
            ax.scatter(logfc, y, c=color, alpha=0.7, s=10)
            ax.axhline(-np.log10(self.p_threshold), color="black", linestyle="--", linewidth=0.8)
            for x in (-self.lfc_threshold, self.lfc_threshold):
                ax.axvline(x, color="black", linestyle=":", linewidth=0.8)

            for direction in ("up", "down"):
                dir_mask = sig & ((logfc > 0) if direction == "up" else (logfc < 0))
                top_idx = np.argsort(qvals[dir_mask], kind="stable")[:self.top_n]
                for j in np.where(dir_mask)[0][top_idx]:
                    ax.text(logfc[j], y[j], self.labels[j], fontsize=6,
                            ha="right" if logfc[j] > 0 else "left", va="bottom")

            ax.set_xlabel("log2FC")
            ax.set_ylabel("-log10(q)")
            ax.set_title(f"{name} ({int(sig.sum())} significant)")
            fig.tight_layout()
            self.pdf.savefig(fig)
            plt.close(fig)
