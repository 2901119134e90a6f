from geneflux.workflow.dataset import Dataset
from geneflux.workflow.preprocessing import Preprocessor
from geneflux.analysis.limma_pipeline import run_limma_pipeline, clustering_pipeline
from geneflux.export.pdf_report_exporter import ReportPlotter
from geneflux.export.de_exporter import DEExporter
from geneflux.utils.semantics import DEFAULT_LFC_THRESHOLD, DEFAULT_P_THRESHOLD, DEFAULT_SORT_BY
from geneflux.utils.utils import log_time


@log_time("GeneFlux Pipeline")
def run_pipeline(config: dict):
    dataset = Dataset(**config)
    adata = dataset.get_anndata()
    adata = Preprocessor(config.get("preprocessing", {})).fit_transform(adata)
    adata = run_limma_pipeline(adata, config)

    analysis_config = config.get("analysis", {}) or {}
    adata = clustering_pipeline(adata, correlation_method=analysis_config.get("correlation_method", "pearson"))

    export_config = analysis_config.get("exports", {}) or {}

    if analysis_config.get("export_plot", True) and export_config.get("path_plot"):
        plotter = ReportPlotter(adata, config)
        plotter.plot_all()

    exporter = DEExporter(adata,
                          output_path=export_config.get("path_table", "geneflux_results.csv"),
                          use_xlsx=export_config.get("use_xlsx", False),
                          p_threshold=analysis_config.get("p_threshold", DEFAULT_P_THRESHOLD),
                          lfc_threshold=analysis_config.get("lfc_threshold", DEFAULT_LFC_THRESHOLD),
                          sort_by=analysis_config.get("sort_by", DEFAULT_SORT_BY),
                          config=config,
                          )
    if analysis_config.get("export_table", True):
        exporter.export()

    if export_config.get("path_h5ad"):
        exporter.export_adata(export_config.get("path_h5ad"))

    return adata
