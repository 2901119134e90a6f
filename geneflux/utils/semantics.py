"""
Canonical semantics for GeneFlux.

This module is intentionally small and declarative:
  - Default values for the recognized configuration options
  - Canonical column names used in AnnData slots and exported tables

Implementation details live elsewhere (preprocessing, pipelines, exporters).
"""

# Configuration defaults
DEFAULT_KEEP_FRACTION = 0.5
DEFAULT_P_THRESHOLD = 0.05
DEFAULT_LFC_THRESHOLD = 1.0
DEFAULT_TOP_N = 20
DEFAULT_LOG_THRESHOLD = 16.0
DEFAULT_PROPORTION_DE = 0.01
DEFAULT_STDEV_COEF_LIM = (0.1, 4.0)
DEFAULT_GROUP_COLUMN = "group"
DEFAULT_P_ADJUST = "fdr_bh"
DEFAULT_SORT_BY = "B"

SCALE_TRANSFORMS = ("auto", "log2", "none")
P_ADJUST_METHODS = ("fdr_bh", "bonferroni", "holm", "none")
SORT_KEYS = ("B", "p")
ENGINES = ("native", "inmoose")

# Contrast naming: "A_vs_B" means A - B
CONTRAST_SEP = "_vs_"
CONTRAST_SEP_SHORT = "_v_"

# Result table columns
COL_FEATURE = "FEATURE_ID"
COL_LOG2FC = "LOG2FC"
COL_AVE_EXPR = "AVE_EXPR"
COL_T = "T"
COL_PVALUE = "PVALUE"
COL_QVALUE = "QVALUE"
COL_B = "B"
RESULT_COLUMNS = (COL_LOG2FC, COL_AVE_EXPR, COL_T, COL_PVALUE, COL_QVALUE, COL_B)

# Annotation columns shown first when present in adata.var
ANNOTATION_COLUMNS = ("SYMBOL", "GENE_TITLE", "CHROMOSOME", "CYTOBAND", "ENTREZ_ID", "ENSEMBL_ID")
