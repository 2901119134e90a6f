import numpy as np
import pandas as pd
import patsy
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

from geneflux.errors import InvalidGroupError
from geneflux.utils.semantics import DEFAULT_GROUP_COLUMN
from geneflux.utils.utils import log_info, log_warning


@dataclass(frozen=True)
class DesignMatrix:
    """One-hot group design, no intercept (samples × levels)."""
    matrix: np.ndarray
    column_names: List[str]
    sample_names: List[str]
    group_column: str
    groups: List[str]          # group label per sample

    def __post_init__(self):
        self.matrix.setflags(write=False)

    def group_sizes(self) -> Dict[str, int]:
        return {name: int(n) for name, n in zip(self.column_names, self.matrix.sum(axis=0))}


class DesignMatrixBuilder:
    def __init__(
        self,
        sample_metadata: pd.DataFrame,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.meta = sample_metadata.copy()
        self.config = config or {}
        self.formula: Optional[str] = None
        self.design: Optional[DesignMatrix] = None
        self.design_dm: Optional[patsy.DesignMatrix] = None

    def _group_labels(self, group_col: str) -> pd.Series:
        if group_col not in self.meta.columns:
            raise InvalidGroupError(f"{group_col} not found in sample metadata.")

        raw = self.meta[group_col]
        missing = raw.isna() | raw.astype(str).str.strip().isin(["", "nan", "None"])
        if missing.any():
            bad = self.meta.index[missing.to_numpy()].astype(str).tolist()
            raise InvalidGroupError(
                f"{len(bad)} sample(s) without a '{group_col}' value: {bad[:10]}"
            )

        labels = raw.astype(str).str.strip()
        relabel = self.config.get("group_labels") or {}
        if relabel:
            labels = labels.map(lambda s: str(relabel.get(s, s)))
        return labels

    def _levels(self, labels: pd.Series) -> List[str]:
        explicit = self.config.get("levels")
        seen = list(dict.fromkeys(labels.tolist()))  # first-encountered order
        if not explicit:
            return seen

        explicit = [str(x) for x in explicit]
        if len(set(explicit)) != len(explicit):
            raise InvalidGroupError(f"Duplicated levels in design.levels: {explicit}")
        unknown = sorted(set(seen) - set(explicit))
        if unknown:
            bad = labels.index[labels.isin(unknown).to_numpy()].astype(str).tolist()
            raise InvalidGroupError(
                f"Group values {unknown} are not in design.levels {explicit} (samples {bad[:10]})"
            )
        empty = [lvl for lvl in explicit if lvl not in seen]
        if empty:
            log_warning(f"Levels without samples: {empty}")
        return explicit

    def build(self) -> DesignMatrix:
        group_col = self.config.get("group_column", DEFAULT_GROUP_COLUMN)
        labels = self._group_labels(group_col)
        levels = self._levels(labels)

        # patsy needs identifier-safe names; public column names stay the labels
        tmp = pd.DataFrame(index=self.meta.index)
        safe = [f"G{i}" for i in range(len(levels))]
        for name, lvl in zip(safe, levels):
            tmp[name] = (labels == lvl).astype(int).to_numpy()

        self.formula = "0 + " + " + ".join(safe)
        design_dm = patsy.dmatrix(self.formula, tmp)
        self.design_dm = design_dm

        self.design = DesignMatrix(
            matrix=np.asarray(design_dm, dtype=np.float64),
            column_names=list(levels),
            sample_names=self.meta.index.astype(str).tolist(),
            group_column=group_col,
            groups=labels.tolist(),
        )
        log_info(f"Design: {group_col} with levels {self.design.group_sizes()}")
        return self.design
