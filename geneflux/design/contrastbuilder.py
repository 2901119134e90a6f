import itertools
import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Sequence

from geneflux.design.designmatrixbuilder import DesignMatrix
from geneflux.errors import RankDeficiencyError
from geneflux.utils.semantics import CONTRAST_SEP, CONTRAST_SEP_SHORT
from geneflux.utils.utils import log_info


@dataclass(frozen=True)
class ContrastSet:
    matrix: np.ndarray      # (p x m): p design columns, m contrasts
    names: List[str]
    column_names: List[str]

    def __post_init__(self):
        self.matrix.setflags(write=False)

    def vector(self, name: str) -> np.ndarray:
        return self.matrix[:, self.names.index(name)]


def parse_contrast_name(name: str) -> tuple:
    """'A_vs_B' or 'A_v_B' -> ('A', 'B'), meaning A - B."""
    s = str(name)
    if CONTRAST_SEP in s:
        a, b = s.split(CONTRAST_SEP, 1)
    elif CONTRAST_SEP_SHORT in s:
        a, b = s.split(CONTRAST_SEP_SHORT, 1)
    else:
        raise ValueError(f"Contrast '{s}' must use {CONTRAST_SEP} or {CONTRAST_SEP_SHORT} as separator")
    return a.strip(), b.strip()


class ContrastBuilder:
    def __init__(self, design: DesignMatrix, min_replicates: int = 2):
        """
        Parameters:
        - design: DesignMatrix from DesignMatrixBuilder (no intercept, one column per level)
        - min_replicates: groups entering a contrast need at least this many samples
        """
        self.design = design
        self.levels = list(design.column_names)
        self.min_replicates = min_replicates

    def _contrast_vector(self, group1: str, group2: str) -> np.ndarray:
        """group1 - group2"""
        for g in (group1, group2):
            if g not in self.levels:
                raise ValueError(f"Contrast group '{g}' not in design levels {self.levels}")
        if group1 == group2:
            raise ValueError(f"Contrast compares '{group1}' with itself")
        vec = np.zeros(len(self.levels))
        vec[self.levels.index(group1)] = 1.0
        vec[self.levels.index(group2)] = -1.0
        return vec

    def _assemble(self, pairs: Sequence[tuple]) -> ContrastSet:
        if not pairs:
            raise ValueError(f"No contrast could be formed from levels {self.levels}")
        vecs = [self._contrast_vector(a, b) for a, b in pairs]
        names = [f"{a}{CONTRAST_SEP}{b}" for a, b in pairs]
        cs = ContrastSet(matrix=np.vstack(vecs).T, names=names, column_names=list(self.levels))
        self.check_replicates(cs)
        return cs

    def check_replicates(self, contrast_set: ContrastSet) -> None:
        """Every group entering a contrast needs `min_replicates` samples."""
        sizes = self.design.group_sizes()
        for j, name in enumerate(contrast_set.names):
            used = [lvl for lvl, c in zip(contrast_set.column_names, contrast_set.matrix[:, j]) if c != 0]
            small = {lvl: sizes[lvl] for lvl in used if sizes[lvl] < self.min_replicates}
            if small:
                raise RankDeficiencyError(
                    f"Contrast {name}: group(s) {small} have fewer than {self.min_replicates} samples; "
                    "no within-group variance can be estimated."
                )

    def make_all_pairwise_contrasts(self) -> ContrastSet:
        """All level pairs, later level vs earlier level (e.g. Tumor_vs_Normal)."""
        pairs = [(b, a) for a, b in itertools.combinations(self.levels, 2)]
        return self._assemble(pairs)

    def make_against(self, baseline: str) -> ContrastSet:
        if baseline not in self.levels:
            raise ValueError(f"baseline='{baseline}' not found in levels {self.levels}")
        return self._assemble([(lvl, baseline) for lvl in self.levels if lvl != baseline])

    def make_from_names(self, names: Sequence[str]) -> ContrastSet:
        return self._assemble([parse_contrast_name(n) for n in names])

    def from_vectors(self, vectors: Sequence[Sequence[float]], names: Optional[Sequence[str]] = None) -> ContrastSet:
        """Arbitrary contrast vectors of length p (number of design columns)."""
        mat = np.asarray(vectors, dtype=np.float64)
        if mat.ndim == 1:
            mat = mat[None, :]
        if mat.shape[1] != len(self.levels):
            raise ValueError(f"Contrast vectors need {len(self.levels)} entries, got {mat.shape[1]}")
        names = list(names) if names is not None else [f"contrast_{i}" for i in range(mat.shape[0])]
        cs = ContrastSet(matrix=mat.T.copy(), names=names, column_names=list(self.levels))
        self.check_replicates(cs)
        return cs

    def build(self, analysis_config: Optional[dict] = None) -> ContrastSet:
        """Pick contrasts from config: explicit names > baseline > all pairwise."""
        cfg = analysis_config or {}
        only_list = cfg.get("contrasts") or []
        if isinstance(only_list, str):
            only_list = [only_list]
        base = cfg.get("baseline")

        if only_list:
            cs = self.make_from_names(only_list)
            log_info("Analysis only on selected contrasts")
        elif base is not None:
            cs = self.make_against(str(base))
            log_info(f"Analysis only against {base}")
        else:
            cs = self.make_all_pairwise_contrasts()
        log_info(f"Contrasts: {cs.names}")
        return cs
