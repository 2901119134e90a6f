"""Error taxonomy for GeneFlux.

Data-shape errors abort the run; the empirical Bayes fallback is a warning
because the analysis can still complete (without variance shrinkage).
"""

from typing import Iterable


def _preview(items: Iterable, limit: int = 10) -> str:
    items = [str(x) for x in items]
    head = ", ".join(items[:limit])
    tail = " ..." if len(items) > limit else ""
    return f"[{head}{tail}]"


class GeneFluxError(ValueError):
    """Base class for all pipeline errors."""


class InvalidDataError(GeneFluxError):
    """Non-numeric, non-finite or non-positive values where a step forbids them."""


class SampleMismatchError(GeneFluxError):
    """Sample identifiers of the expression matrix and the metadata disagree."""

    def __init__(self, only_in_matrix, only_in_metadata):
        self.only_in_matrix = sorted(map(str, only_in_matrix))
        self.only_in_metadata = sorted(map(str, only_in_metadata))
        super().__init__(
            "Sample identifiers differ between expression matrix and metadata: "
            f"{len(self.only_in_matrix)} only in matrix {_preview(self.only_in_matrix)}, "
            f"{len(self.only_in_metadata)} only in metadata {_preview(self.only_in_metadata)}."
        )


class InvalidGroupError(GeneFluxError):
    """A sample has no usable group assignment."""


class RankDeficiencyError(GeneFluxError):
    """Design matrix is not full column rank, or leaves no residual degrees of freedom."""


class NoSuchPlatformError(GeneFluxError, IndexError):
    """Requested platform index is out of range."""


class EstimationFallbackWarning(UserWarning):
    """Prior degrees of freedom could not be estimated; shrinkage disabled (d0 = 0)."""
