"""Exceptions and warnings raised by the differential expression engine."""

from typing import Iterable, List, Optional


class DGEError(Exception):
    """Base exception for fatal analysis errors."""
    pass


class SampleMismatchError(DGEError):
    """Count-matrix columns and sample-sheet ids are not in bijection."""

    def __init__(
        self,
        missing_in_counts: Iterable[str] = (),
        missing_in_sheet: Iterable[str] = (),
        duplicated: Iterable[str] = (),
        message: Optional[str] = None
    ):
        self.missing_in_counts: List[str] = sorted(missing_in_counts)
        self.missing_in_sheet: List[str] = sorted(missing_in_sheet)
        self.duplicated: List[str] = sorted(duplicated)

        if message is None:
            parts = []
            if self.missing_in_counts:
                parts.append(
                    "Sample IDs from the sample sheet NOT found in the count matrix columns: "
                    + ", ".join(self.missing_in_counts)
                )
            if self.missing_in_sheet:
                parts.append(
                    "Count matrix columns NOT found in the sample sheet: "
                    + ", ".join(self.missing_in_sheet)
                )
            if self.duplicated:
                parts.append("Duplicated sample IDs: " + ", ".join(self.duplicated))
            message = "\n".join(parts) or "Sample IDs do not match"
        super().__init__(message)


class DesignError(DGEError):
    """The sample sheet cannot produce the configured design."""
    pass


class InputQualityError(DGEError):
    """Input data cannot support the statistics (e.g. no usable reference genes)."""

    def __init__(self, message: str, identifiers: Iterable[str] = ()):
        self.identifiers: List[str] = list(identifiers)
        if self.identifiers:
            message = f"{message}: {', '.join(self.identifiers)}"
        super().__init__(message)


class ConvergenceWarning(UserWarning):
    """A per-gene model fit did not converge; the gene is excluded from contrasts."""
    pass
