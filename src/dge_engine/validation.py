"""Reading and validation of count matrices and sample sheets."""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple, Union

import pandas as pd
import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from .errors import DGEError, SampleMismatchError


logger = logging.getLogger(__name__)

REQUIRED_SHEET_COLUMNS = ("sample_id", "treatment", "cell_line")

# featureCounts writes these annotation columns before the sample columns
FEATURECOUNTS_ANNOTATION = ("Geneid", "Chr", "Start", "End", "Strand", "Length")

_BAM_SUFFIX = re.compile(r"(_Aligned\.sortedByCoord\.out)?\.bam$")
_SRA_PREFIX = re.compile(r"^SRR[0-9]+_")


class ValidationError(DGEError):
    """Malformed input file."""
    pass


class Issue(BaseModel):
    """A single finding about the inputs."""
    level: Literal["error", "warning", "info"]
    text: str


class InputReport(BaseModel):
    """Findings collected while checking the inputs, plus summary numbers."""
    issues: List[Issue] = Field(default_factory=list)
    summary: Dict[str, Any] = Field(default_factory=dict)

    @property
    def errors(self) -> List[str]:
        return [i.text for i in self.issues if i.level == "error"]

    @property
    def warnings(self) -> List[Issue]:
        return [i for i in self.issues if i.level != "error"]

    @property
    def valid(self) -> bool:
        return not self.errors

    def add(self, level: str, text: str):
        self.issues.append(Issue(level=level, text=text))

    def merge(self, other: "InputReport", key: str):
        self.issues.extend(other.issues)
        self.summary[key] = other.summary


class SampleRecord(BaseModel):
    """One row of the sample sheet."""
    model_config = ConfigDict(extra="allow")

    sample_id: str
    treatment: str
    cell_line: str


class CountMatrixProfile(BaseModel):
    """Shape and content flags of a count matrix."""
    n_genes: int
    n_samples: int
    negative: bool
    fractional: bool
    missing: bool
    library_sizes: Dict[str, float]


class SampleSheetProfile(BaseModel):
    """Shape of a sample sheet and the group sizes of its design factor."""
    n_samples: int
    factor: Optional[str] = None
    group_sizes: Dict[str, int] = Field(default_factory=dict)

    @property
    def n_groups(self) -> int:
        return len(self.group_sizes)


def clean_sample_name(name: str) -> str:
    """
    Reduce a path-derived count column name to the short sample id.

    ``/data/bam/SRR1039508_N61311_untreated_Aligned.sortedByCoord.out.bam``
    becomes ``N61311_untreated``.
    """
    name = Path(str(name).strip()).name
    name = _BAM_SUFFIX.sub("", name)
    name = _SRA_PREFIX.sub("", name)
    return name


def read_count_matrix(
    filepath: Union[str, Path],
    delimiter: str = "\t",
    clean_names: bool = True
) -> pd.DataFrame:
    """
    Read count matrix from file.

    Plain tables (gene id column followed by one column per sample) and
    featureCounts output (annotation columns Chr..Length are dropped) are
    both accepted. Lines starting with ``#`` are skipped.

    Args:
        filepath: Path to count matrix file
        delimiter: Column delimiter
        clean_names: Normalize path-derived sample column names

    Returns:
        DataFrame with genes as rows, samples as columns
    """
    filepath = Path(filepath)
    df = pd.read_csv(filepath, sep=delimiter, comment="#", header=0)

    if df.empty or df.shape[1] < 2:
        raise ValidationError(f"Count matrix '{filepath}' has no sample columns")

    first_cols = tuple(df.columns[:len(FEATURECOUNTS_ANNOTATION)])
    if first_cols == FEATURECOUNTS_ANNOTATION:
        logger.info("Detected featureCounts layout, dropping annotation columns")
        df = df.drop(columns=list(FEATURECOUNTS_ANNOTATION[1:]))

    df = df.set_index(df.columns[0])
    df.index = df.index.astype(str).str.strip()
    df.index.name = "gene_id"

    columns = df.columns.astype(str).str.strip()
    if clean_names:
        columns = [clean_sample_name(c) for c in columns]
    df.columns = columns

    logger.info(f"Loaded count matrix with {df.shape[0]} genes and {df.shape[1]} samples")
    return df


def read_sample_sheet(
    filepath: Union[str, Path],
    treatment_levels: Optional[Sequence[str]] = None,
    delimiter: str = ","
) -> pd.DataFrame:
    """
    Read the sample sheet.

    Args:
        filepath: Path to the comma-separated sample sheet
        treatment_levels: Allowed treatment levels, in reference-first order
        delimiter: Column delimiter

    Returns:
        DataFrame indexed by sample_id; ``treatment`` is categorical
    """
    filepath = Path(filepath)
    df = pd.read_csv(filepath, sep=delimiter, dtype=str)
    df.columns = df.columns.astype(str).str.strip()

    missing = [c for c in REQUIRED_SHEET_COLUMNS if c not in df.columns]
    if missing:
        raise ValidationError(
            f"Sample sheet '{filepath}' is missing required columns: {', '.join(missing)}"
        )

    for col in REQUIRED_SHEET_COLUMNS:
        df[col] = df[col].str.strip()
        if df[col].isna().any():
            raise ValidationError(f"Sample sheet column '{col}' contains missing values")

    # Every row must be a valid record
    for record in df.to_dict(orient="records"):
        SampleRecord(**record)

    if treatment_levels is not None:
        unknown = sorted(set(df["treatment"]) - set(treatment_levels))
        if unknown:
            raise ValidationError(
                f"Sample sheet contains treatment levels not in the configured set: {', '.join(unknown)}"
            )
        df["treatment"] = pd.Categorical(df["treatment"], categories=list(treatment_levels))

    df = df.set_index("sample_id")
    logger.info(f"Loaded sample sheet with {len(df)} samples")
    return df


def reconcile_samples(counts: pd.DataFrame, sample_sheet: pd.DataFrame) -> pd.DataFrame:
    """
    Put count columns in sample-sheet order.

    Columns and sample ids must be in bijection. The design matrix is built
    from the sample sheet and paired with count columns by position, so the
    returned matrix always has exactly the sample-sheet column sequence.

    Args:
        counts: Count matrix (genes x samples)
        sample_sheet: Sample metadata indexed by sample_id

    Returns:
        Count matrix with reordered columns

    Raises:
        SampleMismatchError: ids missing on either side, or duplicated
    """
    count_ids = [str(c) for c in counts.columns]
    sheet_ids = [str(s) for s in sample_sheet.index]

    duplicated = (
        set(pd.Index(count_ids)[pd.Index(count_ids).duplicated()])
        | set(pd.Index(sheet_ids)[pd.Index(sheet_ids).duplicated()])
    )
    missing_in_counts = set(sheet_ids) - set(count_ids)
    missing_in_sheet = set(count_ids) - set(sheet_ids)

    if missing_in_counts or missing_in_sheet or duplicated:
        error = SampleMismatchError(
            missing_in_counts=missing_in_counts,
            missing_in_sheet=missing_in_sheet,
            duplicated=duplicated
        )
        logger.error(str(error))
        raise error

    counts = counts.copy()
    counts.columns = count_ids
    reordered = counts.loc[:, sheet_ids]

    if list(reordered.columns) != sheet_ids:
        raise SampleMismatchError(
            message="Count matrix columns do not match the sample sheet order after reordering"
        )
    logger.info("Sample IDs match perfectly")
    return reordered


# Library sizes outside this window are reported, never rejected
LOW_LIBRARY_SIZE = 1e6
HIGH_LIBRARY_SIZE = 1e8
MIN_EXPECTED_GENES = 5000


def _id_issues(report: InputReport, ids: pd.Index, what: str, where: str):
    repeats = int(ids.duplicated().sum())
    if repeats:
        report.add("error", f"{where} has {repeats} duplicate {what}")


def check_count_matrix(counts: pd.DataFrame) -> Tuple[InputReport, Optional[CountMatrixProfile]]:
    """
    Inspect a genes x samples count matrix.

    Negative, missing and duplicated entries are errors. Fractional counts,
    short gene lists and unusual library sizes are only reported.

    Returns:
        The report and a profile of the matrix (None when it is empty)
    """
    report = InputReport()
    if counts.empty:
        report.add("error", "Count matrix is empty")
        return report, None

    values = counts.to_numpy(dtype=float)
    nan_mask = np.isnan(values)
    observed = values[~nan_mask]

    negative = bool((observed < 0).any())
    if negative:
        report.add("error", "Counts must not be negative")
    if nan_mask.any():
        report.add("error", f"{int(nan_mask.sum())} count entries are missing")
    fractional = bool((observed != np.round(observed)).any())
    if fractional:
        report.add("warning", "Found non-integer counts, these are rounded before fitting")

    _id_issues(report, counts.index, "gene IDs", "Count matrix")
    _id_issues(report, counts.columns, "sample IDs", "Count matrix")

    n_genes = counts.shape[0]
    if n_genes < MIN_EXPECTED_GENES:
        report.add(
            "warning",
            f"Low number of genes: {n_genes}, a whole-transcriptome run has tens of thousands"
        )

    library_sizes = counts.sum(axis=0)
    for sample, size in library_sizes.items():
        if size < LOW_LIBRARY_SIZE:
            report.add("warning", f"{sample}: low library size ({size:,.0f} reads)")
        elif size > HIGH_LIBRARY_SIZE:
            report.add("info", f"{sample}: unusually deep library ({size:,.0f} reads)")

    profile = CountMatrixProfile(
        n_genes=n_genes,
        n_samples=counts.shape[1],
        negative=negative,
        fractional=fractional,
        missing=bool(nan_mask.any()),
        library_sizes={str(k): float(v) for k, v in library_sizes.items()}
    )
    report.summary = {
        "n_genes": profile.n_genes,
        "n_samples": profile.n_samples,
        "total_counts": float(observed.sum()),
        "library_size_range": (float(library_sizes.min()), float(library_sizes.max()))
    }
    return report, profile


def check_sample_sheet(
    sample_sheet: pd.DataFrame,
    count_samples: Optional[Sequence[str]] = None,
    factor: Optional[str] = "treatment"
) -> Tuple[InputReport, Optional[SampleSheetProfile]]:
    """
    Inspect a sample sheet indexed by sample_id.

    The design factor needs at least two levels and at least one residual
    degree of freedom for dispersion estimation. When ``count_samples`` is
    given, ids present on one side only are reported in both directions.
    """
    report = InputReport()
    if sample_sheet.empty:
        report.add("error", "Sample sheet is empty")
        return report, None

    profile = SampleSheetProfile(n_samples=len(sample_sheet), factor=factor)

    if factor and factor not in sample_sheet.columns:
        report.add("error", f"Design factor '{factor}' not found in sample sheet columns")
    elif factor:
        levels = sample_sheet[factor]
        if levels.isna().any():
            report.add("error", f"Design factor '{factor}' has missing values")
        sizes = levels.dropna().astype(str).value_counts(sort=False)
        profile.group_sizes = {str(k): int(v) for k, v in sizes.items()}

        if profile.n_groups < 2:
            report.add("error", f"Design factor '{factor}' needs at least 2 levels")
        if profile.n_samples <= profile.n_groups:
            report.add("error", "No replicate in any group, dispersion cannot be estimated")
        for level, size in profile.group_sizes.items():
            if size == 1:
                report.add("warning", f"Group '{level}' has a single replicate")
            elif size == 2:
                report.add("info", f"Group '{level}' has 2 replicates, 3 or more give stabler estimates")

    if count_samples is not None:
        in_counts = {str(s) for s in count_samples}
        in_sheet = {str(s) for s in sample_sheet.index}
        only_counts = sorted(in_counts - in_sheet)
        only_sheet = sorted(in_sheet - in_counts)
        if only_counts:
            report.add("error", f"Columns not in metadata: {', '.join(only_counts)}")
        if only_sheet:
            report.add("error", f"Sheet rows not in count matrix: {', '.join(only_sheet)}")

    _id_issues(report, sample_sheet.index, "sample IDs", "Sample sheet")

    report.summary = {
        "n_samples": profile.n_samples,
        "columns": [str(c) for c in sample_sheet.columns],
        "groups": profile.group_sizes
    }
    return report, profile


def check_inputs(
    counts: pd.DataFrame,
    sample_sheet: pd.DataFrame,
    factor: str = "treatment"
) -> InputReport:
    """Run both checks and pool their findings under ``counts`` and ``metadata``."""
    report = InputReport()
    report.merge(check_count_matrix(counts)[0], "counts")
    report.merge(
        check_sample_sheet(sample_sheet, count_samples=list(counts.columns), factor=factor)[0],
        "metadata"
    )
    return report
