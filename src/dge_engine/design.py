"""Design matrix construction for single-factor treatment designs."""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import DesignError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DesignMatrix:
    """Model matrix with intercept plus one indicator per non-reference level.

    Rows follow the sample order of the sample sheet the matrix was built from,
    so the matrix is paired with count columns by position.
    """

    matrix: np.ndarray
    columns: List[str]
    sample_ids: List[str]
    factor: Optional[str]
    levels: List[str]
    reference: Optional[str]

    @property
    def n_samples(self) -> int:
        return self.matrix.shape[0]

    @property
    def n_coefficients(self) -> int:
        return self.matrix.shape[1]

    def coefficient_index(self, level: str) -> Optional[int]:
        """Column index of a level's coefficient, None for the reference level."""
        if level not in self.levels:
            raise KeyError(f"Level '{level}' is not part of factor '{self.factor}'")
        if level == self.reference:
            return None
        return self.columns.index(coefficient_name(self.factor, level, self.reference))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.matrix, index=self.sample_ids, columns=self.columns)


def coefficient_name(factor: str, level: str, reference: str) -> str:
    return f"{factor}_{level}_vs_{reference}"


def build_design_matrix(
    sample_sheet: pd.DataFrame,
    factor: str = "treatment",
    levels: Optional[Sequence[str]] = None,
    reference: Optional[str] = None
) -> DesignMatrix:
    """
    Build the ``~ factor`` design matrix.

    Args:
        sample_sheet: Sample metadata indexed by sample_id
        factor: Column holding the treatment factor
        levels: Level order; defaults to the categorical order or sorted values
        reference: Reference level; defaults to the first level

    Returns:
        DesignMatrix
    """
    if factor not in sample_sheet.columns:
        raise DesignError(f"Design factor '{factor}' not found in sample sheet")

    values = sample_sheet[factor]
    if levels is None:
        if isinstance(values.dtype, pd.CategoricalDtype):
            levels = list(values.cat.categories)
        else:
            levels = sorted(values.astype(str).unique())
    levels = list(levels)

    # Drop levels without samples, they would give all-zero columns
    present = set(values.astype(str))
    unused = [lvl for lvl in levels if lvl not in present]
    if unused:
        logger.info(f"Dropping unused {factor} levels: {', '.join(unused)}")
        levels = [lvl for lvl in levels if lvl in present]

    if reference is None:
        reference = levels[0]
    if reference not in levels:
        raise DesignError(f"Reference level '{reference}' has no samples")

    ordered = [reference] + [lvl for lvl in levels if lvl != reference]
    condition = pd.Categorical(values.astype(str), categories=ordered)
    if pd.isna(condition).any():
        bad = sorted(set(values.astype(str)) - set(ordered))
        raise DesignError(f"Unknown {factor} levels: {', '.join(bad)}")

    dummies = pd.get_dummies(condition, drop_first=True, dtype=float)
    columns = ["Intercept"] + [coefficient_name(factor, lvl, reference) for lvl in dummies.columns]
    matrix = np.column_stack([np.ones(len(values)), dummies.to_numpy()])

    return DesignMatrix(
        matrix=matrix,
        columns=columns,
        sample_ids=[str(s) for s in sample_sheet.index],
        factor=factor,
        levels=ordered,
        reference=reference
    )


def intercept_only_design(sample_ids: Sequence[str]) -> DesignMatrix:
    """Design with only an intercept, used for blind dispersion estimates."""
    return DesignMatrix(
        matrix=np.ones((len(sample_ids), 1)),
        columns=["Intercept"],
        sample_ids=list(sample_ids),
        factor=None,
        levels=[],
        reference=None
    )
