"""Contrasts of fitted coefficients and Wald tests."""

from typing import TYPE_CHECKING, Tuple

import numpy as np
from pydantic import BaseModel, model_validator
from scipy import stats

if TYPE_CHECKING:
    from .design import DesignMatrix


class Comparison(BaseModel):
    """Named comparison of two levels of the design factor."""

    name: str
    numerator: str
    denominator: str
    factor: str = "treatment"

    @model_validator(mode="after")
    def _distinct_levels(self):
        if self.numerator == self.denominator:
            raise ValueError(f"Comparison '{self.name}' compares '{self.numerator}' with itself")
        return self

    @classmethod
    def parse(cls, text: str, factor: str = "treatment") -> "Comparison":
        """Parse ``NAME=NUMERATOR:DENOMINATOR`` (NAME defaults to ``NUM_vs_DEN``)."""
        name, sep, levels = text.partition("=")
        if not sep:
            name, levels = "", text
        numerator, sep, denominator = levels.partition(":")
        if not sep or not numerator or not denominator:
            raise ValueError(f"Cannot parse comparison '{text}', expected NAME=NUMERATOR:DENOMINATOR")
        return cls(
            name=name or f"{numerator}_vs_{denominator}",
            numerator=numerator,
            denominator=denominator,
            factor=factor
        )


def contrast_vector(design: "DesignMatrix", comparison: Comparison) -> np.ndarray:
    """
    Build the contrast vector over the full coefficient vector.

    The reference level has no coefficient of its own and contributes zero,
    so the result does not depend on which level the design used as reference.
    """
    if design.factor != comparison.factor:
        raise ValueError(
            f"Comparison '{comparison.name}' is on factor '{comparison.factor}', "
            f"design was built on '{design.factor}'"
        )
    c = np.zeros(design.n_coefficients)
    num_idx = design.coefficient_index(comparison.numerator)
    den_idx = design.coefficient_index(comparison.denominator)
    if num_idx is not None:
        c[num_idx] += 1.0
    if den_idx is not None:
        c[den_idx] -= 1.0
    return c


def wald_test(
    coefficients: np.ndarray,
    covariances: np.ndarray,
    contrast: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Wald test of ``contrast . beta == 0`` for every gene.

    Args:
        coefficients: (n_genes, p) log2-scale coefficients
        covariances: (n_genes, p, p) log2-scale covariance matrices
        contrast: (p,) contrast vector

    Returns:
        Tuple of (log2FoldChange, lfcSE, stat, pvalue); NaN where the fit is missing
    """
    coefficients = np.atleast_2d(coefficients)
    contrast = np.asarray(contrast, dtype=float)

    lfc = coefficients @ contrast
    variance = np.einsum("i,gij,j->g", contrast, covariances, contrast)

    with np.errstate(invalid="ignore", divide="ignore"):
        se = np.sqrt(np.where(variance >= 0, variance, np.nan))
        stat = lfc / se
    pvalue = 2.0 * stats.norm.sf(np.abs(stat))

    missing = ~np.isfinite(stat)
    lfc = np.where(np.isfinite(lfc), lfc, np.nan)
    stat[missing] = np.nan
    pvalue[missing] = np.nan
    return lfc, se, stat, pvalue
