"""Median-of-ratios size factors and count normalization."""

import logging

import numpy as np
import pandas as pd

from .errors import InputQualityError


logger = logging.getLogger(__name__)


def prefilter_low_counts(counts: pd.DataFrame, min_total: int = 10) -> pd.DataFrame:
    """Keep genes with at least ``min_total`` reads summed over all samples."""
    keep = counts.sum(axis=1) >= min_total
    n_dropped = int((~keep).sum())
    if n_dropped:
        logger.info(f"Pre-filter removed {n_dropped} genes with fewer than {min_total} total reads")
    return counts.loc[keep]


def estimate_size_factors(counts: pd.DataFrame) -> pd.Series:
    """
    Estimate per-sample size factors with the median-of-ratios method.

    The reference for each gene is its geometric mean across samples. Genes
    with a zero in any sample have a zero geometric mean and are not used, so
    no sample-gene ratio is ever zero or undefined.

    Args:
        counts: Count matrix (genes x samples)

    Returns:
        Series of size factors indexed by sample

    Raises:
        InputQualityError: no gene is usable as reference, or a factor is not positive
    """
    values = counts.to_numpy(dtype=float)
    with np.errstate(divide="ignore"):
        log_counts = np.log(values)
    log_geomeans = log_counts.mean(axis=1)

    usable = np.isfinite(log_geomeans)
    if not usable.any():
        raise InputQualityError(
            "Every gene contains at least one zero; size factors cannot be computed for samples",
            identifiers=[str(s) for s in counts.columns]
        )

    log_ratios = log_counts[usable] - log_geomeans[usable, None]
    factors = np.exp(np.median(log_ratios, axis=0))

    bad = ~np.isfinite(factors) | (factors <= 0)
    if bad.any():
        raise InputQualityError(
            "Size factor is not positive for samples",
            identifiers=[str(s) for s in counts.columns[bad]]
        )

    logger.info(f"Estimated size factors from {int(usable.sum())} reference genes")
    return pd.Series(factors, index=counts.columns, name="size_factor")


def normalized_counts(counts: pd.DataFrame, size_factors: pd.Series) -> pd.DataFrame:
    """Divide each sample's counts by its size factor."""
    size_factors = size_factors.reindex(counts.columns)
    if size_factors.isna().any():
        missing = [str(s) for s in size_factors.index[size_factors.isna()]]
        raise InputQualityError("No size factor for samples", identifiers=missing)
    return counts.astype(float).div(size_factors, axis=1)
