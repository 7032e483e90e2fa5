"""False discovery rate control with optional independent filtering."""

import logging
from dataclasses import dataclass

import numpy as np
from scipy.ndimage import uniform_filter1d
from statsmodels.stats.multitest import multipletests


logger = logging.getLogger(__name__)


@dataclass
class FilteringResult:
    padj: np.ndarray
    filtered: np.ndarray       # True for genes removed by the mean filter
    threshold: float           # filter statistic cutoff that was applied
    theta: float               # quantile of the filter statistic for that cutoff
    thetas: np.ndarray
    rejections: np.ndarray     # rejections at alpha for every theta


def p_adjust_bh(pvalues) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values.

    NaN entries are not counted as tests and stay NaN. The result does not
    depend on the input order.
    """
    pvalues = np.asarray(pvalues, dtype=float)
    adjusted = np.full(pvalues.shape, np.nan)
    tested = np.isfinite(pvalues)
    if not tested.any():
        return adjusted

    adjusted[tested] = multipletests(pvalues[tested], method="fdr_bh")[1]
    return adjusted


def independent_filtering(
    pvalues,
    filter_stat,
    alpha: float = 0.05,
    n_quantiles: int = 50,
    upper_quantile: float = 0.95,
    smoothing_window: int = 5
) -> FilteringResult:
    """
    Choose a mean-count cutoff that maximizes discoveries, then apply BH.

    Candidate cutoffs are quantiles of ``filter_stat`` from the fraction of
    zeros up to ``upper_quantile``. The rejection count at ``alpha`` is
    computed for every cutoff and smoothed with a running mean; the first
    cutoff whose count exceeds the smoothed maximum minus the residual RMS is
    used. Without any rejection no genes are filtered.

    Args:
        pvalues: Raw p-values (NaN for untested genes)
        filter_stat: Statistic independent of the test under the null, e.g. baseMean
        alpha: FDR level used to count rejections
        n_quantiles: Number of candidate cutoffs
        upper_quantile: Largest quantile considered
        smoothing_window: Width of the running mean over the rejection curve

    Returns:
        FilteringResult; filtered genes have NaN padj
    """
    pvalues = np.asarray(pvalues, dtype=float)
    filter_stat = np.asarray(filter_stat, dtype=float)

    lower_quantile = float(np.mean(filter_stat == 0))
    upper = upper_quantile if lower_quantile < upper_quantile else 1.0
    thetas = np.linspace(lower_quantile, upper, n_quantiles)
    finite_stat = np.where(np.isfinite(filter_stat), filter_stat, -np.inf)
    cutoffs = np.quantile(filter_stat[np.isfinite(filter_stat)], thetas)

    padj_by_theta = np.full((len(pvalues), len(thetas)), np.nan)
    for k, cutoff in enumerate(cutoffs):
        keep = finite_stat >= cutoff
        padj_by_theta[keep, k] = p_adjust_bh(pvalues[keep])
    rejections = np.sum(padj_by_theta < alpha, axis=0)

    if rejections.max() == 0:
        j = 0
    else:
        smoothed = uniform_filter1d(rejections.astype(float), size=smoothing_window, mode="nearest")
        rms = np.sqrt(np.mean((rejections - smoothed) ** 2))
        above = np.flatnonzero(rejections > smoothed.max() - rms)
        j = int(above[0]) if above.size else 0

    filtered = finite_stat < cutoffs[j]
    logger.info(
        f"Independent filtering: cutoff {cutoffs[j]:.4g} (quantile {thetas[j]:.3f}) "
        f"removed {int((filtered & np.isfinite(pvalues)).sum())} tested genes"
    )
    return FilteringResult(
        padj=padj_by_theta[:, j],
        filtered=filtered,
        threshold=float(cutoffs[j]),
        theta=float(thetas[j]),
        thetas=thetas,
        rejections=rejections
    )
