"""Variance-stabilizing transformation for ordination and clustering consumers."""

import logging
from typing import Optional

import numpy as np
import pandas as pd

from .config import DispersionConfig, GLMConfig
from .design import DesignMatrix, intercept_only_design
from .dispersion import DispersionTrend, estimate_dispersions
from .normalization import normalized_counts


logger = logging.getLogger(__name__)


def vst_from_trend(normed: pd.DataFrame, trend: DispersionTrend) -> pd.DataFrame:
    """
    Closed-form transform for ``dispersion = a0 + a1 / mean``.

    The values are on log2 scale for large counts.
    """
    a0 = trend.asympt_disp
    a1 = trend.extra_pois
    q = normed.to_numpy(dtype=float)
    values = np.log2(
        (1.0 + a1 + 2.0 * a0 * q + 2.0 * np.sqrt(a0 * q * (1.0 + a1 + a0 * q))) / (4.0 * a0)
    )
    return pd.DataFrame(values, index=normed.index, columns=normed.columns)


def variance_stabilizing_transform(
    counts: pd.DataFrame,
    size_factors: pd.Series,
    design: Optional[DesignMatrix] = None,
    trend: Optional[DispersionTrend] = None,
    blind: bool = True,
    settings: Optional[DispersionConfig] = None,
    glm_settings: Optional[GLMConfig] = None,
    n_jobs: int = 1
) -> pd.DataFrame:
    """
    Variance-stabilized expression matrix (genes x samples).

    In blind mode the dispersion trend is re-estimated with an intercept-only
    design and kept local to this call, so the dispersions used for testing
    are never touched. Otherwise ``trend`` (the design-aware trend) is reused,
    or estimated from ``design`` when not given.

    Args:
        counts: Raw counts (genes x samples)
        size_factors: Size factors of the samples
        design: Full design, used when not blind and no trend is given
        trend: Design-aware dispersion trend from the testing path
        blind: Ignore the design when fitting the trend
        settings: Dispersion settings
        glm_settings: GLM settings
        n_jobs: joblib workers for the blind re-estimation

    Returns:
        DataFrame of transformed values
    """
    if blind or trend is None:
        if blind:
            fit_design = intercept_only_design([str(s) for s in counts.columns])
        elif design is not None:
            fit_design = design
        else:
            raise ValueError("A design or a dispersion trend is required when blind=False")
        logger.info(f"Estimating dispersion trend for VST (blind={blind})")
        trend = estimate_dispersions(
            counts, size_factors, fit_design, settings=settings,
            glm_settings=glm_settings, n_jobs=n_jobs
        ).trend

    return vst_from_trend(normalized_counts(counts, size_factors), trend)


def top_genes_matrix(
    vst: pd.DataFrame,
    results: pd.DataFrame,
    n: int = 30,
    alpha: float = 0.05
) -> pd.DataFrame:
    """
    VST rows of the strongest significant genes of one comparison.

    Genes with padj < alpha are ranked by absolute log2 fold change.
    """
    significant = results[results["padj"].notna() & (results["padj"] < alpha)]
    order = significant["log2FoldChange"].abs().sort_values(ascending=False, kind="mergesort")
    top = significant.loc[order.index[:n], "gene_id"]
    return vst.loc[list(top)]
