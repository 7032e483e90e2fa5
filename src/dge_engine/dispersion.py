"""Negative binomial dispersion estimation with empirical Bayes shrinkage.

Three estimates are produced for every gene:

1. a gene-wise maximum-likelihood estimate (Cox-Reid adjusted profile
   likelihood, means from the GLM fit at a rough starting dispersion);
2. a trend value from one curve ``asympt_disp + extra_pois / mean`` shared by
   all genes;
3. a maximum a posteriori estimate using a log-normal prior centred on the
   trend.

The MAP estimate is used for testing, except for genes whose gene-wise
estimate lies far above the trend: those keep the gene-wise value.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import optimize, special, stats

from .config import DispersionConfig, GLMConfig
from .design import DesignMatrix
from .errors import InputQualityError
from .glm import fit_nb_glm, gene_chunks, nb_log_likelihood


logger = logging.getLogger(__name__)

GRID_SIZE = 25


class TrendFitError(ValueError):
    """The parametric dispersion trend could not be fitted."""
    pass


@dataclass(frozen=True)
class DispersionTrend:
    """Shared dispersion-mean curve and the prior derived from it."""
    fit_type: str
    asympt_disp: float
    extra_pois: float
    var_log_disp: float = np.nan
    prior_var: float = np.nan

    def __call__(self, means) -> np.ndarray:
        means = np.asarray(means, dtype=float)
        with np.errstate(divide="ignore"):
            return self.asympt_disp + self.extra_pois / means


@dataclass
class DispersionResult:
    gene_ids: List[str]
    base_mean: np.ndarray
    base_var: np.ndarray
    all_zero: np.ndarray
    genewise: np.ndarray
    trend_values: np.ndarray
    map: np.ndarray
    final: np.ndarray
    outlier: np.ndarray
    trend: DispersionTrend
    mu: Optional[np.ndarray] = field(default=None, repr=False)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            "baseMean": self.base_mean,
            "baseVar": self.base_var,
            "allZero": self.all_zero,
            "dispGeneEst": self.genewise,
            "dispFit": self.trend_values,
            "dispMAP": self.map,
            "dispersion": self.final,
            "dispOutlier": self.outlier,
        }, index=pd.Index(self.gene_ids, name="gene_id"))


def cox_reid_log_likelihood(y, mu, design, dispersion) -> float:
    """NB log-likelihood with the Cox-Reid adjustment for fitted coefficients."""
    weights = mu / (1.0 + dispersion * mu)
    xtwx = design.T @ (design * weights[:, None])
    _, logdet = np.linalg.slogdet(xtwx)
    return nb_log_likelihood(y, mu, dispersion) - 0.5 * logdet


def _maximize_log_dispersion(objective, log_lower, log_upper) -> float:
    # Coarse grid first so the bounded search starts in the right basin
    grid = np.linspace(log_lower, log_upper, GRID_SIZE)
    values = np.array([objective(a) for a in grid])
    best = int(np.nanargmin(values)) if np.isfinite(values).any() else 0
    lo = grid[max(best - 1, 0)]
    hi = grid[min(best + 1, GRID_SIZE - 1)]
    res = optimize.minimize_scalar(objective, bounds=(lo, hi), method="bounded",
                                   options={"xatol": 1e-6})
    if res.success and np.isfinite(res.fun) and res.fun <= values[best]:
        return float(res.x)
    return float(grid[best])


def genewise_dispersion(y, design, size_factors, alpha_init, log_bounds, glm_settings=None):
    """
    Gene-wise dispersion MLE for one gene.

    Returns:
        Tuple of (dispersion, fitted means)
    """
    glm_settings = glm_settings or GLMConfig()
    fit = fit_nb_glm(y, design, size_factors, alpha_init, glm_settings)
    if fit.converged:
        mu = fit.mu
    else:
        mu = np.maximum(np.mean(y / size_factors) * size_factors, glm_settings.min_mu)

    def objective(log_alpha):
        return -cox_reid_log_likelihood(y, mu, design, np.exp(log_alpha))

    return np.exp(_maximize_log_dispersion(objective, *log_bounds)), mu


def map_dispersion(y, mu, design, log_trend, prior_var, log_bounds) -> float:
    """Maximum a posteriori dispersion under a normal prior on log dispersion."""
    def objective(log_alpha):
        log_prior = -((log_alpha - log_trend) ** 2) / (2.0 * prior_var)
        return -(cox_reid_log_likelihood(y, mu, design, np.exp(log_alpha)) + log_prior)

    return float(np.exp(_maximize_log_dispersion(objective, *log_bounds)))


def _genewise_chunk(counts, design, size_factors, alpha_init, log_bounds, glm_settings):
    out = [genewise_dispersion(y, design, size_factors, a, log_bounds, glm_settings)
           for y, a in zip(counts, alpha_init)]
    return np.array([d for d, _ in out]), np.vstack([mu for _, mu in out])


def _map_chunk(counts, mu, design, log_trend, prior_var, log_bounds):
    return np.array([map_dispersion(y, m, design, t, prior_var, log_bounds)
                     for y, m, t in zip(counts, mu, log_trend)])


def rough_dispersion(normed: np.ndarray, design: np.ndarray, size_factors: np.ndarray) -> np.ndarray:
    """Starting values: the smaller of the moments and linear-model estimates."""
    n_samples, p = design.shape
    base_mean = normed.mean(axis=1)
    base_var = normed.var(axis=1, ddof=1)
    xim = np.mean(1.0 / size_factors)
    with np.errstate(divide="ignore", invalid="ignore"):
        moments = (base_var - xim * base_mean) / base_mean ** 2

    hat = design @ np.linalg.pinv(design)
    fitted = np.maximum(normed @ hat.T, 1.0)
    residual_est = np.sum(((normed - fitted) ** 2 - fitted) / fitted ** 2, axis=1) / (n_samples - p)
    return np.fmin(moments, residual_est)


def _gamma_identity_fit(x, y, start, max_iter=25) -> np.ndarray:
    # Gamma family, identity link: IRLS weights are 1 / fitted^2
    coefs = np.asarray(start, dtype=float)
    X = np.column_stack([np.ones_like(x), x])
    for _ in range(max_iter):
        fitted = X @ coefs
        if np.any(fitted <= 0):
            raise TrendFitError("non-positive fitted dispersion in trend fit")
        w = 1.0 / fitted ** 2
        new, *_ = np.linalg.lstsq(X * np.sqrt(w)[:, None], y * np.sqrt(w), rcond=None)
        if np.allclose(new, coefs, rtol=1e-10, atol=0):
            return new
        coefs = new
    return coefs


def fit_parametric_trend(means: np.ndarray, genewise: np.ndarray, min_disp: float) -> DispersionTrend:
    """
    Fit ``dispersion = asympt_disp + extra_pois / mean`` by iterated gamma GLM.

    Raises:
        TrendFitError: coefficients not positive or no convergence in 10 rounds
    """
    use = np.isfinite(genewise) & (genewise >= 100 * min_disp) & (means > 0)
    if use.sum() < 3:
        raise TrendFitError("too few genes to fit a parametric trend")

    coefs = np.array([0.1, 1.0])
    for _ in range(10):
        residuals = genewise / (coefs[0] + coefs[1] / means)
        good = use & (residuals > 1e-4) & (residuals < 15)
        if good.sum() < 3:
            raise TrendFitError("too few genes left after removing trend outliers")
        old = coefs
        coefs = _gamma_identity_fit(1.0 / means[good], genewise[good], start=old)
        if not np.all(coefs > 0):
            raise TrendFitError(f"parametric trend coefficients are not all positive: {coefs}")
        if np.sum(np.log(coefs / old) ** 2) < 1e-6:
            return DispersionTrend("parametric", float(coefs[0]), float(coefs[1]))
    raise TrendFitError("parametric trend did not converge")


def fit_mean_trend(genewise: np.ndarray, min_disp: float) -> DispersionTrend:
    use = np.isfinite(genewise) & (genewise >= 100 * min_disp)
    if not use.any():
        raise InputQualityError(
            "All gene-wise dispersion estimates are within 2 orders of magnitude of the minimum; "
            "dispersion cannot be estimated"
        )
    return DispersionTrend("mean", float(stats.trim_mean(genewise[use], 0.001)), 0.0)


def fit_dispersion_trend(
    means: np.ndarray,
    genewise: np.ndarray,
    fit_type: str = "parametric",
    min_disp: float = 1e-8
) -> DispersionTrend:
    if fit_type == "parametric":
        try:
            return fit_parametric_trend(means, genewise, min_disp)
        except TrendFitError as e:
            logger.warning(f"Parametric dispersion trend failed ({e}); using fit_type='mean' instead")
    return fit_mean_trend(genewise, min_disp)


def estimate_prior_variance(
    log_residuals: np.ndarray,
    residual_df: int,
    min_prior_var: float = 0.25
):
    """
    Prior variance of log dispersion around the trend.

    The observed spread (squared normal-scaled MAD) is reduced by the spread
    expected from sampling alone, ``trigamma(df / 2)``.

    Returns:
        Tuple of (observed variance, prior variance)
    """
    log_residuals = log_residuals[np.isfinite(log_residuals)]
    if log_residuals.size == 0:
        return np.nan, min_prior_var
    var_log_disp = float(stats.median_abs_deviation(log_residuals, scale="normal") ** 2)
    expected = float(special.polygamma(1, residual_df / 2.0))
    return var_log_disp, max(var_log_disp - expected, min_prior_var)


def estimate_dispersions(
    counts,
    size_factors,
    design: DesignMatrix,
    settings: Optional[DispersionConfig] = None,
    glm_settings: Optional[GLMConfig] = None,
    n_jobs: int = 1,
    chunk_size: int = 500,
    backend: str = "loky"
) -> DispersionResult:
    """
    Estimate gene-wise, trend and final dispersions.

    Args:
        counts: Count matrix (genes x samples), columns in design order
        size_factors: Size factors in design order
        design: Design matrix
        settings: Dispersion settings
        glm_settings: GLM settings used for the mean fits
        n_jobs: joblib workers
        chunk_size: genes per joblib task
        backend: joblib backend

    Returns:
        DispersionResult; genes without enough non-zero samples have NaN dispersions

    Raises:
        InputQualityError: no residual degrees of freedom, or no estimable gene
    """
    settings = settings or DispersionConfig()
    glm_settings = glm_settings or GLMConfig()

    if isinstance(counts, pd.DataFrame):
        gene_ids = [str(g) for g in counts.index]
        Y = counts.to_numpy(dtype=float)
    else:
        Y = np.asarray(counts, dtype=float)
        gene_ids = [f"gene_{i}" for i in range(Y.shape[0])]
    sf = np.asarray(size_factors, dtype=float)
    X = design.matrix

    n_genes, n_samples = Y.shape
    p = design.n_coefficients
    if n_samples <= p:
        raise InputQualityError(
            f"The number of samples ({n_samples}) does not exceed the number of coefficients ({p}); "
            "no replicates to estimate dispersion",
            identifiers=design.columns
        )

    max_disp = max(settings.max_disp, float(n_samples))
    log_bounds = (np.log(settings.min_disp), np.log(max_disp))

    normed = Y / sf
    base_mean = normed.mean(axis=1)
    base_var = normed.var(axis=1, ddof=1)
    all_zero = (Y > 0).sum(axis=1) < settings.min_nonzero_samples
    if all_zero.all():
        raise InputQualityError("No gene has enough non-zero samples to estimate dispersion")

    genewise = np.full(n_genes, np.nan)
    trend_values = np.full(n_genes, np.nan)
    map_est = np.full(n_genes, np.nan)
    final = np.full(n_genes, np.nan)
    outlier = np.zeros(n_genes, dtype=bool)
    mu = np.full((n_genes, n_samples), np.nan)

    idx = np.flatnonzero(~all_zero)
    alpha_init = np.clip(
        np.nan_to_num(rough_dispersion(normed[idx], X, sf), nan=settings.min_disp),
        settings.min_disp,
        max_disp
    )

    logger.info(f"Estimating gene-wise dispersions for {len(idx)} genes")
    chunks = gene_chunks(len(idx), chunk_size)
    parallel = Parallel(n_jobs=n_jobs, backend=backend)
    results = parallel(
        delayed(_genewise_chunk)(Y[idx[c]], X, sf, alpha_init[c], log_bounds, glm_settings)
        for c in chunks
    )
    for c, (disp, chunk_mu) in zip(chunks, results):
        genewise[idx[c]] = np.clip(disp, settings.min_disp, max_disp)
        mu[idx[c]] = chunk_mu

    trend = fit_dispersion_trend(base_mean[idx], genewise[idx], settings.fit_type, settings.min_disp)
    trend_values[idx] = trend(base_mean[idx])
    logger.info(
        f"Dispersion trend ({trend.fit_type}): asymptDisp={trend.asympt_disp:.4g}, "
        f"extraPois={trend.extra_pois:.4g}"
    )

    log_residuals = np.log(genewise[idx]) - np.log(trend_values[idx])
    above_min = genewise[idx] >= 100 * settings.min_disp
    var_log_disp, prior_var = estimate_prior_variance(
        log_residuals[above_min], n_samples - p, settings.min_prior_var
    )
    trend = DispersionTrend(trend.fit_type, trend.asympt_disp, trend.extra_pois, var_log_disp, prior_var)
    logger.info(f"Dispersion prior variance: {prior_var:.4g}")

    log_trend = np.log(trend_values[idx])
    results = parallel(
        delayed(_map_chunk)(Y[idx[c]], mu[idx[c]], X, log_trend[c], prior_var, log_bounds)
        for c in chunks
    )
    for c, disp in zip(chunks, results):
        map_est[idx[c]] = np.clip(disp, settings.min_disp, max_disp)

    if np.isfinite(var_log_disp):
        outlier[idx] = log_residuals > settings.outlier_sd * np.sqrt(var_log_disp)
    final[idx] = np.where(outlier[idx], genewise[idx], map_est[idx])
    logger.info(f"{int(outlier.sum())} genes flagged as dispersion outliers and not shrunk")

    return DispersionResult(
        gene_ids=gene_ids,
        base_mean=base_mean,
        base_var=base_var,
        all_zero=all_zero,
        genewise=genewise,
        trend_values=trend_values,
        map=map_est,
        final=final,
        outlier=outlier,
        trend=trend,
        mu=mu
    )
