"""Negative binomial GLM fitting (log link, fixed dispersion, size-factor offsets)."""

import logging
import warnings
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
from joblib import Parallel, delayed
from scipy import optimize, stats

from .config import GLMConfig
from .errors import ConvergenceWarning


logger = logging.getLogger(__name__)

LN2 = np.log(2.0)


@dataclass
class GeneFit:
    """Fit of a single gene. Coefficients and covariance are on log2 scale."""
    coefficients: np.ndarray
    covariance: np.ndarray
    mu: np.ndarray
    converged: bool
    n_iter: int
    deviance: float


@dataclass
class NBFitResult:
    """Fits of all genes, stacked along the first axis."""
    coefficients: np.ndarray   # (n_genes, p)
    covariances: np.ndarray    # (n_genes, p, p)
    mu: np.ndarray             # (n_genes, n_samples)
    converged: np.ndarray      # (n_genes,) bool
    fitted: np.ndarray         # (n_genes,) bool, False for genes excluded before fitting
    n_iter: np.ndarray
    deviance: np.ndarray
    columns: List[str]


def nb_log_likelihood(y: np.ndarray, mu: np.ndarray, dispersion) -> float:
    """Sum of negative binomial log-probabilities with mean mu and dispersion alpha."""
    size = 1.0 / dispersion
    return float(np.sum(stats.nbinom.logpmf(y, size, size / (size + mu))))


def _sandwich_covariance(design: np.ndarray, weights: np.ndarray, ridge: np.ndarray) -> np.ndarray:
    xtwx = design.T @ (design * weights[:, None])
    bread = np.linalg.inv(xtwx + ridge)
    return bread @ xtwx @ bread


def _fit_irls(y, design, log_sf, sf, dispersion, settings, ridge, beta):
    max_abs = settings.max_abs_log2_coef * LN2
    deviance = np.inf
    converged = False
    n_iter = 0
    for n_iter in range(1, settings.max_iter + 1):
        mu = np.maximum(np.exp(design @ beta + log_sf), settings.min_mu)
        weights = mu / (1.0 + dispersion * mu)
        z = np.log(mu / sf) + (y - mu) / mu
        lhs = design.T @ (design * weights[:, None]) + ridge
        rhs = design.T @ (weights * z)
        try:
            beta = np.linalg.solve(lhs, rhs)
        except np.linalg.LinAlgError:
            break
        if not np.all(np.isfinite(beta)) or np.any(np.abs(beta) > max_abs):
            break

        mu = np.maximum(np.exp(design @ beta + log_sf), settings.min_mu)
        old_deviance = deviance
        deviance = -2.0 * nb_log_likelihood(y, mu, dispersion)
        if np.isfinite(old_deviance):
            change = abs(deviance - old_deviance) / (abs(deviance) + 0.1)
            if change < settings.tolerance:
                converged = True
                break
    return beta, converged, n_iter, deviance


def _fit_optim(y, design, log_sf, dispersion, settings, ridge, beta):
    bound = settings.max_abs_log2_coef * LN2
    size = 1.0 / dispersion

    def objective(b):
        mu = np.exp(design @ b + log_sf)
        nll = -np.sum(stats.nbinom.logpmf(y, size, size / (size + mu)))
        grad = -design.T @ ((y - mu) / (1.0 + dispersion * mu)) + ridge @ b
        return nll + 0.5 * b @ ridge @ b, grad

    start = np.clip(np.where(np.isfinite(beta), beta, 0.0), -bound, bound)
    res = optimize.minimize(
        objective,
        start,
        jac=True,
        method="L-BFGS-B",
        bounds=[(-bound, bound)] * design.shape[1]
    )
    return res.x, bool(res.success and np.all(np.isfinite(res.x))), int(res.nit)


def fit_nb_glm(
    y: np.ndarray,
    design: np.ndarray,
    size_factors: np.ndarray,
    dispersion: float,
    settings: Optional[GLMConfig] = None
) -> GeneFit:
    """
    Fit a log-link negative binomial GLM for one gene.

    Pure function of its inputs. The dispersion is held fixed and the size
    factors enter as offsets. IRLS is tried first with a small ridge penalty;
    a gene that does not converge is refit with bounded L-BFGS-B. Genes that
    still fail come back with ``converged=False`` and NaN coefficients.

    Args:
        y: Counts of one gene (n_samples,)
        design: Design matrix (n_samples, p)
        size_factors: Size factors (n_samples,)
        dispersion: Fixed NB dispersion
        settings: GLM settings

    Returns:
        GeneFit with log2-scale coefficients and covariance
    """
    settings = settings or GLMConfig()
    y = np.asarray(y, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    log_sf = np.log(sf)
    p = design.shape[1]
    ridge = np.diag(np.full(p, settings.ridge / LN2 ** 2))

    beta0, *_ = np.linalg.lstsq(design, np.log(y / sf + 0.1), rcond=None)

    beta, converged, n_iter, deviance = _fit_irls(
        y, design, log_sf, sf, dispersion, settings, ridge, beta0
    )
    if not converged:
        beta, converged, extra = _fit_optim(y, design, log_sf, dispersion, settings, ridge, beta0)
        n_iter += extra

    if not converged:
        nan = np.full(p, np.nan)
        return GeneFit(nan, np.full((p, p), np.nan), np.full(len(y), np.nan), False, n_iter, np.nan)

    mu = np.maximum(np.exp(design @ beta + log_sf), settings.min_mu)
    weights = mu / (1.0 + dispersion * mu)
    deviance = -2.0 * nb_log_likelihood(y, mu, dispersion)
    try:
        covariance = _sandwich_covariance(design, weights, ridge)
    except np.linalg.LinAlgError:
        covariance = np.full((p, p), np.nan)
        converged = False

    return GeneFit(
        coefficients=beta / LN2,
        covariance=covariance / LN2 ** 2,
        mu=mu,
        converged=converged,
        n_iter=n_iter,
        deviance=deviance
    )


def _fit_chunk(counts, design, size_factors, dispersions, settings):
    return [
        fit_nb_glm(y, design, size_factors, disp, settings)
        for y, disp in zip(counts, dispersions)
    ]


def gene_chunks(n_genes: int, chunk_size: int) -> List[np.ndarray]:
    return [np.arange(start, min(start + chunk_size, n_genes)) for start in range(0, n_genes, chunk_size)]


def fit_all_genes(
    counts: np.ndarray,
    design: np.ndarray,
    size_factors: np.ndarray,
    dispersions: np.ndarray,
    columns: Optional[List[str]] = None,
    gene_ids: Optional[List[str]] = None,
    settings: Optional[GLMConfig] = None,
    n_jobs: int = 1,
    chunk_size: int = 500,
    backend: str = "loky"
) -> NBFitResult:
    """
    Fit the NB GLM for every gene with a finite dispersion.

    Genes with NaN dispersion are skipped (``fitted=False``). Work is split
    into contiguous gene chunks and distributed with joblib; each worker only
    reads its own rows plus the shared design and size factors.
    """
    settings = settings or GLMConfig()
    counts = np.asarray(counts, dtype=float)
    dispersions = np.asarray(dispersions, dtype=float)
    n_genes, n_samples = counts.shape
    p = design.shape[1]

    coefficients = np.full((n_genes, p), np.nan)
    covariances = np.full((n_genes, p, p), np.nan)
    mu = np.full((n_genes, n_samples), np.nan)
    converged = np.zeros(n_genes, dtype=bool)
    n_iter = np.zeros(n_genes, dtype=int)
    deviance = np.full(n_genes, np.nan)

    fitted = np.isfinite(dispersions)
    idx = np.flatnonzero(fitted)
    chunks = [idx[c] for c in gene_chunks(len(idx), chunk_size)]

    logger.info(f"Fitting negative binomial GLMs for {len(idx)} genes")
    chunk_fits = Parallel(n_jobs=n_jobs, backend=backend)(
        delayed(_fit_chunk)(counts[chunk], design, size_factors, dispersions[chunk], settings)
        for chunk in chunks
    )

    for chunk, fits in zip(chunks, chunk_fits):
        for i, fit in zip(chunk, fits):
            coefficients[i] = fit.coefficients
            covariances[i] = fit.covariance
            mu[i] = fit.mu
            converged[i] = fit.converged
            n_iter[i] = fit.n_iter
            deviance[i] = fit.deviance

    failed = fitted & ~converged
    if failed.any():
        names = [gene_ids[i] for i in np.flatnonzero(failed)] if gene_ids is not None else []
        preview = ", ".join(names[:10]) + (" ..." if len(names) > 10 else "")
        warnings.warn(
            f"{int(failed.sum())} genes did not converge and are excluded from contrasts"
            + (f": {preview}" if preview else ""),
            ConvergenceWarning
        )

    return NBFitResult(
        coefficients=coefficients,
        covariances=covariances,
        mu=mu,
        converged=converged,
        fitted=fitted,
        n_iter=n_iter,
        deviance=deviance,
        columns=list(columns) if columns is not None else [f"coef_{j}" for j in range(p)]
    )
