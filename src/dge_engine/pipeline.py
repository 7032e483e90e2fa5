"""End-to-end differential expression analysis."""

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from .config import Config, get_config
from .contrasts import Comparison, contrast_vector, wald_test
from .design import DesignMatrix, build_design_matrix
from .dispersion import DispersionResult, estimate_dispersions
from .glm import NBFitResult, fit_all_genes
from .multitest import independent_filtering, p_adjust_bh
from .normalization import estimate_size_factors, normalized_counts, prefilter_low_counts
from .transform import variance_stabilizing_transform
from .validation import ValidationError, check_count_matrix, check_sample_sheet, reconcile_samples


logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    'gene_id', 'baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj', 'status'
]


class DifferentialExpressionAnalysis:
    """
    Negative binomial differential expression analysis of one experiment.

    Size factors, dispersions and per-gene fits are computed once by
    :meth:`run` and shared by every call to :meth:`results`.
    """

    def __init__(
        self,
        counts: pd.DataFrame,
        sample_sheet: pd.DataFrame,
        config: Optional[Config] = None
    ):
        """
        Args:
            counts: Count matrix (genes x samples)
            sample_sheet: Sample metadata indexed by sample_id
            config: Analysis configuration, the global one if omitted
        """
        self.config = config or get_config()

        # Fails with SampleMismatchError before anything else is computed
        counts = reconcile_samples(counts, sample_sheet)
        self.sample_sheet = sample_sheet.loc[list(counts.columns)]

        design_cfg = self.config.design
        sheet_report, _ = check_sample_sheet(self.sample_sheet, factor=design_cfg.factor)
        if not sheet_report.valid:
            raise ValidationError("; ".join(sheet_report.errors))
        for issue in sheet_report.warnings:
            logger.log(logging.WARNING if issue.level == "warning" else logging.INFO, issue.text)

        report, _ = check_count_matrix(counts)
        if not report.valid:
            raise ValidationError("; ".join(report.errors))
        for issue in report.warnings:
            logger.debug(issue.text)

        values = counts.to_numpy(dtype=float)
        if not np.allclose(values, np.round(values)):
            logger.warning("Rounding non-integer counts")
        self.counts = pd.DataFrame(
            np.round(values).astype(np.int64), index=counts.index, columns=counts.columns
        )

        self.design: DesignMatrix = build_design_matrix(
            self.sample_sheet,
            factor=design_cfg.factor,
            levels=design_cfg.treatment_levels,
            reference=design_cfg.reference
        )

        self.size_factors: Optional[pd.Series] = None
        self.dispersions: Optional[DispersionResult] = None
        self.fit: Optional[NBFitResult] = None

    @property
    def gene_ids(self) -> List[str]:
        return [str(g) for g in self.counts.index]

    def _parallel_kwargs(self) -> Dict:
        perf = self.config.performance
        return {
            'n_jobs': self.config.defaults.n_jobs,
            'chunk_size': perf.chunk_size,
            'backend': perf.parallel_backend
        }

    def prefilter(self, min_total: Optional[int] = None) -> "DifferentialExpressionAnalysis":
        """Drop genes with fewer than ``min_total`` reads over all samples."""
        if min_total is None:
            min_total = self.config.defaults.min_count
        self.counts = prefilter_low_counts(self.counts, min_total)
        return self

    def estimate_size_factors(self) -> pd.Series:
        self.size_factors = estimate_size_factors(self.counts)
        logger.info(
            "Size factors: " + ", ".join(f"{s}={v:.3f}" for s, v in self.size_factors.items())
        )
        return self.size_factors

    def estimate_dispersions(self) -> DispersionResult:
        if self.size_factors is None:
            self.estimate_size_factors()
        self.dispersions = estimate_dispersions(
            self.counts,
            self.size_factors.to_numpy(),
            self.design,
            settings=self.config.dispersion,
            glm_settings=self.config.glm,
            **self._parallel_kwargs()
        )
        return self.dispersions

    def fit_models(self) -> NBFitResult:
        if self.dispersions is None:
            self.estimate_dispersions()
        self.fit = fit_all_genes(
            self.counts.to_numpy(dtype=float),
            self.design.matrix,
            self.size_factors.to_numpy(),
            self.dispersions.final,
            columns=self.design.columns,
            gene_ids=self.gene_ids,
            settings=self.config.glm,
            **self._parallel_kwargs()
        )
        n_conv = int(self.fit.converged.sum())
        logger.info(f"{n_conv} of {int(self.fit.fitted.sum())} gene fits converged")
        return self.fit

    def run(self, prefilter: bool = True) -> "DifferentialExpressionAnalysis":
        """Run prefiltering, size factors, dispersions and model fits."""
        logger.info(
            f"Running analysis on {self.counts.shape[0]} genes and {self.counts.shape[1]} samples"
        )
        if prefilter:
            self.prefilter()
        self.estimate_size_factors()
        self.estimate_dispersions()
        self.fit_models()
        logger.info("Analysis completed successfully")
        return self

    def results(
        self,
        comparison: Comparison,
        alpha: Optional[float] = None,
        lfc_threshold: Optional[float] = None,
        filtering: Optional[bool] = None
    ) -> pd.DataFrame:
        """
        Extract results for one comparison.

        Args:
            comparison: Levels to compare
            alpha: FDR threshold for independent filtering and significance
            lfc_threshold: |log2FC| required to call a gene significant
            filtering: Apply independent filtering

        Returns:
            DataFrame with DE results sorted by padj (NaN last)
        """
        if self.fit is None:
            raise RuntimeError("run() must be called before results()")
        if alpha is None:
            alpha = self.config.defaults.fdr_threshold
        if lfc_threshold is None:
            lfc_threshold = self.config.defaults.log2fc_threshold
        if filtering is None:
            filtering = self.config.filtering.independent_filtering

        logger.info(f"Extracting results for {comparison.name} (alpha={alpha})")

        c = contrast_vector(self.design, comparison)
        lfc, se, stat, pvalue = wald_test(self.fit.coefficients, self.fit.covariances, c)
        base_mean = self.dispersions.base_mean

        status = np.full(len(lfc), 'ok', dtype=object)
        status[self.fit.fitted & ~self.fit.converged] = 'not_converged'
        status[self.dispersions.all_zero] = 'all_zero'

        if filtering:
            filt = independent_filtering(
                pvalue, base_mean, alpha=alpha,
                n_quantiles=self.config.filtering.n_quantiles,
                upper_quantile=self.config.filtering.upper_quantile
            )
            padj = filt.padj
            status[(status == 'ok') & filt.filtered & np.isfinite(pvalue)] = 'filtered'
        else:
            padj = p_adjust_bh(pvalue)

        res_df = pd.DataFrame({
            'gene_id': self.gene_ids,
            'baseMean': base_mean,
            'log2FoldChange': lfc,
            'lfcSE': se,
            'stat': stat,
            'pvalue': pvalue,
            'padj': padj,
            'status': status,
        })[RESULT_COLUMNS]

        res_df = res_df.sort_values('padj', na_position='last', kind='mergesort').reset_index(drop=True)

        res_df['significant'] = (
            (res_df['padj'] < alpha) &
            (res_df['log2FoldChange'].abs() > lfc_threshold)
        )

        res_df['direction'] = 'not_sig'
        res_df.loc[res_df['significant'] & (res_df['log2FoldChange'] > 0), 'direction'] = 'up'
        res_df.loc[res_df['significant'] & (res_df['log2FoldChange'] < 0), 'direction'] = 'down'

        n_up = (res_df['direction'] == 'up').sum()
        n_down = (res_df['direction'] == 'down').sum()
        logger.info(f"{comparison.name}: {n_up} up-regulated and {n_down} down-regulated genes")

        return res_df

    def all_results(self, comparisons: Optional[Sequence[Comparison]] = None) -> Dict[str, pd.DataFrame]:
        """Results for every comparison whose levels both have samples."""
        if comparisons is None:
            comparisons = self.config.comparisons
        results = {}
        for comparison in comparisons:
            absent = [lvl for lvl in (comparison.numerator, comparison.denominator)
                      if lvl not in self.design.levels]
            if absent:
                logger.warning(
                    f"Skipping comparison {comparison.name}: no samples for {', '.join(absent)}"
                )
                continue
            results[comparison.name] = self.results(comparison)
        return results

    def normalized_counts(self) -> pd.DataFrame:
        if self.size_factors is None:
            self.estimate_size_factors()
        return normalized_counts(self.counts, self.size_factors)

    def vst(self, blind: Optional[bool] = None) -> pd.DataFrame:
        """Variance-stabilized counts; blind mode never changes the testing dispersions."""
        if blind is None:
            blind = self.config.vst.blind
        if self.size_factors is None:
            self.estimate_size_factors()
        trend = None if (blind or self.dispersions is None) else self.dispersions.trend
        return variance_stabilizing_transform(
            self.counts,
            self.size_factors,
            design=self.design,
            trend=trend,
            blind=blind,
            settings=self.config.dispersion,
            glm_settings=self.config.glm,
            n_jobs=self.config.defaults.n_jobs
        )


def run_analysis(
    counts: pd.DataFrame,
    sample_sheet: pd.DataFrame,
    config: Optional[Config] = None,
    comparisons: Optional[Sequence[Comparison]] = None,
    blind: Optional[bool] = None
) -> Dict:
    """
    Run complete differential expression pipeline.

    Args:
        counts: Count matrix (genes x samples)
        sample_sheet: Sample metadata indexed by sample_id
        config: Analysis configuration
        comparisons: Comparisons to extract, the configured ones if omitted
        blind: VST mode, the configured one if omitted

    Returns:
        Dictionary containing:
            - results: comparison name -> DE results DataFrame
            - normalized_counts: Normalized count matrix
            - vst_counts: VST-transformed counts
            - size_factors: Size factor Series
            - dispersions: Per-gene dispersion table
            - analysis: DifferentialExpressionAnalysis (for further analysis)
    """
    analysis = DifferentialExpressionAnalysis(counts, sample_sheet, config=config)
    analysis.run()

    results = analysis.all_results(comparisons)

    return {
        'results': results,
        'normalized_counts': analysis.normalized_counts(),
        'vst_counts': analysis.vst(blind=blind),
        'size_factors': analysis.size_factors,
        'dispersions': analysis.dispersions.to_frame(),
        'analysis': analysis
    }
