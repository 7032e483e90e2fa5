"""Tests for dispersion estimation, trend fitting and shrinkage."""

import numpy as np
import pandas as pd
import pytest
from scipy import special, stats

from dge_engine.config import DispersionConfig
from dge_engine.design import build_design_matrix
from dge_engine.dispersion import (
    DispersionTrend,
    TrendFitError,
    estimate_dispersions,
    estimate_prior_variance,
    fit_dispersion_trend,
    fit_mean_trend,
    fit_parametric_trend,
)
from dge_engine.errors import InputQualityError
from dge_engine.normalization import estimate_size_factors


TREATMENTS = ['Untreated'] * 3 + ['Dexamethasone'] * 3


@pytest.fixture
def estimated(count_factory, sheet_factory):
    counts = count_factory(TREATMENTS, n_genes=300, seed=5)
    extra = pd.DataFrame(
        [[5, 800, 20, 900, 10, 400], [0, 0, 0, 0, 0, 0]],
        index=['G_noisy', 'G_zero'],
        columns=counts.columns
    )
    counts = pd.concat([counts, extra])
    sheet = sheet_factory(TREATMENTS, ['Untreated', 'Dexamethasone'])
    design = build_design_matrix(sheet)
    sf = estimate_size_factors(counts)
    return counts, estimate_dispersions(counts, sf.to_numpy(), design)


class TestTrendFitting:

    def test_parametric_recovers_exact_curve(self):
        means = np.logspace(0, 4, 200)
        genewise = 0.05 + 2.0 / means

        trend = fit_parametric_trend(means, genewise, min_disp=1e-8)

        assert trend.fit_type == 'parametric'
        assert trend.asympt_disp == pytest.approx(0.05, rel=1e-4)
        assert trend.extra_pois == pytest.approx(2.0, rel=1e-4)
        np.testing.assert_allclose(trend(means), genewise, rtol=1e-4)

    def test_parametric_rejects_increasing_dispersion(self):
        means = np.logspace(0, 3, 200)

        with pytest.raises(TrendFitError):
            fit_parametric_trend(means, 0.001 * means, min_disp=1e-8)

    def test_falls_back_to_mean_trend(self):
        means = np.logspace(0, 3, 200)
        genewise = 0.001 * means

        trend = fit_dispersion_trend(means, genewise, fit_type='parametric')

        assert trend.fit_type == 'mean'
        assert trend.extra_pois == 0.0
        assert trend.asympt_disp == pytest.approx(stats.trim_mean(genewise, 0.001))

    def test_mean_trend_ignores_estimates_at_minimum(self):
        genewise = np.array([1e-8, 1e-8, 0.1, 0.3])

        trend = fit_mean_trend(genewise, min_disp=1e-8)

        assert trend.asympt_disp == pytest.approx(0.2)

    def test_mean_trend_needs_estimable_genes(self):
        with pytest.raises(InputQualityError):
            fit_mean_trend(np.full(10, 1e-8), min_disp=1e-8)

    def test_trend_is_callable(self):
        trend = DispersionTrend('parametric', 0.1, 4.0)

        np.testing.assert_allclose(trend([1.0, 4.0]), [4.1, 1.1])


class TestPriorVariance:

    def test_subtracts_sampling_variance(self):
        residuals = stats.norm.ppf(np.linspace(0.001, 0.999, 2001))

        var_log_disp, prior_var = estimate_prior_variance(residuals, residual_df=4)

        assert var_log_disp == pytest.approx(1.0, abs=0.01)
        assert prior_var == pytest.approx(var_log_disp - special.polygamma(1, 2.0))

    def test_floor(self):
        residuals = 0.1 * stats.norm.ppf(np.linspace(0.01, 0.99, 99))

        _, prior_var = estimate_prior_variance(residuals, residual_df=4, min_prior_var=0.25)

        assert prior_var == 0.25

    def test_empty(self):
        var_log_disp, prior_var = estimate_prior_variance(np.array([np.nan]), residual_df=4)

        assert np.isnan(var_log_disp)
        assert prior_var == 0.25


class TestEstimateDispersions:

    def test_table_layout(self, estimated):
        counts, result = estimated

        frame = result.to_frame()

        assert list(frame.columns) == [
            'baseMean', 'baseVar', 'allZero', 'dispGeneEst', 'dispFit',
            'dispMAP', 'dispersion', 'dispOutlier'
        ]
        assert list(frame.index) == list(counts.index)

    def test_realistic_values(self, estimated):
        _, result = estimated
        settings = DispersionConfig()

        assert result.trend.asympt_disp > 0
        assert result.trend.prior_var >= settings.min_prior_var
        assert 0.02 < np.nanmedian(result.final) < 0.2
        finite = result.final[np.isfinite(result.final)]
        assert np.all(finite >= settings.min_disp)
        assert np.all(finite <= settings.max_disp)

    def test_final_is_map_or_genewise(self, estimated):
        _, result = estimated
        ok = ~result.all_zero

        expected = np.where(result.outlier[ok], result.genewise[ok], result.map[ok])
        np.testing.assert_allclose(result.final[ok], expected)

    def test_noisy_gene_keeps_genewise_estimate(self, estimated):
        counts, result = estimated
        i = list(counts.index).index('G_noisy')

        assert result.outlier[i]
        assert result.final[i] == result.genewise[i]
        assert result.final[i] > result.trend_values[i]

    def test_all_zero_gene_has_no_dispersion(self, estimated):
        counts, result = estimated
        i = list(counts.index).index('G_zero')

        assert result.all_zero[i]
        assert result.base_mean[i] == 0
        assert np.isnan(result.final[i])
        assert not result.outlier[i]

    def test_shrinkage_moves_toward_trend(self, estimated):
        _, result = estimated
        shrunk = ~result.all_zero & ~result.outlier

        log_gw = np.log(result.genewise[shrunk])
        log_map = np.log(result.map[shrunk])
        log_fit = np.log(result.trend_values[shrunk])

        assert np.median(np.abs(log_map - log_fit)) < np.median(np.abs(log_gw - log_fit))

    def test_no_residual_degrees_of_freedom(self, count_factory, sheet_factory):
        treatments = ['Untreated', 'Dexamethasone']
        counts = count_factory(treatments, n_genes=50)
        design = build_design_matrix(sheet_factory(treatments, treatments))

        with pytest.raises(InputQualityError, match='no replicates'):
            estimate_dispersions(counts, np.ones(2), design)

    def test_all_genes_zero(self, sheet_factory):
        counts = pd.DataFrame(np.zeros((5, 6), dtype=int), columns=[f"S{j + 1}" for j in range(6)])
        design = build_design_matrix(sheet_factory(TREATMENTS, ['Untreated', 'Dexamethasone']))

        with pytest.raises(InputQualityError, match='non-zero'):
            estimate_dispersions(counts, np.ones(6), design)

    def test_mean_fit_type(self, count_factory, sheet_factory):
        counts = count_factory(TREATMENTS, n_genes=100, seed=9)
        design = build_design_matrix(sheet_factory(TREATMENTS, ['Untreated', 'Dexamethasone']))

        result = estimate_dispersions(
            counts, np.ones(6), design, settings=DispersionConfig(fit_type='mean')
        )

        assert result.trend.fit_type == 'mean'
        assert np.allclose(result.trend_values, result.trend.asympt_disp)
