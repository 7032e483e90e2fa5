"""Tests for the per-gene negative binomial GLM."""

import numpy as np
import pytest
from scipy import stats

import dge_engine.glm as glm
from dge_engine.config import GLMConfig
from dge_engine.errors import ConvergenceWarning
from dge_engine.glm import LN2, fit_all_genes, fit_nb_glm, gene_chunks, nb_log_likelihood


@pytest.fixture
def two_group_design():
    return np.array([
        [1.0, 0.0],
        [1.0, 0.0],
        [1.0, 1.0],
        [1.0, 1.0],
    ])


class TestFitNBGLM:

    def test_group_means_recovered(self, two_group_design):
        y = np.array([10, 12, 100, 110])

        fit = fit_nb_glm(y, two_group_design, np.ones(4), dispersion=0.01)

        assert fit.converged
        assert fit.coefficients[0] == pytest.approx(np.log2(11), abs=1e-4)
        assert fit.coefficients[1] == pytest.approx(np.log2(105 / 11), abs=1e-4)
        np.testing.assert_allclose(fit.mu, [11, 11, 105, 105], rtol=1e-4)

    def test_size_factors_are_offsets(self, two_group_design):
        y = np.array([10, 12, 100, 110])
        sf = np.array([1.0, 1.0, 2.0, 2.0])

        fit = fit_nb_glm(y * sf, two_group_design, sf, dispersion=0.01)

        assert fit.coefficients[1] == pytest.approx(np.log2(105 / 11), abs=1e-4)

    def test_covariance_on_log2_scale(self, two_group_design):
        y = np.array([10, 12, 100, 110])

        fit = fit_nb_glm(y, two_group_design, np.ones(4), dispersion=0.01)

        # Var(log mu_hat) for one group of two samples: 1 / (2 * w)
        w = 11 / (1 + 0.01 * 11)
        assert fit.covariance[0, 0] == pytest.approx(1 / (2 * w) / LN2 ** 2, rel=1e-3)
        assert np.allclose(fit.covariance, fit.covariance.T)

    def test_near_zero_group_converges(self, two_group_design):
        y = np.array([0, 0, 5, 6])

        fit = fit_nb_glm(y, two_group_design, np.ones(4), dispersion=0.1)

        assert fit.converged
        assert np.all(np.isfinite(fit.coefficients))
        assert fit.coefficients[1] > 0

    def test_optimizer_fallback(self, two_group_design, monkeypatch):
        def no_convergence(y, design, log_sf, sf, dispersion, settings, ridge, beta):
            return beta, False, settings.max_iter, np.inf

        monkeypatch.setattr(glm, '_fit_irls', no_convergence)
        y = np.array([10, 12, 100, 110])

        fit = fit_nb_glm(y, two_group_design, np.ones(4), dispersion=0.01)

        assert fit.converged
        assert fit.coefficients[1] == pytest.approx(np.log2(105 / 11), abs=1e-3)

    def test_failure_gives_nan(self, two_group_design, monkeypatch):
        monkeypatch.setattr(
            glm, '_fit_irls', lambda y, d, lsf, sf, disp, s, r, b: (b, False, s.max_iter, np.inf)
        )
        monkeypatch.setattr(glm, '_fit_optim', lambda y, d, lsf, disp, s, r, b: (b, False, 0))

        fit = fit_nb_glm(np.array([1, 2, 3, 4]), two_group_design, np.ones(4), dispersion=0.1)

        assert not fit.converged
        assert np.all(np.isnan(fit.coefficients))
        assert np.all(np.isnan(fit.covariance))


class TestFitAllGenes:

    def test_stacks_gene_fits(self, two_group_design):
        counts = np.array([
            [10, 12, 100, 110],
            [50, 55, 52, 48],
            [3, 0, 4, 2],
        ])

        result = fit_all_genes(
            counts, two_group_design, np.ones(4), np.array([0.01, 0.05, 0.2]),
            columns=['Intercept', 'b'], chunk_size=2
        )

        assert result.coefficients.shape == (3, 2)
        assert result.covariances.shape == (3, 2, 2)
        assert result.converged.all()
        assert result.columns == ['Intercept', 'b']
        single = fit_nb_glm(counts[1], two_group_design, np.ones(4), 0.05)
        np.testing.assert_allclose(result.coefficients[1], single.coefficients)

    def test_nan_dispersion_not_fitted(self, two_group_design):
        counts = np.array([[10, 12, 100, 110], [0, 0, 0, 0]])

        result = fit_all_genes(counts, two_group_design, np.ones(4), np.array([0.01, np.nan]))

        assert list(result.fitted) == [True, False]
        assert not result.converged[1]
        assert np.all(np.isnan(result.coefficients[1]))

    def test_failed_genes_warn(self, two_group_design, monkeypatch):
        monkeypatch.setattr(
            glm, '_fit_irls', lambda y, d, lsf, sf, disp, s, r, b: (b, False, s.max_iter, np.inf)
        )
        monkeypatch.setattr(glm, '_fit_optim', lambda y, d, lsf, disp, s, r, b: (b, False, 0))

        with pytest.warns(ConvergenceWarning, match='bad_gene'):
            result = fit_all_genes(
                np.array([[1, 2, 3, 4]]), two_group_design, np.ones(4), np.array([0.1]),
                gene_ids=['bad_gene']
            )

        assert result.fitted[0] and not result.converged[0]


def test_gene_chunks_cover_all_genes():
    chunks = gene_chunks(1050, 500)

    assert [len(c) for c in chunks] == [500, 500, 50]
    np.testing.assert_array_equal(np.concatenate(chunks), np.arange(1050))


def test_nb_log_likelihood_approaches_poisson():
    y = np.array([3, 7, 0])
    mu = np.array([4.0, 6.0, 0.5])

    expected = stats.poisson.logpmf(y, mu).sum()

    assert nb_log_likelihood(y, mu, 1e-8) == pytest.approx(expected, rel=1e-5)


def test_settings_respected(two_group_design):
    y = np.array([10, 12, 100, 110])

    fit = fit_nb_glm(y, two_group_design, np.ones(4), 0.01, GLMConfig(max_iter=2, tolerance=1e-30))

    assert fit.converged
    assert fit.coefficients[1] == pytest.approx(np.log2(105 / 11), abs=1e-3)
