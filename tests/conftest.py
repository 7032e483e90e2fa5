"""Shared fixtures: synthetic negative binomial count data and sample sheets."""

from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
import pytest

from dge_engine.config import AnalysisDefaults, Config, DesignConfig
from dge_engine.contrasts import Comparison


def generate_counts(
    treatments: Sequence[str],
    n_genes: int = 200,
    dispersion: float = 0.05,
    depth: Optional[Sequence[float]] = None,
    fold_changes: Optional[Dict[int, Dict[str, float]]] = None,
    seed: int = 42
) -> pd.DataFrame:
    """
    Negative binomial counts with a shared mean per gene.

    Args:
        treatments: Treatment of each sample
        n_genes: Number of genes
        dispersion: Asymptotic dispersion; the trend adds 1 / mean
        depth: Per-sample sequencing depth multipliers
        fold_changes: gene index -> {treatment: multiplicative effect}
        seed: Random seed

    Returns:
        Count matrix with genes Gene_0000.. and samples S1..
    """
    rng = np.random.default_rng(seed)
    n_samples = len(treatments)
    depth = np.ones(n_samples) if depth is None else np.asarray(depth, dtype=float)
    base = rng.lognormal(mean=5.0, sigma=1.0, size=n_genes) + 20.0

    mean = np.outer(base, depth)
    for gene, effects in (fold_changes or {}).items():
        for j, treatment in enumerate(treatments):
            mean[gene, j] *= effects.get(treatment, 1.0)

    disp = dispersion + 1.0 / mean
    counts = rng.negative_binomial(n=1.0 / disp, p=1.0 / (1.0 + mean * disp))

    return pd.DataFrame(
        counts,
        index=[f"Gene_{i:04d}" for i in range(n_genes)],
        columns=[f"S{j + 1}" for j in range(n_samples)]
    )


def make_sample_sheet(treatments: Sequence[str], levels: Sequence[str]) -> pd.DataFrame:
    ids = [f"S{j + 1}" for j in range(len(treatments))]
    sheet = pd.DataFrame({
        'sample_id': ids,
        'treatment': pd.Categorical(list(treatments), categories=list(levels)),
        'cell_line': [f"N{(j % 2) + 1}" for j in range(len(treatments))],
    })
    return sheet.set_index('sample_id')


@pytest.fixture
def count_factory():
    """Factory for synthetic count matrices."""
    return generate_counts


@pytest.fixture
def sheet_factory():
    """Factory for sample sheets matching ``count_factory`` sample ids."""
    return make_sample_sheet


@pytest.fixture
def two_group_config():
    """Untreated vs Dexamethasone configuration, single process."""
    return Config(
        defaults=AnalysisDefaults(n_jobs=1),
        design=DesignConfig(treatment_levels=['Untreated', 'Dexamethasone']),
        comparisons=[
            Comparison(name='Dex_vs_Untreated', numerator='Dexamethasone', denominator='Untreated')
        ]
    )


@pytest.fixture
def three_group_config():
    """Three treatments, Untreated as reference."""
    return Config(
        defaults=AnalysisDefaults(n_jobs=1),
        design=DesignConfig(treatment_levels=['Untreated', 'Dexamethasone', 'Albuterol']),
        comparisons=[
            Comparison(name='Dex_vs_Untreated', numerator='Dexamethasone', denominator='Untreated'),
            Comparison(name='Alb_vs_Untreated', numerator='Albuterol', denominator='Untreated'),
            Comparison(name='Dex_vs_Alb', numerator='Dexamethasone', denominator='Albuterol'),
        ]
    )


@pytest.fixture
def dex_scenario():
    """
    Four samples, two Untreated then two Dexamethasone.

    G1 is strongly induced by Dexamethasone, G_zero has no reads at all,
    every other gene has the same expected count in both groups.
    """
    treatments = ['Untreated', 'Untreated', 'Dexamethasone', 'Dexamethasone']
    counts = generate_counts(treatments, n_genes=200, seed=7)
    extra = pd.DataFrame(
        [[5, 6, 500, 520], [0, 0, 0, 0]],
        index=['G1', 'G_zero'],
        columns=counts.columns
    )
    counts = pd.concat([counts, extra])
    sheet = make_sample_sheet(treatments, ['Untreated', 'Dexamethasone'])
    return counts, sheet
