"""Tests for configuration loading and validation."""

import pydantic
import pytest

from dge_engine.config import Config, DesignConfig, get_config, set_config
from dge_engine.contrasts import Comparison


class TestDefaults:

    def test_default_values(self):
        config = Config()

        assert config.defaults.fdr_threshold == 0.05
        assert config.defaults.min_count == 10
        assert config.dispersion.fit_type == 'parametric'
        assert config.dispersion.outlier_sd == 2.0
        assert config.filtering.n_quantiles == 50
        assert config.design.treatment_levels[0] == 'Untreated'
        assert [c.name for c in config.comparisons] == [
            'Dex_vs_Untreated', 'Alb_vs_Untreated', 'AlbDex_vs_Untreated'
        ]

    def test_derived_paths(self, tmp_path):
        config = Config(paths={'base_dir': tmp_path})

        assert config.paths.count_matrix == tmp_path / '03_analysis' / 'counts' / 'raw_gene_counts.txt'
        assert config.paths.sample_sheet == tmp_path / '00_meta' / 'sample_sheet.csv'
        assert config.paths.tables_dir == tmp_path / '03_analysis' / 'tables'

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv('DGE_DEFAULTS__N_JOBS', '4')

        assert Config().defaults.n_jobs == 4


class TestValidation:

    def test_unknown_comparison_level(self):
        with pytest.raises(pydantic.ValidationError, match='Forskolin'):
            Config(comparisons=[
                Comparison(name='x', numerator='Forskolin', denominator='Untreated')
            ])

    def test_duplicate_comparison_names(self):
        comparison = Comparison(name='x', numerator='Dexamethasone', denominator='Untreated')

        with pytest.raises(pydantic.ValidationError, match='unique'):
            Config(comparisons=[comparison, comparison])

    def test_reference_must_be_a_level(self):
        with pytest.raises(pydantic.ValidationError, match='reference'):
            DesignConfig(treatment_levels=['a', 'b'], reference='c')

    def test_invalid_fit_type(self):
        with pytest.raises(pydantic.ValidationError):
            Config(dispersion={'fit_type': 'local'})


class TestYaml:

    def test_round_trip(self, tmp_path):
        config = Config(
            defaults={'fdr_threshold': 0.1, 'n_jobs': 2},
            design={'treatment_levels': ['Untreated', 'Dexamethasone'], 'reference': 'Untreated'},
            comparisons=[Comparison(name='d', numerator='Dexamethasone', denominator='Untreated')],
            paths={'base_dir': tmp_path}
        )
        path = tmp_path / 'config.yaml'

        config.to_yaml(path)
        loaded = Config.from_yaml(path)

        assert loaded.model_dump() == config.model_dump()

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text('')

        assert Config.from_yaml(path).defaults.fdr_threshold == 0.05


def test_global_config():
    config = Config(defaults={'n_jobs': 3})

    set_config(config)
    try:
        assert get_config() is config
    finally:
        set_config(None)
