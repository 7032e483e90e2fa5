"""Configuration management for the differential expression engine."""

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml

from .contrasts import Comparison


DEFAULT_TREATMENT_LEVELS = [
    "Untreated",
    "Dexamethasone",
    "Albuterol",
    "Albuterol_Dexamethasone",
]


def _default_comparisons() -> List[Comparison]:
    return [
        Comparison(name="Dex_vs_Untreated", numerator="Dexamethasone", denominator="Untreated"),
        Comparison(name="Alb_vs_Untreated", numerator="Albuterol", denominator="Untreated"),
        Comparison(
            name="AlbDex_vs_Untreated",
            numerator="Albuterol_Dexamethasone",
            denominator="Untreated"
        ),
    ]


class AnalysisDefaults(BaseModel):
    """Thresholds and worker count used across the run."""

    fdr_threshold: float = Field(default=0.05, gt=0.0, lt=1.0)
    log2fc_threshold: float = Field(default=0.0, ge=0.0)
    min_count: int = Field(default=10, ge=0)
    n_jobs: int = Field(default=1)  # -1 means use all available


class DispersionConfig(BaseModel):
    """Dispersion estimation settings."""

    min_disp: float = Field(default=1e-8, gt=0.0)
    max_disp: float = Field(default=10.0, gt=0.0)
    fit_type: Literal["parametric", "mean"] = "parametric"
    outlier_sd: float = Field(default=2.0, gt=0.0)
    min_nonzero_samples: int = Field(default=1, ge=1)
    min_prior_var: float = Field(default=0.25, ge=0.0)


class GLMConfig(BaseModel):
    """Negative binomial GLM fitting settings."""

    max_iter: int = Field(default=100, ge=1)
    tolerance: float = Field(default=1e-8, gt=0.0)
    ridge: float = Field(default=1e-6, ge=0.0)
    min_mu: float = Field(default=0.5, gt=0.0)
    max_abs_log2_coef: float = Field(default=30.0, gt=0.0)


class FilteringConfig(BaseModel):
    """Independent filtering settings."""

    independent_filtering: bool = True
    n_quantiles: int = Field(default=50, ge=2)
    upper_quantile: float = Field(default=0.95, gt=0.0, lt=1.0)


class DesignConfig(BaseModel):
    """Experimental design settings."""

    factor: str = "treatment"
    treatment_levels: List[str] = Field(default_factory=lambda: list(DEFAULT_TREATMENT_LEVELS))
    reference: Optional[str] = None

    @model_validator(mode="after")
    def _check_reference(self):
        if len(set(self.treatment_levels)) != len(self.treatment_levels):
            raise ValueError("treatment_levels contains duplicates")
        if self.reference is not None and self.reference not in self.treatment_levels:
            raise ValueError(f"reference level '{self.reference}' is not in treatment_levels")
        return self


class PathConfig(BaseModel):
    """Input files and output directory, derived from base_dir unless given."""

    base_dir: Path = Field(default_factory=Path.cwd)
    count_matrix: Optional[Path] = None
    sample_sheet: Optional[Path] = None
    tables_dir: Optional[Path] = None

    @model_validator(mode="after")
    def _derive_paths(self):
        if self.count_matrix is None:
            self.count_matrix = self.base_dir / "03_analysis" / "counts" / "raw_gene_counts.txt"
        if self.sample_sheet is None:
            self.sample_sheet = self.base_dir / "00_meta" / "sample_sheet.csv"
        if self.tables_dir is None:
            self.tables_dir = self.base_dir / "03_analysis" / "tables"
        return self


class PerformanceConfig(BaseModel):
    """Chunking and joblib backend for per-gene fits."""

    chunk_size: int = Field(default=500, ge=1)
    parallel_backend: str = Field(default="loky")


class VSTConfig(BaseModel):
    """Variance-stabilizing transform settings."""

    blind: bool = False
    top_n: int = Field(default=30, ge=1)


class Config(BaseSettings):
    """All engine settings. Environment variables DGE_<SECTION>__<FIELD> override defaults."""

    model_config = SettingsConfigDict(env_prefix="DGE_", env_nested_delimiter="__")

    defaults: AnalysisDefaults = Field(default_factory=AnalysisDefaults)
    dispersion: DispersionConfig = Field(default_factory=DispersionConfig)
    glm: GLMConfig = Field(default_factory=GLMConfig)
    filtering: FilteringConfig = Field(default_factory=FilteringConfig)
    design: DesignConfig = Field(default_factory=DesignConfig)
    comparisons: List[Comparison] = Field(default_factory=_default_comparisons)
    paths: PathConfig = Field(default_factory=PathConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    vst: VSTConfig = Field(default_factory=VSTConfig)

    @model_validator(mode="after")
    def _check_comparisons(self):
        levels = set(self.design.treatment_levels)
        names = [c.name for c in self.comparisons]
        if len(set(names)) != len(names):
            raise ValueError("comparison names must be unique")
        for comparison in self.comparisons:
            unknown = {comparison.numerator, comparison.denominator} - levels
            if unknown:
                raise ValueError(
                    f"Comparison '{comparison.name}' uses unknown levels: {', '.join(sorted(unknown))}"
                )
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Build a configuration from a YAML file, an empty file gives the defaults."""
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def to_yaml(self, path: Path):
        """Write the configuration as YAML, paths as plain strings."""
        data = self.model_dump(mode="json")
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


_config: Optional[Config] = None


def get_config() -> Config:
    """Return the process-wide configuration, creating the default one on first use."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def set_config(config: Optional[Config]):
    """Replace the process-wide configuration (None resets it)."""
    global _config
    _config = config


# Written by `dge-engine init-config`
CONFIG_TEMPLATE = """
# Differential expression engine configuration

defaults:
  fdr_threshold: 0.05        # alpha for independent filtering and significance
  log2fc_threshold: 0.0      # |log2FC| required to call a gene significant
  min_count: 10              # drop genes with fewer total reads
  n_jobs: 1                  # parallel workers (-1 = use all available)

dispersion:
  min_disp: 1.0e-8
  max_disp: 10.0
  fit_type: parametric       # parametric or mean
  outlier_sd: 2.0            # keep gene-wise estimates this far above the trend
  min_nonzero_samples: 1

design:
  factor: treatment
  treatment_levels:          # first level is the reference
    - Untreated
    - Dexamethasone
    - Albuterol
    - Albuterol_Dexamethasone

comparisons:
  - name: Dex_vs_Untreated
    numerator: Dexamethasone
    denominator: Untreated
  - name: Alb_vs_Untreated
    numerator: Albuterol
    denominator: Untreated
  - name: AlbDex_vs_Untreated
    numerator: Albuterol_Dexamethasone
    denominator: Untreated

paths:
  base_dir: .
  # count_matrix: 03_analysis/counts/raw_gene_counts.txt
  # sample_sheet: 00_meta/sample_sheet.csv
  # tables_dir: 03_analysis/tables

performance:
  chunk_size: 500
  parallel_backend: loky

vst:
  blind: false
  top_n: 30
"""
