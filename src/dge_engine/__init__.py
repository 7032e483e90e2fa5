"""dge_engine - Negative binomial differential gene expression for RNA-seq counts."""

__version__ = "0.1.0"

from .config import get_config, set_config, Config
from .contrasts import Comparison
from .errors import DGEError, SampleMismatchError, InputQualityError, ConvergenceWarning
from .validation import read_count_matrix, read_sample_sheet, reconcile_samples
from .normalization import estimate_size_factors
from .multitest import p_adjust_bh
from .pipeline import DifferentialExpressionAnalysis, run_analysis

__all__ = [
    'get_config',
    'set_config',
    'Config',
    'Comparison',
    'DGEError',
    'SampleMismatchError',
    'InputQualityError',
    'ConvergenceWarning',
    'read_count_matrix',
    'read_sample_sheet',
    'reconcile_samples',
    'estimate_size_factors',
    'p_adjust_bh',
    'DifferentialExpressionAnalysis',
    'run_analysis'
]
