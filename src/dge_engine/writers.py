"""Writing result tables and expression matrices."""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd


logger = logging.getLogger(__name__)


def write_results_table(results: pd.DataFrame, path: Union[str, Path], sep: str = ",") -> Path:
    """Write one comparison's results, sorted by padj with NaN last."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    ordered = results.sort_values('padj', na_position='last', kind='mergesort')
    ordered.to_csv(path, sep=sep, index=False, na_rep="NA", float_format="%.10g")
    logger.info(f"Results saved to {path}")
    return path


def write_matrix(matrix: pd.DataFrame, path: Union[str, Path]) -> Path:
    """Write a genes x samples matrix as tab-separated text with fixed precision."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame = matrix.copy()
    frame.index.name = "gene_id"
    frame.to_csv(path, sep="\t", float_format="%.10g")
    logger.info(f"Matrix saved to {path}")
    return path


def write_analysis_outputs(
    results: Dict[str, pd.DataFrame],
    vst_counts: pd.DataFrame,
    tables_dir: Union[str, Path],
    top_genes: Optional[Dict[str, pd.DataFrame]] = None
) -> List[Path]:
    """
    Write every output of a finished run.

    Called only once all comparisons are computed, so a failed run never
    leaves partial tables behind.
    """
    tables_dir = Path(tables_dir)
    written = []
    for name, res_df in results.items():
        written.append(write_results_table(res_df, tables_dir / f"{name}_dge_results.csv"))
    written.append(write_matrix(vst_counts, tables_dir / "vst_matrix.tsv"))
    for name, matrix in (top_genes or {}).items():
        written.append(write_matrix(matrix, tables_dir / f"top_genes_{name}_vst.tsv"))
    return written
