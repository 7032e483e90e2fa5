"""Command-line entry point for batch differential expression runs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional

import click

from .config import CONFIG_TEMPLATE, Config, set_config
from .contrasts import Comparison
from .errors import DGEError
from .pipeline import run_analysis
from .transform import top_genes_matrix
from .validation import read_count_matrix, read_sample_sheet
from .writers import write_analysis_outputs


logger = logging.getLogger(__name__)


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool) -> None:
    """Differential gene expression from RNA-seq count matrices."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    logging.captureWarnings(True)


@cli.command("run")
@click.option(
    "--counts",
    "counts_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Tab-separated count matrix (featureCounts output or gene x sample table).",
)
@click.option(
    "--sample-sheet",
    "sheet_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Comma-separated sample sheet with sample_id, treatment and cell_line.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML configuration file.",
)
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for result tables (defaults to paths.tables_dir).",
)
@click.option(
    "--comparison",
    "comparisons",
    multiple=True,
    help="Comparison as NAME=NUMERATOR:DENOMINATOR (repeat for several). "
         "Defaults to the configured comparisons.",
)
@click.option(
    "--blind/--no-blind",
    default=None,
    help="Fit the VST dispersion trend without the design.",
)
@click.option(
    "--n-jobs",
    type=int,
    default=None,
    help="Parallel workers for per-gene fits (-1 = all cores).",
)
def run_command(
    counts_path: Optional[Path],
    sheet_path: Optional[Path],
    config_path: Optional[Path],
    output_dir: Optional[Path],
    comparisons: Iterable[str],
    blind: Optional[bool],
    n_jobs: Optional[int],
) -> None:
    """Run the analysis and write one results table per comparison."""
    config = Config.from_yaml(config_path) if config_path else Config()
    if n_jobs is not None:
        config.defaults.n_jobs = n_jobs
    set_config(config)

    counts_path = counts_path or config.paths.count_matrix
    sheet_path = sheet_path or config.paths.sample_sheet
    tables_dir = output_dir or config.paths.tables_dir

    try:
        chosen = [Comparison.parse(text, factor=config.design.factor) for text in comparisons]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--comparison")

    try:
        counts = read_count_matrix(counts_path)
        sample_sheet = read_sample_sheet(sheet_path, config.design.treatment_levels)
        output = run_analysis(
            counts,
            sample_sheet,
            config=config,
            comparisons=chosen or None,
            blind=blind
        )
    except (DGEError, FileNotFoundError) as e:
        logger.error(f"Analysis aborted: {e}")
        raise click.ClickException(str(e))

    top_genes = {
        name: top_genes_matrix(
            output['vst_counts'], res_df,
            n=config.vst.top_n, alpha=config.defaults.fdr_threshold
        )
        for name, res_df in output['results'].items()
    }
    written = write_analysis_outputs(output['results'], output['vst_counts'], tables_dir, top_genes)

    for name, res_df in output['results'].items():
        n_sig = int(res_df['significant'].sum())
        click.echo(f"{name}: {n_sig} significant genes")
    click.echo(f"Wrote {len(written)} files to {tables_dir}")


@cli.command("init-config")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--force", is_flag=True, help="Overwrite an existing file.")
def init_config_command(path: Path, force: bool) -> None:
    """Write a commented configuration template to PATH."""
    if path.exists() and not force:
        raise click.ClickException(f"{path} already exists (use --force to overwrite)")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(CONFIG_TEMPLATE.lstrip())
    click.echo(f"Configuration template written to {path}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
