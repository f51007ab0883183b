"""Command-line interface for gridregime.

Provides the `gridregime` command with subcommands:
- `run`: Cluster the reduction units of a dataset
- `describe`: Show the structure of a dataset
- `probe`: Summary statistics of a variable at the nearest grid point
- `extract`: Time series of a variable at the nearest grid point
- `version`: Show version information
"""

import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table

from gridregime import __version__
from gridregime.config import Config, load_config, merge_cli_overrides
from gridregime.errors import GridRegimeError
from gridregime.io.table_sink import (
    write_candidate_scores,
    write_cluster_summary,
    write_table,
)
from gridregime.models.schemas import ReductionMode, UnitStatus
from gridregime.pipeline import GridRegimePipeline, PipelineResult
from gridregime.source import ArraySource

console = Console()


def setup_logging(debug: bool = False) -> None:
    """Set up logging configuration.

    Args:
        debug: If True, enable debug logging.
    """
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _parse_selectors(values: tuple[str, ...]) -> dict[str, float]:
    """Parse ``dim=value`` pairs into nearest-point selectors."""
    selectors: dict[str, float] = {}
    for item in values:
        dim, sep, raw = item.partition("=")
        if not sep or not dim:
            raise click.BadParameter(f"Expected DIM=VALUE, got '{item}'")
        try:
            selectors[dim] = float(raw)
        except ValueError as e:
            raise click.BadParameter(f"Value for '{dim}' is not a number: {raw}") from e
    return selectors


def _parse_modes(values: tuple[str, ...]) -> dict[str, str]:
    modes: dict[str, str] = {}
    choices = [m.value for m in ReductionMode]
    for item in values:
        name, sep, mode = item.partition("=")
        if not sep or mode not in choices:
            raise click.BadParameter(
                f"Expected VARIABLE=MODE with MODE in {choices}, got '{item}'"
            )
        modes[name] = mode
    return modes


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, debug: bool) -> None:
    """gridregime - cluster gridded datasets into representative regimes."""
    setup_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("input_path", type=click.Path(exists=True))
@click.option(
    "-o", "--output",
    type=click.Path(),
    default="./output",
    help="Output directory for result tables",
)
@click.option(
    "-c", "--config",
    type=click.Path(exists=True),
    default=None,
    help="Path to config file",
)
@click.option("-v", "--variable", "variables", multiple=True, help="Variable to include (repeatable)")
@click.option("-u", "--unit-axis", default=None, help="Dimension enumerating reduction units")
@click.option(
    "-r", "--reduce", "modes",
    multiple=True,
    help="Reduction mode as VARIABLE=MODE (raw-scalar, mean, variance, min, max)",
)
@click.option("-k", "--k", "fixed_k", type=int, default=None, help="Fixed number of clusters")
@click.option(
    "--k-range",
    type=(int, int),
    default=None,
    help="Inclusive range of cluster counts to sweep",
)
@click.option("--chunk-size", type=int, default=None, help="Units per chunk")
@click.option("--max-iterations", type=int, default=None, help="Iteration cap per fit")
@click.option("--seed", type=int, default=None, help="Seed for centroid initialization")
@click.option("--workers", type=int, default=None, help="Worker pool size")
@click.option("--normalize/--no-normalize", default=None, help="Standardize features")
@click.option(
    "--norm-method",
    type=click.Choice(["probability", "minmax", "scale", "zscore"]),
    default=None,
    help="Normalization of the indices in the total score",
)
@click.pass_context
def run(
    ctx: click.Context,
    input_path: str,
    output: str,
    config: str | None,
    variables: tuple[str, ...],
    unit_axis: str | None,
    modes: tuple[str, ...],
    fixed_k: int | None,
    k_range: tuple[int, int] | None,
    chunk_size: int | None,
    max_iterations: int | None,
    seed: int | None,
    workers: int | None,
    normalize: bool | None,
    norm_method: str | None,
) -> None:
    """Cluster the reduction units of a gridded dataset.

    INPUT_PATH: netCDF file, or directory of .nc files.
    """
    debug = ctx.obj.get("debug", False)

    try:
        cfg = load_config(config)
        cfg = merge_cli_overrides(
            cfg,
            pipeline__variables=list(variables) or None,
            pipeline__unit_axis=unit_axis,
            pipeline__reduction_mode=_parse_modes(modes) or None,
            pipeline__candidate_k=fixed_k if fixed_k is not None else k_range,
            pipeline__chunk_size=chunk_size,
            pipeline__max_iterations=max_iterations,
            pipeline__seed=seed,
            pipeline__max_workers=workers,
            pipeline__normalize=normalize,
            pipeline__norm_method=norm_method,
        )
    except ValueError as e:
        console.print(f"[bold red]Configuration error:[/] {e}")
        sys.exit(1)

    output_dir = Path(output)
    output_dir.mkdir(parents=True, exist_ok=True)
    console.print(f"[bold blue]Clustering:[/] {input_path}")

    try:
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Extracting chunks...", total=None)

            def on_progress(completed: int, total: int) -> None:
                progress.update(task, completed=completed, total=total)

            result = GridRegimePipeline(config=cfg).run(input_path, on_progress=on_progress)

        _display_summary(result)
        _export_results(result, output_dir, cfg)
        console.print(f"\n[bold green]Done![/] Results saved to: {output_dir}")

    except ValueError as e:
        console.print(f"[bold red]Configuration error:[/] {e}")
        sys.exit(1)
    except GridRegimeError as e:
        console.print(f"[bold red]Run failed:[/] {e}")
        if debug:
            console.print_exception()
        sys.exit(1)


def _display_summary(result: PipelineResult) -> None:
    """Display run summary tables."""
    table = Table(title="Run Summary")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Source", result.metadata.source or "Unknown")
    table.add_row("Unit axis", result.metadata.unit_axis)
    table.add_row("Units", str(result.metadata.total_units))
    table.add_row("Features", ", ".join(result.metadata.feature_names))
    if result.metadata.constant_features:
        table.add_row("Constant features", ", ".join(result.metadata.constant_features))
    table.add_row("Selected k", str(result.table.k) if result.table.k else "-")
    for status, count in result.table.status_counts().items():
        table.add_row(status.value.capitalize(), str(count))
    if result.cancelled:
        table.add_row("Cancelled", "yes")
    console.print(table)

    if result.table.scores:
        score_table = Table(title="Candidate Scores")
        score_table.add_column("k", style="cyan")
        score_table.add_column("Validity", style="green")
        score_table.add_column("Silhouette", style="yellow")
        score_table.add_column("Total", style="magenta")
        score_table.add_column("SSE", style="red")
        for score in result.table.scores:
            if score.skipped:
                score_table.add_row(str(score.k), "skipped", "-", "-", "-")
                continue
            score_table.add_row(
                str(score.k),
                f"{score.validity:.3f}",
                f"{score.silhouette:.3f}" if score.silhouette is not None else "-",
                f"{score.total_score:.3f}" if score.total_score is not None else "-",
                f"{score.sse:.3f}" if score.sse is not None else "-",
            )
        console.print(score_table)


def _export_results(result: PipelineResult, output_dir: Path, config: Config) -> None:
    """Export result tables to files."""
    out = config.output
    table_path = write_table(result.table, output_dir / out.table_name, out.float_precision)
    console.print(f"  [dim]Assignments:[/] {table_path}")

    if out.summary_name and result.table.clusters:
        summary_path = write_cluster_summary(
            result.table, output_dir / out.summary_name, out.float_precision
        )
        console.print(f"  [dim]Clusters:[/] {summary_path}")

    if out.scores_name and result.table.scores:
        scores_path = write_candidate_scores(result.table, output_dir / out.scores_name)
        console.print(f"  [dim]Scores:[/] {scores_path}")

    unclustered = sum(
        n for status, n in result.table.status_counts().items()
        if status != UnitStatus.CLUSTERED
    )
    if unclustered:
        console.print(f"  [yellow]{unclustered} unit(s) unclustered[/]")


@cli.command()
@click.argument("input_path", type=click.Path(exists=True))
@click.option("--json", "as_json", is_flag=True, help="Print the structure as JSON")
def describe(input_path: str, as_json: bool) -> None:
    """Show dimensions and variables of a dataset."""
    try:
        with ArraySource.open(input_path) as source:
            info = source.describe()
    except GridRegimeError as e:
        console.print(f"[bold red]Error:[/] {e}")
        sys.exit(1)

    if as_json:
        console.print_json(json.dumps(info.model_dump(mode="json"), default=str))
        return

    dims = Table(title="Dimensions")
    dims.add_column("Name", style="cyan")
    dims.add_column("Length", style="green")
    dims.add_column("Range", style="yellow")
    for dim in info.dimensions:
        extent = f"{dim.coords[0]} .. {dim.coords[-1]}" if dim.coords else "-"
        dims.add_row(dim.name, str(dim.length), extent)
    console.print(dims)

    variables = Table(title="Variables")
    variables.add_column("Name", style="cyan")
    variables.add_column("Dimensions", style="green")
    variables.add_column("Shape", style="yellow")
    variables.add_column("Fill value", style="red")
    for var in info.variables:
        variables.add_row(
            var.name,
            ", ".join(var.dims),
            " x ".join(map(str, var.shape)),
            str(var.fill_value) if var.fill_value is not None else "-",
        )
    console.print(variables)


@cli.command()
@click.argument("input_path", type=click.Path(exists=True))
@click.option("-v", "--variable", required=True, help="Variable to probe")
@click.option(
    "-s", "--select", "selectors",
    multiple=True,
    help="Nearest-point selector as DIM=VALUE, e.g. lat=52.1 (repeatable)",
)
def probe(input_path: str, variable: str, selectors: tuple[str, ...]) -> None:
    """Summary statistics of a variable at the nearest grid point."""
    nearest = _parse_selectors(selectors)
    try:
        with ArraySource.open(input_path) as source:
            stats = source.probe(variable, **nearest)
    except GridRegimeError as e:
        console.print(f"[bold red]Error:[/] {e}")
        sys.exit(1)

    where = ", ".join(f"{k}={v}" for k, v in stats.selection.items()) or "all points"
    console.print(f"Statistics for variable '{stats.variable}' at {where}:")
    console.print(f"  Total data points retrieved: {stats.total_count}")
    console.print(f"  Finite data points: {stats.finite_count}")
    if stats.finite_count == 0:
        console.print("  No finite data points available to calculate statistics.")
        return
    console.print(f"  Mean:           {stats.mean:.4f}")
    console.print(f"  Std Deviation:  {stats.std:.4f}")
    console.print(f"  Minimum:        {stats.min:.4f}")
    console.print(f"  Maximum:        {stats.max:.4f}")


@cli.command()
@click.argument("input_path", type=click.Path(exists=True))
@click.argument("output", type=click.Path(), default="output.csv")
@click.option("-v", "--variable", required=True, help="Variable to extract")
@click.option("-u", "--unit-axis", default="time", help="Dimension of the series")
@click.option(
    "-s", "--select", "selectors",
    multiple=True,
    help="Nearest-point selector as DIM=VALUE, e.g. lon=4.3 (repeatable)",
)
def extract(
    input_path: str,
    output: str,
    variable: str,
    unit_axis: str,
    selectors: tuple[str, ...],
) -> None:
    """Write the series of a variable at the nearest grid point to CSV."""
    nearest = _parse_selectors(selectors)
    try:
        with ArraySource.open(input_path) as source:
            series = source.point_series(variable, unit_axis, **nearest)
    except GridRegimeError as e:
        console.print(f"[bold red]Error:[/] {e}")
        sys.exit(1)

    output_path = Path(output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    series.to_csv(output_path, index=False)
    console.print(f"Wrote {len(series)} rows to {output_path}")


@cli.command()
def version() -> None:
    """Show gridregime version information."""
    console.print(f"gridregime version {__version__}")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
