#!/usr/bin/env python3
"""aw3d30-parquet CLI - Convert AW3D30 elevation tiles to Parquet

Each 1x1 degree tile becomes one Parquet file with latitude, longitude and
elevation columns. Reruns skip tiles that are already downloaded or converted.
"""

import json
import logging
import sys
from pathlib import Path

import click
import pyarrow.parquet as pq
from rich.console import Console
from rich.table import Table

from . import __version__, catalog
from .config import COMPRESSIONS, PipelineConfig, RetryPolicy
from .errors import RunAborted, UnknownRegion
from .pipeline import RunReport, convert_region
from .validate import RawValidation, validate_output

# Exit status for an unknown region or a run stopped by a systemic failure
EXIT_ABORTED = 2


def setup_logging(verbose: bool):
    """Configure logging based on verbosity."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(threadName)s %(message)s",
    )


def print_report(console: Console, report: RunReport):
    summary = Table(title=f"Region {report.region}", show_header=False)
    summary.add_column("Property", style="cyan")
    summary.add_column("Value")
    summary.add_row("Tiles", str(report.total))
    summary.add_row("Converted", str(report.converted))
    summary.add_row("Failed", str(report.failed))
    summary.add_row("Incomplete", str(report.incomplete))
    summary.add_row("Downloads performed", str(report.downloads_performed))
    summary.add_row("Conversions performed", str(report.conversions_performed))
    console.print(summary)

    failures = report.failures
    if failures:
        failure_table = Table(title=f"Failures ({len(failures)})")
        failure_table.add_column("Tile", style="cyan")
        failure_table.add_column("Error")
        failure_table.add_column("Message", style="dim")
        for outcome in failures:
            failure_table.add_row(outcome.tile_id, outcome.error_kind, outcome.message)
        console.print(failure_table)


@click.group()
@click.version_option(__version__, package_name="aw3d30-parquet")
def cli():
    """aw3d30-parquet - Convert AW3D30 elevation tiles to Parquet.

    \b
    Examples:
        aw3d30-parquet regions
        aw3d30-parquet tiles netherlands
        aw3d30-parquet convert netherlands tif parquet
        aw3d30-parquet inspect parquet/ALPSMLC30_N052E004_DSM.parquet
    """
    pass


@cli.command("regions")
def regions_command():
    """List the supported regions and their tile counts."""
    console = Console()
    table = Table(title="Regions")
    table.add_column("Name", style="cyan")
    table.add_column("Tiles", justify="right")
    table.add_column("Boxes (S, W, N, E)", style="dim")
    for name in catalog.region_names():
        boxes = "; ".join(", ".join(map(str, box)) for box in catalog.REGIONS[name])
        table.add_row(name, str(len(catalog.resolve(name))), boxes)
    console.print(table)


@cli.command("tiles")
@click.argument("region")
@click.option("--urls", is_flag=True, help="Print source URLs instead of identifiers")
def tiles_command(region: str, urls: bool):
    """Print the tiles of REGION, one per line, in catalog order."""
    try:
        tiles = catalog.resolve(region)
    except UnknownRegion as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ABORTED)
    for tile in tiles:
        click.echo(tile.url if urls else tile.id)


@cli.command("convert")
@click.argument("region")
@click.argument("raw_dir", type=click.Path(file_okay=False, path_type=Path))
@click.argument("output_dir", type=click.Path(file_okay=False, path_type=Path))
@click.option(
    "--download-workers",
    type=click.IntRange(min=1),
    default=16,
    help="Simultaneous downloads (default: 16)",
)
@click.option(
    "--convert-workers",
    type=click.IntRange(min=1),
    default=None,
    help="Simultaneous conversions (default: CPU count, at most 4)",
)
@click.option(
    "--queue-size",
    type=click.IntRange(min=1),
    default=None,
    help="Downloaded tiles allowed to wait for conversion (default: 2x convert workers)",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=5,
    help="Retries for transient network failures (default: 5)",
)
@click.option(
    "--backoff",
    type=click.FloatRange(min=0),
    default=1.0,
    help="Initial retry delay in seconds, doubled per attempt (default: 1.0)",
)
@click.option(
    "--max-backoff",
    type=click.FloatRange(min=0),
    default=60.0,
    help="Longest retry delay in seconds (default: 60)",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=120.0,
    help="HTTP timeout in seconds (default: 120)",
)
@click.option(
    "--raw-validation",
    type=click.Choice([mode.value for mode in RawValidation]),
    default=RawValidation.SIZE.value,
    help="Check applied to raw tiles already on disk (default: size)",
)
@click.option(
    "--compression",
    type=click.Choice(COMPRESSIONS),
    default="zstd",
    help="Parquet compression (default: zstd)",
)
@click.option(
    "--rows-per-block",
    type=click.IntRange(min=1),
    default=256,
    help="Raster rows decoded at a time (default: 256)",
)
@click.option(
    "--row-group-rows",
    type=click.IntRange(min=1),
    default=1024 * 1024,
    help="Rows per Parquet row group (default: 1048576)",
)
@click.option(
    "--base-url",
    default=catalog.DEFAULT_BASE_URL,
    show_default=True,
    help="Location of the ALPSMLC30_*_DSM.tif objects",
)
@click.option(
    "--only-available/--all-cells",
    default=True,
    help="List the bucket first and skip cells with no upstream tile (default), or request every cell",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
def convert_command(
    region: str,
    raw_dir: Path,
    output_dir: Path,
    download_workers: int,
    convert_workers: int | None,
    queue_size: int | None,
    max_retries: int,
    backoff: float,
    max_backoff: float,
    timeout: float,
    raw_validation: str,
    compression: str,
    rows_per_block: int,
    row_group_rows: int,
    base_url: str,
    only_available: bool,
    verbose: bool,
):
    """Download and convert every tile of REGION.

    Raw GeoTIFFs are kept in RAW_DIR, Parquet files are written to
    OUTPUT_DIR. Exits 0 only when every tile was converted.

    \b
    Examples:
        aw3d30-parquet convert netherlands tif parquet
        aw3d30-parquet convert global tif parquet -v
    """
    setup_logging(verbose)
    console = Console(stderr=True)

    options = dict(
        raw_dir=raw_dir,
        output_dir=output_dir,
        base_url=base_url,
        only_available=only_available,
        download_workers=download_workers,
        retry=RetryPolicy(max_retries, backoff, max_backoff),
        timeout=timeout,
        raw_validation=RawValidation(raw_validation),
        queue_size=queue_size,
        rows_per_block=rows_per_block,
        row_group_rows=row_group_rows,
        compression=compression,
    )
    if convert_workers is not None:
        options["convert_workers"] = convert_workers
    config = PipelineConfig(**options)

    try:
        report = convert_region(region, config)
    except UnknownRegion as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ABORTED)
    except RunAborted as e:
        print_report(console, e.report)
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ABORTED)

    print_report(console, report)
    sys.exit(report.exit_code)


@cli.command("inspect")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--head", type=click.IntRange(min=0), default=5, help="Rows to show (default: 5)")
def inspect_command(file: Path, head: int):
    """Inspect a converted tile and display its metadata.

    FILE is the path to a tile Parquet file.
    """
    console = Console()
    result = validate_output(file)
    if result.metadata is None and not result.stats:
        click.echo(f"Error: {'; '.join(result.errors)}", err=True)
        sys.exit(1)

    console.print(f"\n[bold blue]Tile File:[/bold blue] {file.name}")
    console.print(f"[dim]Path: {file.absolute()}[/dim]\n")

    info_table = Table(title="General Information", show_header=False)
    info_table.add_column("Property", style="cyan")
    info_table.add_column("Value")
    info_table.add_row("File Size", f"{result.stats['file_size'] / (1024 * 1024):.2f} MB")
    info_table.add_row("Rows", str(result.stats["row_count"]))
    info_table.add_row("Row Groups", str(result.stats["row_groups"]))
    for key, value in (result.metadata or {}).items():
        info_table.add_row(key.replace("_", " ").title(), str(value))
    console.print(info_table)

    if head:
        rows = pq.ParquetFile(file).iter_batches(batch_size=head)
        batch = next(rows, None)
        if batch is not None:
            sample_table = Table(title=f"First {batch.num_rows} rows")
            for name in batch.schema.names:
                sample_table.add_column(name)
            for row in batch.to_pylist():
                sample_table.add_row(*(str(value) for value in row.values()))
            console.print(sample_table)


@cli.command("validate")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "json_output", is_flag=True, help="Output results as JSON")
def validate_command(file: Path, json_output: bool):
    """Validate a converted tile file.

    Exits 0 when FILE is a complete tile output, 1 otherwise.
    """
    result = validate_output(file)
    if json_output:
        output = {
            "valid": result.is_valid,
            "errors": result.errors,
            "warnings": result.warnings,
            "stats": result.stats,
            "metadata": result.metadata,
        }
        click.echo(json.dumps(output, indent=2, default=str))
    else:
        click.echo(str(result))
    sys.exit(0 if result.is_valid else 1)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
