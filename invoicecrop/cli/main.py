"""
invoicecrop CLI - Command line interface for invoice cropping.

Usage:
    invoicecrop process <file> [options]
    invoicecrop serve [options]
    invoicecrop cleanup [options]
    invoicecrop config [options]
"""

import os
import sys
from pathlib import Path
from typing import Optional
import json

import typer
from loguru import logger
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from invoicecrop import __version__

# Create CLI app
app = typer.Typer(
    name="invoicecrop",
    help="invoicecrop - Locate and crop invoices from scanned pages",
    add_completion=False
)

console = Console()


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        console.print(f"invoicecrop version: {__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def _load(config: Optional[Path]):
    from invoicecrop.config import load_config, Config

    if config and config.exists():
        return load_config(str(config))
    return Config()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Show debug logging"
    ),
):
    """invoicecrop - Locate and crop invoices from scanned pages."""
    _configure_logging(verbose)


@app.command()
def process(
    file: Path = typer.Argument(..., help="Path to PDF or image file"),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o",
        help="Directory for cropped invoices (default: storage.output_dir)"
    ),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c",
        help="Path to YAML config file"
    ),
    padding: Optional[int] = typer.Option(
        None, "--padding", "-p",
        help="Crop padding in pixels"
    ),
    output_format: Optional[str] = typer.Option(
        None, "--format", "-f",
        help="Output format: jpg or png"
    ),
    workers: Optional[int] = typer.Option(
        None, "--workers", "-w",
        help="Pages processed in parallel"
    ),
    as_json: bool = typer.Option(
        False, "--json",
        help="Print the job record as JSON"
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q",
        help="Suppress progress output"
    ),
):
    """
    Find invoices in a document and crop each one out.

    Example:
        invoicecrop process scan.pdf -o ./crops --padding 20
    """
    if not file.exists():
        console.print(f"[red]Error:[/red] File not found: {file}")
        raise typer.Exit(1)

    cfg = _load(config)
    if output:
        cfg.storage.output_dir = str(output)

    if not cfg.vision.is_ready:
        console.print("[red]Error:[/red] Vision model not configured. Set ARK_API_KEY or vision.api_key.")
        raise typer.Exit(1)

    from invoicecrop.pipeline import InvoiceProcessor, ProcessingOptions

    if not quiet and not as_json:
        console.print(f"[blue]invoicecrop[/blue] Processing: {file}")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
        disable=quiet or as_json
    ) as progress:
        task = progress.add_task("Initializing...", total=100)

        def on_progress(message: str, pct: int) -> None:
            progress.update(task, description=message, completed=pct)

        processor = InvoiceProcessor(cfg)
        options = ProcessingOptions(
            padding=padding,
            output_format=output_format,
            workers=workers,
            progress_callback=on_progress,
        )

        try:
            job = processor.process(str(file), options)
        except (ValueError, FileNotFoundError) as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

    if as_json:
        print(json.dumps(job.model_dump(mode="json"), indent=2, ensure_ascii=False))
    elif not quiet:
        _print_job(job, cfg.storage.output_dir)

    if job.status.value != "COMPLETED":
        raise typer.Exit(1)


def _print_job(job, output_dir: str) -> None:
    console.print()
    if job.status.value == "COMPLETED":
        console.print("[green]✓ Success[/green]")
    else:
        console.print(f"[red]✗ Failed:[/red] {job.error}")

    console.print(f"  Job ID: {job.job_id}")
    console.print(f"  Pages: {job.pages_completed}/{job.total_pages}")
    console.print(f"  Invoices cropped: {job.total_regions}")
    if job.processing_time_seconds is not None:
        console.print(f"  Processing time: {job.processing_time_seconds:.2f}s")
    console.print(f"  Output dir: {output_dir}")

    artifacts = job.artifacts()
    if artifacts:
        console.print()
        table = Table(title="Cropped Invoices")
        table.add_column("Page", justify="right")
        table.add_column("#", justify="right")
        table.add_column("Label", style="cyan")
        table.add_column("BBox", style="white")
        table.add_column("Confidence", justify="right")
        table.add_column("File", style="yellow")

        for a in artifacts:
            conf_color = "green" if a.confidence >= 0.8 else "yellow" if a.confidence >= 0.5 else "red"
            flags = " (clamped)" if a.corrected else ""
            table.add_row(
                str(a.page),
                str(a.index),
                a.label or "-",
                f"{a.bbox}{flags}",
                f"[{conf_color}]{a.confidence:.2f}[/{conf_color}]",
                a.artifact_id,
            )
        console.print(table)

    for result in job.ordered_results():
        for warning in result.warnings[:5]:
            console.print(f"  [yellow]⚠[/yellow] page {result.page}: {warning}")


@app.command()
def serve(
    host: Optional[str] = typer.Option(
        None, "--host", "-h",
        help="Host to bind to (default: server.host)"
    ),
    port: Optional[int] = typer.Option(
        None, "--port", "-p",
        help="Port to listen on (default: server.port)"
    ),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c",
        help="Path to YAML config file"
    ),
    reload: bool = typer.Option(
        False, "--reload",
        help="Enable auto-reload (development)"
    ),
):
    """
    Start the invoicecrop API server.

    Jobs live in process memory, so the server always runs one worker process.

    Example:
        invoicecrop serve --port 8080
    """
    cfg = _load(config)
    host = host or cfg.server.host
    port = port or cfg.server.port

    console.print(f"[blue]invoicecrop[/blue] Starting API server on {host}:{port}")

    # Set config path in environment for the app lifespan
    if config:
        os.environ["INVOICECROP_CONFIG"] = str(config)

    import uvicorn

    uvicorn.run(
        "invoicecrop.api.server:app",
        host=host,
        port=port,
        reload=reload,
        workers=1
    )


@app.command()
def cleanup(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c",
        help="Path to YAML config file"
    ),
    retention_hours: Optional[float] = typer.Option(
        None, "--retention-hours", "-r",
        help="Delete files older than this (default: storage.retention_hours)"
    ),
):
    """
    Delete expired uploads and temp files.

    Example:
        invoicecrop cleanup --retention-hours 12
    """
    from invoicecrop.io.cleanup import cleanup_expired_files

    cfg = _load(config)
    hours = cfg.storage.retention_hours if retention_hours is None else retention_hours

    result = cleanup_expired_files(
        [cfg.storage.upload_dir, cfg.storage.temp_dir],
        retention_hours=hours,
    )

    console.print(
        f"[green]Cleanup complete:[/green] {result.deleted_count} files deleted, "
        f"{result.deleted_mb:.1f} MB freed"
    )
    if result.failed:
        console.print(f"[yellow]{len(result.failed)} file(s) could not be removed[/yellow]")
        raise typer.Exit(1)


@app.command("config")
def config_cmd(
    show: bool = typer.Option(
        False, "--show", "-s",
        help="Show current configuration"
    ),
    init: bool = typer.Option(
        False, "--init", "-i",
        help="Write a config file with default values"
    ),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c",
        help="Path to YAML config file to show"
    ),
    output: Path = typer.Option(
        Path("config.yaml"), "--output", "-o",
        help="Output path for --init"
    ),
):
    """
    Configuration management.

    Example:
        invoicecrop config --init -o config.yaml
        invoicecrop config --show
    """
    from invoicecrop.config import Config, save_config

    if show:
        cfg = _load(config)

        table = Table(title="Current Configuration")
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="white")

        table.add_row("Workers", str(cfg.runtime.workers))
        table.add_row("Max concurrent model calls", str(cfg.rate_limit.max_concurrent_calls))
        table.add_row("Min call interval (s)", str(cfg.rate_limit.min_interval_seconds))
        table.add_row("PDF DPI", str(cfg.pdf.dpi))
        table.add_row("PDF Max Pages", str(cfg.pdf.max_pages))
        table.add_row("Crop padding", str(cfg.crop.padding))
        table.add_row("Output format", cfg.crop.output_format)
        table.add_row("Vision model", cfg.vision.model)
        table.add_row("Vision base URL", cfg.vision.base_url)
        table.add_row("API key set", "yes" if cfg.vision.api_key else "no")
        table.add_row("Output Dir", cfg.storage.output_dir)
        table.add_row("Upload Dir", cfg.storage.upload_dir)
        table.add_row("Retention (h)", str(cfg.storage.retention_hours))

        console.print(table)

    elif init:
        if output.exists():
            console.print(f"[red]Error:[/red] {output} already exists")
            raise typer.Exit(1)
        save_config(Config(), str(output))
        console.print(f"[green]✓[/green] Config written to: {output}")

    else:
        console.print("Use --show to display config or --init to create a config file")


if __name__ == "__main__":
    app()
