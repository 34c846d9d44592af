"""dscify CLI entrypoint.

This module provides the `dscify` click group with three commands:

- `download`: fetch firmware metadata for every device from ipsw.me.
- `extract`: extract the dylibs of a dyld_shared_cache file.
- `extract-ipsw`: extract the dylibs of the SystemOS cache inside an IPSW,
  read from a local path or lazily from a URL.

Usage example (from shell):
    dscify extract-ipsw https://updates.cdn-apple.com/.../iPhone.ipsw symbols/

The commands delegate the actual work to `dscify.Pipeline`, so this module
focuses on user interaction, logging setup and progress rendering.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TaskProgressColumn,
)

from . import Download
from .ArchiveEngine import get_locator, is_remote
from .Errors import DscifyError
from .Extractor import load_extractor
from .Pipeline import ExtractionPipeline, extract_cache, prepare_destination
from .Progress import ProgressSnapshot

# Progress, logs and errors go to stderr so `download` output can be piped
console = Console(stderr=True)

path_type = click.Path(path_type=Path)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False, show_time=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _fail(error: DscifyError) -> None:
    if error.stage is not None:
        console.print(f"[red]Error during {error.stage}:[/red] {error}")
    else:
        console.print(f"[red]Error:[/red] {error}")
    sys.exit(1)


def _progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        MofNCompleteColumn(),
        console=console,
    )


class _ProgressRenderer:
    """Feeds ProgressSnapshots into a rich task, creating it on first use."""

    def __init__(self, progress: Progress, description: str) -> None:
        self.progress = progress
        self.description = description
        self.task = None

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        if self.task is None:
            self.task = self.progress.add_task(self.description, total=snapshot.total)
        # total may be revised mid-run; always take the latest one
        self.progress.update(self.task, total=snapshot.total, completed=snapshot.completed)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def cli(verbose: bool):
    """Extract symbols from dyld_shared_caches and IPSW files."""
    _configure_logging(verbose)


@cli.command()
@click.option("--output", "-o", type=path_type, default=None,
              help="Write the JSON to this file instead of stdout")
@click.option("--concurrency", "-j", type=click.IntRange(min=1),
              default=Download.DEFAULT_CONCURRENCY, show_default=True,
              help="Maximum number of concurrent requests")
def download(output: Path | None, concurrency: int):
    """Download the ipsw list from ipsw.me."""
    try:
        with console.status("Downloading firmware metadata..."):
            results = Download.download(concurrency=concurrency)
    except DscifyError as e:
        _fail(e)

    encoded = Download.dumps(results)
    if output is None:
        click.echo(encoded)
    else:
        output.write_text(encoded + "\n")
        console.print(f"Wrote metadata for {len(results)} devices to {output}")


@cli.command()
@click.option("--extractor", type=path_type, default=None, envvar="DSCIFY_EXTRACTOR",
              help="Path to dsc_extractor.bundle (default: from xcode-select)")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("dest_path", type=path_type)
def extract(extractor: Path | None, path: Path, dest_path: Path):
    """Extract symbols from a dyld_shared_cache."""
    try:
        native = load_extractor(extractor)
        prepare_destination(dest_path)

        console.print("Preparing...")
        with _progress() as progress:
            extract_cache(path, dest_path, native, observer=_ProgressRenderer(progress, "Extracting"))
    except DscifyError as e:
        _fail(e)

    console.print("Extraction complete.")


@cli.command(name="extract-ipsw")
@click.option("--extractor", type=path_type, default=None, envvar="DSCIFY_EXTRACTOR",
              help="Path to dsc_extractor.bundle (default: from xcode-select)")
@click.option("--scratch", type=click.Path(file_okay=False, path_type=Path), default=None,
              envvar="DSCIFY_SCRATCH",
              help="Directory for the temporary SystemOS image (default: DEST_PATH)")
@click.argument("source", type=str)
@click.argument("dest_path", type=path_type)
def extract_ipsw(extractor: Path | None, scratch: Path | None, source: str, dest_path: Path):
    """Extract symbols from an ipsw file or URL."""
    if not is_remote(source) and not Path(source).is_file():
        raise click.BadParameter(f"{source} is neither a URL nor an existing file", param_hint="SOURCE")

    try:
        native = load_extractor(extractor)
        prepare_destination(dest_path)

        with console.status("Probing archive..."):
            locator = get_locator(source)

        with locator, locator.source:
            with _progress() as progress:
                pipeline = ExtractionPipeline(
                    locator,
                    native,
                    scratch_root=scratch,
                    observer=_ProgressRenderer(progress, "Extracting"),
                    unarchive_observer=_ProgressRenderer(progress, "Unarchiving"),
                )
                pipeline.run(dest_path)
    except DscifyError as e:
        _fail(e)

    console.print("Extraction complete.")
