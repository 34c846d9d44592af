"""dscify package initializer.

This module provides the package-level public surface of `dscify`:

- __version__: Package version string.
- get_locator: Open an IPSW (path or URL) and return a ZIP locator for it.
- MemorySource / FileSource / RemoteSource: seekable byte sources.
- ExtractionPipeline: The IPSW -> dylibs pipeline.
- ProgressBridge: Turns extractor callbacks into progress snapshots.
- cli: The CLI entrypoint function (click group).

Importing the package is cheap: network I/O, archive probing and loading
the native extractor only happen when the exported functions are called.

Example:
    from dscify import ExtractionPipeline, get_locator
    with get_locator("https://example.com/firmware.ipsw") as locator:
        ExtractionPipeline(locator).run(Path("symbols"))
"""

# Public version string
__version__ = "0.1.0"

from .ArchiveEngine import get_locator, open_source
from .Errors import DscifyError
from .FileIO import FileSource, MemorySource, RemoteSource, SeekableSource
from .Pipeline import ExtractionPipeline, PipelineStage, extract_cache
from .Progress import ProgressBridge, ProgressSnapshot
from .ZipArchive import ArchiveEntry, ZipArchiveLocator

# Expose the CLI command object so callers can reuse or register it in other tools.
from .CLI import cli

__all__ = [
    "__version__",
    "get_locator",
    "open_source",
    "DscifyError",
    "SeekableSource",
    "MemorySource",
    "FileSource",
    "RemoteSource",
    "ArchiveEntry",
    "ZipArchiveLocator",
    "ExtractionPipeline",
    "PipelineStage",
    "extract_cache",
    "ProgressBridge",
    "ProgressSnapshot",
    "cli",
]
