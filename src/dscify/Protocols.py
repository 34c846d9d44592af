"""Protocol definitions for the pipeline's collaborators.

This module declares the interfaces the extraction pipeline talks to:
the archive locator, the disk image mounter and the symbol extractor.
The pipeline only depends on these protocols, so tests and other
platforms can swap in their own implementations.
"""

from pathlib import Path
from typing import BinaryIO, Callable, List, Protocol

from .Progress import ProgressCallback
from .ZipArchive import ArchiveEntry


class ArchiveLocatorProtocol(Protocol):
    """Protocol describing how the pipeline reads an archive.

    Implementations must be able to extract a single entry without
    materialising its siblings.
    """

    def entries(self) -> List[ArchiveEntry]:
        """Return the regular-file entries of the archive."""
        ...

    def locate(self, path: str) -> ArchiveEntry | None:
        """Return the entry named exactly `path`, or None if it is absent.

        Raises:
            MalformedArchive: If the archive itself cannot be read, so callers
            can tell a broken archive from a missing entry.
        """
        ...

    def extract(self, entry: ArchiveEntry, sink: BinaryIO,
                progress_callback: Callable[[int], None] | None = None) -> int:
        """Stream the entry into `sink` and return the CRC-32 of what was written."""
        ...

    def extract_to_disk(self, entry: ArchiveEntry, target_path: Path,
                        progress_callback: Callable[[int], None] | None = None) -> int:
        """Extract the entry to a file and return its CRC-32."""
        ...

    def verify(self, entry: ArchiveEntry, checksum: int) -> None:
        """Raise CorruptArchive if `checksum` differs from the advertised one."""
        ...

    def read(self, entry: ArchiveEntry) -> bytes:
        """Extract and verify the entry in memory."""
        ...


class DiskImageMounterProtocol(Protocol):
    """Protocol describing the external mount capability."""

    def attach(self, image: Path, mount_point: Path) -> None:
        """Attach `image` at `mount_point`.

        Raises:
            MountFailed: If the image could not be attached.
        """
        ...

    def detach(self, mount_point: Path) -> bool:
        """Detach `mount_point`, returning False instead of raising on failure."""
        ...


class SymbolExtractor(Protocol):
    """Protocol describing the external dyld_shared_cache extractor.

    The call blocks until extraction is over and reports progress through
    `progress(completed, total)`, possibly from another thread. It does not
    report success or failure.
    """

    def extract(self, cache: Path, output: Path, progress: ProgressCallback | None = None) -> None:
        ...
