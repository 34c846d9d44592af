"""ZIP archive locator.

Provides a small adapter around the standard library `zipfile.ZipFile`
class to find and extract single entries of a ZIP archive. The adapter
accepts any `dscify.FileIO.SeekableSource`, so an IPSW hosted over HTTP
can be read without downloading the whole file: `zipfile` only touches
the central directory and the bytes of the entry being extracted.
"""

from __future__ import annotations

import io
import logging
import os
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List

from .Errors import CorruptArchive, MalformedArchive
from .FileIO import DEFAULT_CHUNK_SIZE, SeekableSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveEntry:
    """An entry read from the archive's central directory.

    Attributes:
        path (str): Entry name within the archive.
        size (int): Uncompressed size in bytes.
        compressed_size (int): Size of the stored data in bytes.
        checksum (int): CRC-32 advertised by the archive.
    """
    path: str
    size: int
    compressed_size: int
    checksum: int

    @classmethod
    def from_zipinfo(cls, info: zipfile.ZipInfo) -> "ArchiveEntry":
        return cls(
            path=info.filename,
            size=info.file_size,
            compressed_size=info.compress_size,
            checksum=info.CRC,
        )


class ZipArchiveLocator:
    """
    Locate and extract single entries of a ZIP archive.

    The central directory is only parsed the first time an entry is looked
    up, and extracting one entry never reads any of its siblings.

    Attributes:
        source (SeekableSource): The bytes of the archive.
    """

    def __init__(self, source: SeekableSource) -> None:
        self.source = source
        self._archive: zipfile.ZipFile | None = None
        self._entries: Dict[str, ArchiveEntry] | None = None

    def __enter__(self) -> "ZipArchiveLocator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def archive(self) -> zipfile.ZipFile:
        """The underlying ZipFile, opened on first access.

        Raises:
            MalformedArchive: If the source does not contain a readable ZIP archive.
        """
        if self._archive is None:
            try:
                self._archive = zipfile.ZipFile(self.source)
            except (zipfile.BadZipFile, OSError) as e:
                raise MalformedArchive(f"Not a readable ZIP archive: {e}") from e
        return self._archive

    def _index(self) -> Dict[str, ArchiveEntry]:
        if self._entries is None:
            self._entries = {
                info.filename: ArchiveEntry.from_zipinfo(info)
                for info in self.archive.infolist()
                if not info.is_dir()
            }
            logger.debug("Central directory lists %d entries", len(self._entries))
        return self._entries

    def entries(self) -> List[ArchiveEntry]:
        """Return the regular-file entries of the archive."""
        return list(self._index().values())

    def locate(self, path: str) -> ArchiveEntry | None:
        """Find the entry whose name is exactly `path`.

        Returns:
            ArchiveEntry | None: The entry, or None if the archive has no such entry.

        Raises:
            MalformedArchive: If the archive itself cannot be read.
        """
        return self._index().get(path)

    def extract(self, entry: ArchiveEntry, sink: BinaryIO,
                progress_callback: Callable[[int], None] | None = None) -> int:
        """
        Stream the decompressed bytes of `entry` into `sink`.

        Args:
            entry (ArchiveEntry): The entry to extract.
            sink (BinaryIO): Writable binary stream receiving the bytes.
            progress_callback (callable|None): Called with the number of bytes
                written after each chunk.

        Returns:
            int: CRC-32 of the bytes that were written.

        Raises:
            CorruptArchive: If decompression fails, zipfile detects a bad CRC, or
                the entry header claims encryption or an unsupported method.
        """
        checksum = 0
        try:
            with self.archive.open(entry.path) as source:
                # The flow is SeekableSource -> ZipArchiveLocator -> sink
                while chunk := source.read(DEFAULT_CHUNK_SIZE):
                    checksum = zlib.crc32(chunk, checksum)
                    sink.write(chunk)
                    if progress_callback:
                        progress_callback(len(chunk))
        except (zipfile.BadZipFile, zlib.error, EOFError, RuntimeError, NotImplementedError) as e:
            # zipfile raises RuntimeError for entries flagged as encrypted and
            # NotImplementedError for unknown compression methods
            raise CorruptArchive(f"Failed to extract {entry.path}: {e}") from e
        finally:
            # Do not hold an open-ended range response past this entry
            self.source.release()
        return checksum

    def extract_to_disk(self, entry: ArchiveEntry, target_path: Path,
                        progress_callback: Callable[[int], None] | None = None) -> int:
        """Extract `entry` to `target_path`, creating parent directories as needed.

        Returns:
            int: CRC-32 of the written file.
        """
        os.makedirs(os.path.dirname(os.path.abspath(target_path)), exist_ok=True)
        with open(target_path, "wb") as target_file:
            return self.extract(entry, target_file, progress_callback)

    def verify(self, entry: ArchiveEntry, checksum: int) -> None:
        """Compare an extraction checksum with the one the archive advertises.

        Raises:
            CorruptArchive: On mismatch.
        """
        if checksum != entry.checksum:
            raise CorruptArchive(
                f"Bad checksum for {entry.path}: "
                f"expected {entry.checksum:08x}, got {checksum:08x}"
            )

    def read(self, entry: ArchiveEntry) -> bytes:
        """Extract `entry` into memory and verify it."""
        sink = io.BytesIO()
        self.verify(entry, self.extract(entry, sink))
        return sink.getvalue()

    def close(self) -> None:
        if self._archive is not None:
            self._archive.close()
            self._archive = None
