"""Open an IPSW from a path or URL.

`open_source` picks the SeekableSource backend for a location and
`get_locator` checks the leading signature before handing the source to
the ZIP locator.
"""

from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import urlparse

import httpx

from .Errors import MalformedArchive
from .FileIO import FileSource, RemoteSource, SeekableSource
from .ZipArchive import ZipArchiveLocator

logger = logging.getLogger(__name__)

# ZIP file signatures, from Wikipedia
SIGNATURES = {
    b"PK\x03\x04": "zip",
    b"PK\x05\x06": "zip",  # Empty archive
    b"PK\x07\x08": "zip",  # Spanned archive
}


def is_remote(location: str | Path) -> bool:
    return urlparse(str(location)).scheme in ("http", "https")


def open_source(location: str | Path, client: httpx.Client | None = None) -> SeekableSource:
    """Return a RemoteSource for http(s) URLs and a FileSource for anything else."""
    if is_remote(location):
        return RemoteSource(str(location), client=client)
    return FileSource(location)


def get_locator(location: str | Path | SeekableSource,
                client: httpx.Client | None = None) -> ZipArchiveLocator:
    """Open `location` and return a locator for the ZIP archive it contains.

    Raises:
        MalformedArchive: If the source does not start with a ZIP signature.
        UnknownLength: If a remote location does not report its length.
        TruncatedRead: If the signature cannot be read. The source is closed.
    """
    source = location if isinstance(location, SeekableSource) else open_source(location, client)
    try:
        source.seek(0)
        magic_bytes = source.read(4)
        source.seek(0)  # Reset current byte
    except Exception:
        source.close()
        raise
    for signature in SIGNATURES:
        if magic_bytes.startswith(signature):
            logger.debug("Detected ZIP signature %s", magic_bytes.hex().upper())
            return ZipArchiveLocator(source)

    source.close()
    raise MalformedArchive(f"Unknown file format with signature: {magic_bytes.hex().upper()}")
