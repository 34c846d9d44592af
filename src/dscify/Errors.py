"""Error taxonomy for dscify.

Every failure that can terminate a run is a subclass of `DscifyError`.
None of them are retried inside the package; callers that want retries
have to add them themselves.

The pipeline stamps the stage it was in when the error happened onto
`DscifyError.stage`, so a single failed run can be reported as one
reason plus the stage at which it occurred.
"""

from __future__ import annotations

from typing import Any


class DscifyError(Exception):
    """Base class for all dscify errors.

    Attributes:
        stage (Any): The pipeline stage active when the error was raised,
            or None if it was raised outside a pipeline run.
    """

    def __init__(self, message: str = "", stage: Any = None) -> None:
        super().__init__(message or self.__class__.__doc__)
        self.stage = stage

    @property
    def reason(self) -> str:
        """Short machine-friendly name of the failure."""
        return self.__class__.__name__


class UnknownLength(DscifyError):
    """Remote resource did not report a definite content length."""


class TruncatedRead(DscifyError):
    """Remote resource delivered fewer bytes than expected."""


class CorruptArchive(DscifyError):
    """Archive entry failed its integrity check."""


class MalformedArchive(CorruptArchive):
    """Source is not a readable ZIP archive."""


class ManifestNotFound(DscifyError):
    """Invalid IPSW: could not locate BuildManifest.plist."""


class MalformedManifest(DscifyError):
    """BuildManifest.plist could not be decoded."""


class ImagePathNotFound(DscifyError):
    """Could not find the SystemOS image path in the manifest."""


class ImageNotInArchive(DscifyError):
    """SystemOS image was not found in the archive."""


class MountFailed(DscifyError):
    """Disk image could not be attached."""


class ExtractorUnavailable(DscifyError):
    """Native cache extractor could not be resolved or loaded."""


class MetadataError(DscifyError):
    """Firmware metadata could not be downloaded or decoded."""
