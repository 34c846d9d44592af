"""Disk image mounting through hdiutil."""

from __future__ import annotations

import logging
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .Errors import MountFailed
from .Protocols import DiskImageMounterProtocol

logger = logging.getLogger(__name__)

HDIUTIL = "/usr/bin/hdiutil"


class HdiutilMounter(DiskImageMounterProtocol):
    """
    Attach and detach disk images with `hdiutil`.

    Attributes:
        executable (str): Path of the hdiutil binary.
    """

    def __init__(self, executable: str = HDIUTIL) -> None:
        self.executable = executable

    def attach(self, image: Path, mount_point: Path) -> None:
        """Attach `image` at `mount_point` without showing it in Finder.

        Raises:
            MountFailed: If hdiutil cannot be run or exits non-zero.
        """
        command = [self.executable, "attach", str(image), "-mountpoint", str(mount_point), "-nobrowse"]
        logger.debug("Running %s", " ".join(command))
        try:
            result = subprocess.run(command, capture_output=True, text=True)
        except OSError as e:
            raise MountFailed(f"Could not run {self.executable}: {e}") from e
        if result.returncode != 0:
            raise MountFailed(
                f"hdiutil attach exited with {result.returncode}: {result.stderr.strip()}"
            )

    def detach(self, mount_point: Path) -> bool:
        """Detach `mount_point`. Failures are logged, never raised.

        Returns:
            bool: True if hdiutil reported success.
        """
        command = [self.executable, "detach", str(mount_point)]
        logger.debug("Running %s", " ".join(command))
        try:
            result = subprocess.run(command, capture_output=True, text=True)
        except OSError as e:
            logger.warning("Could not run %s: %s", self.executable, e)
            return False
        if result.returncode != 0:
            logger.warning("hdiutil detach %s exited with %d: %s",
                           mount_point, result.returncode, result.stderr.strip())
            return False
        return True


@dataclass
class Mount:
    """An attached image. `detached` is set once the mount scope has ended."""
    mount_point: Path
    detached: bool = False


@contextmanager
def mounted(mounter: DiskImageMounterProtocol, image: Path, mount_point: Path) -> Iterator[Mount]:
    """Attach `image` for the duration of the block.

    Detach runs on every way out of the block once attach has succeeded.
    A failing detach is logged and never replaces an error raised by the
    block. If attach fails nothing is detached.
    """
    mounter.attach(image, mount_point)
    mount = Mount(mount_point)
    try:
        yield mount
    finally:
        try:
            mount.detached = mounter.detach(mount_point)
        except Exception:
            logger.exception("Detaching %s failed", mount_point)
        if not mount.detached:
            logger.warning("%s is still mounted", mount_point)
