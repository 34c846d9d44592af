"""IPSW extraction pipeline.

Runs the stages needed to get from an IPSW archive to extracted dylibs:

    locate BuildManifest.plist -> decode it -> resolve the SystemOS image
    path -> extract the image to scratch -> mount it -> run the native
    extractor on the cache inside the mount -> unmount -> remove scratch

Stages run strictly in order. Any failure aborts the run with a
`DscifyError` whose `stage` names the stage that failed, after the
cleanup that applies to what was already acquired: the image is detached
if and only if it was attached, and the scratch files are removed on
every path once they exist. Cleanup problems are logged and never replace
the original error.

There is no cancellation. An interrupt while mounting or extracting
skips cleanup; callers needing that must detach and remove the scratch
directory themselves.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from .DiskImage import HdiutilMounter, Mount, mounted
from .Errors import DscifyError, ImageNotInArchive, ManifestNotFound
from .Extractor import load_extractor
from .Manifest import MANIFEST_PATH, SYSTEM_OS_COMPONENT, Manifest
from .Progress import ProgressBridge, ProgressSnapshot
from .Protocols import ArchiveLocatorProtocol, DiskImageMounterProtocol, SymbolExtractor

logger = logging.getLogger(__name__)

# TODO: support caches for other architectures
CACHE_PATH = Path("System/Library/Caches/com.apple.dyld/dyld_shared_cache_arm64e")
IMAGE_NAME = "SystemOS.dmg"
MOUNT_NAME = "SystemOS"

ProgressObserver = Callable[[ProgressSnapshot], None]


class PipelineStage(Enum):
    INIT = "initialisation"
    MANIFEST_LOCATED = "manifest lookup"
    MANIFEST_DECODED = "manifest decoding"
    IMAGE_PATH_RESOLVED = "image path resolution"
    IMAGE_EXTRACTED = "image extraction"
    MOUNTED = "mounting"
    EXTRACTED = "cache extraction"
    UNMOUNTED = "unmounting"
    CLEANED_UP = "cleanup"

    def __str__(self) -> str:
        return self.value


@dataclass
class PipelineState:
    """Resources and progress of one pipeline run. Never shared between runs.

    Attributes:
        stage (PipelineStage): Last stage completed.
        scratch_dir (Path | None): Directory holding the image and mount point.
        image_path (Path | None): Where the SystemOS image is extracted.
        mount_point (Path | None): Where the image is attached.
        mount (Mount | None): Set once the image is attached.
    """
    stage: PipelineStage = PipelineStage.INIT
    scratch_dir: Path | None = None
    image_path: Path | None = None
    mount_point: Path | None = None
    mount: Mount | None = None


def prepare_destination(destination: Path) -> None:
    """Replace `destination` with an empty directory."""
    shutil.rmtree(destination, ignore_errors=True)
    destination.mkdir(parents=True, exist_ok=True)


def extract_cache(cache: Path, destination: Path, extractor: SymbolExtractor,
                  observer: ProgressObserver | None = None,
                  bridge_factory: Callable[[], ProgressBridge] = ProgressBridge) -> ProgressSnapshot:
    """Extract a dyld_shared_cache file straight from disk."""
    bridge = bridge_factory()
    return bridge.run(lambda report: extractor.extract(cache, destination, report), observer)


class ExtractionPipeline:
    """
    Extract the dylibs of the SystemOS cache contained in an IPSW.

    Attributes:
        locator (ArchiveLocatorProtocol): Reads the IPSW.
        extractor (SymbolExtractor | None): Native extractor run inside the mount.
            Loaded from `extractor_path` (or the Xcode default) when None.
        mounter (DiskImageMounterProtocol): Attaches the SystemOS image.
        scratch_root (Path | None): Parent of the scratch directory. Defaults
            to the destination directory.
        observer (callable|None): Receives extractor progress snapshots.
        unarchive_observer (callable|None): Receives byte progress while the
            image is written to scratch.
        state (PipelineState): State of the current or last run.
    """

    def __init__(self, locator: ArchiveLocatorProtocol, extractor: SymbolExtractor | None = None,
                 extractor_path: Path | None = None,
                 mounter: DiskImageMounterProtocol | None = None,
                 scratch_root: Path | None = None,
                 observer: ProgressObserver | None = None,
                 unarchive_observer: ProgressObserver | None = None,
                 component: str = SYSTEM_OS_COMPONENT,
                 cache_path: Path = CACHE_PATH,
                 bridge_factory: Callable[[], ProgressBridge] = ProgressBridge) -> None:
        self.locator = locator
        self.extractor = extractor
        self.extractor_path = extractor_path
        self.mounter = mounter or HdiutilMounter()
        self.scratch_root = scratch_root
        self.observer = observer
        self.unarchive_observer = unarchive_observer
        self.component = component
        self.cache_path = cache_path
        self.bridge_factory = bridge_factory
        self.state = PipelineState()

    @contextmanager
    def _stage(self, stage: PipelineStage) -> Iterator[None]:
        try:
            yield
        except DscifyError as e:
            if e.stage is None:
                e.stage = stage
            logger.debug("Failed during %s: %s", stage, e)
            raise
        self.state.stage = stage

    def run(self, destination: Path) -> PipelineState:
        """Run every stage, extracting the cache's dylibs into `destination`.

        Returns:
            PipelineState: The final state, at `CLEANED_UP`.

        Raises:
            DscifyError: The first failure, stamped with its stage.
        """
        self.state = state = PipelineState()

        with self._stage(PipelineStage.INIT):
            if self.extractor is None:
                self.extractor = load_extractor(self.extractor_path)

        with self._stage(PipelineStage.MANIFEST_LOCATED):
            manifest_entry = self.locator.locate(MANIFEST_PATH)
            if manifest_entry is None:
                raise ManifestNotFound()

        with self._stage(PipelineStage.MANIFEST_DECODED):
            manifest = Manifest.from_bytes(self.locator.read(manifest_entry))

        with self._stage(PipelineStage.IMAGE_PATH_RESOLVED):
            image_path = manifest.image_path(self.component)
            logger.debug("%s resolves to %s", self.component, image_path)

        try:
            with self._stage(PipelineStage.IMAGE_EXTRACTED):
                image_entry = self.locator.locate(image_path)
                if image_entry is None:
                    raise ImageNotInArchive(f"{image_path} was not found in archive")

                scratch_parent = self.scratch_root or destination
                scratch_parent.mkdir(parents=True, exist_ok=True)
                state.scratch_dir = Path(tempfile.mkdtemp(prefix=".dscify-", dir=scratch_parent))
                state.image_path = state.scratch_dir / IMAGE_NAME
                state.mount_point = state.scratch_dir / MOUNT_NAME

                logger.info("Unarchiving %s...", MOUNT_NAME)
                written = 0

                def unarchive_progress(count: int) -> None:
                    nonlocal written
                    written += count
                    if self.unarchive_observer is not None:
                        self.unarchive_observer(ProgressSnapshot(written, image_entry.size))

                checksum = self.locator.extract_to_disk(image_entry, state.image_path, unarchive_progress)
                self.locator.verify(image_entry, checksum)

            with ExitStack() as stack:
                with self._stage(PipelineStage.MOUNTED):
                    logger.info("Mounting...")
                    state.mount = stack.enter_context(
                        mounted(self.mounter, state.image_path, state.mount_point)
                    )

                with self._stage(PipelineStage.EXTRACTED):
                    logger.info("Expanding cache...")
                    cache = state.mount.mount_point / self.cache_path
                    bridge = self.bridge_factory()
                    bridge.run(lambda report: self.extractor.extract(cache, destination, report),
                               self.observer)

                logger.info("Unmounting %s...", MOUNT_NAME)
            state.stage = PipelineStage.UNMOUNTED
        finally:
            self._clean_up()

        state.stage = PipelineStage.CLEANED_UP
        return state

    def _clean_up(self) -> None:
        state = self.state
        if state.image_path is not None:
            try:
                state.image_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove %s: %s", state.image_path, e)

        if state.scratch_dir is None:
            return
        if state.mount is not None and not state.mount.detached:
            # Never delete through a volume that is still attached
            logger.warning("Leaving %s in place because %s is still mounted",
                           state.scratch_dir, state.mount_point)
            return
        shutil.rmtree(state.scratch_dir, ignore_errors=True)
