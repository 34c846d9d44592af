"""Scenario tests for the IPSW extraction pipeline.

Each failure scenario checks three things: the stage the error is stamped
with, that nothing is left in scratch, and that the image was detached if
and only if it had been attached.
"""

from pathlib import Path

import pytest

from dscify.Errors import (
    CorruptArchive,
    DscifyError,
    ExtractorUnavailable,
    ImageNotInArchive,
    ImagePathNotFound,
    MalformedManifest,
    ManifestNotFound,
    MountFailed,
)
from dscify.FileIO import MemorySource
from dscify.Pipeline import (
    CACHE_PATH,
    IMAGE_NAME,
    ExtractionPipeline,
    PipelineStage,
    extract_cache,
    prepare_destination,
)
from dscify.ZipArchive import ZipArchiveLocator

from conftest import (
    CD_FLAGS,
    CD_METHOD,
    IMAGE_BYTES,
    SYSTEM_OS_PATH,
    FakeExtractor,
    FakeMounter,
    flip_byte,
    make_ipsw,
    make_zip,
    patch_central_directory,
)


def _locator(data: bytes) -> ZipArchiveLocator:
    return ZipArchiveLocator(MemorySource(data))


def _assert_no_scratch(root: Path) -> None:
    assert not list(root.glob(".dscify-*"))
    assert not list(root.rglob(IMAGE_NAME))


@pytest.fixture
def destination(tmp_path) -> Path:
    path = tmp_path / "out"
    prepare_destination(path)
    return path


def _run(data, destination, mounter, extractor, **kwargs):
    pipeline = ExtractionPipeline(_locator(data), extractor, mounter=mounter, **kwargs)
    return pipeline, pipeline.run(destination)


class TestSuccess:
    def test_runs_every_stage(self, destination, mounter, extractor):
        snapshots = []
        pipeline = ExtractionPipeline(_locator(make_ipsw()), extractor, mounter=mounter,
                                      observer=snapshots.append)
        state = pipeline.run(destination)

        assert state.stage is PipelineStage.CLEANED_UP
        assert mounter.attached_bytes == IMAGE_BYTES
        attach, detach = mounter.calls
        assert attach[0] == "attach" and attach[1].name == IMAGE_NAME
        assert detach == ("detach", attach[2])
        assert extractor.calls == [(attach[2] / CACHE_PATH, destination)]
        assert snapshots[-1].completed == snapshots[-1].total == 6
        _assert_no_scratch(destination)

    def test_progress_snapshots_keep_order(self, destination, mounter):
        snapshots = []
        extractor = FakeExtractor(reports=[(0, 10), (5, 10), (9, 20)])
        _run(make_ipsw(), destination, mounter, extractor, observer=snapshots.append)
        assert [(s.completed, s.total) for s in snapshots] == [(0, 10), (5, 10), (9, 20), (20, 20)]

    def test_unarchive_progress_reaches_image_size(self, destination, mounter, extractor):
        snapshots = []
        _run(make_ipsw(), destination, mounter, extractor, unarchive_observer=snapshots.append)
        assert snapshots[-1].completed == snapshots[-1].total == len(IMAGE_BYTES)

    def test_scratch_root_is_used(self, tmp_path, destination, mounter, extractor):
        scratch = tmp_path / "scratch"
        _run(make_ipsw(), destination, mounter, extractor, scratch_root=scratch)
        image = mounter.calls[0][1]
        assert image.parent.parent == scratch
        assert scratch.is_dir()
        _assert_no_scratch(scratch)

    def test_pipeline_can_be_reused(self, destination, mounter, extractor):
        pipeline = ExtractionPipeline(_locator(make_ipsw()), extractor, mounter=mounter)
        pipeline.run(destination)
        state = pipeline.run(destination)
        assert state.stage is PipelineStage.CLEANED_UP
        assert len(extractor.calls) == 2


class TestFailures:
    def _fail(self, data, destination, mounter, extractor, error, **kwargs):
        pipeline = ExtractionPipeline(_locator(data), extractor, mounter=mounter, **kwargs)
        with pytest.raises(error) as excinfo:
            pipeline.run(destination)
        _assert_no_scratch(destination)
        return excinfo.value

    def test_missing_manifest(self, destination, mounter, extractor):
        data = make_zip({SYSTEM_OS_PATH: IMAGE_BYTES})
        error = self._fail(data, destination, mounter, extractor, ManifestNotFound)
        assert error.stage is PipelineStage.MANIFEST_LOCATED
        assert mounter.calls == []

    def test_corrupt_manifest(self, destination, mounter, extractor):
        data = flip_byte(make_ipsw(), b"<key>BuildIdentities</key>", offset=6)
        error = self._fail(data, destination, mounter, extractor, CorruptArchive)
        assert error.stage is PipelineStage.MANIFEST_DECODED
        assert mounter.calls == []

    def test_malformed_manifest(self, destination, mounter, extractor):
        data = make_zip({"BuildManifest.plist": b"garbage", SYSTEM_OS_PATH: IMAGE_BYTES})
        error = self._fail(data, destination, mounter, extractor, MalformedManifest)
        assert error.stage is PipelineStage.MANIFEST_DECODED

    def test_image_path_not_in_manifest(self, destination, mounter, extractor):
        error = self._fail(make_ipsw(manifest_path=None), destination, mounter, extractor, ImagePathNotFound)
        assert error.stage is PipelineStage.IMAGE_PATH_RESOLVED
        assert mounter.calls == []

    def test_image_missing_from_archive(self, destination, mounter, extractor):
        data = make_ipsw(manifest_path="images/other.dmg")
        error = self._fail(data, destination, mounter, extractor, ImageNotInArchive)
        assert error.stage is PipelineStage.IMAGE_EXTRACTED
        assert mounter.calls == []

    def test_corrupt_image(self, destination, mounter, extractor):
        data = flip_byte(make_ipsw(), IMAGE_BYTES, offset=len(IMAGE_BYTES) // 2)
        error = self._fail(data, destination, mounter, extractor, CorruptArchive)
        assert error.stage is PipelineStage.IMAGE_EXTRACTED
        assert mounter.calls == []
        assert extractor.calls == []

    @pytest.mark.parametrize("field, mask", [(CD_FLAGS, 0x01), (CD_METHOD, 0x40)], ids=["encrypted", "method"])
    def test_damaged_image_header(self, destination, mounter, extractor, field, mask):
        data = patch_central_directory(make_ipsw(), SYSTEM_OS_PATH, field, mask)
        error = self._fail(data, destination, mounter, extractor, CorruptArchive)
        assert error.stage is PipelineStage.IMAGE_EXTRACTED
        assert mounter.calls == []

    def test_mount_failure_is_not_detached(self, destination, extractor):
        mounter = FakeMounter(attach_fails=True)
        error = self._fail(make_ipsw(), destination, mounter, extractor, MountFailed)
        assert error.stage is PipelineStage.MOUNTED
        assert [call[0] for call in mounter.calls] == ["attach"]
        assert extractor.calls == []

    def test_extractor_failure_still_detaches(self, destination, mounter):
        extractor = FakeExtractor(error=ExtractorUnavailable("extractor crashed"))
        error = self._fail(make_ipsw(), destination, mounter, extractor, ExtractorUnavailable)
        assert error.stage is PipelineStage.EXTRACTED
        assert [call[0] for call in mounter.calls] == ["attach", "detach"]

    def test_foreign_exception_still_detaches(self, destination, mounter):
        extractor = FakeExtractor(error=RuntimeError("boom"))
        self._fail(make_ipsw(), destination, mounter, extractor, RuntimeError)
        assert mounter.detached

    def test_missing_extractor_fails_before_anything_else(self, tmp_path, destination, mounter):
        error = self._fail(make_ipsw(), destination, mounter, None, ExtractorUnavailable,
                           extractor_path=tmp_path / "missing.bundle")
        assert error.stage is PipelineStage.INIT
        assert mounter.calls == []

    def test_failed_detach_keeps_original_error_and_scratch(self, destination):
        mounter = FakeMounter(detach_ok=False)
        extractor = FakeExtractor(error=ExtractorUnavailable("extractor crashed"))
        pipeline = ExtractionPipeline(_locator(make_ipsw()), extractor, mounter=mounter)

        with pytest.raises(ExtractorUnavailable):
            pipeline.run(destination)

        # The mount point is still attached, so the scratch directory stays
        assert pipeline.state.scratch_dir.is_dir()
        assert not pipeline.state.image_path.exists()

    def test_errors_carry_a_reason(self, destination, mounter, extractor):
        error = self._fail(make_zip({}), destination, mounter, extractor, DscifyError)
        assert error.reason == "ManifestNotFound"


class TestExtractCache:
    def test_extracts_from_disk(self, tmp_path, extractor):
        cache = tmp_path / "dyld_shared_cache_arm64e"
        cache.write_bytes(b"dyld")
        snapshots = []
        final = extract_cache(cache, tmp_path / "out", extractor, observer=snapshots.append)
        assert extractor.calls == [(cache, tmp_path / "out")]
        assert final.completed == final.total == 6
        assert snapshots[-1] == final

    def test_prepare_destination_empties_directory(self, tmp_path):
        destination = tmp_path / "out"
        (destination / "stale").mkdir(parents=True)
        (destination / "stale" / "file").write_text("old")
        prepare_destination(destination)
        assert destination.is_dir()
        assert list(destination.iterdir()) == []
