"""Shared fixtures: in-memory IPSWs, a range-capable HTTP mock and fake collaborators."""

from __future__ import annotations

import io
import plistlib
import zipfile
from pathlib import Path
from typing import Dict, List

import httpx
import pytest

from dscify.Errors import MountFailed

SYSTEM_OS_PATH = "images/os.dmg"
IMAGE_BYTES = b"DISKIMAGE-" * 200


def make_zip(entries: Dict[str, bytes], compression: int = zipfile.ZIP_STORED) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=compression) as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def make_manifest(path: str | None = SYSTEM_OS_PATH, fmt=plistlib.FMT_XML) -> bytes:
    info = {} if path is None else {"Path": path}
    manifest = {
        "BuildIdentities": [
            {
                "Manifest": {
                    "Cryptex1,SystemOS": {"Info": info},
                    "KernelCache": {"Info": {"Path": "kernelcache.release.iphone15"}},
                },
            },
        ],
        "ProductVersion": "17.0",
    }
    return plistlib.dumps(manifest, fmt=fmt)


def make_ipsw(manifest_path: str | None = SYSTEM_OS_PATH, image_path: str = SYSTEM_OS_PATH,
              image: bytes = IMAGE_BYTES) -> bytes:
    return make_zip({
        "BuildManifest.plist": make_manifest(manifest_path),
        "Firmware/all_flash/LLB.bin": b"llb" * 64,
        image_path: image,
    })


def flip_byte(data: bytes, needle: bytes, offset: int = 0) -> bytes:
    """Flip one byte inside the first occurrence of `needle`."""
    index = data.index(needle) + offset
    return data[:index] + bytes([data[index] ^ 0xFF]) + data[index + 1:]


CD_FLAGS = 8
CD_METHOD = 10


def patch_central_directory(data: bytes, name: str, field: int, mask: int) -> bytes:
    """XOR one byte of `name`'s central directory record at `field` with `mask`."""
    record = data.rindex(name.encode()) - 46
    assert data[record:record + 4] == b"PK\x01\x02"
    index = record + field
    return data[:index] + bytes([data[index] ^ mask]) + data[index + 1:]


def range_handler(data: bytes, log: List[httpx.Request]):
    """MockTransport handler serving `data` with HEAD and `Range: bytes=<start>-` support."""

    def handler(request: httpx.Request) -> httpx.Response:
        log.append(request)
        if request.method == "HEAD":
            return httpx.Response(200, headers={"Content-Length": str(len(data))})

        range_header = request.headers.get("Range")
        if range_header is None:
            return httpx.Response(200, content=data)
        start = int(range_header.removeprefix("bytes=").split("-")[0])
        return httpx.Response(
            206,
            headers={"Content-Range": f"bytes {start}-{len(data) - 1}/{len(data)}"},
            content=data[start:],
        )

    return handler


@pytest.fixture
def http_log() -> List[httpx.Request]:
    return []


@pytest.fixture
def range_client(http_log):
    """Factory returning an httpx.Client serving the given bytes."""
    clients = []

    def factory(data: bytes) -> httpx.Client:
        client = httpx.Client(transport=httpx.MockTransport(range_handler(data, http_log)))
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


class FakeMounter:
    """Records attach/detach calls instead of running hdiutil."""

    def __init__(self, attach_fails: bool = False, detach_ok: bool = True) -> None:
        self.attach_fails = attach_fails
        self.detach_ok = detach_ok
        self.calls: List[tuple] = []
        self.attached_bytes: bytes | None = None

    def attach(self, image: Path, mount_point: Path) -> None:
        self.calls.append(("attach", image, mount_point))
        self.attached_bytes = image.read_bytes()
        if self.attach_fails:
            raise MountFailed("hdiutil attach exited with 1")
        mount_point.mkdir()

    def detach(self, mount_point: Path) -> bool:
        self.calls.append(("detach", mount_point))
        if self.detach_ok:
            mount_point.rmdir()
        return self.detach_ok

    @property
    def detached(self) -> bool:
        return any(call[0] == "detach" for call in self.calls)


class FakeExtractor:
    """Plays back a list of (completed, total) callbacks, optionally failing afterwards."""

    def __init__(self, reports=((1, 4), (2, 4), (3, 6)), error: Exception | None = None) -> None:
        self.reports = list(reports)
        self.error = error
        self.calls: List[tuple] = []

    def extract(self, cache: Path, output: Path, progress=None) -> None:
        self.calls.append((cache, output))
        for completed, total in self.reports:
            if progress is not None:
                progress(completed, total)
        if self.error is not None:
            raise self.error


@pytest.fixture
def mounter() -> FakeMounter:
    return FakeMounter()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()
