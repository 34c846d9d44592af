"""Seekable byte sources.

Provides SeekableSource, an io.RawIOBase-compatible stream with a known
length, a cursor that is cheap to move, and a lazy byte stream that starts
at the cursor. Archive libraries such as `zipfile` can read from any of
the backends without knowing where the bytes actually live.

Classes:
    OffsetTrackingStream: Chunk iterator that reports consumed bytes back
        to its owning source.
    SeekableSource: Common cursor/read logic shared by all backends.
    MemorySource: Bytes held in memory.
    FileSource: A local file.
    RemoteSource: A remote file read through HTTP Range requests.

Notes:
    A source is not re-entrant. Streaming the same instance from two
    places at once leaves `offset` describing whichever stream delivered
    last; this is undefined behaviour and is not guarded against.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Iterator, Protocol

import httpx

from .Errors import TruncatedRead, UnknownLength

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 128 * 1024  # 128 KB
DEFAULT_HEADERS = {
    "User-Agent": "dscify/0.1",
    "Accept": "*/*",
    "Connection": "keep-alive",
}


class OffsetTracker(Protocol):
    """Anything whose offset must follow the bytes a stream delivers."""

    def advance(self, count: int) -> None: ...


class OffsetTrackingStream:
    """Single-pass iterator over byte chunks that keeps an owner's offset current.

    Iterating yields whole chunks. `read(size)` hands out exactly `size`
    bytes (fewer only at the end of the data) and keeps the remainder for
    the next call. Either way, the tracker is advanced by exactly the
    number of bytes that left the stream.

    Attributes:
        position (int): Absolute offset of the next byte this stream delivers.
    """

    def __init__(self, chunks: Iterator[bytes], tracker: OffsetTracker, start: int) -> None:
        self._chunks = chunks
        self._tracker = tracker
        self._pending = b""
        self.position = start
        self.closed = False

    def __iter__(self) -> "OffsetTrackingStream":
        return self

    def __next__(self) -> bytes:
        chunk = self._pending or self._next_chunk()
        self._pending = b""
        if not chunk:
            raise StopIteration
        self._deliver(len(chunk))
        return chunk

    def __enter__(self) -> "OffsetTrackingStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _next_chunk(self) -> bytes:
        # Skip empty chunks some transports emit between real ones
        for chunk in self._chunks:
            if chunk:
                return bytes(chunk)
        return b""

    def _deliver(self, count: int) -> None:
        self.position += count
        self._tracker.advance(count)

    def read(self, size: int = -1) -> bytes:
        """Read up to `size` bytes, or everything left if `size` is negative."""
        parts = []
        remaining = size
        while remaining != 0:
            chunk = self._pending or self._next_chunk()
            self._pending = b""
            if not chunk:
                break
            if 0 < remaining < len(chunk):
                chunk, self._pending = chunk[:remaining], chunk[remaining:]
            parts.append(chunk)
            if remaining > 0:
                remaining -= len(chunk)

        data = b"".join(parts)
        self._deliver(len(data))
        return data

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._pending = b""
        close = getattr(self._chunks, "close", None)
        if close is not None:
            close()


class SeekableSource(io.RawIOBase):
    """Read-only, seekable stream over a byte range of known length.

    Subclasses only implement `_open(start)`, which returns an iterator of
    chunks from `start` to the end of the data. Everything else (cursor
    bookkeeping, `read`, the file API used by `zipfile`) lives here.

    Attributes:
        length (int): Total number of bytes in the source.
        offset (int): Current cursor. Always within `0..length`.
    """

    _active: OffsetTrackingStream | None = None

    def __init__(self, length: int) -> None:
        super().__init__()
        self._length = length
        self._offset = 0
        self._active = None

    @property
    def length(self) -> int:
        return self._length

    @property
    def offset(self) -> int:
        return self._offset

    def advance(self, count: int) -> None:
        self._offset += count

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def writable(self) -> bool:
        return False

    def tell(self) -> int:
        return self._offset

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move the cursor. Never performs I/O.

        Positions past the end are clamped to `length`, so a following read
        or stream simply returns nothing.

        Raises:
            OSError: If the resulting position would be negative, matching
                what a real file does (and what `zipfile` expects).
        """
        if whence == io.SEEK_SET:
            target = offset
        elif whence == io.SEEK_CUR:
            target = self._offset + offset
        elif whence == io.SEEK_END:
            target = self._length + offset
        else:
            raise ValueError(f"Invalid whence: {whence}")

        if target < 0:
            raise OSError(f"Negative seek position {target}")
        self._offset = min(target, self._length)
        return self._offset

    def seek_to_end(self) -> int:
        return self.seek(0, io.SEEK_END)

    def stream(self, offset: int | None = None) -> OffsetTrackingStream:
        """Return a lazy stream of the bytes from `offset` to the end.

        `offset` defaults to the current cursor; when given, the cursor is
        moved there first. Each byte that leaves the stream advances
        `offset` by one, so seeks and reads interleaved with streaming stay
        consistent.
        """
        if offset is not None:
            self.seek(offset)
        return OffsetTrackingStream(self._open(self._offset), self, self._offset)

    def _open(self, start: int) -> Iterator[bytes]:
        raise NotImplementedError

    def read(self, size: int | None = -1) -> bytes:
        """Read up to `size` bytes from the current offset.

        Sequential reads continue the stream that is already open. A read
        after a seek to anywhere else opens a new stream at the new offset.

        Raises:
            TruncatedRead: If the backend runs out of bytes before `length`.
        """
        available = self._length - self._offset
        if size is None or size < 0 or size > available:
            size = available
        if size <= 0:
            return b""

        if self._active is None or self._active.position != self._offset:
            self.release()
            self._active = self.stream()

        data = self._active.read(size)
        if len(data) < size:
            raise TruncatedRead(
                f"Expected {size} bytes at offset {self._offset - len(data)}, got {len(data)}"
            )
        return data

    def readall(self) -> bytes:
        return self.read(-1)

    def readinto(self, buffer) -> int:
        data = self.read(len(buffer))
        view = memoryview(buffer).cast("B")
        view[:len(data)] = data
        return len(data)

    def release(self) -> None:
        """Close the open stream, if any. The next read opens a new one."""
        if self._active is not None:
            self._active.close()
            self._active = None

    def close(self) -> None:
        self.release()
        super().close()


class MemorySource(SeekableSource):
    """SeekableSource over an in-memory buffer.

    Attributes:
        data (bytes): The buffer.
        chunk_size (int): Size of the chunks yielded by `stream()`.
    """

    def __init__(self, data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.data = bytes(data)
        self.chunk_size = chunk_size
        super().__init__(len(self.data))

    def _open(self, start: int) -> Iterator[bytes]:
        view = memoryview(self.data)
        for position in range(start, len(self.data), self.chunk_size):
            yield bytes(view[position:position + self.chunk_size])


class FileSource(SeekableSource):
    """SeekableSource over a local file.

    Attributes:
        path (Path): The file being read.
        chunk_size (int): Size of the reads issued against the file.
    """

    _file = None

    def __init__(self, path: str | Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.path = Path(path)
        self.chunk_size = chunk_size
        self._file = open(self.path, "rb")
        super().__init__(self._file.seek(0, io.SEEK_END))

    def _open(self, start: int) -> Iterator[bytes]:
        position = start
        while position < self._length:
            self._file.seek(position)
            chunk = self._file.read(min(self.chunk_size, self._length - position))
            if not chunk:
                return
            position += len(chunk)
            yield chunk

    def close(self) -> None:
        super().close()
        if self._file is not None:
            self._file.close()


def _content_range_start(value: str) -> int | None:
    """First byte position of a `bytes <first>-<last>/<length>` Content-Range."""
    unit, _, byte_range = value.partition(" ")
    first = byte_range.partition("-")[0]
    if unit != "bytes" or not first.isdigit():
        return None
    return int(first)


class RemoteSource(SeekableSource):
    """SeekableSource backed by an HTTP resource using Range requests.

    Construction performs a single HEAD probe to learn the length. Seeking
    is free; the cost is paid when a stream starts, as one
    `Range: bytes=<offset>-` request. Sequential reads reuse the open
    response, so `zipfile` reading one entry costs one request for the
    central directory lookups plus one for the entry data.

    Attributes:
        url (str): Remote resource URL.
        client (httpx.Client): HTTP client used for every request (keep-alive).
        chunk_size (int): Size of the chunks read from response bodies.
    """

    def __init__(self, url: str, client: httpx.Client | None = None,
                 chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        """Create a RemoteSource.

        Args:
            url (str): HTTP(S) URL of the resource.
            client (httpx.Client | None): Client to use. When omitted a client is
                created here and closed together with the source.
            chunk_size (int): Preferred chunk size for body iteration.

        Raises:
            UnknownLength: If the probe fails or the server does not report a
                definite Content-Length (chunked responses are rejected).
        """
        self.url = url
        self.chunk_size = chunk_size
        self._owns_client = client is None
        self.client = client or httpx.Client(
            headers=DEFAULT_HEADERS,
            follow_redirects=True,
            timeout=httpx.Timeout(10.0, read=300.0),
        )
        try:
            length = self._probe()
        except UnknownLength:
            if self._owns_client:
                self.client.close()
            raise
        super().__init__(length)

    def _probe(self) -> int:
        try:
            response = self.client.head(self.url)
        except httpx.HTTPError as e:
            raise UnknownLength(f"Probe of {self.url} failed: {e}") from e

        if not response.is_success:
            raise UnknownLength(f"Probe of {self.url} returned HTTP {response.status_code}")

        content_length = response.headers.get("Content-Length", "")
        if not content_length.isdigit():
            raise UnknownLength(f"{self.url} did not report a Content-Length")

        logger.debug("Probed %s: %s bytes", self.url, content_length)
        return int(content_length)

    def _open(self, start: int) -> Iterator[bytes]:
        if start >= self._length:
            return

        expected = self._length - start
        headers = {"Range": f"bytes={start}-"}
        logger.debug("GET %s Range: %s", self.url, headers["Range"])
        try:
            with self.client.stream("GET", self.url, headers=headers) as response:
                if not response.is_success:
                    raise TruncatedRead(
                        f"Range request at offset {start} returned HTTP {response.status_code}"
                    )
                if start > 0 and response.status_code != 206:
                    raise TruncatedRead(f"Server ignored range request at offset {start}")
                if response.status_code == 206:
                    first = _content_range_start(response.headers.get("Content-Range", ""))
                    if first != start:
                        raise TruncatedRead(
                            f"Range request at offset {start} answered from offset {first}"
                        )

                received = 0
                for chunk in response.iter_bytes(self.chunk_size):
                    received += len(chunk)
                    yield chunk
        except httpx.HTTPError as e:
            raise TruncatedRead(f"Range request at offset {start} failed: {e}") from e

        if received < expected:
            raise TruncatedRead(
                f"Range request at offset {start} ended after {received} of {expected} bytes"
            )

    def close(self) -> None:
        super().close()
        if self._owns_client:
            self.client.close()
