"""Progress bridge for the native extractor.

The extractor reports progress through a synchronous two-integer callback
(completed, total) fired from whatever thread it happens to run on.
`ProgressBridge` turns that into a queue of `ProgressSnapshot` values the
caller can render at its own pace while the blocking extraction runs on a
worker thread.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, List

ProgressCallback = Callable[[int, int], None]

_DONE = object()


@dataclass(frozen=True)
class ProgressSnapshot:
    """One observation of extraction progress.

    `total` is not monotonic: the extractor may revise it after the first
    callback. Only the final snapshot of a run is guaranteed to have
    `completed == total`.
    """
    completed: int = 0
    total: int = 0

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 0.0


class ProgressBridge:
    """Republish extractor callbacks as an observable stream of snapshots.

    `report` may be called from any thread. Once the bridge is closed (after
    the forced final snapshot, or after a failure) further reports are
    ignored, so nothing observed after the extraction returns is stale.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queue: queue.Queue = queue.Queue()
        self._snapshot = ProgressSnapshot()
        self._closed = False

    @property
    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def report(self, completed: int, total: int) -> None:
        """The (completed, total) callback handed to the extractor."""
        with self._lock:
            if self._closed:
                return
            self._snapshot = ProgressSnapshot(int(completed), int(total))
            self._queue.put(self._snapshot)

    def finish(self) -> ProgressSnapshot:
        """Force `completed == total`, publish it and close the bridge."""
        with self._lock:
            if not self._closed:
                total = self._snapshot.total
                self._snapshot = ProgressSnapshot(total, total)
                self._queue.put(self._snapshot)
                self._close()
            return self._snapshot

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._close()

    def _close(self) -> None:
        self._closed = True
        self._queue.put(_DONE)

    def updates(self) -> Iterator[ProgressSnapshot]:
        """Yield snapshots in the order they were reported until the bridge closes."""
        while True:
            item = self._queue.get()
            if item is _DONE:
                return
            yield item

    def run(self, target: Callable[[ProgressCallback], None],
            observer: Callable[[ProgressSnapshot], None] | None = None) -> ProgressSnapshot:
        """Run `target(self.report)` on a worker thread and feed `observer`.

        The calling thread drains snapshots into `observer` until the worker
        is done. If `target` returns, a final snapshot with
        `completed == total` is delivered. If it raises, the exception is
        re-raised here and no completion is forced.

        Returns:
            ProgressSnapshot: The last snapshot of the run.
        """
        failures: List[BaseException] = []

        def worker() -> None:
            try:
                target(self.report)
            except BaseException as e:
                # Handed back to the calling thread below
                failures.append(e)
                self.close()
            else:
                self.finish()

        thread = threading.Thread(target=worker, name="dscify-extract", daemon=True)
        thread.start()
        try:
            for snapshot in self.updates():
                if observer is not None:
                    observer(snapshot)
        finally:
            thread.join()

        if failures:
            raise failures[0]
        return self.snapshot
