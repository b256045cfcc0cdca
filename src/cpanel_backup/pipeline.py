#!/usr/bin/env python3
"""Producer/consumer byte pipeline between the FTP data callback and the local file."""

import concurrent.futures
import queue
import threading
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional

from .errors import PipelineError

_EOF = object()


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time copy of a TransferProgress."""
    bytes_received: int
    bytes_drained: int
    total_bytes: int

    @property
    def percentage(self) -> int:
        if self.total_bytes <= 0:
            return 0
        return min(100, self.bytes_received * 100 // self.total_bytes)


class TransferProgress:
    """Byte counters shared by the producer, the drain worker and the progress reporter."""

    def __init__(self, total_bytes: int = 0):
        self._lock = threading.Lock()
        self._received = 0
        self._drained = 0
        self._total = total_bytes

    def add_received(self, count: int) -> ProgressSnapshot:
        with self._lock:
            self._received += count
            return ProgressSnapshot(self._received, self._drained, self._total)

    def add_drained(self, count: int) -> None:
        with self._lock:
            self._drained += count

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return ProgressSnapshot(self._received, self._drained, self._total)


class ProgressThrottle:
    """
    Forward raw percentages to a callback in 10% steps.

    Only strictly increasing step values are forwarded, so a 10,000 byte
    transfer read in 1,000 byte chunks reports 10, 20, ... 100 exactly once each.
    """

    def __init__(self, callback: Callable[[int], None], step: int = 10):
        self._callback = callback
        self._step = step
        self._last = 0

    def __call__(self, percentage: int) -> None:
        quantized = (min(percentage, 100) // self._step) * self._step
        if quantized > self._last:
            self._last = quantized
            self._callback(quantized)


class StreamPipeline:
    """
    Bounded conduit drained into a sink by one background worker.

    start() submits the drain task and returns its Future; write() feeds
    chunks from the producer thread; close() signals end-of-data and joins the
    worker, returning the number of bytes written to the sink. The sink is
    flushed by the worker but closed by the caller.
    """

    def __init__(self, sink: BinaryIO, progress: Optional[TransferProgress] = None,
                 max_chunks: int = 64, put_timeout: float = 0.5):
        self._sink = sink
        self._progress = progress or TransferProgress()
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max_chunks)
        self._put_timeout = put_timeout
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self._future: Optional[concurrent.futures.Future] = None
        self._closed = False

    @property
    def progress(self) -> TransferProgress:
        return self._progress

    def start(self) -> concurrent.futures.Future:
        if self._future is not None:
            raise RuntimeError("pipeline already started")
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="drain")
        self._future = self._executor.submit(self._drain)
        return self._future

    def _drain(self) -> int:
        drained = 0
        while True:
            chunk = self._queue.get()
            if chunk is _EOF:
                break
            self._sink.write(chunk)
            drained += len(chunk)
            self._progress.add_drained(len(chunk))
        self._sink.flush()
        return drained

    def write(self, chunk: bytes) -> ProgressSnapshot:
        """Hand a chunk to the worker; returns producer-side progress."""
        if self._future is None or self._closed:
            raise RuntimeError("pipeline is not accepting data")
        self._put(chunk)
        return self._progress.add_received(len(chunk))

    def _put(self, item: object) -> None:
        while True:
            try:
                self._queue.put(item, timeout=self._put_timeout)
                return
            except queue.Full:
                # A dead worker never frees queue slots
                if self._future.done():
                    self._future.result()
                    raise PipelineError("drain worker stopped before end of data")

    def close(self) -> int:
        """Signal end-of-data, wait for the worker and return the drained byte count."""
        if self._future is None:
            raise RuntimeError("pipeline was never started")
        try:
            if not self._closed:
                self._closed = True
                if not self._future.done():
                    self._put(_EOF)
            return self._future.result()
        finally:
            self._executor.shutdown(wait=True)

    def abort(self) -> None:
        """Stop the worker after a producer failure, discarding queued data."""
        if self._future is None:
            return
        self._closed = True
        while not self._future.done():
            try:
                while True:
                    self._queue.get_nowait()
            except queue.Empty:
                pass
            try:
                self._queue.put(_EOF, timeout=self._put_timeout)
                break
            except queue.Full:
                continue
        self._executor.shutdown(wait=True)
