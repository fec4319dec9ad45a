"""
Bounded streaming pipeline: dump -> transforms -> upload.

Each stage runs on its own thread and hands blocks to the next through a
bounded channel. A full channel blocks the stage feeding it, so a slow
upload stalls the dump instead of letting data pile up in memory.

Memory held by the pipeline is tracked by a BufferMeter. Its peak is
bounded by StreamPipeline.memory_bound, which depends on block size,
queue depth, the number of stages and the transfer policy, never on how
much data flows through.
"""

import time
import queue
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from dumpstream.errors import EngineInvocationError, PipelineCancelled
from dumpstream.backup.upload import ChunkedUploader
from dumpstream.backup.transfer import TransferLimiter


logger = logging.getLogger(__name__)

DEFAULT_BLOCK_SIZE = 64 * 1024
DEFAULT_QUEUE_DEPTH = 4

_EOF = object()


class _Aborted(Exception):
    """Internal: another stage failed, stop quietly."""
    pass


class BufferMeter:
    """Thread-safe count of bytes currently held by the pipeline."""

    def __init__(self):
        self._lock = threading.Lock()
        self.current = 0
        self.peak = 0

    def add(self, nbytes: int):
        with self._lock:
            self.current += nbytes
            if self.current > self.peak:
                self.peak = self.current

    def release(self, nbytes: int):
        with self._lock:
            self.current -= nbytes


class Channel:
    """Bounded hand-off between two stages."""

    POLL_INTERVAL = 0.1

    def __init__(self, name: str, depth: int, stop_check: Callable[[], None]):
        self.name = name
        self._queue = queue.Queue(maxsize=depth)
        self._stop_check = stop_check

    def put(self, item):
        while True:
            self._stop_check()
            try:
                self._queue.put(item, timeout=self.POLL_INTERVAL)
                return
            except queue.Full:
                continue

    def close(self):
        self.put(_EOF)

    def __iter__(self):
        while True:
            self._stop_check()
            try:
                item = self._queue.get(timeout=self.POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is _EOF:
                return
            yield item


@dataclass
class PipelineResult:
    """Throughput figures for one pipeline run"""
    bytes_read: int
    bytes_uploaded: int
    peak_buffered: int
    duration_seconds: float
    chunked: bool
    parts: int


class StreamPipeline:
    """
    Streams a dump through optional transforms into a staged upload.

    Usage:
        pipeline = StreamPipeline(stream, storage.begin_upload(name), limiter,
                                  transforms=[GzipTransform()])
        result = pipeline.run()
    """

    def __init__(
        self,
        source,
        upload,
        limiter: TransferLimiter,
        transforms: Optional[List] = None,
        block_size: int = DEFAULT_BLOCK_SIZE,
        queue_depth: int = DEFAULT_QUEUE_DEPTH,
        cancel_event: Optional[threading.Event] = None,
        on_upload_start: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            source: DumpStream (anything with read(n) and close())
            upload: Staged upload from storage.begin_upload()
            limiter: TransferLimiter for this run
            transforms: Stages with process()/flush(), applied in order
            block_size: Largest block passed between stages
            queue_depth: Blocks each channel can hold
            cancel_event: External stop signal
            on_upload_start: Called when the first block reaches the uploader
        """
        if block_size <= 0 or queue_depth <= 0:
            raise ValueError("block_size and queue_depth must be positive")

        self.source = source
        self.upload = upload
        self.limiter = limiter
        self.transforms = list(transforms or [])
        self.block_size = block_size
        self.queue_depth = queue_depth
        self.cancel_event = cancel_event
        self.on_upload_start = on_upload_start

        self.meter = BufferMeter()
        self.bytes_read = 0

        self._abort = threading.Event()
        self._error: Optional[BaseException] = None
        self._error_lock = threading.Lock()

    @property
    def memory_bound(self) -> int:
        """Largest number of bytes the pipeline may hold at any moment."""
        channels = 1 + len(self.transforms)
        bound = self.block_size  # block held by the source while it waits
        bound += channels * self.queue_depth * self.block_size
        bound += sum(t.memory_overhead(self.block_size) for t in self.transforms)
        bound += ChunkedUploader.memory_bound(self.limiter.policy, self.block_size)
        return bound

    def _stop_check(self):
        if self._abort.is_set():
            raise _Aborted()
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise PipelineCancelled("Backup cancelled")

    def _fail(self, error: BaseException):
        with self._error_lock:
            if self._error is None:
                self._error = error
        self._abort.set()

    def _run_stage(self, target, *args):
        try:
            target(*args)
        except _Aborted:
            pass
        except BaseException as e:
            self._fail(e)

    def _read_source(self, out: Channel):
        try:
            first = True
            while True:
                self._stop_check()
                block = self.source.read(self.block_size)
                if not block:
                    if first:
                        raise EngineInvocationError(
                            f"{getattr(self.source, 'engine', 'database')} dump produced no output"
                        )
                    break
                first = False
                self.bytes_read += len(block)
                self.meter.add(len(block))
                try:
                    out.put(block)
                except BaseException:
                    self.meter.release(len(block))
                    raise
            out.close()
        finally:
            self.source.close()

    def _emit(self, data: bytes, out: Channel):
        """Forward transform output in slices no larger than block_size."""
        self.meter.add(len(data))
        view = memoryview(data)
        offset = 0
        try:
            while offset < len(data):
                piece = bytes(view[offset:offset + self.block_size])
                out.put(piece)
                offset += len(piece)
        except BaseException:
            self.meter.release(len(data) - offset)
            raise

    def _run_transform(self, transform, inbox: Channel, out: Channel):
        for block in inbox:
            try:
                data = transform.process(block)
            finally:
                self.meter.release(len(block))
            if data:
                self._emit(data, out)

        tail = transform.flush()
        if tail:
            self._emit(tail, out)
        out.close()

    def _terminate_source(self):
        terminate = getattr(self.source, 'terminate', None)
        if terminate is not None:
            try:
                terminate()
            except Exception as e:
                logger.warning(f"Failed to stop dump: {e}")

    def run(self) -> PipelineResult:
        """
        Run the pipeline to completion.

        Returns:
            PipelineResult with byte counts, peak memory and duration

        Raises:
            The first error raised by any stage; PipelineCancelled on cancel
        """
        started = time.monotonic()

        channels = [
            Channel(f"stage-{i}", self.queue_depth, self._stop_check)
            for i in range(len(self.transforms) + 1)
        ]

        threads = [
            threading.Thread(
                target=self._run_stage, args=(self._read_source, channels[0]),
                name='pipeline-source', daemon=True
            )
        ]
        for i, transform in enumerate(self.transforms):
            threads.append(threading.Thread(
                target=self._run_stage,
                args=(self._run_transform, transform, channels[i], channels[i + 1]),
                name=f'pipeline-{transform.name}', daemon=True
            ))

        uploader = ChunkedUploader(
            self.upload, self.limiter, self.meter,
            cancel_event=self._abort,
            on_start=self.on_upload_start,
        )

        for thread in threads:
            thread.start()

        try:
            uploader.consume(channels[-1])
        except _Aborted:
            pass
        except BaseException as e:
            self._fail(e)
        finally:
            if self._error is not None:
                self._abort.set()
                self._terminate_source()
            for thread in threads:
                thread.join()

        if self._error is not None:
            raise self._error

        duration = time.monotonic() - started
        logger.debug(
            f"Pipeline finished: {self.bytes_read} bytes read, {uploader.bytes_uploaded} uploaded, "
            f"peak buffer {self.meter.peak} bytes"
        )
        return PipelineResult(
            bytes_read=self.bytes_read,
            bytes_uploaded=uploader.bytes_uploaded,
            peak_buffered=self.meter.peak,
            duration_seconds=duration,
            chunked=uploader.chunked,
            parts=len(uploader.parts),
        )
