"""
Upload stage of the backup pipeline.

Small payloads (up to the upload cutoff) go up in a single request. Larger
ones are split into chunk_size parts and uploaded with at most `transfers`
parts in flight; when all slots are busy the uploader stops pulling from
its input channel, which in turn stalls the dump.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, Future
from typing import Callable, Dict, List, Optional

from dumpstream.errors import PipelineCancelled
from dumpstream.backup.transfer import TransferLimiter


logger = logging.getLogger(__name__)


class ChunkedUploader:
    """
    Consumes blocks from a channel and writes them to a staged upload.

    The staged upload is completed only after every part succeeded; on any
    failure it is aborted so no partial object becomes visible.
    """

    def __init__(self, upload, limiter: TransferLimiter, meter,
                 cancel_event: Optional[threading.Event] = None,
                 on_start: Optional[Callable[[], None]] = None):
        """
        Initialize the uploader.

        Args:
            upload: Staged upload from storage.begin_upload()
            limiter: Transfer limiter carrying the policy for this run
            meter: BufferMeter shared with the rest of the pipeline
            cancel_event: Stop signal; also ends retries of in-flight requests
            on_start: Called once, when the first byte arrives
        """
        self.upload = upload
        self.limiter = limiter
        self.policy = limiter.policy
        self.meter = meter
        self.cancel_event = cancel_event
        self.on_start = on_start

        self.bytes_uploaded = 0
        self.parts: List[Dict] = []
        self.chunked = False
        self.completed = False

        self._slots = threading.BoundedSemaphore(self.policy.transfers)
        self._lock = threading.Lock()
        self._error: Optional[BaseException] = None
        self._futures: List[Future] = []
        self._sizes: Dict[Future, int] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._part_number = 0

    @staticmethod
    def memory_bound(policy, block_size: int) -> int:
        """Upper bound on bytes held by the uploader at once."""
        return max(policy.upload_cutoff, policy.chunk_size) + block_size + policy.transfers * policy.chunk_size

    def _check(self):
        if self._error is not None:
            raise self._error
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise PipelineCancelled("Upload cancelled")

    def _upload_part(self, part_number: int, data: bytes):
        try:
            part = self.limiter.call(
                f"upload part {part_number}",
                self.upload.upload_part, part_number, data,
                nbytes=len(data), abort_event=self.cancel_event
            )
            with self._lock:
                self.parts.append(part)
                self.bytes_uploaded += len(data)
            logger.debug(f"Uploaded part {part_number} ({len(data)} bytes)")
        except BaseException as e:
            with self._lock:
                if self._error is None:
                    self._error = e
            raise
        finally:
            self.meter.release(len(data))
            self._slots.release()

    def _submit(self, data: bytes):
        # Wait for a free slot; this is where a slow remote pushes back on the dump
        try:
            while not self._slots.acquire(timeout=0.1):
                self._check()
        except BaseException:
            self.meter.release(len(data))
            raise
        try:
            self._check()
        except BaseException:
            self._slots.release()
            self.meter.release(len(data))
            raise

        self._part_number += 1
        future = self._executor.submit(self._upload_part, self._part_number, data)
        self._futures.append(future)
        self._sizes[future] = len(data)

    def _begin_chunked(self):
        logger.info(f"Payload exceeds upload cutoff ({self.policy.upload_cutoff} bytes), using chunked upload")
        self.limiter.call("create chunked upload", self.upload.begin, abort_event=self.cancel_event)
        self.chunked = True
        self._executor = ThreadPoolExecutor(
            max_workers=self.policy.transfers, thread_name_prefix='upload-part'
        )

    def consume(self, blocks) -> int:
        """
        Upload everything the iterable yields.

        Args:
            blocks: Iterable of byte blocks (a pipeline channel)

        Returns:
            Number of bytes uploaded

        Raises:
            TransferError: If the upload fails after retries
            PipelineCancelled: If cancelled
        """
        buffer = bytearray()
        started = False

        try:
            for block in blocks:
                if not started:
                    started = True
                    if self.on_start:
                        self.on_start()

                buffer += block
                self._check()

                if not self.chunked and len(buffer) > self.policy.upload_cutoff:
                    self._begin_chunked()

                if self.chunked:
                    while len(buffer) >= self.policy.chunk_size:
                        part = bytes(buffer[:self.policy.chunk_size])
                        del buffer[:self.policy.chunk_size]
                        self._submit(part)

            self._check()

            if not self.chunked:
                data = bytes(buffer)
                buffer.clear()
                try:
                    self.limiter.call(
                        "upload", self.upload.put, data, nbytes=len(data), abort_event=self.cancel_event
                    )
                finally:
                    self.meter.release(len(data))
                self.bytes_uploaded = len(data)
            else:
                if buffer:
                    part = bytes(buffer)
                    buffer.clear()
                    self._submit(part)

                for future in self._futures:
                    future.exception()
                self._check()

                self.limiter.call(
                    "complete chunked upload", self.upload.complete, list(self.parts),
                    abort_event=self.cancel_event
                )
                logger.info(f"Chunked upload completed ({len(self.parts)} parts)")

            self.completed = True
            return self.bytes_uploaded

        except BaseException:
            self.meter.release(len(buffer))
            self._abort()
            raise

        finally:
            if self._executor is not None:
                self._executor.shutdown(wait=True)

    def _abort(self):
        for future in self._futures:
            if future.cancel():
                self.meter.release(self._sizes.get(future, 0))
        for future in self._futures:
            if not future.cancelled():
                future.exception()
        logger.warning("Aborting staged upload, nothing will be committed")
        try:
            self.upload.abort()
        except Exception as e:
            logger.error(f"Failed to abort staged upload: {e}")
