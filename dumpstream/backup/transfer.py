"""
Transfer limiting for the remote storage client.

TransferLimiter wraps every remote request with:
- a requests-per-second cap shared by all threads of a run
- a byte budget for the whole run
- retry of transient failures; rate-limit responses back off exponentially
"""

import time
import logging
import threading
from typing import Callable, Optional

from dumpstream.errors import PermanentTransferError, PipelineCancelled, TransientTransferError
from dumpstream.models import TransferPolicy
from dumpstream.utils.units import format_size


logger = logging.getLogger(__name__)


class RequestRateLimiter:
    """
    Spaces requests at least 1/rate seconds apart across all threads.

    A rate of 0 disables limiting.
    """

    def __init__(self, rate: float, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.rate = rate
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def acquire(self):
        if not self.rate:
            return

        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + 1.0 / self.rate

        wait = slot - now
        if wait > 0:
            self._sleep(wait)


class TransferBudget:
    """Caps the total number of bytes sent during one run. 0 means unlimited."""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self.used = 0
        self._lock = threading.Lock()

    def consume(self, nbytes: int):
        """
        Reserve bytes from the budget.

        Raises:
            PermanentTransferError: If the request would exceed the budget
        """
        with self._lock:
            if self.max_bytes and self.used + nbytes > self.max_bytes:
                raise PermanentTransferError(
                    f"Transfer limit reached: {format_size(self.used)} sent, "
                    f"limit is {format_size(self.max_bytes)}"
                )
            self.used += nbytes


class TransferLimiter:
    """
    Applies a TransferPolicy to remote storage requests.

    The policy is read-only; the limiter only keeps counters.
    """

    STOP_POLL_INTERVAL = 0.1

    def __init__(
        self,
        policy: TransferPolicy,
        cancel_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the limiter.

        Args:
            policy: Transfer policy for this run
            cancel_event: When set, pending backoff sleeps end with PipelineCancelled
            sleep: Replacement sleep function (tests)
            clock: Monotonic clock (tests)
        """
        self.policy = policy
        self.cancel_event = cancel_event
        self._sleep = sleep
        self.rate = RequestRateLimiter(policy.tps_limit, clock=clock, sleep=self._pause)
        self.budget = TransferBudget(policy.max_transfer)
        self.retries_performed = 0
        self._lock = threading.Lock()

    def _check_stop(self, operation: str, abort_event: Optional[threading.Event] = None):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise PipelineCancelled(f"Cancelled before {operation}")
        if abort_event is not None and abort_event.is_set():
            raise PipelineCancelled(f"Abandoned {operation}, backup is aborting")

    def _pause(self, seconds: float, abort_event: Optional[threading.Event] = None,
               operation: str = 'next request'):
        if self._sleep is not None:
            self._sleep(seconds)
            return

        events = [e for e in (self.cancel_event, abort_event) if e is not None]
        if not events:
            time.sleep(seconds)
            return

        deadline = time.monotonic() + seconds
        while True:
            self._check_stop(operation, abort_event)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            # A single event can be waited on directly; two need polling
            timeout = remaining if len(events) == 1 else min(remaining, self.STOP_POLL_INTERVAL)
            events[0].wait(timeout)

    def backoff(self, attempt: int, rate_limited: bool) -> float:
        """
        Delay before retry number `attempt` (1-based).

        Rate-limit responses double the delay on every attempt, other
        transient errors wait the flat retry sleep.
        """
        if rate_limited:
            return self.policy.retry_sleep * (2 ** (attempt - 1))
        return self.policy.retry_sleep

    def call(self, operation: str, func: Callable, *args, nbytes: int = 0,
             abort_event: Optional[threading.Event] = None, **kwargs):
        """
        Run one remote request under the policy.

        Args:
            operation: Description for logs, e.g. "upload part 3"
            func: Storage call to make
            nbytes: Payload size charged against the byte budget
            abort_event: Second stop signal for this request only, e.g. the
                pipeline giving up after another stage failed
            *args, **kwargs: Passed to func

        Returns:
            Whatever func returns

        Raises:
            TransientTransferError: With exhausted=True once retries run out
            PermanentTransferError: Immediately, never retried
            PipelineCancelled: If cancelled or aborted before or while backing off
        """
        if nbytes:
            self.budget.consume(nbytes)

        attempt = 0
        while True:
            self._check_stop(operation, abort_event)

            self.rate.acquire()
            try:
                return func(*args, **kwargs)
            except TransientTransferError as e:
                if attempt >= self.policy.retries:
                    e.exhausted = True
                    e.attempts = attempt + 1
                    logger.error(f"{operation} failed after {e.attempts} attempts: {e}")
                    raise

                attempt += 1
                with self._lock:
                    self.retries_performed += 1
                delay = self.backoff(attempt, e.rate_limited)
                kind = 'rate limited' if e.rate_limited else 'transient error'
                logger.warning(
                    f"{operation} {kind}: {e}; retry {attempt}/{self.policy.retries} in {delay:.1f}s"
                )
                self._pause(delay, abort_event, operation)
