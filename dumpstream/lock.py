"""
Single-flight guard for backup runs.

The lock is a JSON LockRecord at a well-known path. All reads and writes of
the record happen while holding an exclusive flock on a sidecar file, which
makes create, stale takeover and compare-and-delete atomic across
processes. The flock is only held for the few milliseconds it takes to
inspect the record, never for the whole run.
"""

import os
import json
import errno
import fcntl
import socket
import logging
import tempfile
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from dumpstream.errors import AlreadyRunning
from dumpstream.models import LockRecord, ProcessIdentity


logger = logging.getLogger(__name__)


def process_start_time(pid: int) -> Optional[int]:
    """
    Start time of a process in clock ticks since boot (/proc/<pid>/stat).

    Together with the pid this names one process: a pid handed out again
    after a restart, such as PID 1 in a restarted container, comes back
    with a different start time.

    Returns:
        The start time, or None without /proc or when the process is gone
    """
    try:
        with open(f"/proc/{pid}/stat", 'r') as f:
            stat = f.read()
    except OSError:
        return None

    # Field 2 (comm) is parenthesized and may itself contain spaces
    try:
        fields = stat[stat.rindex(')') + 2:].split()
        return int(fields[19])
    except (ValueError, IndexError):
        return None


def current_identity() -> ProcessIdentity:
    """Identity of the running process."""
    pid = os.getpid()
    return ProcessIdentity(pid=pid, hostname=socket.gethostname(), started=process_start_time(pid))


def pid_is_alive(pid: int) -> bool:
    """
    Check whether a process exists on this host.

    Signal 0 performs the permission and existence checks without
    delivering anything.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    except OSError as e:
        if e.errno == errno.ESRCH:
            return False
        raise
    return True


class SingleFlightGuard:
    """
    Ensures at most one backup run is active at a time.

    Usage:
        guard = SingleFlightGuard('/tmp/db-backup.lock')
        token = guard.acquire()     # raises AlreadyRunning
        try:
            ...
        finally:
            guard.release(token)
    """

    def __init__(
        self,
        path: str,
        identity: Optional[ProcessIdentity] = None,
        is_alive: Callable[[int], bool] = pid_is_alive,
        start_time: Callable[[int], Optional[int]] = process_start_time,
        stale_after: timedelta = timedelta(hours=24),
    ):
        """
        Initialize the guard.

        Args:
            path: Location of the LockRecord
            identity: Process identity to record (default: this process)
            is_alive: Liveness check for a pid on this host
            start_time: Start time lookup for a pid on this host
            stale_after: Age after which a record written by another host
                is considered abandoned (its pid cannot be checked from here)
        """
        self.path = path
        self.identity = identity or current_identity()
        self.is_alive = is_alive
        self.start_time = start_time
        self.stale_after = stale_after
        self._mutex_path = f"{path}.mutex"

    @contextmanager
    def _critical_section(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        fd = os.open(self._mutex_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def read(self) -> Optional[LockRecord]:
        """
        Read the persisted LockRecord.

        Returns:
            The record, or None when no lock file exists

        Raises:
            ValueError: If the file exists but does not hold a valid record
        """
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise ValueError(f"Corrupt lock record: {e}")

        try:
            return LockRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid lock record: {e}")

    def _write(self, record: LockRecord):
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(prefix='.lock-', dir=directory)
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(record.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _holder_alive(self, record: LockRecord) -> bool:
        if record.hostname != self.identity.hostname:
            age = datetime.now(timezone.utc) - record.acquired_at
            return age < self.stale_after
        if not self.is_alive(record.pid):
            return False
        if record.started is None:
            # Where start times are known this process always records its
            # own, so an unstamped record with our pid is from a dead run
            return record.pid != self.identity.pid or self.identity.started is None
        # Same pid, different process: the holder died and the pid was reused
        return self.start_time(record.pid) == record.started

    def acquire(self) -> str:
        """
        Acquire the lock.

        Returns:
            Lock token to pass to release()

        Raises:
            AlreadyRunning: If a live process holds the lock
        """
        with self._critical_section():
            try:
                existing = self.read()
            except ValueError as e:
                logger.warning(f"Treating unreadable lock record as stale: {e}")
                existing = None

            if existing is not None:
                if self._holder_alive(existing):
                    raise AlreadyRunning(
                        f"Backup already running (PID: {existing.pid} on {existing.hostname}, "
                        f"since {existing.acquired_at.isoformat()})"
                    )
                logger.warning(
                    f"Reclaiming stale lock held by PID {existing.pid} on {existing.hostname} "
                    f"(acquired {existing.acquired_at.isoformat()})"
                )

            record = LockRecord(
                pid=self.identity.pid,
                hostname=self.identity.hostname,
                token=uuid.uuid4().hex,
                acquired_at=datetime.now(timezone.utc),
                started=self.identity.started,
            )
            self._write(record)

        logger.debug(f"Lock acquired: {self.path} (PID: {record.pid})")
        return record.token

    def release(self, token: str) -> bool:
        """
        Release the lock if it is still ours.

        Args:
            token: Token returned by acquire()

        Returns:
            True if the record was removed, False if it belonged to someone else
        """
        with self._critical_section():
            try:
                existing = self.read()
            except ValueError:
                existing = None

            if existing is None or existing.token != token:
                logger.warning(f"Lock at {self.path} no longer held by this run, leaving it in place")
                return False

            os.unlink(self.path)

        logger.debug(f"Lock released: {self.path}")
        return True

    @contextmanager
    def hold(self):
        """Context manager form of acquire()/release()."""
        token = self.acquire()
        try:
            yield token
        finally:
            self.release(token)
