"""
Retention policy enforcement for backups.

Deletes remote objects older than the configured age. Age comes from the
storage's own modification time, never from the object name.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from dumpstream.errors import RetentionError, StorageError
from dumpstream.models import RemoteObject, SweepResult
from dumpstream.backup.transfer import TransferLimiter


logger = logging.getLogger(__name__)


class RetentionSweeper:
    """
    Removes expired backups from a storage backend.

    Deletion failures are logged per object and never stop the sweep.
    """

    def __init__(self, storage, limiter: TransferLimiter,
                 now: Optional[Callable[[], datetime]] = None):
        """
        Initialize the sweeper.

        Args:
            storage: Storage backend to sweep
            limiter: Transfer limiter (rate cap, retries, checker count)
            now: Clock returning an aware datetime (tests)
        """
        self.storage = storage
        self.limiter = limiter
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.logs: List[str] = []

    def find_expired(self, max_age_days: int, prefix: str = '') -> List[RemoteObject]:
        """
        List objects older than max_age_days.

        Raises:
            RetentionError: If listing fails
        """
        cutoff = self._now() - timedelta(days=max_age_days)

        try:
            expired = [
                obj for obj in self.storage.iter_objects(prefix)
                if obj.last_modified < cutoff
            ]
        except StorageError as e:
            raise RetentionError(f"Failed to list objects in {self.storage.describe()}: {e}")

        return expired

    def _delete_one(self, key: str) -> bool:
        try:
            self.limiter.call(f"delete {key}", self.storage.delete, key)
        except StorageError as e:
            self._log(f"Failed to delete {key}: {e}", level=logging.ERROR)
            return False
        self._log(f"Deleted {key}")
        return True

    def sweep(self, max_age_days: int, dry_run: bool = False, prefix: str = '') -> SweepResult:
        """
        Delete (or report) objects older than max_age_days.

        Args:
            max_age_days: Maximum age to keep
            dry_run: Only report what would be deleted
            prefix: Limit the sweep to keys under this prefix

        Returns:
            SweepResult with candidates, deleted and failed keys

        Raises:
            RetentionError: If the storage cannot be listed
        """
        mode = ' (dry run)' if dry_run else ''
        self._log(f"Sweeping {self.storage.describe()} for backups older than {max_age_days} days{mode}")

        expired = self.find_expired(max_age_days, prefix)
        result = SweepResult(dry_run=dry_run, candidates=[obj.key for obj in expired])

        if dry_run:
            for obj in expired:
                self._log(f"Would delete {obj.key} (modified {obj.last_modified.isoformat()})")
        elif expired:
            workers = min(self.limiter.policy.checkers, len(expired))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='retention') as pool:
                outcomes = list(pool.map(self._delete_one, result.candidates))

            for key, ok in zip(result.candidates, outcomes):
                (result.deleted if ok else result.failed).append(key)

        self._log(
            f"Retention sweep complete. Candidates: {len(result.candidates)}, "
            f"attempted: {result.attempted}, deleted: {len(result.deleted)}, "
            f"failed: {len(result.failed)}"
        )
        return result

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
