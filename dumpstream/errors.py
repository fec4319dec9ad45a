"""
Error taxonomy for backup runs.

Every error carries the exit code the CLI should return and the stage
of the run it was raised in.
"""

from typing import Optional


EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_FAILURE = 2


class BackupError(Exception):
    """Base class for all backup errors."""

    exit_code = EXIT_FAILURE
    stage = 'unknown'

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class AlreadyRunning(BackupError):
    """Another live process holds the backup lock. Not an error state."""

    exit_code = EXIT_OK
    stage = 'lock'


class ConfigError(BackupError):
    """Configuration is missing or invalid."""

    exit_code = EXIT_CONFIG
    stage = 'validate'


class DatabaseConnectionError(BackupError):
    """Database server could not be reached."""

    stage = 'dump'


class DatabaseAuthError(BackupError):
    """Database rejected the credentials."""

    stage = 'dump'


class EngineInvocationError(BackupError):
    """Dump tool failed to run, exited non-zero or produced no output."""

    stage = 'dump'


class StorageError(BackupError):
    """Raised when a remote storage operation fails."""

    stage = 'upload'


class TransferError(StorageError):
    """Upload-side failure, classified as transient or permanent."""
    pass


class TransientTransferError(TransferError):
    """
    Failure that may succeed on retry (timeouts, throttling, 5xx).

    Attributes:
        rate_limited: True when the remote answered with a rate-limit response
        exhausted: True once the retry policy gave up
        attempts: Number of attempts made before giving up
    """

    def __init__(self, message: str, rate_limited: bool = False, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.rate_limited = rate_limited
        self.exhausted = False
        self.attempts = 0


class PermanentTransferError(TransferError):
    """Failure that will not go away within this run (quota, access denied)."""
    pass


class PipelineCancelled(BackupError):
    """The run was cancelled by an external stop signal."""
    pass


class RetentionError(BackupError):
    """Retention sweep failed. Logged, never fatal to a backup."""

    stage = 'retention'
