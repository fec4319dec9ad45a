"""
Backup orchestrator - drives one backup run from lock to summary.

Workflow:
1. Acquire the single-flight lock (another live run means skip, exit 0)
2. Validate configuration and build the job spec
3. Check the destination is reachable
4. Stream the dump through compression into a staged upload
5. Sweep expired backups (best effort)
6. Release the lock and log one summary line
"""

import time
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional

from dumpstream.config import Config, build_job_spec, build_retention_policy, build_transfer_policy
from dumpstream.errors import AlreadyRunning, BackupError, ConfigError, EXIT_FAILURE, EXIT_OK
from dumpstream.lock import SingleFlightGuard
from dumpstream.models import (
    BackupJobSpec,
    RunContext,
    RunReport,
    RunState,
    SweepResult,
)
from dumpstream.utils.units import format_size
from .compression import create_transforms
from .naming import generate_backup_name
from .pipeline import DEFAULT_BLOCK_SIZE, DEFAULT_QUEUE_DEPTH, StreamPipeline
from .retention import RetentionSweeper
from .sources import create_strategy
from .storage import create_storage
from .transfer import TransferLimiter


logger = logging.getLogger(__name__)


def _local_now() -> datetime:
    return datetime.now().astimezone()


class BackupOrchestrator:
    """
    Runs the complete backup workflow for the configured database.

    State moves IDLE -> LOCK_ACQUIRING -> VALIDATING -> DUMPING -> UPLOADING
    -> RETAINING -> DONE, or ends in SKIPPED or FAILED.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        storage_factory: Callable = create_storage,
        guard: Optional[SingleFlightGuard] = None,
        now: Callable[[], datetime] = _local_now,
        cancel_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
        block_size: int = DEFAULT_BLOCK_SIZE,
        queue_depth: int = DEFAULT_QUEUE_DEPTH,
    ):
        """
        Initialize backup orchestrator.

        Args:
            config: Settings (default: read from the environment)
            storage_factory: Builds the storage backend from (destination, config)
            guard: Single-flight guard (default: lock file from config)
            now: Clock for names and retention, returns an aware datetime
            cancel_event: External stop signal (set by SIGTERM in the CLI)
            sleep: Replacement for retry sleeps (tests)
            block_size: Pipeline block size
            queue_depth: Pipeline channel depth
        """
        self.config = config or Config()
        self.storage_factory = storage_factory
        self.guard = guard or SingleFlightGuard(self.config.BACKUP_LOCK_FILE)
        self._now = now
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self.block_size = block_size
        self.queue_depth = queue_depth

        self.state = RunState.IDLE
        self.spec: Optional[BackupJobSpec] = None
        self.context: Optional[RunContext] = None
        self.storage = None
        self.limiter: Optional[TransferLimiter] = None
        self.logs: List[str] = []

    def _transition(self, state: RunState):
        logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state

    def run(self) -> RunReport:
        """
        Execute one backup run.

        Never raises for backup errors; the outcome is in the report.

        Returns:
            RunReport with final state, exit code and byte counts
        """
        started = time.monotonic()
        report = RunReport(
            state=self.state,
            exit_code=EXIT_OK,
            engine=self.config.DB_TYPE,
            database=self.config.DB_NAME,
        )
        token = None

        try:
            self._transition(RunState.LOCK_ACQUIRING)
            token = self.guard.acquire()

            self._execute_workflow(report)

            self._transition(RunState.DONE)
            self._log("All operations completed successfully")

        except AlreadyRunning as e:
            self._transition(RunState.SKIPPED)
            self._log(f"{e}, skipping")

        except BackupError as e:
            self._transition(RunState.FAILED)
            report.exit_code = e.exit_code
            report.error = str(e)
            report.failed_stage = e.stage
            self._log(f"Backup failed at stage {e.stage}: {type(e).__name__}: {e}", level=logging.ERROR)

        except Exception as e:
            self._transition(RunState.FAILED)
            report.exit_code = EXIT_FAILURE
            report.error = str(e)
            report.failed_stage = 'unknown'
            logger.exception("Unexpected error during backup")
            self._log(f"Backup failed: {type(e).__name__}: {e}", level=logging.ERROR)

        finally:
            if token is not None:
                self.guard.release(token)

        report.state = self.state
        report.duration_seconds = time.monotonic() - started
        report.logs = list(self.logs)
        self._log_summary(report)
        return report

    def _execute_workflow(self, report: RunReport):
        """Execute the main backup workflow steps."""
        # Step 1: Validate
        self._transition(RunState.VALIDATING)
        self.spec = spec = build_job_spec(self.config)
        report.engine = spec.engine.value
        report.database = spec.database

        self.storage = self.storage_factory(spec.destination, self.config)
        if spec.transfer.chunk_size < self.storage.min_part_size:
            raise ConfigError(
                f"TRANSFER_CHUNK_SIZE {format_size(spec.transfer.chunk_size)} is below the "
                f"{self.storage.scheme} minimum part size of {format_size(self.storage.min_part_size)}"
            )

        self.limiter = TransferLimiter(spec.transfer, cancel_event=self.cancel_event, sleep=self._sleep)
        self._log_configuration(spec)

        self._log(f"Testing connection to {self.storage.describe()}")
        self.limiter.call("connection test", self.storage.test_connection)

        strategy = create_strategy(spec.engine)
        started_at = self._now()
        self.context = RunContext(
            spec=spec,
            started_at=started_at,
            object_name=generate_backup_name(spec, started_at, strategy.extension),
            identity=self.guard.identity,
        )
        report.object_key = self.context.object_name

        # Step 2: Dump and upload
        self._transition(RunState.DUMPING)
        self._log(f"Starting {spec.engine.value} dump of {spec.describe()}")
        stream = strategy.open(spec)

        try:
            pipeline = StreamPipeline(
                stream,
                self.storage.begin_upload(self.context.object_name),
                self.limiter,
                transforms=create_transforms(strategy.compress, spec.compression_level),
                block_size=self.block_size,
                queue_depth=self.queue_depth,
                cancel_event=self.cancel_event,
                on_upload_start=lambda: self._transition(RunState.UPLOADING),
            )
        except BaseException:
            stream.close()
            raise

        try:
            result = pipeline.run()
        finally:
            report.bytes_read = pipeline.bytes_read

        report.bytes_transferred = result.bytes_uploaded
        self._log(
            f"Uploaded {self.context.object_name} ({format_size(result.bytes_uploaded)}, "
            f"{result.parts or 1} request{'s' if result.parts > 1 else ''})"
        )

        # Step 3: Retention
        if spec.retention is not None:
            self._transition(RunState.RETAINING)
            report.retention = self._apply_retention(spec)
        else:
            self._log("Retention not configured, keeping all backups")

    def _apply_retention(self, spec: BackupJobSpec) -> Optional[SweepResult]:
        """Sweep expired backups. Failures are logged and never fail the run."""
        sweeper = RetentionSweeper(self.storage, self.limiter, now=self._now)
        try:
            return sweeper.sweep(spec.retention.max_age_days, dry_run=spec.retention.dry_run)
        except BackupError as e:
            self._log(f"Retention sweep failed: {e}", level=logging.WARNING)
            return None
        finally:
            self.logs.extend(sweeper.logs)

    def _log_configuration(self, spec: BackupJobSpec):
        policy = spec.transfer
        self._log("Backup configuration:")
        self._log(f"  - Database: {spec.describe()}")
        self._log(f"  - Destination: {self.storage.describe()}")
        if spec.name_template:
            self._log(f"  - Name template: {spec.name_template}")
        else:
            self._log(f"  - Name prefix: {spec.name_prefix}")
        retention = f"{spec.retention.max_age_days} days" if spec.retention else 'unlimited'
        self._log(f"  - Retention: {retention}")
        self._log(
            f"  - Transfer: tps {policy.tps_limit}, chunk {format_size(policy.chunk_size)}, "
            f"cutoff {format_size(policy.upload_cutoff)}, transfers {policy.transfers}, "
            f"checkers {policy.checkers}, max {format_size(policy.max_transfer)}, "
            f"retries {policy.retries} (sleep {policy.retry_sleep:g}s)"
        )

    def _log_summary(self, report: RunReport):
        logger.info(
            f"backup summary engine={report.engine or '-'} database={report.database or '-'} "
            f"duration={report.duration_seconds:.2f}s bytes={report.bytes_transferred} "
            f"outcome={report.outcome}"
        )

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


def run_backup(config: Optional[Config] = None, **kwargs) -> RunReport:
    """
    Execute one backup run.

    Args:
        config: Settings (default: read from the environment)
        **kwargs: Passed to BackupOrchestrator

    Returns:
        RunReport with the outcome
    """
    return BackupOrchestrator(config, **kwargs).run()


def run_cleanup(config: Optional[Config] = None, dry_run: Optional[bool] = None,
                storage_factory: Callable = create_storage,
                sleep: Optional[Callable[[float], None]] = None) -> SweepResult:
    """
    Run a standalone retention sweep.

    Args:
        config: Settings (default: read from the environment)
        dry_run: Overrides BACKUP_RETENTION_DRY_RUN when given
        storage_factory: Builds the storage backend
        sleep: Replacement for retry sleeps (tests)

    Returns:
        SweepResult

    Raises:
        ConfigError: If destination or retention is not configured
        RetentionError: If the destination cannot be listed
    """
    config = config or Config()

    if not config.BACKUP_DESTINATION:
        raise ConfigError("Required configuration is not set: BACKUP_DESTINATION")

    retention = build_retention_policy(config, dry_run=dry_run)
    if retention is None:
        raise ConfigError("BACKUP_RETENTION_DAYS is not set, nothing to clean up")

    storage = storage_factory(config.BACKUP_DESTINATION, config)
    limiter = TransferLimiter(build_transfer_policy(config), sleep=sleep)

    sweeper = RetentionSweeper(storage, limiter)
    return sweeper.sweep(retention.max_age_days, dry_run=retention.dry_run)
