from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List


class Engine(str, Enum):
    """Supported database engines"""
    POSTGRES = 'postgres'
    MYSQL = 'mysql'
    SQLITE = 'sqlite'


class RunState(str, Enum):
    """Backup run lifecycle states"""
    IDLE = 'idle'
    LOCK_ACQUIRING = 'lock_acquiring'
    VALIDATING = 'validating'
    DUMPING = 'dumping'
    UPLOADING = 'uploading'
    RETAINING = 'retaining'
    DONE = 'done'
    SKIPPED = 'skipped'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.DONE, RunState.SKIPPED, RunState.FAILED)


@dataclass(frozen=True)
class TransferPolicy:
    """Rate and throughput limits applied to the remote storage client"""
    tps_limit: float = 1.0  # requests per second, 0 = unlimited
    chunk_size: int = 16 * 1024 * 1024
    upload_cutoff: int = 16 * 1024 * 1024
    transfers: int = 1  # concurrent part uploads
    checkers: int = 2  # concurrent retention deletes
    max_transfer: int = 700 * 1024 ** 3  # bytes per run, 0 = unlimited
    retries: int = 5
    retry_sleep: float = 60.0

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.upload_cutoff < 0:
            raise ValueError("upload_cutoff must not be negative")
        if self.transfers < 1 or self.checkers < 1:
            raise ValueError("transfers and checkers must be at least 1")
        if self.retries < 0 or self.retry_sleep < 0 or self.tps_limit < 0 or self.max_transfer < 0:
            raise ValueError("retries, retry_sleep, tps_limit and max_transfer must not be negative")


@dataclass(frozen=True)
class RetentionPolicy:
    """How long backups are kept. Absence of a policy means forever."""
    max_age_days: int
    dry_run: bool = False


@dataclass(frozen=True)
class BackupJobSpec:
    """Validated, immutable description of one backup job"""
    engine: Engine
    database: str
    destination: str
    host: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    name_template: Optional[str] = None
    name_prefix: str = 'backup'
    retention: Optional[RetentionPolicy] = None
    transfer: TransferPolicy = field(default_factory=TransferPolicy)
    compression_level: int = 9

    def describe(self) -> str:
        """Connection summary safe for logs (no password)."""
        if self.engine == Engine.SQLITE:
            return f"sqlite://{self.database}"
        user = f"{self.user}@" if self.user else ''
        port = f":{self.port}" if self.port else ''
        return f"{self.engine.value}://{user}{self.host}{port}/{self.database}"


@dataclass(frozen=True)
class ProcessIdentity:
    """Identifies the process holding (or asking for) the backup lock"""
    pid: int
    hostname: str
    started: Optional[int] = None  # process start time, clock ticks since boot


@dataclass(frozen=True)
class LockRecord:
    """Persisted single-flight lock"""
    pid: int
    hostname: str
    token: str
    acquired_at: datetime
    started: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'pid': self.pid,
            'hostname': self.hostname,
            'token': self.token,
            'acquired_at': self.acquired_at.isoformat(),
            'started': self.started,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LockRecord':
        return cls(
            pid=int(data['pid']),
            hostname=str(data['hostname']),
            token=str(data['token']),
            acquired_at=datetime.fromisoformat(data['acquired_at']),
            started=int(data['started']) if data.get('started') is not None else None,
        )


@dataclass
class RunContext:
    """State of one orchestrator run"""
    spec: BackupJobSpec
    started_at: datetime
    object_name: str
    identity: ProcessIdentity
    lock_token: Optional[str] = None


@dataclass(frozen=True)
class RemoteObject:
    """One object listed from remote storage"""
    key: str
    last_modified: datetime
    size: int


@dataclass
class SweepResult:
    """Outcome of a retention sweep"""
    dry_run: bool
    candidates: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return 0 if self.dry_run else len(self.candidates)

    @property
    def count_deleted(self) -> int:
        return len(self.deleted)


@dataclass
class RunReport:
    """What a backup run did, for the summary line and the CLI exit code"""
    state: RunState
    exit_code: int
    engine: Optional[str] = None
    database: Optional[str] = None
    object_key: Optional[str] = None
    bytes_read: int = 0
    bytes_transferred: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None
    failed_stage: Optional[str] = None
    retention: Optional[SweepResult] = None
    logs: List[str] = field(default_factory=list)

    @property
    def outcome(self) -> str:
        return self.state.value
