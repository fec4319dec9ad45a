import os
from typing import Optional, Mapping

from dumpstream.errors import ConfigError
from dumpstream.models import BackupJobSpec, Engine, RetentionPolicy, TransferPolicy
from dumpstream.utils.units import parse_size, parse_duration


ENGINE_ALIASES = {
    'postgres': Engine.POSTGRES,
    'postgresql': Engine.POSTGRES,
    'mysql': Engine.MYSQL,
    'mariadb': Engine.MYSQL,
    'sqlite': Engine.SQLITE,
    'sqlite3': Engine.SQLITE,
}

DEFAULT_PORTS = {
    Engine.POSTGRES: 5432,
    Engine.MYSQL: 3306,
}

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def env_value(environ: Mapping[str, str], *names: str) -> Optional[str]:
    """
    Return the first set value among names.

    Empty strings and the literal "null" count as unset, the way
    container orchestrators tend to pass blank variables through.
    """
    for name in names:
        value = environ.get(name)
        if value is not None:
            value = value.strip()
            if value and value != 'null':
                return value
    return None


class Config:
    """
    Raw settings read from the environment.

    Nothing is validated here; build_job_spec() turns a Config into a
    BackupJobSpec and reports everything that is wrong with it.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ

        # Database
        self.DB_TYPE = env_value(env, 'DB_TYPE')
        self.DB_HOST = env_value(env, 'DB_HOST')
        self.DB_PORT = env_value(env, 'DB_PORT')
        self.DB_NAME = env_value(env, 'DB_NAME')
        self.DB_USER = env_value(env, 'DB_USER')
        self.DB_PASSWORD = env_value(env, 'DB_PASSWORD')

        # Destination and naming
        self.BACKUP_DESTINATION = env_value(env, 'BACKUP_DESTINATION', 'RCLONE_REMOTE_PATH')
        self.BACKUP_NAME_TEMPLATE = env_value(env, 'BACKUP_NAME_TEMPLATE')
        self.BACKUP_NAME_PREFIX = env_value(env, 'BACKUP_NAME_PREFIX') or 'backup'
        self.BACKUP_COMPRESSION_LEVEL = env_value(env, 'BACKUP_COMPRESSION_LEVEL') or '9'

        # Retention
        self.BACKUP_RETENTION_DAYS = env_value(env, 'BACKUP_RETENTION_DAYS')
        self.BACKUP_RETENTION_DRY_RUN = (env_value(env, 'BACKUP_RETENTION_DRY_RUN') or 'false').lower() in TRUE_VALUES

        # Single-flight lock
        self.BACKUP_LOCK_FILE = env_value(env, 'BACKUP_LOCK_FILE') or '/tmp/db-backup.lock'

        # Transfer policy (defaults are deliberately conservative)
        self.TRANSFER_TPS_LIMIT = env_value(env, 'TRANSFER_TPS_LIMIT') or '1'
        self.TRANSFER_CHUNK_SIZE = env_value(env, 'TRANSFER_CHUNK_SIZE') or '16M'
        self.TRANSFER_UPLOAD_CUTOFF = env_value(env, 'TRANSFER_UPLOAD_CUTOFF') or '16M'
        self.TRANSFER_TRANSFERS = env_value(env, 'TRANSFER_TRANSFERS') or '1'
        self.TRANSFER_CHECKERS = env_value(env, 'TRANSFER_CHECKERS') or '2'
        self.TRANSFER_MAX_TRANSFER = env_value(env, 'TRANSFER_MAX_TRANSFER') or '700G'
        self.TRANSFER_RETRIES = env_value(env, 'TRANSFER_RETRIES') or '5'
        self.TRANSFER_RETRIES_SLEEP = env_value(env, 'TRANSFER_RETRIES_SLEEP') or '60s'

        # S3 client (falls back to the boto3 credential chain when unset)
        self.S3_ENDPOINT_URL = env_value(env, 'S3_ENDPOINT_URL')
        self.S3_REGION = env_value(env, 'S3_REGION', 'AWS_DEFAULT_REGION') or 'us-east-1'
        self.S3_ACCESS_KEY = env_value(env, 'S3_ACCESS_KEY')
        self.S3_SECRET_KEY = env_value(env, 'S3_SECRET_KEY')

        # Scheduler
        self.CRON_SCHEDULE = env_value(env, 'CRON_SCHEDULE')
        self.AUTOMATED_BACKUP = (env_value(env, 'AUTOMATED_BACKUP') or 'false').lower() in TRUE_VALUES
        self.SCHEDULER_TIMEZONE = env_value(env, 'TZ') or 'UTC'

        # Logging
        self.LOG_LEVEL = (env_value(env, 'LOG_LEVEL') or 'INFO').upper()
        self.LOG_DIR = env_value(env, 'LOG_DIR')

    @property
    def schedule(self) -> str:
        """Cron expression for automated mode (daily at 2 AM by default)."""
        return self.CRON_SCHEDULE or '0 2 * * *'

    @property
    def automated(self) -> bool:
        """Setting a schedule implies automated mode."""
        return self.AUTOMATED_BACKUP or self.CRON_SCHEDULE is not None

    def __repr__(self):
        return f'<Config db_type={self.DB_TYPE} destination={self.BACKUP_DESTINATION}>'


def build_transfer_policy(config: Config) -> TransferPolicy:
    """
    Parse the transfer policy settings.

    Raises:
        ConfigError: If any value cannot be parsed
    """
    try:
        return TransferPolicy(
            tps_limit=float(config.TRANSFER_TPS_LIMIT),
            chunk_size=parse_size(config.TRANSFER_CHUNK_SIZE),
            upload_cutoff=parse_size(config.TRANSFER_UPLOAD_CUTOFF),
            transfers=int(config.TRANSFER_TRANSFERS),
            checkers=int(config.TRANSFER_CHECKERS),
            max_transfer=parse_size(config.TRANSFER_MAX_TRANSFER),
            retries=int(config.TRANSFER_RETRIES),
            retry_sleep=parse_duration(config.TRANSFER_RETRIES_SLEEP),
        )
    except ValueError as e:
        raise ConfigError(f"Invalid transfer policy: {e}")


def build_retention_policy(config: Config, dry_run: Optional[bool] = None) -> Optional[RetentionPolicy]:
    """
    Parse the retention settings. Returns None when retention is unlimited.

    Raises:
        ConfigError: If BACKUP_RETENTION_DAYS is not a non-negative integer
    """
    if config.BACKUP_RETENTION_DAYS is None:
        return None

    try:
        days = int(config.BACKUP_RETENTION_DAYS)
    except ValueError:
        raise ConfigError(f"BACKUP_RETENTION_DAYS must be an integer: {config.BACKUP_RETENTION_DAYS!r}")
    if days < 0:
        raise ConfigError(f"BACKUP_RETENTION_DAYS must not be negative: {days}")

    if dry_run is None:
        dry_run = config.BACKUP_RETENTION_DRY_RUN
    return RetentionPolicy(max_age_days=days, dry_run=dry_run)


def parse_engine(value: Optional[str]) -> Engine:
    """
    Map a DB_TYPE value to an Engine.

    Raises:
        ConfigError: If the engine is missing or unsupported
    """
    if not value:
        raise ConfigError("DB_TYPE is not set")
    engine = ENGINE_ALIASES.get(value.lower())
    if engine is None:
        raise ConfigError(
            f"Unsupported database type: {value}. "
            f"Supported types: {', '.join(sorted(ENGINE_ALIASES))}"
        )
    return engine


def build_job_spec(config: Config) -> BackupJobSpec:
    """
    Validate configuration and build the immutable job spec.

    Args:
        config: Raw settings

    Returns:
        BackupJobSpec for this run

    Raises:
        ConfigError: Listing every missing required field, or the first
            value that fails to parse
    """
    missing = []
    if not config.DB_TYPE:
        missing.append('DB_TYPE')
    if not config.DB_NAME:
        missing.append('DB_NAME')
    if not config.BACKUP_DESTINATION:
        missing.append('BACKUP_DESTINATION')

    engine = parse_engine(config.DB_TYPE) if config.DB_TYPE else None

    # SQLite is file based, every other engine needs a server
    if engine is not None and engine != Engine.SQLITE and not config.DB_HOST:
        missing.append('DB_HOST')

    if missing:
        raise ConfigError(f"Required configuration is not set: {', '.join(missing)}")

    port = None
    if engine != Engine.SQLITE:
        if config.DB_PORT:
            try:
                port = int(config.DB_PORT)
            except ValueError:
                raise ConfigError(f"DB_PORT must be an integer: {config.DB_PORT!r}")
            if not 0 < port < 65536:
                raise ConfigError(f"DB_PORT out of range: {port}")
        else:
            port = DEFAULT_PORTS[engine]

    try:
        compression_level = int(config.BACKUP_COMPRESSION_LEVEL)
    except ValueError:
        raise ConfigError(f"BACKUP_COMPRESSION_LEVEL must be an integer: {config.BACKUP_COMPRESSION_LEVEL!r}")
    if not 1 <= compression_level <= 9:
        raise ConfigError(f"BACKUP_COMPRESSION_LEVEL must be between 1 and 9: {compression_level}")

    return BackupJobSpec(
        engine=engine,
        database=config.DB_NAME,
        destination=config.BACKUP_DESTINATION,
        host=config.DB_HOST,
        port=port,
        user=config.DB_USER,
        password=config.DB_PASSWORD,
        name_template=config.BACKUP_NAME_TEMPLATE,
        name_prefix=config.BACKUP_NAME_PREFIX,
        retention=build_retention_policy(config),
        transfer=build_transfer_policy(config),
        compression_level=compression_level,
    )
