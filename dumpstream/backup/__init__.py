"""
Backup module for dumpstream.

This module handles the core backup functionality including:
- Dump strategies (PostgreSQL, MySQL, SQLite)
- Streaming compression
- Transfer limiting and retries
- Staged uploads (S3, local, memory)
- Run orchestration
- Retention policy enforcement
"""

from .executor import BackupOrchestrator, run_backup, run_cleanup
from .sources import DumpStrategy, PostgresDump, MySQLDump, SQLiteDump, create_strategy
from .compression import GzipTransform
from .pipeline import StreamPipeline
from .storage import S3Storage, LocalStorage, MemoryStorage, create_storage
from .transfer import TransferLimiter
from .retention import RetentionSweeper

__all__ = [
    'BackupOrchestrator',
    'run_backup',
    'run_cleanup',
    'DumpStrategy',
    'PostgresDump',
    'MySQLDump',
    'SQLiteDump',
    'create_strategy',
    'GzipTransform',
    'StreamPipeline',
    'S3Storage',
    'LocalStorage',
    'MemoryStorage',
    'create_storage',
    'TransferLimiter',
    'RetentionSweeper'
]
