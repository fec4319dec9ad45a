"""
Shared pytest fixtures for dumpstream tests.

This module provides fixtures for:
- Environment-style settings for a complete backup job
- A small SQLite database to dump
- Lock file location inside the test's temp directory
- Fast transfer policies (no rate limit, no retry sleeps)
- Mock AWS credentials for moto
"""

import sqlite3

import pytest

from dumpstream.config import Config
from dumpstream.models import TransferPolicy
from dumpstream.backup.storage import reset_memory_buckets


@pytest.fixture(autouse=True)
def memory_buckets():
    """Every test starts with empty mem:// buckets."""
    reset_memory_buckets()
    yield
    reset_memory_buckets()


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def sqlite_db(tmp_path):
    """
    SQLite database with a couple of tables and rows.

    Returns:
        Path to the database file
    """
    path = tmp_path / 'app.db'
    conn = sqlite3.connect(str(path))
    conn.executescript("""
        CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL);
        CREATE TABLE orders (id INTEGER PRIMARY KEY, user_id INTEGER, total REAL);
    """)
    conn.executemany("INSERT INTO users (name) VALUES (?)", [(f"user{i}",) for i in range(50)])
    conn.executemany("INSERT INTO orders (user_id, total) VALUES (?, ?)", [(i % 50, i * 1.5) for i in range(200)])
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def lock_path(tmp_path):
    """Lock file location private to the test."""
    return str(tmp_path / 'locks' / 'db-backup.lock')


@pytest.fixture
def backup_env(sqlite_db, lock_path):
    """
    Settings for a SQLite backup into a memory bucket.

    Rate limiting and retry sleeps are off so tests run fast.
    """
    return {
        'DB_TYPE': 'sqlite',
        'DB_NAME': str(sqlite_db),
        'BACKUP_DESTINATION': 'mem://backups/nightly',
        'BACKUP_LOCK_FILE': lock_path,
        'TRANSFER_TPS_LIMIT': '0',
        'TRANSFER_RETRIES_SLEEP': '0s',
    }


@pytest.fixture
def backup_config(backup_env):
    """Config built from backup_env."""
    return Config(backup_env)


@pytest.fixture
def fast_policy():
    """Transfer policy with small chunks and no waiting."""
    return TransferPolicy(
        tps_limit=0,
        chunk_size=1024,
        upload_cutoff=1024,
        transfers=1,
        checkers=2,
        max_transfer=0,
        retries=3,
        retry_sleep=0,
    )


@pytest.fixture
def recorded_sleeps():
    """
    Sleep replacement that records requested delays.

    Returns:
        (sleep function, list of delays)
    """
    delays = []

    def sleep(seconds):
        delays.append(seconds)

    return sleep, delays
