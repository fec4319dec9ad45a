"""
Unit tests for the backup orchestrator (dumpstream/backup/executor.py).

Tests the complete run workflow end to end against memory and mocked S3
storage, including skip on overlap and retry exhaustion.
"""

import gzip
import io
import logging
import os
import re
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import boto3
from botocore.exceptions import ClientError
from freezegun import freeze_time
from moto import mock_aws

from dumpstream.backup.executor import BackupOrchestrator, run_backup, run_cleanup
from dumpstream.backup.storage import MemoryStorage, create_storage
from dumpstream.config import Config
from dumpstream.errors import ConfigError, RetentionError, TransientTransferError
from dumpstream.models import RunState


class GatedStorage(MemoryStorage):
    """Memory storage whose uploads block until released."""

    def __init__(self, bucket_name, prefix, entered, release):
        super().__init__(bucket_name, prefix)
        self.entered = entered
        self.release = release

    def begin_upload(self, name):
        upload = super().begin_upload(name)
        original_put = upload.put

        def gated_put(data):
            self.entered.set()
            assert self.release.wait(10)
            original_put(data)

        upload.put = gated_put
        return upload


class RateLimitedStorage(MemoryStorage):
    """Memory storage whose uploads always get a rate-limit response."""

    def __init__(self, bucket_name, prefix=''):
        super().__init__(bucket_name, prefix)
        self.attempts = 0

    def begin_upload(self, name):
        upload = super().begin_upload(name)

        def throttled_put(data):
            self.attempts += 1
            raise TransientTransferError("429 Too Many Requests", rate_limited=True)

        upload.put = throttled_put
        return upload


class TestBackupOrchestrator:
    """Test BackupOrchestrator basic functionality."""

    def test_orchestrator_initialization(self, backup_config):
        """Test orchestrator starts idle with the configured lock file."""
        orchestrator = BackupOrchestrator(backup_config)

        assert orchestrator.state == RunState.IDLE
        assert orchestrator.guard.path == backup_config.BACKUP_LOCK_FILE
        assert orchestrator.logs == []

    def test_sqlite_backup_to_memory(self, tmp_path, sqlite_db, lock_path, monkeypatch):
        """Test a sqlite backup with prefix "t" lands under the expected name."""
        monkeypatch.chdir(sqlite_db.parent)
        os.rename(sqlite_db, sqlite_db.parent / 'test.db')
        config = Config({
            'DB_TYPE': 'sqlite',
            'DB_NAME': 'test.db',
            'BACKUP_DESTINATION': 'mem://backups',
            'BACKUP_NAME_PREFIX': 't',
            'BACKUP_LOCK_FILE': lock_path,
            'TRANSFER_TPS_LIMIT': '0',
        })

        report = run_backup(config)

        assert report.exit_code == 0
        assert report.state == RunState.DONE
        assert re.match(r'^t_sqlite_test\.db_\d{8}_\d{6}\.db\.gz$', report.object_key)
        stored = MemoryStorage('backups').get_object(report.object_key)
        assert len(stored) == report.bytes_transferred
        dump = gzip.decompress(stored).decode('utf-8')
        assert 'CREATE TABLE users' in dump
        assert report.bytes_read == len(dump.encode('utf-8'))
        assert not os.path.exists(lock_path)

    def test_overlapping_run_is_skipped(self, backup_config, lock_path):
        """Test a second run while the first is uploading exits 0 and the first completes."""
        entered = threading.Event()
        release = threading.Event()
        results = []

        first = BackupOrchestrator(
            backup_config,
            storage_factory=lambda destination, config: GatedStorage('backups', 'nightly', entered, release),
        )
        thread = threading.Thread(target=lambda: results.append(first.run()))
        thread.start()
        try:
            assert entered.wait(10)
            assert first.state == RunState.UPLOADING

            second = run_backup(backup_config)

            assert second.state == RunState.SKIPPED
            assert second.exit_code == 0
            assert any('skipping' in line for line in second.logs)
            assert os.path.exists(lock_path)
        finally:
            release.set()
            thread.join(10)

        assert results[0].state == RunState.DONE
        assert results[0].exit_code == 0
        assert MemoryStorage('backups', 'nightly').get_object(results[0].object_key)
        assert not os.path.exists(lock_path)

    def test_rate_limited_upload_exhausts_retries(self, backup_env, lock_path, recorded_sleeps):
        """Test an always-throttled remote is retried exactly 3 times, then exit 2."""
        sleep, delays = recorded_sleeps
        backup_env.update({'TRANSFER_RETRIES': '3', 'TRANSFER_RETRIES_SLEEP': '10s'})
        storage = RateLimitedStorage('backups')

        orchestrator = BackupOrchestrator(
            Config(backup_env),
            storage_factory=lambda destination, config: storage,
            sleep=sleep,
        )
        report = orchestrator.run()

        assert orchestrator.limiter.retries_performed == 3
        assert storage.attempts == 4
        assert delays == [10.0, 20.0, 40.0]
        assert report.exit_code == 2
        assert report.state == RunState.FAILED
        assert report.failed_stage == 'upload'
        assert not os.path.exists(lock_path)
        assert list(storage.iter_objects()) == []

    def test_s3_throttling_exhausts_retries(self, backup_env, lock_path, recorded_sleeps, aws_credentials):
        """Test S3 SlowDown responses are classified and retried by the policy."""
        sleep, delays = recorded_sleeps
        backup_env.update({
            'BACKUP_DESTINATION': 's3://backups/nightly',
            'TRANSFER_RETRIES': '3',
            'TRANSFER_RETRIES_SLEEP': '1s',
        })
        slow_down = ClientError(
            {'Error': {'Code': 'SlowDown', 'Message': 'Please reduce your request rate.'},
             'ResponseMetadata': {'HTTPStatusCode': 503}},
            'PutObject'
        )
        storages = []

        def throttled_s3(destination, config):
            storage = create_storage(destination, config)
            storage.s3_client.put_object = MagicMock(side_effect=slow_down)
            storages.append(storage)
            return storage

        with mock_aws():
            boto3.client('s3', region_name='us-east-1').create_bucket(Bucket='backups')
            orchestrator = BackupOrchestrator(Config(backup_env), storage_factory=throttled_s3, sleep=sleep)
            report = orchestrator.run()

        assert storages[0].s3_client.put_object.call_count == 4
        assert delays == [1.0, 2.0, 4.0]
        assert report.exit_code == 2
        assert not os.path.exists(lock_path)

    def test_s3_backup(self, backup_env, aws_credentials):
        """Test a complete backup into moto S3."""
        backup_env['BACKUP_DESTINATION'] = 's3://backups/nightly'

        with mock_aws():
            s3 = boto3.client('s3', region_name='us-east-1')
            s3.create_bucket(Bucket='backups')

            report = run_backup(Config(backup_env))

            obj = s3.get_object(Bucket='backups', Key=f"nightly/{report.object_key}")
            assert b'CREATE TABLE' in gzip.decompress(obj['Body'].read())

        assert report.exit_code == 0

    def test_missing_config_exits_1(self, lock_path):
        """Test missing required settings fail validation with exit 1."""
        report = run_backup(Config({'DB_TYPE': 'postgres', 'BACKUP_LOCK_FILE': lock_path}))

        assert report.exit_code == 1
        assert report.state == RunState.FAILED
        assert report.failed_stage == 'validate'
        assert 'DB_HOST' in report.error
        assert not os.path.exists(lock_path)

    def test_chunk_size_below_s3_minimum(self, backup_env, aws_credentials):
        """Test S3 destinations reject chunks smaller than a multipart part."""
        backup_env.update({'BACKUP_DESTINATION': 's3://backups', 'TRANSFER_CHUNK_SIZE': '1M'})

        with mock_aws():
            report = run_backup(Config(backup_env))

        assert report.exit_code == 1
        assert 'minimum part size' in report.error

    def test_missing_database_exits_2(self, backup_env, tmp_path):
        """Test a dump failure is exit 2 and nothing is stored."""
        backup_env['DB_NAME'] = str(tmp_path / 'missing.db')

        report = run_backup(Config(backup_env))

        assert report.exit_code == 2
        assert report.failed_stage == 'dump'
        assert list(MemoryStorage('backups').iter_objects()) == []

    @patch('dumpstream.backup.sources.subprocess.Popen')
    def test_postgres_archive_stored_as_is(self, mock_popen, lock_path):
        """Test pg_dump output is stored without recompression."""
        archive = b'PGDMP' + bytes(range(256)) * 100
        process = MagicMock()
        process.stdout = io.BytesIO(archive)
        process.stderr = io.BytesIO(b'')
        process.wait.return_value = 0
        process.poll.return_value = 0
        mock_popen.return_value = process

        report = run_backup(Config({
            'DB_TYPE': 'postgres', 'DB_HOST': 'db.internal', 'DB_NAME': 'app',
            'DB_USER': 'backup', 'DB_PASSWORD': 's3cret',
            'BACKUP_DESTINATION': 'mem://pg', 'BACKUP_LOCK_FILE': lock_path,
            'TRANSFER_TPS_LIMIT': '0',
        }))

        assert report.exit_code == 0
        assert report.object_key.endswith('.dump')
        assert MemoryStorage('pg').get_object(report.object_key) == archive
        command = mock_popen.call_args[0][0]
        assert command[0] == 'pg_dump'
        assert mock_popen.call_args[1]['env']['PGPASSWORD'] == 's3cret'

    def test_retention_runs_after_backup(self, backup_env):
        """Test expired backups are removed after a successful run."""
        backup_env['BACKUP_RETENTION_DAYS'] = '7'
        storage = MemoryStorage('backups', 'nightly')
        storage.put_object('nightly/ancient.db.gz', b'x',
                           last_modified=datetime.now(timezone.utc) - timedelta(days=30))

        report = run_backup(Config(backup_env))

        assert report.exit_code == 0
        assert report.retention.deleted == ['ancient.db.gz']
        assert [o.key for o in storage.iter_objects()] == [report.object_key]

    def test_retention_dry_run(self, backup_env):
        backup_env.update({'BACKUP_RETENTION_DAYS': '7', 'BACKUP_RETENTION_DRY_RUN': 'true'})
        storage = MemoryStorage('backups', 'nightly')
        storage.put_object('nightly/ancient.db.gz', b'x',
                           last_modified=datetime.now(timezone.utc) - timedelta(days=30))

        report = run_backup(Config(backup_env))

        assert report.retention.candidates == ['ancient.db.gz']
        assert report.retention.attempted == 0
        assert len(list(storage.iter_objects())) == 2

    @patch('dumpstream.backup.executor.RetentionSweeper.sweep', side_effect=RetentionError("listing failed"))
    def test_retention_failure_not_fatal(self, mock_sweep, backup_env):
        """Test a failing sweep is logged and the run still succeeds."""
        backup_env['BACKUP_RETENTION_DAYS'] = '7'

        report = run_backup(Config(backup_env))

        assert report.state == RunState.DONE
        assert report.exit_code == 0
        assert report.retention is None
        assert any('Retention sweep failed' in line for line in report.logs)

    def test_unexpected_error_exits_2(self, backup_config, lock_path):
        """Test an unexpected exception still fails cleanly and releases the lock."""
        def broken_factory(destination, config):
            raise RuntimeError("boom")

        report = run_backup(backup_config, storage_factory=broken_factory)

        assert report.exit_code == 2
        assert report.state == RunState.FAILED
        assert report.error == 'boom'
        assert not os.path.exists(lock_path)

    def test_cancelled_run(self, backup_config, lock_path):
        """Test a cancelled run fails with exit 2 and releases the lock."""
        cancel = threading.Event()
        cancel.set()

        report = run_backup(backup_config, cancel_event=cancel)

        assert report.exit_code == 2
        assert report.state == RunState.FAILED
        assert not os.path.exists(lock_path)

    def test_summary_line(self, backup_config, caplog):
        """Test every run ends with one summary line."""
        caplog.set_level(logging.INFO, logger='dumpstream.backup.executor')

        report = run_backup(backup_config)

        summaries = [r.getMessage() for r in caplog.records if r.getMessage().startswith('backup summary')]
        assert len(summaries) == 1
        assert 'engine=sqlite' in summaries[0]
        assert f"bytes={report.bytes_transferred}" in summaries[0]
        assert summaries[0].endswith('outcome=done')

    @freeze_time("2024-03-01 12:34:56")
    def test_log_lines_carry_utc_timestamp(self, backup_config):
        """Test run log lines are stamped with the current UTC time."""
        orchestrator = BackupOrchestrator(backup_config)

        orchestrator._log("Starting backup")

        assert orchestrator.logs == ['[2024-03-01 12:34:56 UTC] Starting backup']


class TestRunCleanup:
    """Test the standalone retention entry point."""

    def test_cleanup_dry_run_override(self, backup_env):
        backup_env['BACKUP_RETENTION_DAYS'] = '7'
        storage = MemoryStorage('backups', 'nightly')
        storage.put_object('nightly/ancient.db.gz', b'x',
                           last_modified=datetime.now(timezone.utc) - timedelta(days=30))

        dry = run_cleanup(Config(backup_env), dry_run=True)
        real = run_cleanup(Config(backup_env))

        assert dry.candidates == real.candidates == ['ancient.db.gz']
        assert real.deleted == ['ancient.db.gz']

    def test_cleanup_requires_retention(self, backup_env):
        with pytest.raises(ConfigError, match='BACKUP_RETENTION_DAYS'):
            run_cleanup(Config(backup_env))
