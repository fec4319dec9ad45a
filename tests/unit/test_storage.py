"""
Unit tests for storage backends (dumpstream/backup/storage.py).

Tests S3Storage (against moto), LocalStorage and MemoryStorage.
"""

import os
from datetime import datetime, timezone

import pytest
import boto3
from botocore.exceptions import ClientError, EndpointConnectionError
from moto import mock_aws

from dumpstream.backup.storage import (
    LocalStorage,
    MemoryStorage,
    S3Storage,
    classify_s3_error,
    create_storage,
)
from dumpstream.errors import ConfigError, PermanentTransferError, TransientTransferError


MIB = 1024 * 1024


def client_error(code, status, operation='PutObject'):
    return ClientError(
        {'Error': {'Code': code, 'Message': code}, 'ResponseMetadata': {'HTTPStatusCode': status}},
        operation
    )


@pytest.fixture
def s3_bucket(aws_credentials):
    """Mock S3 with an empty 'backups' bucket."""
    with mock_aws():
        s3 = boto3.client('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='backups')
        yield s3


class TestS3Storage:
    """Test S3Storage against moto."""

    def test_single_put(self, s3_bucket):
        """Test a small object is stored under the prefix."""
        storage = S3Storage(bucket_name='backups', prefix='/nightly/')

        storage.begin_upload('app.sql.gz').put(b'payload')

        body = s3_bucket.get_object(Bucket='backups', Key='nightly/app.sql.gz')['Body'].read()
        assert body == b'payload'

    def test_multipart_upload_assembles_in_order(self, s3_bucket):
        """Test parts are committed in part-number order."""
        storage = S3Storage(bucket_name='backups', prefix='nightly')
        upload = storage.begin_upload('big.dump')

        upload.begin()
        first = upload.upload_part(1, b'a' * (5 * MIB))
        second = upload.upload_part(2, b'b' * 10)
        upload.complete([second, first])

        body = s3_bucket.get_object(Bucket='backups', Key='nightly/big.dump')['Body'].read()
        assert len(body) == 5 * MIB + 10
        assert body.endswith(b'b' * 10)

    def test_abort_leaves_nothing_visible(self, s3_bucket):
        """Test an aborted multipart upload creates no object."""
        storage = S3Storage(bucket_name='backups')
        upload = storage.begin_upload('partial.dump')

        upload.begin()
        upload.upload_part(1, b'a' * (5 * MIB))
        upload.abort()

        assert s3_bucket.list_objects_v2(Bucket='backups').get('KeyCount', 0) == 0
        assert not s3_bucket.list_multipart_uploads(Bucket='backups').get('Uploads')

    def test_iter_objects_relative_to_prefix(self, s3_bucket):
        """Test listing returns keys relative to the base path with aware times."""
        for key in ('nightly/a.gz', 'nightly/b.gz', 'nightly-old/c.gz', 'other/d.gz'):
            s3_bucket.put_object(Bucket='backups', Key=key, Body=b'x' * 3)

        storage = S3Storage(bucket_name='backups', prefix='nightly')
        objects = list(storage.iter_objects())

        assert [o.key for o in objects] == ['a.gz', 'b.gz']
        assert all(o.size == 3 for o in objects)
        assert all(o.last_modified.tzinfo is not None for o in objects)

    def test_delete(self, s3_bucket):
        """Test deleting an object by relative key."""
        s3_bucket.put_object(Bucket='backups', Key='nightly/a.gz', Body=b'x')
        storage = S3Storage(bucket_name='backups', prefix='nightly')

        storage.delete('a.gz')

        assert s3_bucket.list_objects_v2(Bucket='backups').get('KeyCount', 0) == 0

    def test_connection_missing_bucket(self, s3_bucket):
        """Test a missing bucket is a permanent failure."""
        storage = S3Storage(bucket_name='does-not-exist')

        with pytest.raises(PermanentTransferError, match='does not exist'):
            storage.test_connection()

    def test_connection_ok(self, s3_bucket):
        assert S3Storage(bucket_name='backups').test_connection() is True

    def test_client_retries_disabled(self, s3_bucket):
        """Test that botocore makes exactly one attempt per request."""
        storage = S3Storage(bucket_name='backups')

        assert storage.s3_client.meta.config.retries['total_max_attempts'] == 1


class TestClassifyS3Error:
    """Test boto3 error classification."""

    def test_throttling_is_rate_limited(self):
        error = classify_s3_error(client_error('SlowDown', 503), 'upload')

        assert isinstance(error, TransientTransferError)
        assert error.rate_limited is True

    def test_http_429_is_rate_limited(self):
        error = classify_s3_error(client_error('Whatever', 429), 'upload')

        assert isinstance(error, TransientTransferError)
        assert error.rate_limited is True

    def test_server_errors_are_transient(self):
        error = classify_s3_error(client_error('InternalError', 500), 'upload')

        assert isinstance(error, TransientTransferError)
        assert error.rate_limited is False

    @pytest.mark.parametrize('code,status', [
        ('AccessDenied', 403),
        ('QuotaExceeded', 403),
        ('NoSuchBucket', 404),
    ])
    def test_client_errors_are_permanent(self, code, status):
        assert isinstance(classify_s3_error(client_error(code, status), 'upload'), PermanentTransferError)

    def test_connection_errors_are_transient(self):
        error = classify_s3_error(EndpointConnectionError(endpoint_url='https://s3.example'), 'upload')

        assert isinstance(error, TransientTransferError)


class TestLocalStorage:
    """Test LocalStorage staging and listing."""

    def test_put_promotes_atomically(self, tmp_path):
        """Test a stored file appears under its name and staging is cleaned up."""
        storage = LocalStorage(str(tmp_path / 'backups'))

        storage.begin_upload('db/app.sql.gz').put(b'payload')

        assert (tmp_path / 'backups' / 'db' / 'app.sql.gz').read_bytes() == b'payload'
        assert list((tmp_path / 'backups' / '.staging').iterdir()) == []

    def test_chunked_upload(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        upload = storage.begin_upload('big.dump')

        upload.begin()
        parts = [upload.upload_part(i, bytes([i]) * 10) for i in (1, 2, 3)]
        upload.complete(list(reversed(parts)))

        assert (tmp_path / 'big.dump').read_bytes() == b'\x01' * 10 + b'\x02' * 10 + b'\x03' * 10

    def test_abort_removes_parts(self, tmp_path):
        """Test an aborted upload leaves no file behind."""
        storage = LocalStorage(str(tmp_path))
        upload = storage.begin_upload('big.dump')

        upload.begin()
        upload.upload_part(1, b'x' * 10)
        upload.abort()

        assert not (tmp_path / 'big.dump').exists()
        assert not upload.staging_dir.exists()

    def test_iter_objects_skips_staging(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        storage.begin_upload('a.gz').put(b'1')
        in_flight = storage.begin_upload('b.gz')
        in_flight.begin()
        in_flight.upload_part(1, b'22')

        objects = list(storage.iter_objects())

        assert [o.key for o in objects] == ['a.gz']
        assert objects[0].last_modified.tzinfo == timezone.utc

    def test_delete(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        storage.begin_upload('a.gz').put(b'1')

        storage.delete('a.gz')
        storage.delete('a.gz')

        assert not (tmp_path / 'a.gz').exists()


class TestMemoryStorage:
    """Test the process-local backend."""

    def test_shared_by_bucket_name(self):
        """Test that two handles on the same bucket see the same objects."""
        MemoryStorage('b', 'p').begin_upload('x.gz').put(b'data')

        assert MemoryStorage('b', 'p').get_object('x.gz') == b'data'
        assert [o.key for o in MemoryStorage('b').iter_objects()] == ['p/x.gz']

    def test_put_object_with_timestamp(self):
        storage = MemoryStorage('b')
        when = datetime(2020, 1, 1, tzinfo=timezone.utc)

        storage.put_object('old.gz', b'1', last_modified=when)

        assert next(storage.iter_objects()).last_modified == when

    def test_missing_object(self):
        with pytest.raises(PermanentTransferError):
            MemoryStorage('b').get_object('nope')


class TestCreateStorage:
    """Test destination parsing."""

    def test_s3(self, aws_credentials):
        with mock_aws():
            storage = create_storage('s3://bucket/some/prefix')

        assert isinstance(storage, S3Storage)
        assert storage.bucket_name == 'bucket'
        assert storage.prefix == 'some/prefix'

    def test_local_paths(self, tmp_path):
        assert isinstance(create_storage(str(tmp_path / 'a')), LocalStorage)
        assert isinstance(create_storage(f"file://{tmp_path / 'b'}"), LocalStorage)
        assert os.path.isdir(tmp_path / 'b')

    def test_memory(self):
        storage = create_storage('mem://bucket/prefix')

        assert isinstance(storage, MemoryStorage)
        assert storage.describe() == 'mem://bucket/prefix'

    @pytest.mark.parametrize('destination', ['gdrive:backups', 'ftp://host/path', 's3:///nobucket', ''])
    def test_unsupported(self, destination):
        with pytest.raises(ConfigError):
            create_storage(destination)
