"""
Remote storage backends for streamed backups.

Supports:
- S3Storage: S3 or any S3-compatible service (boto3)
- LocalStorage: a directory on a mounted volume
- MemoryStorage: process-local buckets ("mem://"), for tests and dry runs

Every backend exposes the same surface: begin_upload() returns a staged
upload that is invisible until complete() succeeds, iter_objects() pages
through stored objects with their modification time, delete() removes one.
Keys passed to and returned from a backend are relative to its base path.
"""

import os
import shutil
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional
from urllib.parse import urlparse

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from dumpstream.errors import (
    ConfigError,
    PermanentTransferError,
    StorageError,
    TransientTransferError,
)
from dumpstream.models import RemoteObject


logger = logging.getLogger(__name__)

RATE_LIMIT_CODES = {
    'SlowDown',
    'Throttling',
    'ThrottlingException',
    'RequestLimitExceeded',
    'RequestThrottled',
    'TooManyRequests',
    'TooManyRequestsException',
    'rateLimitExceeded',
    'userRateLimitExceeded',
    '429',
}

TRANSIENT_CODES = {
    'RequestTimeout',
    'RequestTimeoutException',
    'InternalError',
    'ServiceUnavailable',
    '500',
    '502',
    '503',
    '504',
}

TRANSIENT_BOTOCORE_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


def classify_s3_error(error: Exception, action: str) -> StorageError:
    """
    Map a boto3 exception onto the transfer error taxonomy.

    Args:
        error: ClientError or BotoCoreError
        action: What was being attempted, for the message

    Returns:
        TransientTransferError or PermanentTransferError
    """
    if isinstance(error, ClientError):
        error_code = str(error.response.get('Error', {}).get('Code', 'Unknown'))
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        message = f"S3 {action} failed ({error_code}): {error}"

        if error_code in RATE_LIMIT_CODES or status == 429:
            return TransientTransferError(message, rate_limited=True)
        if error_code in TRANSIENT_CODES or (status is not None and status >= 500):
            return TransientTransferError(message)
        return PermanentTransferError(message)

    if isinstance(error, TRANSIENT_BOTOCORE_ERRORS):
        return TransientTransferError(f"S3 {action} failed: {error}")

    return PermanentTransferError(f"S3 {action} failed: {error}")


def _join_key(prefix: str, name: str) -> str:
    prefix = prefix.strip('/')
    name = name.lstrip('/')
    return f"{prefix}/{name}" if prefix else name


class S3Upload:
    """Staged upload of one S3 object. Multipart uploads stay invisible until completed."""

    def __init__(self, storage: 'S3Storage', key: str):
        self.storage = storage
        self.key = key
        self.upload_id = None

    @property
    def _client(self):
        return self.storage.s3_client

    def put(self, data: bytes):
        """Simple single-request upload."""
        try:
            self._client.put_object(
                Bucket=self.storage.bucket_name,
                Key=self.key,
                Body=data
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_s3_error(e, 'upload')

    def begin(self):
        """Start a multipart upload."""
        try:
            response = self._client.create_multipart_upload(
                Bucket=self.storage.bucket_name,
                Key=self.key
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_s3_error(e, 'create multipart upload')
        self.upload_id = response['UploadId']

    def upload_part(self, part_number: int, data: bytes) -> Dict:
        try:
            response = self._client.upload_part(
                Bucket=self.storage.bucket_name,
                Key=self.key,
                PartNumber=part_number,
                UploadId=self.upload_id,
                Body=data
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_s3_error(e, f'upload part {part_number}')

        return {
            'PartNumber': part_number,
            'ETag': response['ETag']
        }

    def complete(self, parts: List[Dict]):
        try:
            self._client.complete_multipart_upload(
                Bucket=self.storage.bucket_name,
                Key=self.key,
                UploadId=self.upload_id,
                MultipartUpload={'Parts': sorted(parts, key=lambda p: p['PartNumber'])}
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_s3_error(e, 'complete multipart upload')

    def abort(self):
        if self.upload_id is None:
            return
        try:
            self._client.abort_multipart_upload(
                Bucket=self.storage.bucket_name,
                Key=self.key,
                UploadId=self.upload_id
            )
        except (ClientError, BotoCoreError) as e:
            # Lifecycle rules on the bucket can still clean this up
            logger.warning(f"Failed to abort multipart upload {self.upload_id} for {self.key}: {e}")


class S3Storage:
    """
    Handler for streaming backups to S3.

    Objects are stored under {prefix}/{name}.
    """

    scheme = 's3'
    # S3 rejects non-final multipart parts smaller than 5 MiB
    min_part_size = 5 * 1024 * 1024

    def __init__(
        self,
        bucket_name: str,
        prefix: str = '',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        max_pool_connections: int = 10,
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            prefix: Key prefix all backups live under
            access_key: Access key ID (None = boto3 credential chain)
            secret_key: Secret access key
            region: AWS region (default: us-east-1)
            endpoint_url: Endpoint for S3-compatible services
            max_pool_connections: HTTP pool size, at least the number of concurrent transfers
        """
        self.bucket_name = bucket_name
        self.prefix = prefix.strip('/')
        self.region = region

        # Retries are owned by TransferLimiter, botocore must not retry on its own
        boto_config = BotoConfig(
            retries={'total_max_attempts': 1, 'mode': 'standard'},
            max_pool_connections=max_pool_connections,
        )

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                config=boto_config,
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def describe(self) -> str:
        return f"s3://{self.bucket_name}/{self.prefix}".rstrip('/')

    def begin_upload(self, name: str) -> S3Upload:
        return S3Upload(self, _join_key(self.prefix, name))

    def delete(self, name: str):
        """
        Delete an object.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=_join_key(self.prefix, name)
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_s3_error(e, 'delete')

    def iter_objects(self, prefix: str = '') -> Iterator[RemoteObject]:
        """
        Page through objects under the base path.

        Args:
            prefix: Further prefix relative to the base path

        Yields:
            RemoteObject with the key relative to the base path

        Raises:
            StorageError: If listing fails
        """
        full_prefix = _join_key(self.prefix, prefix)
        strip = len(self.prefix) + 1 if self.prefix else 0

        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=full_prefix):
                for obj in page.get('Contents', []):
                    last_modified = obj['LastModified']
                    if last_modified.tzinfo is None:
                        last_modified = last_modified.replace(tzinfo=timezone.utc)
                    yield RemoteObject(
                        key=obj['Key'][strip:],
                        last_modified=last_modified,
                        size=obj['Size']
                    )
        except (ClientError, BotoCoreError) as e:
            raise classify_s3_error(e, 'list')

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise PermanentTransferError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise PermanentTransferError(f"Access denied to bucket: {self.bucket_name}")
            raise classify_s3_error(e, 'connection test')
        except BotoCoreError as e:
            raise classify_s3_error(e, 'connection test')


class LocalUpload:
    """Staged upload into a local directory; renamed into place on completion."""

    def __init__(self, storage: 'LocalStorage', name: str):
        self.storage = storage
        self.name = name
        self.dest_path = storage.base_path / name
        self.staging_dir = storage.staging_path / uuid.uuid4().hex

    def _promote(self, staged_file: Path):
        self.dest_path.parent.mkdir(parents=True, exist_ok=True)
        os.replace(staged_file, self.dest_path)

    def put(self, data: bytes):
        try:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
            staged_file = self.staging_dir / 'object.partial'
            staged_file.write_bytes(data)
            self._promote(staged_file)
        except OSError as e:
            raise PermanentTransferError(f"Failed to store {self.dest_path}: {e}")
        finally:
            shutil.rmtree(self.staging_dir, ignore_errors=True)

    def begin(self):
        try:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PermanentTransferError(f"Failed to create staging directory: {e}")

    def upload_part(self, part_number: int, data: bytes) -> Dict:
        part_path = self.staging_dir / f"part-{part_number:06d}"
        try:
            part_path.write_bytes(data)
        except OSError as e:
            raise PermanentTransferError(f"Failed to write part {part_number}: {e}")
        return {'PartNumber': part_number, 'Path': str(part_path)}

    def complete(self, parts: List[Dict]):
        staged_file = self.staging_dir / 'object.partial'
        try:
            with open(staged_file, 'wb') as out:
                for part in sorted(parts, key=lambda p: p['PartNumber']):
                    with open(part['Path'], 'rb') as f:
                        shutil.copyfileobj(f, out)
            self._promote(staged_file)
        except OSError as e:
            raise PermanentTransferError(f"Failed to assemble {self.dest_path}: {e}")
        finally:
            shutil.rmtree(self.staging_dir, ignore_errors=True)

    def abort(self):
        shutil.rmtree(self.staging_dir, ignore_errors=True)


class LocalStorage:
    """
    Handler for storing backups in a local (usually mounted) directory.

    Uploads are staged under {base_path}/.staging and renamed into place, so
    a half-written backup never appears under its final name.
    """

    scheme = 'file'
    min_part_size = 1
    STAGING_DIR = '.staging'

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for backups
        """
        self.base_path = Path(base_path).expanduser()
        self.staging_path = self.base_path / self.STAGING_DIR

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def describe(self) -> str:
        return str(self.base_path)

    def begin_upload(self, name: str) -> LocalUpload:
        return LocalUpload(self, name.lstrip('/'))

    def delete(self, name: str):
        """
        Delete a file from local storage.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self.base_path / name

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise PermanentTransferError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise PermanentTransferError(f"Failed to delete local file: {e}")

    def iter_objects(self, prefix: str = '') -> Iterator[RemoteObject]:
        """
        Walk stored files, skipping staged uploads.

        Raises:
            StorageError: If listing fails
        """
        try:
            for file_path in sorted(self.base_path.rglob('*')):
                relative = file_path.relative_to(self.base_path)
                if relative.parts[0] == self.STAGING_DIR or not file_path.is_file():
                    continue
                key = relative.as_posix()
                if prefix and not key.startswith(prefix):
                    continue
                stat = file_path.stat()
                yield RemoteObject(
                    key=key,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    size=stat.st_size
                )
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def test_connection(self) -> bool:
        if not os.access(self.base_path, os.W_OK):
            raise PermanentTransferError(f"Local storage directory is not writable: {self.base_path}")
        return True

    def get_full_path(self, name: str) -> str:
        return str(self.base_path / name)


_memory_buckets: Dict[str, Dict[str, RemoteObject]] = {}
_memory_data: Dict[str, Dict[str, bytes]] = {}
_memory_lock = threading.Lock()


def reset_memory_buckets():
    """Drop all mem:// buckets."""
    with _memory_lock:
        _memory_buckets.clear()
        _memory_data.clear()


class MemoryUpload:
    """Staged upload into a memory bucket."""

    def __init__(self, storage: 'MemoryStorage', key: str):
        self.storage = storage
        self.key = key
        self._parts: Dict[int, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes):
        self.storage.put_object(self.key, bytes(data))

    def begin(self):
        pass

    def upload_part(self, part_number: int, data: bytes) -> Dict:
        with self._lock:
            self._parts[part_number] = bytes(data)
        return {'PartNumber': part_number}

    def complete(self, parts: List[Dict]):
        with self._lock:
            data = b''.join(self._parts[p['PartNumber']] for p in sorted(parts, key=lambda p: p['PartNumber']))
            self._parts.clear()
        self.storage.put_object(self.key, data)

    def abort(self):
        with self._lock:
            self._parts.clear()


class MemoryStorage:
    """
    Process-local object store addressed as mem://{bucket}/{prefix}.

    Buckets are shared by every MemoryStorage with the same name inside a
    process, so a test can inspect what a run uploaded.
    """

    scheme = 'mem'
    min_part_size = 1

    def __init__(self, bucket_name: str, prefix: str = ''):
        self.bucket_name = bucket_name
        self.prefix = prefix.strip('/')
        with _memory_lock:
            _memory_buckets.setdefault(bucket_name, {})
            _memory_data.setdefault(bucket_name, {})

    def describe(self) -> str:
        return f"mem://{self.bucket_name}/{self.prefix}".rstrip('/')

    def begin_upload(self, name: str) -> MemoryUpload:
        return MemoryUpload(self, _join_key(self.prefix, name))

    def put_object(self, key: str, data: bytes, last_modified: Optional[datetime] = None):
        """Store an object under its full key (prefix included)."""
        modified = last_modified or datetime.now(timezone.utc)
        with _memory_lock:
            _memory_buckets[self.bucket_name][key] = RemoteObject(key=key, last_modified=modified, size=len(data))
            _memory_data[self.bucket_name][key] = data

    def get_object(self, name: str) -> bytes:
        key = _join_key(self.prefix, name)
        with _memory_lock:
            try:
                return _memory_data[self.bucket_name][key]
            except KeyError:
                raise PermanentTransferError(f"No such object: {key}")

    def delete(self, name: str):
        key = _join_key(self.prefix, name)
        with _memory_lock:
            _memory_buckets[self.bucket_name].pop(key, None)
            _memory_data[self.bucket_name].pop(key, None)

    def iter_objects(self, prefix: str = '') -> Iterator[RemoteObject]:
        full_prefix = _join_key(self.prefix, prefix)
        strip = len(self.prefix) + 1 if self.prefix else 0

        with _memory_lock:
            objects = sorted(_memory_buckets[self.bucket_name].values(), key=lambda o: o.key)

        for obj in objects:
            if obj.key.startswith(full_prefix):
                yield RemoteObject(key=obj.key[strip:], last_modified=obj.last_modified, size=obj.size)

    def test_connection(self) -> bool:
        return True


def create_storage(destination: str, config=None, max_pool_connections: int = 10):
    """
    Factory function to create the storage backend for a destination.

    Args:
        destination: s3://bucket/prefix, mem://bucket/prefix,
            file:///path or a plain filesystem path
        config: Config supplying S3 credentials and endpoint
        max_pool_connections: HTTP pool size for S3

    Returns:
        S3Storage, LocalStorage or MemoryStorage instance

    Raises:
        ConfigError: If the destination scheme is not supported
    """
    if not destination:
        raise ConfigError("Destination is not set")

    parsed = urlparse(destination)
    scheme = parsed.scheme.lower()

    if scheme == 's3':
        if not parsed.netloc:
            raise ConfigError(f"S3 destination has no bucket: {destination}")
        return S3Storage(
            bucket_name=parsed.netloc,
            prefix=parsed.path,
            access_key=getattr(config, 'S3_ACCESS_KEY', None),
            secret_key=getattr(config, 'S3_SECRET_KEY', None),
            region=getattr(config, 'S3_REGION', None) or 'us-east-1',
            endpoint_url=getattr(config, 'S3_ENDPOINT_URL', None),
            max_pool_connections=max_pool_connections,
        )
    elif scheme == 'mem':
        if not parsed.netloc:
            raise ConfigError(f"Memory destination has no bucket: {destination}")
        return MemoryStorage(parsed.netloc, parsed.path)
    elif scheme == 'file':
        return LocalStorage(parsed.path)
    elif scheme == '':
        return LocalStorage(destination)
    else:
        raise ConfigError(
            f"Unsupported destination: {destination}. "
            f"Use s3://bucket/prefix, file:///path, mem://name or a local path"
        )
