"""
Storage handlers for backup artifacts.

Supports:
- S3Storage: Upload to Cloudflare R2 or any S3-compatible endpoint
- LocalStorage: Store in a local directory

Both implement the same contract used by the executor and retention:
upload(key, fileobj), list_objects(prefix) and delete(key).
"""

import os
import shutil
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from autobackup.config import Config
from autobackup.errors import BackupCancelled, StorageError


logger = logging.getLogger(__name__)


# Use multipart upload for artifacts larger than 100MB, in 10MB parts
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


@dataclass(frozen=True)
class BackupObject:
    """A stored backup as reported by a listing."""
    key: str
    size: int
    last_modified: datetime


def sort_newest_first(objects: List[BackupObject]) -> List[BackupObject]:
    """Order objects by last modified time, newest first. Ties keep listing order."""
    return sorted(objects, key=lambda obj: obj.last_modified, reverse=True)


def _client_error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for storing backups in S3-compatible object storage.

    R2 requires path-style addressing, which is used for every endpoint.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket_name: str,
        region: str = 'auto',
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize S3 storage handler.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            region: Region name (R2 uses 'auto')
            endpoint_url: Custom endpoint, e.g. https://<account>.r2.cloudflarestorage.com
        """
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url or None,
                config=BotoConfig(
                    s3={'addressing_style': 'path'},
                    retries={'max_attempts': 5, 'mode': 'standard'},
                    connect_timeout=30,
                    read_timeout=300
                )
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError('init', bucket_name, '', f"failed to initialize S3 client: {e}")

    def upload(
        self,
        key: str,
        fileobj: BinaryIO,
        size: Optional[int] = None,
        cancellation_check: Optional[Callable[[], None]] = None
    ) -> str:
        """
        Upload a backup artifact.

        Args:
            key: Full object key
            fileobj: Readable binary file positioned at the start of the data
            size: Size in bytes, selects multipart upload for large artifacts
            cancellation_check: Optional function called between parts, raises to cancel

        Returns:
            Object key of the uploaded artifact

        Raises:
            StorageError: If upload fails
        """
        try:
            if size is not None and size > MULTIPART_THRESHOLD:
                self._multipart_upload(key, fileobj, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                self.s3_client.put_object(
                    Bucket=self.bucket_name,
                    Key=key,
                    Body=fileobj
                )

            return key

        except BackupCancelled:
            raise
        except ClientError as e:
            raise StorageError('upload', self.bucket_name, key, f"({_client_error_code(e)}) {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError('upload', self.bucket_name, key, str(e))

    def _multipart_upload(
        self,
        key: str,
        fileobj: BinaryIO,
        cancellation_check: Optional[Callable[[], None]] = None
    ):
        """
        Upload a large artifact in parts with cancellation support.

        The multipart upload is aborted on any error or cancellation.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            part_number = 1

            while True:
                if cancellation_check:
                    cancellation_check()

                data = fileobj.read(MULTIPART_CHUNK_SIZE)
                if not data:
                    break

                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )

                parts.append({
                    'PartNumber': part_number,
                    'ETag': response['ETag']
                })

                part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def delete(self, key: str):
        """
        Delete an object.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            raise StorageError('delete', self.bucket_name, key, f"({_client_error_code(e)}) {e}")
        except BotoCoreError as e:
            raise StorageError('delete', self.bucket_name, key, str(e))

    def list_objects(self, prefix: str) -> List[BackupObject]:
        """
        List objects under a prefix.

        Args:
            prefix: Key prefix to filter by

        Returns:
            BackupObjects sorted newest first

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append(BackupObject(
                        key=obj['Key'],
                        size=obj['Size'],
                        last_modified=obj['LastModified']
                    ))

            return sort_newest_first(objects)

        except ClientError as e:
            raise StorageError('list', self.bucket_name, prefix, f"({_client_error_code(e)}) {e}")
        except BotoCoreError as e:
            raise StorageError('list', self.bucket_name, prefix, str(e))

    def test_connection(self) -> bool:
        """
        Test connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code == '404':
                raise StorageError('connect', self.bucket_name, '', "bucket does not exist")
            elif error_code == '403':
                raise StorageError('connect', self.bucket_name, '', "access denied")
            else:
                raise StorageError('connect', self.bucket_name, '', f"({error_code}) {e}")
        except BotoCoreError as e:
            raise StorageError('connect', self.bucket_name, '', str(e))


class LocalStorage:
    """
    Handler for storing backups in a local directory.

    Object keys map to paths relative to base_path.
    """

    def __init__(self, base_path: str):
        """
        Args:
            base_path: Base directory for local backups
        """
        self.base_path = Path(base_path)
        self.bucket_name = str(self.base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError('init', self.bucket_name, '', f"failed to create local storage directory: {e}")

    def _resolve(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError('resolve', self.bucket_name, key, "key escapes storage directory")
        return path

    def upload(
        self,
        key: str,
        fileobj: BinaryIO,
        size: Optional[int] = None,
        cancellation_check: Optional[Callable[[], None]] = None
    ) -> str:
        """
        Copy an artifact into local storage.

        Returns:
            Object key of the stored artifact

        Raises:
            StorageError: If storage fails
        """
        dest_path = self._resolve(key)

        if cancellation_check:
            cancellation_check()

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            with open(dest_path, 'wb') as f:
                shutil.copyfileobj(fileobj, f)
            return key

        except PermissionError as e:
            raise StorageError('upload', self.bucket_name, key, f"permission denied: {e}")
        except OSError as e:
            raise StorageError('upload', self.bucket_name, key, str(e))

    def delete(self, key: str):
        """
        Delete a stored artifact.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self._resolve(key)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError('delete', self.bucket_name, key, f"permission denied: {e}")
        except OSError as e:
            raise StorageError('delete', self.bucket_name, key, str(e))

    def list_objects(self, prefix: str) -> List[BackupObject]:
        """
        List stored artifacts whose key starts with prefix.

        Returns:
            BackupObjects sorted newest first

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []

            for file_path in self.base_path.rglob('*'):
                if not file_path.is_file():
                    continue

                key = file_path.relative_to(self.base_path).as_posix()
                if not key.startswith(prefix):
                    continue

                stat = file_path.stat()
                objects.append(BackupObject(
                    key=key,
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
                ))

            return sort_newest_first(objects)

        except OSError as e:
            raise StorageError('list', self.bucket_name, prefix, str(e))

    def get_full_path(self, key: str) -> str:
        return os.fspath(self._resolve(key))


def create_storage(config: Config):
    """
    Factory function to create the storage handler for a run.

    Returns:
        LocalStorage if local_backup_dir is set, otherwise S3Storage
    """
    if config.local_backup_dir:
        return LocalStorage(config.local_backup_dir)

    return S3Storage(
        access_key=config.r2_access_key_id,
        secret_key=config.r2_secret_access_key,
        bucket_name=config.r2_bucket_name,
        region=config.s3_region,
        endpoint_url=config.endpoint_url
    )
