"""
Storage handlers for backup artifacts.

Supports:
- S3Storage: s3://bucket/prefix destinations via boto3
- LocalStorage: local directories (plain paths or file:// URIs)
- DestinationRouter: one client for a run, routing each destination URI to
  the backend that serves it

Every handler offers the same operations: list, upload, download, delete
and test_access. Failures raise StorageError.
"""

import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol, Tuple
from urllib.parse import urlparse

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from dbshelf.errors import ConfigurationError, StorageError
from dbshelf.models import RemoteFile


logger = logging.getLogger(__name__)


class StorageClient(Protocol):
    """Operations every storage backend provides."""

    def list(self, dest: str) -> List[RemoteFile]: ...

    def upload(self, local_path: str, dest: str): ...

    def download(self, dest: str, file_name: str, local_dir: str) -> str: ...

    def delete(self, dest: str, file_name: str): ...

    def test_access(self, dest: str): ...


def _newest_first(files: List[RemoteFile]) -> List[RemoteFile]:
    return sorted(files, key=lambda f: f.modified, reverse=True)


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for backups stored in S3 (or an S3-compatible service).

    Destinations look like ``s3://bucket`` or ``s3://bucket/some/prefix``;
    artifacts are stored directly under the prefix.
    """

    def __init__(
        self,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        multipart_threshold: int = 100 * 1024 * 1024,
        chunk_size: int = 10 * 1024 * 1024
    ):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID (None = default credential chain)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible services
            multipart_threshold: Files above this size use multipart upload
            chunk_size: Multipart part size
        """
        self.region = region
        self.multipart_threshold = multipart_threshold
        self.chunk_size = chunk_size

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @staticmethod
    def parse_destination(dest: str) -> Tuple[str, str]:
        """
        Split an s3:// URI into (bucket, prefix).

        The prefix is either empty or ends with '/'.
        """
        parsed = urlparse(dest)
        if parsed.scheme != 's3' or not parsed.netloc:
            raise StorageError(f"Invalid S3 destination: {dest}")
        prefix = parsed.path.strip('/')
        return parsed.netloc, f"{prefix}/" if prefix else ''

    def list(self, dest: str) -> List[RemoteFile]:
        """
        List artifacts under a destination, newest first by modification time.

        Returns:
            RemoteFile entries with names relative to the prefix

        Raises:
            StorageError: If listing fails
        """
        bucket, prefix = self.parse_destination(dest)

        try:
            files = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for obj in page.get('Contents', []):
                    name = obj['Key'][len(prefix):]
                    if not name or name.endswith('/'):
                        continue
                    files.append(RemoteFile(
                        name=name,
                        size=obj['Size'],
                        modified=obj['LastModified']
                    ))

            return _newest_first(files)

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed: {e}")

    def upload(self, local_path: str, dest: str):
        """
        Upload an artifact to the destination, keeping its filename.

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        bucket, prefix = self.parse_destination(dest)
        key = prefix + os.path.basename(local_path)

        try:
            file_size = os.path.getsize(local_path)

            if file_size > self.multipart_threshold:
                self._multipart_upload(local_path, bucket, key)
            else:
                self._simple_upload(local_path, bucket, key)

        except ClientError as e:
            raise StorageError(f"S3 upload failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path}: {e}")

    def _simple_upload(self, local_path: str, bucket: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(Bucket=bucket, Key=key, Body=f)

    def _multipart_upload(self, local_path: str, bucket: str, key: str):
        """
        Upload a large file in parts.

        The multipart upload is aborted if any part fails, so no partial
        object is left behind.
        """
        response = self.s3_client.create_multipart_upload(Bucket=bucket, Key=key)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.chunk_size)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=bucket,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {key}: {abort_error}")
            raise

    def download(self, dest: str, file_name: str, local_dir: str) -> str:
        """
        Download one artifact into a local directory.

        Returns:
            Local path of the downloaded file

        Raises:
            StorageError: If download fails
        """
        bucket, prefix = self.parse_destination(dest)
        local_path = os.path.join(local_dir, os.path.basename(file_name))

        try:
            self.s3_client.download_file(bucket, prefix + file_name, local_path)
            return local_path
        except ClientError as e:
            code = _error_code(e)
            if code in ('404', 'NoSuchKey'):
                raise StorageError(f"Backup not found: {file_name}")
            raise StorageError(f"S3 download failed ({code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed: {e}")

    def delete(self, dest: str, file_name: str):
        """
        Delete an artifact.

        Raises:
            StorageError: If deletion fails
        """
        bucket, prefix = self.parse_destination(dest)

        try:
            self.s3_client.delete_object(Bucket=bucket, Key=prefix + file_name)
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 delete failed: {e}")

    def test_access(self, dest: str):
        """
        Test bucket access.

        Raises:
            StorageError: If the bucket is missing or not accessible
        """
        bucket, _ = self.parse_destination(dest)

        try:
            self.s3_client.head_bucket(Bucket=bucket)
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {bucket}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {bucket}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class LocalStorage:
    """
    Handler for backups stored in a local (or mounted) directory.

    The destination is the directory itself: a plain path or a file:// URI.
    """

    @staticmethod
    def resolve(dest: str) -> Path:
        if dest.startswith('file://'):
            dest = urlparse(dest).path
        return Path(dest).expanduser()

    def list(self, dest: str) -> List[RemoteFile]:
        """
        List artifacts in a directory, newest first by modification time.

        A missing directory is treated as empty.

        Raises:
            StorageError: If listing fails
        """
        base = self.resolve(dest)
        if not base.exists():
            return []

        try:
            files = []
            for file_path in base.rglob('*'):
                if file_path.is_file():
                    stat = file_path.stat()
                    files.append(RemoteFile(
                        name=file_path.relative_to(base).as_posix(),
                        size=stat.st_size,
                        modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
                    ))
            return _newest_first(files)
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def upload(self, local_path: str, dest: str):
        """
        Copy an artifact into the destination directory.

        Raises:
            StorageError: If the copy fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Source file not found: {local_path}")

        base = self.resolve(dest)
        target = base / os.path.basename(local_path)

        try:
            base.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, target)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {target}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")

    def download(self, dest: str, file_name: str, local_dir: str) -> str:
        source = self.resolve(dest) / file_name
        local_path = os.path.join(local_dir, os.path.basename(file_name))

        if not source.is_file():
            raise StorageError(f"Backup not found: {file_name}")

        try:
            shutil.copy2(source, local_path)
            return local_path
        except OSError as e:
            raise StorageError(f"Failed to copy {source}: {e}")

    def delete(self, dest: str, file_name: str):
        """
        Delete an artifact from the destination directory.

        Raises:
            StorageError: If the file is missing or cannot be removed
        """
        full_path = self.resolve(dest) / file_name

        try:
            full_path.unlink()
        except FileNotFoundError:
            raise StorageError(f"Backup not found: {file_name}")
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def test_access(self, dest: str):
        base = self.resolve(dest)
        if not base.is_dir():
            raise StorageError(f"Destination directory does not exist: {base}")
        if not os.access(base, os.R_OK | os.W_OK | os.X_OK):
            raise StorageError(f"Access denied to destination: {base}")


class DestinationRouter:
    """
    Storage client for a whole run.

    Constructed once and handed to the coordinator and every pipeline.
    Routes each destination URI to the matching backend by scheme; the S3
    backend is only created when an s3:// destination is first used.
    """

    def __init__(self, config=None, s3: Optional[S3Storage] = None, local: Optional[LocalStorage] = None):
        self.config = config
        self._s3 = s3
        self.local = local or LocalStorage()

    @property
    def s3(self) -> S3Storage:
        if self._s3 is None:
            config = self.config
            self._s3 = S3Storage(
                access_key=getattr(config, 'AWS_ACCESS_KEY_ID', None),
                secret_key=getattr(config, 'AWS_SECRET_ACCESS_KEY', None),
                region=getattr(config, 'AWS_REGION', None) or 'us-east-1',
                endpoint_url=getattr(config, 'S3_ENDPOINT_URL', None),
                multipart_threshold=getattr(config, 'MULTIPART_THRESHOLD', 100 * 1024 * 1024),
                chunk_size=getattr(config, 'MULTIPART_CHUNK_SIZE', 10 * 1024 * 1024)
            )
        return self._s3

    def backend_for(self, dest: str):
        """
        Pick the backend serving a destination.

        Raises:
            ConfigurationError: If the URI scheme is not supported
        """
        scheme = urlparse(dest).scheme
        if scheme == 's3':
            return self.s3
        # Single letters are Windows drive letters, not schemes
        if scheme in ('', 'file') or len(scheme) == 1:
            return self.local
        raise ConfigurationError(f"Unsupported destination scheme '{scheme}' in {dest}")

    def list(self, dest: str) -> List[RemoteFile]:
        return self.backend_for(dest).list(dest)

    def upload(self, local_path: str, dest: str):
        self.backend_for(dest).upload(local_path, dest)

    def download(self, dest: str, file_name: str, local_dir: str) -> str:
        return self.backend_for(dest).download(dest, file_name, local_dir)

    def delete(self, dest: str, file_name: str):
        self.backend_for(dest).delete(dest, file_name)

    def test_access(self, dest: str):
        self.backend_for(dest).test_access(dest)
