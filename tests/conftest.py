"""
Shared pytest fixtures for dbshelf tests.

This module provides fixtures for:
- Test configuration with per-test temp directories
- Database specs (file, MySQL, PostgreSQL)
- Storage fixtures (local directory, mocked S3, MagicMock client)
- Remote file listings for retention tests
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from dbshelf.backup.storage import DestinationRouter, LocalStorage
from dbshelf.config import TestingConfig
from dbshelf.models import (
    Compression,
    DatabaseKind,
    DatabaseSpec,
    RemoteFile,
    RetentionRules,
)


@pytest.fixture(scope='function')
def test_config(tmp_path):
    """
    Testing configuration with an isolated temp directory.
    """
    class _Config(TestingConfig):
        TEMP_DIR = str(tmp_path / 'temp')
        AWS_ACCESS_KEY_ID = 'testing'
        AWS_SECRET_ACCESS_KEY = 'testing'
        AWS_REGION = 'us-east-1'
        S3_ENDPOINT_URL = None

    return _Config


@pytest.fixture
def sqlite_file(tmp_path):
    """
    Create a file database with recognizable content.
    """
    path = tmp_path / 'data' / 'app.db'
    path.parent.mkdir()
    path.write_bytes(b'SQLite format 3\x00' + bytes(range(256)) * 64)
    return path


@pytest.fixture
def backup_dir(tmp_path):
    """Local destination directory for backups."""
    path = tmp_path / 'backups'
    path.mkdir()
    return path


@pytest.fixture
def file_spec(sqlite_file, backup_dir):
    """
    File database 'app' backed up to a local directory.
    """
    return DatabaseSpec(
        name='app',
        kind=DatabaseKind.FILE,
        dest=str(backup_dir),
        path=str(sqlite_file)
    )


@pytest.fixture
def mysql_spec():
    return DatabaseSpec(
        name='shop',
        kind=DatabaseKind.MYSQL,
        dest='s3://test-bucket/mysql',
        compression=Compression.GZIP,
        host='db.example.com',
        port=3306,
        user='backup',
        password='s3cret',
        database='shop'
    )


@pytest.fixture
def postgres_spec():
    return DatabaseSpec(
        name='crm',
        kind=DatabaseKind.POSTGRES,
        dest='s3://test-bucket/pg',
        compression=Compression.ZSTD,
        retention=RetentionRules(keep_last=3),
        host='pg.example.com',
        port=5432,
        user='postgres',
        password='pgpass',
        database='crm'
    )


@pytest.fixture
def local_storage():
    return DestinationRouter(local=LocalStorage())


@pytest.fixture
def mock_storage():
    """
    MagicMock storage client.

    Lists nothing by default; every operation succeeds.
    """
    storage = MagicMock()
    storage.list.return_value = []
    return storage


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def make_backups():
    """
    Factory for remote backup listings.

    Takes a database name and (timestamp string, size in bytes) pairs; returns
    RemoteFiles named the way the backup pipeline names them.
    """
    def _make(db_name, entries, ext='.db'):
        files = []
        for stamp, size in entries:
            files.append(RemoteFile(
                name=f"{db_name}_{stamp}{ext}",
                size=size,
                modified=datetime.strptime(stamp, '%Y%m%d_%H%M%S')
            ))
        return files

    return _make
