"""
Unit tests for backup filename addressing (dbshelf/backup/naming.py).
"""

from datetime import datetime

import pytest

from dbshelf.backup.naming import (
    build_backup_filename,
    dump_extension,
    filter_backups,
    parse_backup_filename,
)
from dbshelf.models import Compression, DatabaseKind, DatabaseSpec, RemoteFile


def _spec(name='mydb', kind=DatabaseKind.MYSQL, compression=Compression.NONE, path=''):
    return DatabaseSpec(name=name, kind=kind, dest='/backups', compression=compression, path=path)


class TestBuildFilename:
    """Test canonical filename generation."""

    def test_server_dump_with_compression(self):
        spec = _spec(compression=Compression.GZIP)
        filename = build_backup_filename(spec, datetime(2024, 1, 15, 14, 30, 22))

        assert filename == 'mydb_20240115_143022.sql.gz'

    @pytest.mark.parametrize('compression,suffix', [
        (Compression.NONE, '.sql'),
        (Compression.ZSTD, '.sql.zst'),
        (Compression.XZ, '.sql.xz'),
        (Compression.ZIP, '.sql.zip'),
    ])
    def test_compression_suffixes(self, compression, suffix):
        spec = _spec(compression=compression)
        filename = build_backup_filename(spec, datetime(2024, 1, 15, 14, 30, 22))

        assert filename == f'mydb_20240115_143022{suffix}'

    def test_file_database_keeps_source_extension(self):
        spec = _spec(kind=DatabaseKind.FILE, path='/var/lib/app/app.sqlite3')

        assert dump_extension(spec) == '.sqlite3'

    def test_file_database_without_extension(self):
        spec = _spec(kind=DatabaseKind.FILE, path='/var/lib/app/data')

        assert dump_extension(spec) == '.bak'

    def test_postgres_dumps_sql(self):
        assert dump_extension(_spec(kind=DatabaseKind.POSTGRES)) == '.sql'


class TestParseFilename:
    """Test parsing names back into (database, timestamp)."""

    def test_round_trip(self):
        when = datetime(2024, 1, 15, 14, 30, 22)
        for name in ('mydb', 'my_db', 'my-db_2', 'a'):
            filename = build_backup_filename(_spec(name=name, compression=Compression.XZ), when)

            assert parse_backup_filename(filename) == (name, when)

    def test_name_containing_timestamp_like_token(self):
        """Test the last timestamp token wins."""
        parsed = parse_backup_filename('db_20230101_000000_20240115_143022.sql')

        assert parsed == ('db_20230101_000000', datetime(2024, 1, 15, 14, 30, 22))

    def test_directory_prefix_ignored(self):
        parsed = parse_backup_filename('nested/dir/mydb_20240115_143022.sql.gz')

        assert parsed == ('mydb', datetime(2024, 1, 15, 14, 30, 22))

    @pytest.mark.parametrize('filename', [
        'notes.txt',
        'mydb.sql',
        'mydb_20240115.sql',
        'mydb_20240115_143022',
        '_20240115_143022.sql',
        'mydb_2024011_143022.sql',
        '',
    ])
    def test_non_conforming_names(self, filename):
        assert parse_backup_filename(filename) is None

    def test_impossible_date(self):
        assert parse_backup_filename('mydb_20241315_143022.sql') is None


class TestFilterBackups:
    """Test selecting one database's backups."""

    def test_filters_and_sorts_newest_first(self):
        files = [
            RemoteFile('mydb_20240110_000000.sql', 1),
            RemoteFile('other_20240120_000000.sql', 1),
            RemoteFile('mydb_20240120_000000.sql', 1),
            RemoteFile('README.md', 1),
            RemoteFile('mydb_20240115_000000.sql', 1),
        ]

        result = filter_backups(files, 'mydb')

        assert [f.name for f in result] == [
            'mydb_20240120_000000.sql',
            'mydb_20240115_000000.sql',
            'mydb_20240110_000000.sql',
        ]

    def test_case_insensitive_match(self):
        files = [
            RemoteFile('MyDB_20240110_000000.sql', 1),
            RemoteFile('mydb_20240111_000000.sql', 1),
        ]

        assert len(filter_backups(files, 'MYDB')) == 2

    def test_prefix_names_do_not_match(self):
        files = [RemoteFile('mydb2_20240110_000000.sql', 1)]

        assert filter_backups(files, 'mydb') == []

    def test_ordering_ignores_storage_mtime(self):
        files = [
            RemoteFile('mydb_20240101_000000.sql', 1, modified=datetime(2024, 3, 1)),
            RemoteFile('mydb_20240201_000000.sql', 1, modified=datetime(2024, 2, 1)),
        ]

        result = filter_backups(files, 'mydb')

        assert result[0].timestamp == datetime(2024, 2, 1)
