"""
Backup module for dbshelf.

This module handles the per-database pipelines:
- Dump/restore handlers (file, MySQL, PostgreSQL)
- Compression codecs
- Storage (S3 and local)
- Backup and restore execution
- Retention policy evaluation
"""

from .executor import BackupExecutor
from .restore import RestoreExecutor, list_backups
from .dumpers import FileDumper, MySQLDumper, PostgresDumper, create_dumper
from .compression import open_reader, open_writer
from .storage import DestinationRouter, LocalStorage, S3Storage, StorageClient
from .retention import apply_retention

__all__ = [
    'BackupExecutor',
    'RestoreExecutor',
    'list_backups',
    'FileDumper',
    'MySQLDumper',
    'PostgresDumper',
    'create_dumper',
    'open_reader',
    'open_writer',
    'DestinationRouter',
    'LocalStorage',
    'S3Storage',
    'StorageClient',
    'apply_retention'
]
