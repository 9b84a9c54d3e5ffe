"""
dbshelf - database backup and restore to pluggable remote storage.

Backs up file, MySQL/MariaDB and PostgreSQL databases concurrently, with
compression and retention policies, and restores them on demand.
"""

import os
import logging
from logging.handlers import RotatingFileHandler

from dbshelf.config import Config, get_config, load_databases
from dbshelf.coordinator import (
    BackupCoordinator,
    EventStream,
    precheck_retention,
    run_backups,
)
from dbshelf.models import (
    BackupOptions,
    BackupResult,
    Compression,
    DatabaseKind,
    DatabaseSpec,
    ProgressEvent,
    RemoteFile,
    RetentionRules,
    RunSummary,
    Step,
)
from dbshelf.backup.restore import RestoreExecutor, list_backups
from dbshelf.backup.storage import DestinationRouter


def configure_logging(config=None):
    """Configure package logging"""
    if config is None:
        config = get_config()

    log_level = getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    if config.LOG_DIR:
        os.makedirs(config.LOG_DIR, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(config.LOG_DIR, 'dbshelf.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    logger = logging.getLogger('dbshelf')
    logger.setLevel(log_level)
    # Replace handlers from an earlier call
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)

    logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger


__all__ = [
    'Config',
    'get_config',
    'load_databases',
    'configure_logging',
    'BackupCoordinator',
    'EventStream',
    'precheck_retention',
    'run_backups',
    'RestoreExecutor',
    'list_backups',
    'DestinationRouter',
    'BackupOptions',
    'BackupResult',
    'Compression',
    'DatabaseKind',
    'DatabaseSpec',
    'ProgressEvent',
    'RemoteFile',
    'RetentionRules',
    'RunSummary',
    'Step',
]
