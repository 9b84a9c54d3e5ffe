"""
Error taxonomy for backup and restore runs.

Every error is scoped to a single database's pipeline; none of them abort
the other pipelines of a run.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for all dbshelf errors."""
    pass


class ConfigurationError(BackupError):
    """Raised when a database spec or run request is invalid."""
    pass


class ConnectivityError(BackupError):
    """Raised when a database or storage destination is unreachable."""
    pass


class StorageError(ConnectivityError):
    """Raised when a storage operation fails."""
    pass


class ExecutionError(BackupError):
    """Raised when an external dump/restore process exits non-zero."""

    def __init__(self, message: str, stderr: Optional[str] = None):
        super().__init__(message)
        self.stderr = stderr


class CompressionError(BackupError):
    """Raised for unknown codecs and corrupt, truncated or empty archives."""
    pass


class FilesystemError(BackupError):
    """Raised when temp directories or local files cannot be created or read."""
    pass
