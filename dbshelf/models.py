"""
Data model for dbshelf runs.

Specs are immutable for the duration of a run; states and results are owned
by the pipeline that creates them.
"""

import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from dbshelf.errors import ConfigurationError


# Database names end up in filenames, so only filename-safe characters
VALID_NAME = re.compile(r'^[a-zA-Z0-9_-]+$')

DEFAULT_PORTS = {
    'mysql': 3306,
    'postgres': 5432,
}


class DatabaseKind(str, Enum):
    FILE = 'file'
    MYSQL = 'mysql'
    POSTGRES = 'postgres'


class Compression(str, Enum):
    NONE = 'none'
    GZIP = 'gz'
    ZSTD = 'zstd'
    XZ = 'xz'
    ZIP = 'zip'


class Step(str, Enum):
    """Pipeline steps, in the order a backup walks through them."""

    DUMPING = 'dumping'
    UPLOADING = 'uploading'
    RETENTION = 'retention'
    DONE = 'done'
    DOWNLOADING = 'downloading'
    RESTORING = 'restoring'

    @property
    def label(self) -> str:
        return _STEP_LABELS[self]


_STEP_LABELS = {
    Step.DUMPING: 'Dumping database',
    Step.UPLOADING: 'Saving backup',
    Step.RETENTION: 'Applying retention policy',
    Step.DONE: 'Finished',
    Step.DOWNLOADING: 'Downloading backup',
    Step.RESTORING: 'Restoring database',
}


@dataclass(frozen=True)
class RetentionRules:
    """Independently togglable retention rules. Zero disables a rule."""

    keep_last: int = 0
    keep_days: int = 0
    max_size_mb: int = 0

    @property
    def enabled(self) -> bool:
        return self.keep_last > 0 or self.keep_days > 0 or self.max_size_mb > 0

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'RetentionRules':
        data = data or {}
        values = {}
        for key in ('keep_last', 'keep_days', 'max_size_mb'):
            raw = data.get(key) or 0
            try:
                value = int(raw)
            except (TypeError, ValueError):
                raise ConfigurationError(f"retention {key} must be an integer, got {raw!r}")
            if value < 0:
                raise ConfigurationError(f"retention {key} must not be negative")
            values[key] = value
        return cls(**values)


@dataclass(frozen=True)
class DatabaseSpec:
    """Immutable description of one database to back up."""

    name: str
    kind: DatabaseKind
    dest: str
    compression: Compression = Compression.NONE
    retention: RetentionRules = field(default_factory=RetentionRules)
    path: str = ''
    host: str = ''
    port: int = 0
    user: str = ''
    password: str = field(default='', repr=False)
    database: str = ''

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> 'DatabaseSpec':
        """
        Build a spec from an already-loaded configuration mapping.

        Applies defaults (compression 'none', standard ports) and validates
        the fields required by the database kind.

        Args:
            name: Database name (must be filename-safe)
            data: Mapping with keys type, path, host, port, user, password,
                database, dest, compression, retention

        Returns:
            DatabaseSpec instance

        Raises:
            ConfigurationError: If any field is missing or invalid
        """
        if not name or not VALID_NAME.match(name):
            raise ConfigurationError(
                f"database {name!r}: name must contain only letters, digits, dashes, and underscores"
            )

        try:
            kind = DatabaseKind(data.get('type'))
        except ValueError:
            raise ConfigurationError(f"database {name!r}: unknown type {data.get('type')!r}")

        try:
            compression = Compression(data.get('compression') or 'none')
        except ValueError:
            valid = ', '.join(c.value for c in Compression)
            raise ConfigurationError(f"database {name!r}: compression must be one of: {valid}")

        if kind is DatabaseKind.FILE:
            if not data.get('path'):
                raise ConfigurationError(f"database {name!r}: path is required for file type")
        else:
            for required in ('host', 'user', 'database'):
                if not data.get(required):
                    raise ConfigurationError(f"database {name!r}: {required} is required")

        if not data.get('dest'):
            raise ConfigurationError(f"database {name!r}: dest is required")

        try:
            port = int(data.get('port') or DEFAULT_PORTS.get(kind.value, 0))
        except (TypeError, ValueError):
            raise ConfigurationError(f"database {name!r}: port must be an integer")

        try:
            retention = RetentionRules.from_dict(data.get('retention'))
        except ConfigurationError as e:
            raise ConfigurationError(f"database {name!r}: {e}")

        return cls(
            name=name,
            kind=kind,
            dest=data['dest'],
            compression=compression,
            retention=retention,
            path=data.get('path') or '',
            host=data.get('host') or '',
            port=port,
            user=data.get('user') or '',
            password=data.get('password') or '',
            database=data.get('database') or '',
        )


@dataclass(frozen=True)
class RemoteFile:
    """One backup artifact as seen in remote storage."""

    name: str
    size: int
    modified: Any = None


@dataclass(frozen=True)
class BackupArtifact:
    """Local dump produced by the Dumping step."""

    name: str
    filename: str
    path: str
    size: int
    duration: timedelta

    @property
    def size_mb(self) -> float:
        return self.size / (1024 * 1024)


@dataclass(frozen=True)
class ProgressEvent:
    db_name: str
    step: Step
    message: str = ''
    error: Optional[BaseException] = None
    skipped: bool = False
    done: bool = False

    @property
    def is_start(self) -> bool:
        return not self.message and self.error is None and not self.done


@dataclass(frozen=True)
class BackupOptions:
    dry_run: bool = False            # dump only, keep the local artifact
    skip_retention: bool = False


@dataclass
class BackupState:
    """Per-database run state. Mutated only by the owning pipeline."""

    db_name: str
    step: Optional[Step] = None
    events: List[ProgressEvent] = field(default_factory=list)
    artifact: Optional[BackupArtifact] = None
    done: bool = False
    error: Optional[BaseException] = None


@dataclass
class BackupResult:
    db_name: str
    success: bool
    error: Optional[BaseException] = None
    steps: List[ProgressEvent] = field(default_factory=list)


@dataclass
class RunSummary:
    """Per-database success/failure vector for one run."""

    results: List[BackupResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded

    @property
    def failed_names(self) -> List[str]:
        return [r.db_name for r in self.results if not r.success]

    def summary_line(self) -> str:
        if self.failed:
            return f"Backup finished: {self.succeeded} succeeded, {self.failed} failed"
        return f"Backup finished: {self.succeeded} succeeded"


# Database name -> files slated for deletion
RetentionPlan = Dict[str, List[RemoteFile]]
