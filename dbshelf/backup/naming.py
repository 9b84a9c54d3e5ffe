"""
Backup filename addressing.

Every artifact is named ``{db_name}_{YYYYMMDD_HHMMSS}.{ext}[{comp_ext}]``,
e.g. ``mydb_20240115_143022.sql.gz``. The embedded timestamp, not the storage
provider's modification time, decides a file's age and owning database.
Files that don't follow the convention are ignored, never rejected.
"""

import os
import posixpath
import re
from datetime import datetime
from typing import Iterable, List, NamedTuple, Optional, Tuple

from dbshelf.models import DatabaseKind, DatabaseSpec, RemoteFile
from .compression import compression_extension


TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'

# Greedy name, then the last timestamp token, then an extension
FILENAME_PATTERN = re.compile(r'^(.+)_(\d{8}_\d{6})\.(.+)$')


class BackupFile(NamedTuple):
    """A remote file that follows the naming convention."""
    remote: RemoteFile
    timestamp: datetime

    @property
    def name(self) -> str:
        return self.remote.name

    @property
    def size(self) -> int:
        return self.remote.size


def dump_extension(spec: DatabaseSpec) -> str:
    """
    Extension of the uncompressed dump.

    Server databases dump SQL; file databases keep the source file's own
    extension, or '.bak' when it has none.
    """
    if spec.kind is DatabaseKind.FILE:
        ext = os.path.splitext(spec.path)[1]
        return ext or '.bak'
    return '.sql'


def build_backup_filename(spec: DatabaseSpec, now: Optional[datetime] = None) -> str:
    """
    Generate the canonical backup filename for a database.

    Args:
        spec: Database being backed up
        now: Timestamp to embed (defaults to the current local time)

    Returns:
        Filename (without path)
    """
    timestamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    ext = dump_extension(spec) + compression_extension(spec.compression)
    return f"{spec.name}_{timestamp}{ext}"


def parse_backup_filename(filename: str) -> Optional[Tuple[str, datetime]]:
    """
    Extract the database name and timestamp from a backup filename.

    Any directory prefix is ignored.

    Returns:
        (name, timestamp), or None if the file doesn't follow the convention
    """
    base = posixpath.basename(filename or '')
    match = FILENAME_PATTERN.match(base)
    if not match:
        return None

    try:
        timestamp = datetime.strptime(match.group(2), TIMESTAMP_FORMAT)
    except ValueError:
        return None

    return match.group(1), timestamp


def filter_backups(files: Iterable[RemoteFile], db_name: str) -> List[BackupFile]:
    """
    Keep the files belonging to a database, newest first.

    Name comparison is case-insensitive; files that don't parse are skipped.
    """
    wanted = db_name.casefold()
    filtered = []

    for remote in files:
        parsed = parse_backup_filename(remote.name)
        if parsed is None:
            continue
        name, timestamp = parsed
        if name.casefold() != wanted:
            continue
        filtered.append(BackupFile(remote, timestamp))

    filtered.sort(key=lambda f: f.timestamp, reverse=True)
    return filtered
