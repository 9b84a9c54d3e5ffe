"""
Retention policy evaluation for backups.

Decides which remote backups of a database should be deleted. This module
performs no I/O: listing and deleting happen in the backup executor.

Rules can be combined; a file is deleted if ANY enabled rule marks it.
"""

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from dbshelf.models import RemoteFile, RetentionRules
from .naming import BackupFile, filter_backups


BYTES_PER_MB = 1024 * 1024


def keep_last(files: List[BackupFile], count: int) -> List[BackupFile]:
    """Everything beyond the ``count`` newest files (input sorted newest first)."""
    if len(files) <= count:
        return []
    return files[count:]


def keep_days(files: List[BackupFile], days: int, now: Optional[datetime] = None) -> List[BackupFile]:
    """Files whose embedded timestamp is older than ``days`` days."""
    cutoff = (now or datetime.now()) - timedelta(days=days)
    return [f for f in files if f.timestamp < cutoff]


def max_size(files: List[BackupFile], max_size_mb: int) -> List[BackupFile]:
    """
    Files past the size cap.

    Scans newest first accumulating sizes; once the running total exceeds the
    cap, that file and every older one are selected.
    """
    max_bytes = max_size_mb * BYTES_PER_MB
    total = 0
    to_delete = []

    for f in files:
        total += f.size
        if total > max_bytes:
            to_delete.append(f)

    return to_delete


def apply_retention(
    files: Iterable[RemoteFile],
    db_name: str,
    rules: RetentionRules,
    pending_backups: int = 0,
    now: Optional[datetime] = None
) -> List[RemoteFile]:
    """
    Compute the backups of a database that retention would delete.

    Only files following the naming convention for ``db_name`` are
    considered; everything else in the destination is left alone.

    Args:
        files: Every file listed at the destination
        db_name: Database whose backups are evaluated
        rules: Retention rules to apply
        pending_backups: Backups about to be created but not listed yet.
            keep_last keeps that many fewer existing files so the total after
            the upload still matches the rule.
        now: Reference time for keep_days (defaults to now)

    Returns:
        Files to delete, newest first, without duplicates
    """
    if not rules.enabled:
        return []

    candidates = filter_backups(files, db_name)
    if not candidates:
        return []

    selected: Dict[str, BackupFile] = {}

    if rules.keep_last > 0:
        threshold = max(0, rules.keep_last - pending_backups)
        for f in keep_last(candidates, threshold):
            selected[f.name] = f

    if rules.keep_days > 0:
        for f in keep_days(candidates, rules.keep_days, now):
            selected[f.name] = f

    if rules.max_size_mb > 0:
        for f in max_size(candidates, rules.max_size_mb):
            selected[f.name] = f

    result = []
    for f in candidates:
        if f.name in selected:
            result.append(selected.pop(f.name).remote)
    return result
