"""
Restore executor - puts a stored backup back into its database.

Workflow:
1. Downloading: fetch the artifact into a temp dir (skipped for local files)
2. Restoring: decode the artifact by its own extension and feed it to the
   database's restore handler
3. Done: remove the temp dir

Restores for the same database must not run concurrently; callers are
expected to serialize them.
"""

import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from typing import List, Optional

from dbshelf.errors import FilesystemError
from dbshelf.models import DatabaseSpec, ProgressEvent, RemoteFile, Step
from .compression import open_reader
from .dumpers import create_dumper
from .naming import filter_backups
from .storage import StorageClient


logger = logging.getLogger(__name__)


def list_backups(storage: StorageClient, spec: DatabaseSpec) -> List[RemoteFile]:
    """
    List a database's backups at its destination.

    Args:
        storage: Storage client
        spec: Database whose backups are listed

    Returns:
        RemoteFile entries, newest first by the timestamp in their names

    Raises:
        StorageError: If listing fails
    """
    files = storage.list(spec.dest)
    return [f.remote for f in filter_backups(files, spec.name)]


class RestoreExecutor:
    """
    Restores one backup of one database.
    """

    def __init__(self, spec: DatabaseSpec, storage: Optional[StorageClient] = None, events=None, config=None):
        """
        Initialize restore executor.

        Args:
            spec: Database to restore into
            storage: Storage client; only needed for remote restores
            events: Progress sink with a ``put(event)`` method
            config: Config class (temp dir, connect timeout)
        """
        self.spec = spec
        self.storage = storage
        self.events = events
        self.config = config
        self.temp_dir = None
        self.logs: List[str] = []

    def execute(self, backup_file: str, local: bool = False) -> str:
        """
        Restore a backup.

        Args:
            backup_file: Name of the file at the destination, or a local
                path when ``local`` is True
            local: Restore from a local file instead of the destination

        Returns:
            The restored backup, as given: a destination file name, or the
            local path when ``local`` is True. Downloaded copies are removed
            before this returns.

        Raises:
            BackupError: The typed error of the failing step
        """
        self._log(f"Starting restore of {self.spec.name} from {backup_file}")
        step = Step.DOWNLOADING

        try:
            path = self._fetch(backup_file, local)
            step = Step.RESTORING
            self._restore(path)
        except Exception as e:
            self._log(f"{step.label} failed: {e}", logging.ERROR)
            self._emit(ProgressEvent(db_name=self.spec.name, step=step, error=e))
            self._emit(ProgressEvent(
                db_name=self.spec.name,
                step=Step.DONE,
                message=f"{step.label} failed: {e}",
                error=e,
                done=True
            ))
            raise
        finally:
            self._cleanup()

        message = f"Restored {self.spec.name} from {os.path.basename(backup_file)}"
        self._log(message)
        self._emit(ProgressEvent(
            db_name=self.spec.name,
            step=Step.DONE,
            message=message,
            done=True
        ))
        return backup_file

    def _fetch(self, backup_file: str, local: bool) -> str:
        if local:
            if not os.path.isfile(backup_file):
                raise FilesystemError(f"Backup file does not exist: {backup_file}")
            self._emit(ProgressEvent(
                db_name=self.spec.name,
                step=Step.DOWNLOADING,
                message=f"Using local file {backup_file}",
                skipped=True
            ))
            return backup_file

        self._emit(ProgressEvent(db_name=self.spec.name, step=Step.DOWNLOADING))

        temp_root = getattr(self.config, 'TEMP_DIR', None)
        try:
            if temp_root:
                os.makedirs(temp_root, exist_ok=True)
            self.temp_dir = tempfile.mkdtemp(prefix='dbshelf-restore-', dir=temp_root)
        except OSError as e:
            raise FilesystemError(f"creating temp dir: {e}")

        path = self.storage.download(self.spec.dest, backup_file, self.temp_dir)
        self._complete(Step.DOWNLOADING, f"Downloaded {backup_file}")
        return path

    def _restore(self, path: str):
        self._emit(ProgressEvent(db_name=self.spec.name, step=Step.RESTORING))

        dumper = create_dumper(self.spec, getattr(self.config, 'CONNECT_TIMEOUT_SECONDS', None))
        reader, cleanup = open_reader(path)
        try:
            dumper.restore(reader)
        finally:
            cleanup()

        self._complete(Step.RESTORING, f"Restored {self.spec.name}")

    def _cleanup(self):
        if not self.temp_dir or not os.path.exists(self.temp_dir):
            return
        try:
            shutil.rmtree(self.temp_dir)
        except OSError as e:
            self._log(f"Warning: Failed to cleanup temp directory: {e}", logging.WARNING)

    def _complete(self, step: Step, message: str):
        self._log(message)
        self._emit(ProgressEvent(db_name=self.spec.name, step=step, message=message))

    def _emit(self, event: ProgressEvent):
        if self.events is not None:
            self.events.put(event)

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] [{self.spec.name}] {message}")
        logger.log(level, f"[{self.spec.name}] {message}")
