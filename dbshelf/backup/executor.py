"""
Backup executor - runs the backup pipeline for one database.

Workflow:
1. Dumping: dump the database through the configured codec into a temp file
2. Uploading: copy the artifact to the destination (skipped on dry-run)
3. Retention: delete backups past the retention rules (skipped on dry-run,
   --skip-retention, or when no rules are set)
4. Done: remove the temp artifact (kept on dry-run) and report

Steps run strictly in order and a failure skips every remaining step, so
old backups are only ever deleted after the new one has been uploaded.
"""

import logging
import os
import shutil
import tempfile
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from dbshelf.errors import FilesystemError, StorageError
from dbshelf.models import (
    BackupArtifact,
    BackupOptions,
    BackupResult,
    BackupState,
    DatabaseSpec,
    ProgressEvent,
    RemoteFile,
    RetentionPlan,
    Step,
)
from .compression import compression_label, open_writer
from .dumpers import create_dumper
from .naming import build_backup_filename
from .retention import apply_retention
from .storage import StorageClient


logger = logging.getLogger(__name__)


def step_label(spec: DatabaseSpec, step: Step) -> str:
    """Display label for a step, naming the codec while dumping."""
    if step is Step.DUMPING:
        label = compression_label(spec.compression)
        if label:
            return f"Dumping & compressing database ({label})"
    return step.label


class BackupExecutor:
    """
    Runs Dumping -> Uploading -> Retention -> Done for a single database.
    """

    def __init__(
        self,
        spec: DatabaseSpec,
        storage: StorageClient,
        options: Optional[BackupOptions] = None,
        retention_plan: Optional[RetentionPlan] = None,
        events=None,
        config=None,
        state: Optional[BackupState] = None
    ):
        """
        Initialize backup executor.

        Args:
            spec: Database to back up
            storage: Storage client (list/upload/delete)
            options: Run-wide options (dry-run, skip retention)
            retention_plan: Precomputed deletions, keyed by database name.
                When None, retention is recomputed after the upload.
            events: Progress sink with a ``put(event)`` method
            config: Config class (temp dir, connect timeout)
            state: State object to update; created when not given
        """
        self.spec = spec
        self.storage = storage
        self.options = options or BackupOptions()
        self.retention_plan = retention_plan
        self.events = events
        self.config = config
        self.state = state or BackupState(db_name=spec.name)
        self.temp_dir = None
        self.artifact: Optional[BackupArtifact] = None
        self.logs: List[str] = []

    def execute(self) -> BackupResult:
        """
        Execute the backup pipeline.

        Never raises: any failure is reported on the failing step's event,
        on the final Done event and in the returned result.

        Returns:
            BackupResult for this database
        """
        self._log(f"Starting backup of {self.spec.name}")
        error = None

        try:
            self._dump()
            self._upload()
            self._apply_retention()
        except Exception as e:
            error = e
            self._log(f"{step_label(self.spec, self.state.step)} failed: {e}", logging.ERROR)
            self._emit(ProgressEvent(
                db_name=self.spec.name,
                step=self.state.step,
                error=e
            ))
        finally:
            self._cleanup()

        if error is None:
            message = 'Backup completed'
            self._log(message)
        else:
            message = f"{step_label(self.spec, self.state.step)} failed: {error}"

        self.state.error = error
        self.state.done = True
        self._emit(ProgressEvent(
            db_name=self.spec.name,
            step=Step.DONE,
            message=message,
            error=error,
            done=True
        ))

        return BackupResult(
            db_name=self.spec.name,
            success=error is None,
            error=error,
            steps=list(self.state.events)
        )

    def _dump(self):
        """Dump the database into a temp file through the codec writer."""
        self._begin(Step.DUMPING)
        started = time.monotonic()

        temp_root = getattr(self.config, 'TEMP_DIR', None)
        try:
            if temp_root:
                os.makedirs(temp_root, exist_ok=True)
            self.temp_dir = tempfile.mkdtemp(prefix='dbshelf-', dir=temp_root)
        except OSError as e:
            raise FilesystemError(f"creating temp dir: {e}")
        self._log(f"Temporary directory: {self.temp_dir}", logging.DEBUG)

        filename = build_backup_filename(self.spec, datetime.now())
        path = os.path.join(self.temp_dir, filename)
        dumper = create_dumper(self.spec, getattr(self.config, 'CONNECT_TIMEOUT_SECONDS', None))

        try:
            with open(path, 'wb') as out:
                writer, finalize = open_writer(out, self.spec.compression, dumper.inner_filename)
                try:
                    dumper.dump(writer)
                except Exception:
                    self._release_writer(finalize)
                    raise
                # Writes the codec trailer; must happen before the file closes
                finalize()
            size = os.path.getsize(path)
        except OSError as e:
            raise FilesystemError(f"writing backup file: {e}")

        self.artifact = BackupArtifact(
            name=self.spec.name,
            filename=filename,
            path=path,
            size=size,
            duration=timedelta(seconds=time.monotonic() - started)
        )
        self.state.artifact = self.artifact

        self._complete(
            Step.DUMPING,
            f"Dumped {filename} ({self.artifact.size_mb:.2f} MB)"
        )

    def _release_writer(self, finalize):
        """Close the codec writer of a failed dump; the partial file is discarded."""
        try:
            finalize()
        except (OSError, ValueError) as e:
            self._log(f"Failed to close partial backup file: {e}", logging.WARNING)

    def _upload(self):
        if self.options.dry_run:
            self._complete(
                Step.UPLOADING,
                f"Upload skipped (dry-run), file at {self.artifact.path}",
                skipped=True
            )
            return

        self._begin(Step.UPLOADING)
        self.storage.upload(self.artifact.path, self.spec.dest)
        self._complete(Step.UPLOADING, f"Saved to {self.spec.dest}")

    def _apply_retention(self):
        """Delete old backups; always reports a Retention event."""
        if self.options.dry_run:
            self._complete(Step.RETENTION, 'Retention skipped (dry-run)', skipped=True)
            return
        if self.options.skip_retention:
            self._complete(Step.RETENTION, 'Skipped (--skip-retention)', skipped=True)
            return
        if not self.spec.retention.enabled:
            self._complete(Step.RETENTION, 'No retention policy', skipped=True)
            return

        self._begin(Step.RETENTION)

        # Never delete the backup that was just uploaded
        to_delete = [
            f for f in self._retention_candidates()
            if os.path.basename(f.name) != self.artifact.filename
        ]

        if not to_delete:
            self._complete(Step.RETENTION, 'No old backups to delete', skipped=True)
            return

        deleted = 0
        failed = 0
        for remote in to_delete:
            try:
                self.storage.delete(self.spec.dest, remote.name)
                deleted += 1
                self._log(f"Deleted old backup: {remote.name}")
            except StorageError as e:
                failed += 1
                self._log(f"Failed to delete {remote.name}: {e}", logging.WARNING)

        message = f"Deleted {deleted} old backup(s)"
        if failed:
            message += f", {failed} failed"
        self._complete(Step.RETENTION, message)

    def _retention_candidates(self) -> List[RemoteFile]:
        """
        Files the retention step should delete.

        A precomputed plan (the set the user confirmed before the run) wins;
        without one the destination is listed again now that the new backup
        is present.
        """
        if self.retention_plan is not None:
            return list(self.retention_plan.get(self.spec.name, []))

        files = self.storage.list(self.spec.dest)
        return apply_retention(files, self.spec.name, self.spec.retention, pending_backups=0)

    def _cleanup(self):
        """Remove the temp directory, unless a dry-run artifact should be kept."""
        if not self.temp_dir or not os.path.exists(self.temp_dir):
            return
        if self.options.dry_run and self.artifact is not None:
            self._log(f"Keeping dry-run artifact at {self.artifact.path}")
            return

        try:
            shutil.rmtree(self.temp_dir)
            self._log("Cleaned up temporary directory", logging.DEBUG)
        except OSError as e:
            self._log(f"Warning: Failed to cleanup temp directory: {e}", logging.WARNING)

    def _begin(self, step: Step):
        self._emit(ProgressEvent(db_name=self.spec.name, step=step))

    def _complete(self, step: Step, message: str, skipped: bool = False):
        self._log(message)
        self._emit(ProgressEvent(
            db_name=self.spec.name,
            step=step,
            message=message,
            skipped=skipped
        ))

    def _emit(self, event: ProgressEvent):
        self.state.step = event.step
        if not event.is_start:
            self.state.events.append(event)
        if self.events is not None:
            self.events.put(event)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] [{self.spec.name}] {message}")
        logger.log(level, f"[{self.spec.name}] {message}")
