"""
Concurrency coordinator for backup runs.

Manages:
- Fan-out of one backup pipeline per database onto worker threads
- The shared progress event stream
- The retention pre-check that builds a plan before a run starts
"""

import logging
import queue
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from dbshelf.backup.executor import BackupExecutor
from dbshelf.backup.retention import apply_retention
from dbshelf.backup.storage import StorageClient
from dbshelf.errors import BackupError, ConfigurationError
from dbshelf.models import (
    BackupOptions,
    BackupResult,
    BackupState,
    DatabaseSpec,
    ProgressEvent,
    RetentionPlan,
    RunSummary,
    Step,
)


logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100

_CLOSED = object()


class EventStream:
    """
    Bounded, thread-safe stream of ProgressEvents.

    Producers block on ``put`` when the consumer falls behind. ``close``
    marks the end of the stream; iteration stops there.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._queue = queue.Queue(maxsize=maxsize)
        self._closed = False

    def put(self, event: ProgressEvent):
        self._queue.put(event)

    def close(self):
        if not self._closed:
            self._closed = True
            self._queue.put(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item


def _resolve_names(databases: Mapping[str, DatabaseSpec], names: Optional[Sequence[str]]) -> List[str]:
    if not names:
        return sorted(databases)

    unknown = [name for name in names if name not in databases]
    if unknown:
        raise ConfigurationError(f"unknown database(s): {', '.join(unknown)}")
    return list(dict.fromkeys(names))


class BackupCoordinator:
    """
    Runs backups for many databases at once.

    Every database gets its own pipeline on its own thread; a failure in one
    never stops the others.
    """

    def __init__(self, storage: StorageClient, databases: Mapping[str, DatabaseSpec], config=None):
        """
        Initialize coordinator.

        Args:
            storage: Storage client shared by every pipeline
            databases: Configured databases by name
            config: Config class
        """
        self.storage = storage
        self.databases = dict(databases)
        self.config = config
        self.states: Dict[str, BackupState] = {}

    def resolve_names(self, names: Optional[Sequence[str]] = None) -> List[str]:
        """
        Resolve requested database names.

        Args:
            names: Requested names; empty or None means every database

        Returns:
            Names in request order (sorted when all are selected)

        Raises:
            ConfigurationError: If any name is not configured
        """
        return _resolve_names(self.databases, names)

    def new_stream(self) -> EventStream:
        return EventStream(getattr(self.config, 'EVENT_QUEUE_SIZE', DEFAULT_QUEUE_SIZE))

    def run(
        self,
        names: Optional[Sequence[str]] = None,
        options: Optional[BackupOptions] = None,
        retention_plan: Optional[RetentionPlan] = None,
        events: Optional[EventStream] = None
    ) -> RunSummary:
        """
        Back up the selected databases concurrently and wait for all of them.

        The event stream is closed when the run ends, whatever the outcome.

        Args:
            names: Databases to back up (None or empty = all)
            options: Run-wide options
            retention_plan: Precomputed deletions from precheck_retention
            events: Stream receiving every pipeline's progress events

        Returns:
            RunSummary in request order

        Raises:
            ConfigurationError: If a requested name is unknown; nothing runs
        """
        try:
            names = self._prepare(names)
        except ConfigurationError:
            if events is not None:
                events.close()
            raise
        return self._execute(names, options, retention_plan, events)

    def start(
        self,
        names: Optional[Sequence[str]] = None,
        options: Optional[BackupOptions] = None,
        retention_plan: Optional[RetentionPlan] = None,
        events: Optional[EventStream] = None
    ) -> Future:
        """
        Start a run in the background.

        Names are validated and ``states`` is populated before this returns,
        so a bad name raises here rather than through the future.

        Returns:
            Future resolving to the RunSummary
        """
        names = self._prepare(names)

        runner = ThreadPoolExecutor(max_workers=1, thread_name_prefix='dbshelf-run')
        future = runner.submit(self._execute, names, options, retention_plan, events)
        runner.shutdown(wait=False)
        return future

    def _prepare(self, names: Optional[Sequence[str]]) -> List[str]:
        """Resolve names and reset per-database state for a new run."""
        names = self.resolve_names(names)
        self.states = {name: BackupState(db_name=name) for name in names}
        return names

    def _execute(
        self,
        names: List[str],
        options: Optional[BackupOptions],
        retention_plan: Optional[RetentionPlan],
        events: Optional[EventStream]
    ) -> RunSummary:
        try:
            options = options or BackupOptions()

            if not names:
                return RunSummary()

            logger.info(f"Starting backup of {len(names)} database(s): {', '.join(names)}")
            results: Dict[str, BackupResult] = {}

            with ThreadPoolExecutor(max_workers=len(names), thread_name_prefix='dbshelf') as executor:
                future_to_name = {
                    executor.submit(
                        self._run_one, name, options, retention_plan, events
                    ): name
                    for name in names
                }

                for future in as_completed(future_to_name):
                    name = future_to_name[future]
                    try:
                        results[name] = future.result()
                    except Exception as e:
                        logger.exception(f"[{name}] Backup pipeline crashed: {e}")
                        results[name] = self._crashed(name, e, events)

            summary = RunSummary(results=[results[name] for name in names])
            logger.info(summary.summary_line())
            return summary

        finally:
            if events is not None:
                events.close()

    def _run_one(
        self,
        name: str,
        options: BackupOptions,
        retention_plan: Optional[RetentionPlan],
        events: Optional[EventStream]
    ) -> BackupResult:
        executor = BackupExecutor(
            self.databases[name],
            self.storage,
            options=options,
            retention_plan=retention_plan,
            events=events,
            config=self.config,
            state=self.states[name]
        )
        return executor.execute()

    def _crashed(self, name: str, error: Exception, events: Optional[EventStream]) -> BackupResult:
        state = self.states[name]
        event = ProgressEvent(
            db_name=name,
            step=Step.DONE,
            message=f"Backup failed: {error}",
            error=error,
            done=True
        )
        state.step = Step.DONE
        state.done = True
        state.error = error
        state.events.append(event)
        if events is not None:
            events.put(event)
        return BackupResult(db_name=name, success=False, error=error, steps=list(state.events))


def precheck_retention(
    storage: StorageClient,
    databases: Mapping[str, DatabaseSpec],
    names: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None
) -> RetentionPlan:
    """
    Work out which backups each database's retention rules will delete.

    Runs before a backup so the deletions can be shown and confirmed. One
    slot is reserved for the backup about to be created.

    Args:
        storage: Storage client
        databases: Configured databases by name
        names: Databases to check (None or empty = all)
        now: Reference time for keep_days

    Returns:
        RetentionPlan with an entry for every database that has deletions

    Raises:
        ConfigurationError: If any name is not configured
    """
    plan: RetentionPlan = {}

    for name in _resolve_names(databases, names):
        spec = databases[name]
        if not spec.retention.enabled:
            continue

        try:
            files = storage.list(spec.dest)
        except BackupError as e:
            logger.warning(f"[{name}] Retention pre-check skipped, listing failed: {e}")
            continue

        to_delete = apply_retention(files, name, spec.retention, pending_backups=1, now=now)
        if to_delete:
            plan[name] = to_delete

    return plan


def run_backups(
    storage: StorageClient,
    databases: Mapping[str, DatabaseSpec],
    names: Optional[Sequence[str]] = None,
    options: Optional[BackupOptions] = None,
    retention_plan: Optional[RetentionPlan] = None,
    config=None,
    on_event: Optional[Callable[[ProgressEvent], None]] = None
) -> Tuple[RunSummary, List[ProgressEvent]]:
    """
    Run backups and collect every progress event.

    Args:
        storage: Storage client
        databases: Configured databases by name
        names: Databases to back up (None or empty = all)
        options: Run-wide options
        retention_plan: Precomputed deletions
        config: Config class
        on_event: Called with each event as it arrives

    Returns:
        (summary, events in arrival order)
    """
    coordinator = BackupCoordinator(storage, databases, config=config)
    events = coordinator.new_stream()
    future = coordinator.start(names, options, retention_plan, events)

    received = []
    for event in events:
        received.append(event)
        if on_event is not None:
            on_event(event)

    return future.result(), received
