"""Bounded concurrent execution of per-file sync tasks."""
import logging
import os
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, CancelledError, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from storage.audit_writer import AuditWriter
from storage.dynamodb_store import ReservationStore
from sync.cancellation import CancellationToken
from sync.diff_engine import DiffEngine
from sync.errors import (
    ClassifiedError,
    ErrorDomain,
    FatalCycleError,
    classify_exception,
    log_classified,
)
from sync.models import (
    UNRESOLVED_PARTITION,
    ChangeSet,
    CycleSummary,
    TaskOutcome,
    TaskState,
    TaskStatus,
)
from sync.retry import call_with_retry
from workbook.extractor import ReservationExtractor
from workbook.lock_reader import LockAwareReader
from workbook.partitions import PartitionResolver

logger = logging.getLogger(__name__)

S = TaskState

TRANSITIONS = {
    S.PENDING: {S.READING, S.DONE_SKIPPED, S.DONE_FAILED},
    # READING -> DONE_SUCCESS when the file is unchanged since its last sync
    S.READING: {S.EXTRACTING, S.DONE_SUCCESS, S.RETRYING, S.DONE_FAILED},
    S.EXTRACTING: {S.DIFFING, S.RETRYING, S.DONE_FAILED},
    S.DIFFING: {S.SYNCING, S.RETRYING, S.DONE_FAILED},
    S.SYNCING: {S.AUDIT_WRITING, S.RETRYING, S.DONE_FAILED},
    S.AUDIT_WRITING: {S.DONE_SUCCESS, S.RETRYING, S.DONE_FAILED},
    S.RETRYING: {S.READING, S.DONE_FAILED},
    S.DONE_SUCCESS: set(),
    S.DONE_SKIPPED: set(),
    S.DONE_FAILED: set(),
}

STATE_DOMAINS = {
    S.READING: ErrorDomain.SOURCE_READ,
    S.EXTRACTING: ErrorDomain.SOURCE_READ,
    S.DIFFING: ErrorDomain.REMOTE_SYNC,
    S.SYNCING: ErrorDomain.REMOTE_SYNC,
    S.AUDIT_WRITING: ErrorDomain.LIFECYCLE,
    S.RETRYING: ErrorDomain.LIFECYCLE,
}

TERMINAL_STATUS = {
    S.DONE_SUCCESS: TaskStatus.SUCCESS,
    S.DONE_SKIPPED: TaskStatus.SKIPPED_UNRESOLVED,
    S.DONE_FAILED: TaskStatus.FAILED,
}


class FileTask:
    """
    State machine for processing one source file.

    Every transition into a working state first checks the cancellation
    token. Once the change set has been committed to the store the task no
    longer observes cancellation, so a task that applied its changes always
    finishes DONE_SUCCESS. Finishing is idempotent: the first terminal
    transition wins and later ones return the same outcome.
    """

    def __init__(self, path: str, token: CancellationToken):
        self.path = path
        self.name = os.path.basename(path)
        self.token = token
        self.state = S.PENDING
        self.history: List[TaskState] = [S.PENDING]
        self.attempts = 0
        self.records_processed = 0
        self.digest: Optional[str] = None
        self.partitions: Set[int] = set()
        self.change_set = ChangeSet()
        self.committed = False
        self.outcome: Optional[TaskOutcome] = None
        self._lock = threading.Lock()

    @property
    def started(self) -> bool:
        return len(self.history) > 1

    def transition(self, new_state: TaskState) -> None:
        """
        Move to new_state.

        Raises:
            ClassifiedError: cancellation error if the token fired, or
                TASK-ABANDONED if the task was already finished elsewhere
            RuntimeError: if the transition is not allowed
        """
        if new_state.is_terminal:
            raise RuntimeError(f"use finish() to enter terminal state {new_state.value}")

        with self._lock:
            if self.state.is_terminal:
                raise ClassifiedError.abandoned(self.path)
            if not self.committed:
                self.token.raise_if_cancelled(STATE_DOMAINS[new_state])
            if new_state not in TRANSITIONS[self.state]:
                raise RuntimeError(
                    f"illegal transition {self.state.value} -> {new_state.value} for {self.path}"
                )
            self.state = new_state
            self.history.append(new_state)

        logger.debug(f"{self.name}: {self.history[-2].value} -> {new_state.value}")

    def finish(
        self,
        state: TaskState,
        error: Optional[ClassifiedError] = None
    ) -> TaskOutcome:
        """
        Enter a terminal state and build the outcome.

        Args:
            state: DONE_SUCCESS, DONE_SKIPPED or DONE_FAILED
            error: Error that failed the task

        Returns:
            The task's outcome; unchanged if the task had already finished
        """
        with self._lock:
            if self.outcome is not None:
                return self.outcome
            if state not in TRANSITIONS[self.state]:
                raise RuntimeError(
                    f"illegal transition {self.state.value} -> {state.value} for {self.path}"
                )
            self.state = state
            self.history.append(state)
            succeeded = state is S.DONE_SUCCESS
            self.outcome = TaskOutcome(
                path=self.path,
                status=TERMINAL_STATUS[state],
                records_processed=self.records_processed,
                changes_applied=len(self.change_set) if succeeded else 0,
                attempts=self.attempts,
                error=error,
                digest=self.digest if succeeded else None,
                change_set=self.change_set if succeeded else ChangeSet(),
                final_state=state
            )
            return self.outcome

    def fail(self, error: ClassifiedError) -> TaskOutcome:
        return self.finish(S.DONE_FAILED, error)


class TaskOrchestrator:
    """
    Run one task per source file on a bounded thread pool.

    Each task runs read -> extract -> diff -> sync -> audit staging for its
    file and retries retryable failures with exponential backoff. The
    collecting thread watches the failure count and aborts the cycle with
    FatalCycleError once it exceeds the threshold.

    Each partition is supplied by at most one file per cycle. A file whose
    partition is already claimed by another file fails with
    SOURCE-PARTITION-CLAIMED before it reads the remote snapshot.
    """

    def __init__(
        self,
        reader: LockAwareReader,
        extractor: ReservationExtractor,
        diff_engine: DiffEngine,
        store: ReservationStore,
        audit_writer: AuditWriter,
        resolver: Optional[PartitionResolver] = None,
        max_concurrency: int = 4,
        retry_count: int = 3,
        retry_initial_delay: float = 1.0,
        retry_max_delay: float = 5.0,
        failure_threshold: int = 3,
        lock_max_wait: float = 5.0,
        lock_poll_interval: float = 0.5,
        skip_unchanged: bool = True
    ):
        """
        Initialize the orchestrator.

        Args:
            reader: Lock-aware file opener
            extractor: Workbook extractor
            diff_engine: Diff engine
            store: Remote store client, shared by all workers
            audit_writer: Receives applied change sets
            resolver: When given, files whose names do not resolve to a
                partition are skipped without being read
            max_concurrency: Maximum number of tasks running at once
            retry_count: Retries per task after the first attempt
            retry_initial_delay: Delay before the first retry in seconds
            retry_max_delay: Upper bound for retry delays
            failure_threshold: Failed tasks tolerated per cycle before the
                cycle is aborted as a systemic failure
            lock_max_wait: Seconds to wait for a locked file
            lock_poll_interval: Initial seconds between lock checks
            skip_unchanged: Skip files whose contents did not change since
                their last successful sync
        """
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")

        self.reader = reader
        self.extractor = extractor
        self.diff_engine = diff_engine
        self.store = store
        self.audit_writer = audit_writer
        self.resolver = resolver
        self.max_concurrency = max_concurrency
        self.retry_count = retry_count
        self.retry_initial_delay = retry_initial_delay
        self.retry_max_delay = retry_max_delay
        self.failure_threshold = failure_threshold
        self.lock_max_wait = lock_max_wait
        self.lock_poll_interval = lock_poll_interval
        self.skip_unchanged = skip_unchanged

        self._digests: Dict[str, str] = {}
        self._known_partitions: Dict[str, Set[int]] = {}
        self._claims: Dict[int, str] = {}
        self._lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._abandon = threading.Event()
        self._tasks: List[FileTask] = []

    @property
    def in_flight(self) -> int:
        """Number of tasks that have started and not yet finished."""
        with self._lock:
            return sum(1 for task in self._tasks if task.started and not task.state.is_terminal)

    def run_cycle(
        self,
        files: Iterable[str],
        token: CancellationToken,
        cycle_id: Optional[str] = None
    ) -> CycleSummary:
        """
        Process every file once.

        Args:
            files: Source file paths
            token: Cancellation token; the cycle uses a child of it
            cycle_id: Identifier of the cycle (default: random)

        Returns:
            CycleSummary with one outcome per file

        Raises:
            FatalCycleError: if more than failure_threshold tasks failed
        """
        cycle_token = token.child()
        summary = CycleSummary(cycle_id=cycle_id or uuid.uuid4().hex, started_at=datetime.now())
        executor = ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix='file-task'
        )
        futures: Dict[Future, FileTask] = {}
        failures: List[ClassifiedError] = []

        self._abandon.clear()
        self._idle.clear()
        with self._lock:
            self._tasks = []
            self._claims = {}

        logger.info(f"Cycle {summary.cycle_id} started")

        try:
            runnable = []
            for path in files:
                task = FileTask(path, cycle_token)
                with self._lock:
                    self._tasks.append(task)

                if self._unresolved(task):
                    logger.warning(f"Skipping file with unresolved facility name: {path}")
                    summary.outcomes.append(task.finish(S.DONE_SKIPPED))
                    continue

                # claims are taken in file order before any task runs
                try:
                    self._claim(task, self._expected_partitions(task))
                except ClassifiedError as error:
                    log_classified(logger, error, f"sync {task.name}")
                    summary.outcomes.append(task.fail(error))
                    failures.append(error)
                    continue

                runnable.append(task)

            for task in runnable:
                futures[executor.submit(self._run_task, task, summary.cycle_id)] = task

            not_done = set(futures)
            while not_done:
                if self._abandon.is_set():
                    break

                done, not_done = wait(not_done, timeout=0.1, return_when=FIRST_COMPLETED)
                for future in done:
                    outcome = self._collect(future, futures[future])
                    summary.outcomes.append(outcome)
                    if outcome.status is TaskStatus.FAILED and not outcome.error.is_cancellation:
                        failures.append(outcome.error)

                if cycle_token.cancelled:
                    for future in not_done:
                        future.cancel()

                if len(failures) > self.failure_threshold and not summary.fatal:
                    summary.fatal = True
                    logger.critical(
                        f"Cycle {summary.cycle_id}: {len(failures)} tasks failed, "
                        f"threshold is {self.failure_threshold}; aborting cycle"
                    )
                    cycle_token.cancel('systemic failure')
                    for future in not_done:
                        future.cancel()

            if not_done:
                for future in not_done:
                    task = futures[future]
                    future.cancel()
                    state = task.state
                    outcome = task.fail(ClassifiedError.abandoned(task.path))
                    logger.warning(f"Abandoned task {task.name} in state {state.value}")
                    summary.outcomes.append(outcome)
                cycle_token.cancel('abandoned at shutdown deadline')
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            summary.finished_at = datetime.now()
            summary.cancelled = token.cancelled or self._abandon.is_set()
            self._idle.set()

        logger.info(
            f"Cycle {summary.cycle_id} finished: {summary.succeeded} succeeded, "
            f"{summary.skipped} skipped, {summary.failed} failed, "
            f"{summary.changes_applied} changes applied",
            extra={'cycle_id': summary.cycle_id, 'duration_seconds': round(summary.duration_seconds, 2)}
        )

        if summary.fatal:
            raise FatalCycleError(
                f"{len(failures)} of {len(summary.outcomes)} tasks failed in cycle "
                f"{summary.cycle_id}",
                summary,
                failures
            )

        return summary

    def drain(self, timeout: Optional[float]) -> bool:
        """
        Wait for the running cycle to finish.

        Args:
            timeout: Seconds to wait, None waits indefinitely

        Returns:
            True if no cycle is running any more
        """
        return self._idle.wait(timeout)

    def abandon(self) -> None:
        """
        Stop waiting for the running cycle.

        Unfinished tasks are recorded FAILED with TASK-ABANDONED and their
        worker threads are left to observe the cancelled token.
        """
        if self._idle.is_set():
            return
        logger.warning(f"Abandoning {self.in_flight} in-flight tasks")
        self._abandon.set()
        self._idle.wait(1.0)

    def _unresolved(self, task: FileTask) -> bool:
        if self.resolver is None:
            return False
        return self.resolver.resolve(task.name) == UNRESOLVED_PARTITION

    def _expected_partitions(self, task: FileTask) -> Set[int]:
        if self.resolver is not None:
            return {self.resolver.resolve(task.name)}
        # partitions come from row values; use what the file supplied when it last synced
        return set(self._known_partitions.get(task.path, ()))

    def _claim(self, task: FileTask, partitions: Set[int]) -> None:
        """
        Register task as the only file supplying partitions in this cycle.

        Raises:
            ClassifiedError: SOURCE-PARTITION-CLAIMED if another file of the
                cycle already supplies one of the partitions
        """
        partitions = {key for key in partitions if key != UNRESOLVED_PARTITION}
        with self._lock:
            for key in sorted(partitions):
                owner = self._claims.get(key)
                if owner is not None and owner != task.path:
                    raise ClassifiedError.partition_claimed(task.path, key, owner)
            for key in partitions:
                self._claims[key] = task.path

    def _collect(self, future: Future, task: FileTask) -> TaskOutcome:
        try:
            outcome = future.result()
        except CancelledError:
            outcome = task.fail(
                ClassifiedError.cancelled(ErrorDomain.LIFECYCLE, task.token.reason or 'cancelled')
            )
        except Exception as e:
            error = classify_exception(e, ErrorDomain.LIFECYCLE)
            log_classified(logger, error, f"sync {task.name}", exc_info=True)
            outcome = task.fail(error)

        if outcome.status is TaskStatus.SUCCESS:
            if outcome.digest:
                self._digests[task.path] = outcome.digest
            if S.DIFFING in task.history:
                self._known_partitions[task.path] = set(task.partitions)
        return outcome

    def _run_task(self, task: FileTask, cycle_id: str) -> TaskOutcome:
        try:
            return call_with_retry(
                lambda: self._attempt(task, cycle_id),
                ErrorDomain.LIFECYCLE,
                retry_count=self.retry_count,
                initial_delay=self.retry_initial_delay,
                max_delay=self.retry_max_delay,
                token=task.token,
                on_retry=lambda attempt, error, delay: task.transition(S.RETRYING),
                operation=f"sync {task.name}"
            )
        except ClassifiedError as error:
            if not error.is_cancellation:
                log_classified(logger, error, f"sync {task.name}")
            return task.fail(error)

    def _attempt(self, task: FileTask, cycle_id: str) -> TaskOutcome:
        task.attempts += 1
        try:
            return self._process(task, cycle_id)
        except ClassifiedError:
            raise
        except Exception as e:
            raise classify_exception(e, STATE_DOMAINS.get(task.state, ErrorDomain.LIFECYCLE)) from e

    def _process(self, task: FileTask, cycle_id: str) -> TaskOutcome:
        token = task.token

        task.transition(S.READING)
        with self.reader.open(
            task.path,
            max_wait=self.lock_max_wait,
            poll_interval=self.lock_poll_interval,
            token=token
        ) as handle:
            if self.skip_unchanged:
                task.digest = handle.digest()
                if self._digests.get(task.path) == task.digest:
                    logger.info(f"Unchanged since last sync, skipping: {task.name}")
                    return task.finish(S.DONE_SUCCESS)

            task.transition(S.EXTRACTING)
            records = self.extractor.extract(handle)
        task.records_processed = len(records)

        task.transition(S.DIFFING)
        task.partitions = {record.partition_key for record in records} - {UNRESOLVED_PARTITION}
        self._claim(task, task.partitions)
        windows = sorted(
            {record.window for record in records},
            key=lambda window: (window.partition_key, window.year)
        )
        snapshot = []
        for window in windows:
            snapshot.extend(self.store.fetch_snapshot(window, token=token))
        change_set = self.diff_engine.diff(records, snapshot, windows=windows, source=task.name)

        task.transition(S.SYNCING)
        self.store.apply_change_set(change_set, token=token)
        task.change_set = change_set
        task.committed = True

        task.transition(S.AUDIT_WRITING)
        if not change_set.is_empty:
            self.audit_writer.stage(cycle_id, task.path, change_set)

        return task.finish(S.DONE_SUCCESS)
