"""Service lifecycle: cycle scheduling and deadline-bounded shutdown."""
import logging
import threading
import time
import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from notify.lineworks_client import LineWorksNotifier
from service.orchestrator import TaskOrchestrator
from storage.audit_writer import AuditWriter
from storage.dynamodb_store import ReservationStore
from sync.cancellation import CancellationToken
from sync.errors import ClassifiedError, FatalCycleError, log_classified
from sync.models import CycleSummary, TaskOutcome, TaskState, TaskStatus
from workbook.discovery import discover_source_files

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """States of the service process."""
    CREATED = 'created'
    RUNNING = 'running'
    STOPPING = 'stopping'
    STOPPED = 'stopped'
    FAILED = 'failed'


class LifecycleController:
    """
    Owns the root cancellation token and the scheduler thread.

    The scheduler runs one cycle per polling interval. stop() cancels the
    token, drains in-flight tasks until the shutdown deadline, abandons
    whatever is left and releases the remote clients. A FatalCycleError
    stops scheduling for good; the process has to be restarted.
    """

    def __init__(
        self,
        orchestrator: TaskOrchestrator,
        store: ReservationStore,
        audit_writer: AuditWriter,
        source_dir: str,
        file_patterns: List[str],
        notifier: Optional[LineWorksNotifier] = None,
        polling_interval: float = 300.0,
        shutdown_deadline: float = 20.0,
        audit_retention_days: int = 180
    ):
        """
        Initialize the controller.

        Args:
            orchestrator: Runs the file tasks of a cycle
            store: Remote store client, closed at shutdown
            audit_writer: Persists cycle records
            source_dir: Directory scanned for source files each cycle
            file_patterns: Glob patterns of source files
            notifier: Sends cycle summaries; None only logs them
            polling_interval: Seconds between cycle starts
            shutdown_deadline: Seconds stop() waits for in-flight tasks
            audit_retention_days: Age after which proof files are pruned
        """
        self.orchestrator = orchestrator
        self.store = store
        self.audit_writer = audit_writer
        self.source_dir = source_dir
        self.file_patterns = list(file_patterns)
        self.notifier = notifier
        self.polling_interval = polling_interval
        self.shutdown_deadline = shutdown_deadline
        self.audit_retention_days = audit_retention_days

        self.token = CancellationToken()
        self._state = ServiceState.CREATED
        self._lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._cycles_run = 0
        self._last_summary: Optional[CycleSummary] = None
        self._fatal_error: Optional[FatalCycleError] = None
        self._last_prune: Optional[date] = None

    @property
    def state(self) -> ServiceState:
        return self._state

    def start(self) -> None:
        """
        Start the scheduler thread.

        Raises:
            RuntimeError: if the controller was already started
        """
        with self._lock:
            if self._state is not ServiceState.CREATED:
                raise RuntimeError(f"cannot start from state {self._state.value}")
            self._state = ServiceState.RUNNING

        self._thread = threading.Thread(target=self._schedule, name='scheduler')
        self._thread.start()
        logger.info(
            f"Service started; polling every {self.polling_interval:.0f}s",
            extra={'source_dir': self.source_dir, 'patterns': self.file_patterns}
        )

    def run_once(self) -> Optional[CycleSummary]:
        """
        Run a single cycle now.

        Returns:
            The cycle summary, or None once shutdown has begun

        Raises:
            FatalCycleError: after the partial summary has been published
                and shutdown has been initiated
        """
        if self.token.cancelled:
            return None

        started_at = datetime.now()
        try:
            files = discover_source_files(self.source_dir, self.file_patterns)
        except ClassifiedError as error:
            log_classified(logger, error, 'source discovery')
            summary = CycleSummary(
                cycle_id=uuid.uuid4().hex,
                started_at=started_at,
                finished_at=datetime.now(),
                outcomes=[TaskOutcome(
                    path=self.source_dir,
                    status=TaskStatus.FAILED,
                    error=error,
                    final_state=TaskState.DONE_FAILED
                )]
            )
            self._publish(summary)
            return summary

        try:
            summary = self.orchestrator.run_cycle(files, self.token)
        except FatalCycleError as e:
            self._handle_fatal(e)
            raise

        self._publish(summary)
        self._prune_if_due()
        return summary

    def stop(self) -> bool:
        """
        Shut down within the deadline.

        Stops scheduling, cancels the token, drains in-flight tasks until
        the deadline, abandons the rest and closes the remote clients.

        Returns:
            True if every in-flight task finished before the deadline
        """
        with self._stop_lock:
            if self._stopped.is_set():
                return True

            started = time.monotonic()
            with self._lock:
                if self._state is not ServiceState.FAILED:
                    self._state = ServiceState.STOPPING
            logger.info(
                f"Shutdown requested; waiting up to {self.shutdown_deadline:.0f}s "
                f"for {self.orchestrator.in_flight} in-flight tasks"
            )

            self.token.cancel('shutdown requested')

            drained = self.orchestrator.drain(self.shutdown_deadline)
            if not drained:
                logger.warning('Shutdown deadline reached; abandoning unfinished tasks')
                self.orchestrator.abandon()

            self._close_clients()

            thread = self._thread
            if thread is not None and thread is not threading.current_thread():
                remaining = self.shutdown_deadline - (time.monotonic() - started)
                thread.join(max(remaining, 1.0))
                if thread.is_alive():
                    logger.warning('Scheduler thread did not exit before the deadline')

            with self._lock:
                if self._state is not ServiceState.FAILED:
                    self._state = ServiceState.STOPPED
            self._stopped.set()

            logger.info(
                f"Shutdown finished in {time.monotonic() - started:.2f}s",
                extra={'drained': drained, 'state': self._state.value}
            )
            return drained

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the service has stopped.

        Returns:
            True if the service stopped within timeout
        """
        return self._stopped.wait(timeout)

    def status(self) -> Dict[str, Any]:
        """Return a JSON-serialisable snapshot of the service state."""
        with self._lock:
            last = self._last_summary
            status = {
                'state': self._state.value,
                'cycles_run': self._cycles_run,
                'in_flight': self.orchestrator.in_flight,
                'fatal_error': self._fatal_error.code if self._fatal_error else None,
                'last_cycle': None,
            }

        if last is not None:
            status['last_cycle'] = {
                'cycle_id': last.cycle_id,
                'finished_at': last.finished_at.isoformat() if last.finished_at else None,
                'succeeded': last.succeeded,
                'skipped_unresolved': last.skipped,
                'failed': last.failed,
                'changes_applied': last.changes_applied,
                'cancelled': last.cancelled,
            }
        return status

    def _schedule(self) -> None:
        while not self.token.cancelled:
            try:
                self.run_once()
            except FatalCycleError:
                logger.critical('Scheduling stopped after systemic failure')
                return

            if self.token.wait(self.polling_interval):
                break

        logger.info('Scheduler stopped')

    def _handle_fatal(self, error: FatalCycleError) -> None:
        with self._lock:
            self._fatal_error = error
            self._state = ServiceState.FAILED

        logger.critical(
            f"Systemic failure: {error}",
            extra={'error_code': error.code, 'errors': [e.code for e in error.errors]}
        )

        self._publish(error.summary)
        if self.notifier is not None:
            try:
                self.notifier.send_text(
                    f"[CRITICAL] Reservation sync service stopped: {error}. "
                    f"Restart the service after resolving the cause."
                )
            except ClassifiedError as alert_error:
                log_classified(logger, alert_error, 'critical alert')

        self.stop()

    def _publish(self, summary: CycleSummary) -> None:
        with self._lock:
            self._cycles_run += 1
            self._last_summary = summary

        try:
            self.audit_writer.append(summary)
        except OSError as e:
            logger.error(f"Failed to write audit record for cycle {summary.cycle_id}: {e}")

        if summary.cancelled:
            logger.info(f"Cycle {summary.cycle_id} was cancelled; notification skipped")
            return

        if self.notifier is None:
            logger.info(
                LineWorksNotifier.format_summary(summary),
                extra={'cycle_id': summary.cycle_id}
            )
            return

        try:
            self.notifier.send(summary)
        except ClassifiedError as error:
            log_classified(logger, error, 'cycle notification')

    def _prune_if_due(self) -> None:
        today = date.today()
        if self._last_prune == today:
            return
        self._last_prune = today
        try:
            deleted = self.audit_writer.prune(self.audit_retention_days)
        except OSError as e:
            logger.error(f"Failed to prune proof files: {e}")
            return
        if deleted:
            logger.info(f"Pruned {deleted} proof files older than {self.audit_retention_days} days")

    def _close_clients(self) -> None:
        self.store.close()
        if self.notifier is not None:
            self.notifier.close()
