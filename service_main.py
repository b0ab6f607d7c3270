"""Process entry point for the reservation sync service."""
import json
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from typing import Optional

from notify.lineworks_client import LineWorksNotifier
from service.lifecycle import LifecycleController
from service.orchestrator import TaskOrchestrator
from service.settings import Settings, load_settings
from storage.audit_writer import AuditWriter
from storage.dynamodb_store import ReservationStore
from sync.diff_engine import DiffEngine
from sync.errors import ClassifiedError, FatalCycleError, log_classified
from workbook.extractor import ReservationExtractor
from workbook.lock_reader import LockAwareReader
from workbook.partitions import PartitionResolver

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

# Attributes every LogRecord carries; anything else arrived through extra=
_RECORD_ATTRIBUTES = set(
    logging.LogRecord('', logging.INFO, '', 0, '', None, None).__dict__
) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name,
            'thread': record.threadName
        }

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(log_level: str = 'INFO', log_file: Optional[str] = None) -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file that receives the same records, rotated at 10 MB
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    if log_file:
        file_handler = RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding='utf-8'
        )
        file_handler.setFormatter(JsonFormatter())
        root_logger.addHandler(file_handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # boto and urllib3 are chatty at DEBUG
    for name in ('boto3', 'botocore', 'urllib3'):
        logging.getLogger(name).setLevel(logging.WARNING)


def build_controller(settings: Settings) -> LifecycleController:
    """
    Wire the service components from settings.

    Args:
        settings: Validated settings

    Returns:
        LifecycleController ready to start
    """
    resolver = PartitionResolver(settings.partition_map)
    store = ReservationStore(
        table_name=settings.table_name,
        tenant_id=settings.tenant_id,
        region_name=settings.aws_region,
        endpoint_url=settings.dynamodb_endpoint_url,
        max_connections=settings.max_concurrency,
        timeout=settings.remote_timeout
    )
    audit_writer = AuditWriter(settings.audit_dir)

    notifier = None
    if settings.notification_enabled:
        notifier = LineWorksNotifier(
            bot_id=settings.lineworks_bot_id,
            channel_id=settings.lineworks_channel_id,
            client_id=settings.lineworks_client_id,
            client_secret=settings.lineworks_client_secret,
            token_url=settings.lineworks_token_url,
            message_url=settings.lineworks_message_url,
            timeout=settings.notification_timeout
        )

    orchestrator = TaskOrchestrator(
        reader=LockAwareReader(settings.lock_max_wait, settings.lock_poll_interval),
        extractor=ReservationExtractor(
            resolver,
            sheet_name=settings.sheet_name,
            date_column=settings.date_column,
            count_column=settings.count_column,
            facility_column=settings.facility_column,
            target_year=settings.target_year
        ),
        diff_engine=DiffEngine(),
        store=store,
        audit_writer=audit_writer,
        # with a facility column the file name does not decide the partition
        resolver=None if settings.facility_column else resolver,
        max_concurrency=settings.max_concurrency,
        retry_count=settings.retry_count,
        retry_initial_delay=settings.retry_initial_delay,
        retry_max_delay=settings.retry_max_delay,
        failure_threshold=settings.failure_threshold,
        lock_max_wait=settings.lock_max_wait,
        lock_poll_interval=settings.lock_poll_interval,
        skip_unchanged=settings.skip_unchanged
    )

    return LifecycleController(
        orchestrator=orchestrator,
        store=store,
        audit_writer=audit_writer,
        source_dir=settings.source_dir,
        file_patterns=settings.file_patterns,
        notifier=notifier,
        polling_interval=settings.polling_interval,
        shutdown_deadline=settings.shutdown_deadline,
        audit_retention_days=settings.audit_retention_days
    )


def main() -> int:
    """
    Run the service until it is stopped.

    Returns:
        Process exit code: 0 after a clean stop, 1 after a systemic
        failure, 2 on invalid configuration
    """
    try:
        settings = load_settings()
    except ClassifiedError as error:
        setup_logging('INFO')
        log_classified(logging.getLogger(__name__), error, 'configuration')
        return EXIT_CONFIG

    setup_logging(settings.log_level, settings.log_file)
    logger = logging.getLogger(__name__)
    controller = build_controller(settings)

    if settings.run_once:
        try:
            summary = controller.run_once()
        except FatalCycleError:
            controller.wait(settings.shutdown_deadline)
            return EXIT_FATAL
        controller.stop()
        logger.info('Single cycle finished', extra={'summary': summary.to_dict() if summary else None})
        return EXIT_OK

    stop_requested = threading.Event()

    def request_stop(signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}")
        stop_requested.set()

    def log_status(signum, frame):
        logger.info('Service status', extra={'status': controller.status()})

    signal.signal(signal.SIGTERM, request_stop)
    signal.signal(signal.SIGINT, request_stop)
    if hasattr(signal, 'SIGUSR1'):
        signal.signal(signal.SIGUSR1, log_status)

    drained = True
    controller.start()
    while not controller.wait(0.5):
        if stop_requested.is_set() and not controller.stop():
            drained = False

    code = EXIT_OK
    if controller.status()['fatal_error']:
        logger.critical('Service stopped after a systemic failure; exiting for restart')
        code = EXIT_FATAL
    if not drained:
        _exit_abandoned(code)
    return code


def _exit_abandoned(code: int) -> None:
    # abandoned worker threads are not daemons and would block interpreter exit
    logging.getLogger(__name__).warning(
        f"Exiting with {code} while abandoned tasks are still running"
    )
    logging.shutdown()
    os._exit(code)


if __name__ == '__main__':
    sys.exit(main())
