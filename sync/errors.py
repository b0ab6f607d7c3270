"""Classified errors shared by every stage of the sync pipeline."""
import logging
import zipfile
from enum import Enum, IntEnum
from typing import Any, Dict, Optional


class ErrorDomain(str, Enum):
    """Subsystem an error originated from."""
    SOURCE_READ = 'source-read'
    REMOTE_SYNC = 'remote-sync'
    NOTIFICATION = 'notification'
    CONFIGURATION = 'configuration'
    LIFECYCLE = 'lifecycle'


class Severity(IntEnum):
    """Error severity, ordered from least to most serious."""
    INFO = 0
    WARNING = 1
    ERROR = 2
    CRITICAL = 3


_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


class ClassifiedError(Exception):
    """
    Error tagged with a domain, a machine-readable code, a severity and a
    retryable flag.

    One type covers every domain; the domain field replaces a per-subsystem
    exception hierarchy. Use the factory classmethods to build instances so
    codes and retry semantics stay consistent.
    """

    def __init__(
        self,
        domain: ErrorDomain,
        code: str,
        message: str,
        severity: Severity = Severity.ERROR,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.domain = domain
        self.code = code
        self.message = message
        self.severity = severity
        self.retryable = retryable
        self.details = details or {}

    def __repr__(self) -> str:
        return (
            f"ClassifiedError(domain={self.domain.value!r}, code={self.code!r}, "
            f"severity={self.severity.name}, retryable={self.retryable}, "
            f"message={self.message!r})"
        )

    @property
    def is_cancellation(self) -> bool:
        """True when the error only reports an observed cancellation."""
        return self.code.endswith('-CANCELLED') or self.code == 'TASK-ABANDONED'

    @property
    def is_fatal(self) -> bool:
        return self.severity is Severity.CRITICAL and not self.retryable

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serialisable view for logs and audit records."""
        return {
            'domain': self.domain.value,
            'code': self.code,
            'message': self.message,
            'severity': self.severity.name,
            'retryable': self.retryable,
            'details': {key: str(value) for key, value in self.details.items()}
        }

    # source-read

    @classmethod
    def source_not_found(cls, path: str) -> 'ClassifiedError':
        return cls(
            ErrorDomain.SOURCE_READ, 'SOURCE-NOT-FOUND',
            f"Source file not found: {path}",
            retryable=False, details={'path': path}
        )

    @classmethod
    def source_locked(cls, path: str, waited: float) -> 'ClassifiedError':
        return cls(
            ErrorDomain.SOURCE_READ, 'SOURCE-LOCKED',
            f"Source file still locked after {waited:.1f}s: {path}",
            severity=Severity.WARNING, retryable=True,
            details={'path': path, 'waited_seconds': round(waited, 2)}
        )

    @classmethod
    def source_read_failed(cls, path: str, reason: str) -> 'ClassifiedError':
        return cls(
            ErrorDomain.SOURCE_READ, 'SOURCE-READ-FAILED',
            f"Failed to read source file {path}: {reason}",
            retryable=True, details={'path': path}
        )

    @classmethod
    def source_format(cls, path: str, reason: str) -> 'ClassifiedError':
        return cls(
            ErrorDomain.SOURCE_READ, 'SOURCE-FORMAT',
            f"Malformed source file {path}: {reason}",
            retryable=False, details={'path': path}
        )

    @classmethod
    def partition_claimed(cls, path: str, partition_key: int, owner: str) -> 'ClassifiedError':
        return cls(
            ErrorDomain.SOURCE_READ, 'SOURCE-PARTITION-CLAIMED',
            f"Partition {partition_key} of {path} is already supplied by {owner}",
            retryable=False,
            details={'path': path, 'partition_key': partition_key, 'owner': owner}
        )

    # remote-sync

    @classmethod
    def remote_auth(cls, operation: str, reason: str) -> 'ClassifiedError':
        return cls(
            ErrorDomain.REMOTE_SYNC, 'REMOTE-AUTH',
            f"Remote store rejected credentials during {operation}: {reason}",
            retryable=False, details={'operation': operation}
        )

    @classmethod
    def remote_connection(cls, operation: str, reason: str) -> 'ClassifiedError':
        return cls(
            ErrorDomain.REMOTE_SYNC, 'REMOTE-CONNECTION',
            f"Remote store unreachable during {operation}: {reason}",
            retryable=True, details={'operation': operation}
        )

    @classmethod
    def remote_data(
        cls,
        operation: str,
        reason: str,
        retryable: bool = True
    ) -> 'ClassifiedError':
        return cls(
            ErrorDomain.REMOTE_SYNC, 'REMOTE-DATA',
            f"Remote store data operation {operation} failed: {reason}",
            retryable=retryable, details={'operation': operation}
        )

    # notification

    @classmethod
    def notify_auth(cls, endpoint: str, status_code: int) -> 'ClassifiedError':
        return cls(
            ErrorDomain.NOTIFICATION, 'NOTIFY-AUTH',
            f"Notification endpoint rejected credentials: {endpoint} "
            f"(status {status_code})",
            retryable=False,
            details={'endpoint': endpoint, 'status_code': status_code}
        )

    @classmethod
    def notify_connection(cls, endpoint: str, reason: str) -> 'ClassifiedError':
        return cls(
            ErrorDomain.NOTIFICATION, 'NOTIFY-CONNECTION',
            f"Notification endpoint unreachable: {endpoint}: {reason}",
            retryable=True, details={'endpoint': endpoint}
        )

    @classmethod
    def notify_send(
        cls,
        endpoint: str,
        reason: str,
        status_code: Optional[int] = None
    ) -> 'ClassifiedError':
        return cls(
            ErrorDomain.NOTIFICATION, 'NOTIFY-SEND',
            f"Failed to send notification to {endpoint}: {reason}",
            retryable=True,
            details={'endpoint': endpoint, 'status_code': status_code}
        )

    # configuration

    @classmethod
    def config_key_not_found(cls, key: str) -> 'ClassifiedError':
        return cls(
            ErrorDomain.CONFIGURATION, 'CONFIG-KEY-NOT-FOUND',
            f"Required configuration key is missing: {key}",
            retryable=False, details={'key': key}
        )

    @classmethod
    def config_invalid_value(cls, key: str, reason: str) -> 'ClassifiedError':
        return cls(
            ErrorDomain.CONFIGURATION, 'CONFIG-INVALID-VALUE',
            f"Invalid configuration value for {key}: {reason}",
            retryable=False, details={'key': key}
        )

    @classmethod
    def config_file_not_found(cls, key: str, path: str) -> 'ClassifiedError':
        return cls(
            ErrorDomain.CONFIGURATION, 'CONFIG-FILE-NOT-FOUND',
            f"Configured path does not exist: {key}={path}",
            severity=Severity.CRITICAL, retryable=False,
            details={'key': key, 'path': path}
        )

    # cancellation

    @classmethod
    def cancelled(
        cls,
        domain: ErrorDomain,
        reason: str = 'cancellation requested'
    ) -> 'ClassifiedError':
        prefix = {
            ErrorDomain.SOURCE_READ: 'SOURCE',
            ErrorDomain.REMOTE_SYNC: 'REMOTE',
            ErrorDomain.NOTIFICATION: 'NOTIFY',
            ErrorDomain.CONFIGURATION: 'CONFIG',
            ErrorDomain.LIFECYCLE: 'LIFECYCLE',
        }[domain]
        return cls(
            domain, f"{prefix}-CANCELLED", f"Operation cancelled: {reason}",
            severity=Severity.INFO, retryable=False
        )

    @classmethod
    def abandoned(cls, path: str) -> 'ClassifiedError':
        return cls(
            ErrorDomain.LIFECYCLE, 'TASK-ABANDONED',
            f"Task abandoned at shutdown deadline: {path}",
            severity=Severity.WARNING, retryable=False, details={'path': path}
        )


class FatalCycleError(Exception):
    """
    Process-level signal raised when a cycle's failure pattern is systemic.

    Carries the partial cycle summary and the classified errors that crossed
    the threshold so the lifecycle controller can publish them before it
    stops scheduling.
    """

    def __init__(self, message: str, summary: Any, errors: Optional[list] = None):
        super().__init__(message)
        self.summary = summary
        self.errors = list(errors or [])

    @property
    def code(self) -> str:
        return 'CYCLE-SYSTEMIC-FAILURE'


def classify_exception(exc: BaseException, domain: ErrorDomain) -> ClassifiedError:
    """
    Convert an arbitrary exception into a ClassifiedError.

    ClassifiedError instances pass through unchanged. Library specific
    mappings (botocore, requests) live next to the clients that raise them;
    this covers the generic cases.

    Args:
        exc: Exception to classify
        domain: Domain of the operation that raised it

    Returns:
        ClassifiedError describing the exception
    """
    if isinstance(exc, ClassifiedError):
        return exc

    reason = f"{type(exc).__name__}: {exc}"

    if domain is ErrorDomain.SOURCE_READ:
        path = str(getattr(exc, 'filename', '') or '')
        if isinstance(exc, FileNotFoundError):
            return ClassifiedError.source_not_found(path)
        if isinstance(exc, (zipfile.BadZipFile, KeyError, ValueError, TypeError)):
            return ClassifiedError.source_format(path, reason)
        if isinstance(exc, OSError):
            return ClassifiedError.source_read_failed(path, reason)
        return ClassifiedError.source_format(path, reason)

    if domain is ErrorDomain.REMOTE_SYNC:
        if isinstance(exc, (ConnectionError, TimeoutError)):
            return ClassifiedError.remote_connection('unknown', reason)
        return ClassifiedError.remote_data('unknown', reason, retryable=False)

    if domain is ErrorDomain.NOTIFICATION:
        if isinstance(exc, (ConnectionError, TimeoutError)):
            return ClassifiedError.notify_connection('unknown', reason)
        return ClassifiedError.notify_send('unknown', reason)

    return ClassifiedError(
        domain, f"{domain.name}-UNEXPECTED", reason,
        severity=Severity.ERROR, retryable=False
    )


def log_classified(
    logger: logging.Logger,
    error: ClassifiedError,
    operation: str,
    exc_info: bool = False
) -> None:
    """
    Log a classified error at the level that matches its severity.

    Args:
        logger: Logger to write to
        error: Error to log
        operation: Name of the operation that failed
        exc_info: Attach the traceback of the error being handled
    """
    logger.log(
        _LOG_LEVELS[error.severity],
        f"{operation} failed [{error.code}]: {error.message}",
        extra={
            'operation': operation,
            'error_domain': error.domain.value,
            'error_code': error.code,
            'severity': error.severity.name,
            'retryable': error.retryable
        },
        exc_info=exc_info
    )
