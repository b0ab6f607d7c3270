"""Service configuration read from environment variables."""
import json
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from openpyxl.utils import column_index_from_string

from sync.errors import ClassifiedError
from workbook.partitions import DEFAULT_PARTITIONS

MAX_SHUTDOWN_DEADLINE = 30.0
TRUE_VALUES = ('1', 'true', 'yes', 'on')
FALSE_VALUES = ('0', 'false', 'no', 'off')


@dataclass
class Settings:
    """Validated service settings."""
    source_dir: str
    table_name: str
    file_patterns: List[str] = field(default_factory=lambda: ['*.xlsm', '*.xlsx'])
    sheet_name: Optional[str] = '予約'
    date_column: str = 'A'
    count_column: str = 'CH'
    facility_column: Optional[str] = None
    partition_map: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PARTITIONS))
    target_year: Optional[int] = None
    tenant_id: int = 1
    aws_region: str = 'ap-northeast-1'
    dynamodb_endpoint_url: Optional[str] = None
    max_concurrency: int = 4
    retry_count: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 5.0
    failure_threshold: int = 3
    lock_max_wait: float = 5.0
    lock_poll_interval: float = 0.5
    polling_interval: float = 300.0
    shutdown_deadline: float = 20.0
    remote_timeout: float = 20.0
    notification_timeout: float = 15.0
    lineworks_bot_id: Optional[str] = None
    lineworks_channel_id: Optional[str] = None
    lineworks_client_id: Optional[str] = None
    lineworks_client_secret: Optional[str] = None
    lineworks_token_url: Optional[str] = None
    lineworks_message_url: Optional[str] = None
    audit_dir: str = './proofs'
    audit_retention_days: int = 180
    skip_unchanged: bool = True
    log_level: str = 'INFO'
    log_file: Optional[str] = None
    run_once: bool = False

    @property
    def notification_enabled(self) -> bool:
        return bool(self.lineworks_bot_id)


def _optional(environ: Mapping[str, str], key: str) -> Optional[str]:
    value = environ.get(key, '').strip()
    return value or None


def _required(environ: Mapping[str, str], key: str) -> str:
    value = _optional(environ, key)
    if value is None:
        raise ClassifiedError.config_key_not_found(key)
    return value


def _int(environ: Mapping[str, str], key: str, default: int, minimum: int = 0) -> int:
    raw = _optional(environ, key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ClassifiedError.config_invalid_value(key, f"not an integer: {raw!r}") from None
    if value < minimum:
        raise ClassifiedError.config_invalid_value(key, f"must be >= {minimum}, got {value}")
    return value


def _float(environ: Mapping[str, str], key: str, default: float, minimum: float = 0.0) -> float:
    raw = _optional(environ, key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ClassifiedError.config_invalid_value(key, f"not a number: {raw!r}") from None
    if value < minimum:
        raise ClassifiedError.config_invalid_value(key, f"must be >= {minimum}, got {value}")
    return value


def _bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _optional(environ, key)
    if raw is None:
        return default
    if raw.lower() in TRUE_VALUES:
        return True
    if raw.lower() in FALSE_VALUES:
        return False
    raise ClassifiedError.config_invalid_value(key, f"not a boolean: {raw!r}")


def _column(environ: Mapping[str, str], key: str, default: Optional[str]) -> Optional[str]:
    raw = _optional(environ, key) or default
    if raw is None:
        return None
    letters = raw.upper()
    try:
        column_index_from_string(letters)
    except ValueError:
        raise ClassifiedError.config_invalid_value(key, f"not a column letter: {raw!r}") from None
    return letters


def _partition_map(environ: Mapping[str, str]) -> Dict[str, int]:
    raw = _optional(environ, 'PARTITION_MAP')
    if raw is None:
        return dict(DEFAULT_PARTITIONS)
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ClassifiedError.config_invalid_value('PARTITION_MAP', f"invalid JSON: {e}") from e
    if not isinstance(parsed, dict) or not parsed:
        raise ClassifiedError.config_invalid_value(
            'PARTITION_MAP', 'expected a non-empty JSON object of name -> key'
        )

    mapping = {}
    for name, key in parsed.items():
        if isinstance(key, bool) or not isinstance(key, int) or key < 1:
            raise ClassifiedError.config_invalid_value(
                'PARTITION_MAP', f"key for {name!r} must be an integer >= 1"
            )
        mapping[str(name)] = key
    return mapping


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        environ: Variable mapping (default: os.environ)

    Returns:
        Validated Settings

    Raises:
        ClassifiedError: configuration error for missing or invalid values;
            CONFIG-FILE-NOT-FOUND (critical) if SOURCE_DIR does not exist
    """
    environ = os.environ if environ is None else environ

    source_dir = _required(environ, 'SOURCE_DIR')
    if not os.path.isdir(source_dir):
        raise ClassifiedError.config_file_not_found('SOURCE_DIR', source_dir)

    patterns = [
        pattern.strip()
        for pattern in environ.get('FILE_PATTERNS', '*.xlsm,*.xlsx').split(',')
        if pattern.strip()
    ]
    if not patterns:
        raise ClassifiedError.config_invalid_value('FILE_PATTERNS', 'no patterns given')

    shutdown_deadline = _float(environ, 'SHUTDOWN_DEADLINE_SECONDS', 20.0)
    if not 0 < shutdown_deadline < MAX_SHUTDOWN_DEADLINE:
        raise ClassifiedError.config_invalid_value(
            'SHUTDOWN_DEADLINE_SECONDS',
            f"must be between 0 and {MAX_SHUTDOWN_DEADLINE:.0f} seconds, got {shutdown_deadline}"
        )

    retry_initial_delay = _float(environ, 'RETRY_INITIAL_DELAY', 1.0)
    retry_max_delay = _float(environ, 'RETRY_MAX_DELAY', 5.0)
    if retry_max_delay < retry_initial_delay:
        raise ClassifiedError.config_invalid_value(
            'RETRY_MAX_DELAY', 'must not be smaller than RETRY_INITIAL_DELAY'
        )

    target_year = _optional(environ, 'TARGET_YEAR')

    settings = Settings(
        source_dir=source_dir,
        table_name=_required(environ, 'TABLE_NAME'),
        file_patterns=patterns,
        sheet_name=_optional(environ, 'SHEET_NAME') or '予約',
        date_column=_column(environ, 'DATE_COLUMN', 'A'),
        count_column=_column(environ, 'COUNT_COLUMN', 'CH'),
        facility_column=_column(environ, 'FACILITY_COLUMN', None),
        partition_map=_partition_map(environ),
        target_year=_int(environ, 'TARGET_YEAR', 0, minimum=1) if target_year else None,
        tenant_id=_int(environ, 'TENANT_ID', 1, minimum=1),
        aws_region=_optional(environ, 'AWS_REGION') or 'ap-northeast-1',
        dynamodb_endpoint_url=_optional(environ, 'DYNAMODB_ENDPOINT_URL'),
        max_concurrency=_int(environ, 'MAX_CONCURRENCY', 4, minimum=1),
        retry_count=_int(environ, 'RETRY_COUNT', 3),
        retry_initial_delay=retry_initial_delay,
        retry_max_delay=retry_max_delay,
        failure_threshold=_int(environ, 'FAILURE_THRESHOLD', 3),
        lock_max_wait=_float(environ, 'LOCK_MAX_WAIT', 5.0),
        lock_poll_interval=_float(environ, 'LOCK_POLL_INTERVAL', 0.5, minimum=0.01),
        polling_interval=_float(environ, 'POLLING_INTERVAL_SECONDS', 300.0, minimum=1.0),
        shutdown_deadline=shutdown_deadline,
        remote_timeout=_float(environ, 'REMOTE_TIMEOUT_SECONDS', 20.0, minimum=1.0),
        notification_timeout=_float(environ, 'NOTIFICATION_TIMEOUT_SECONDS', 15.0, minimum=1.0),
        lineworks_bot_id=_optional(environ, 'LINEWORKS_BOT_ID'),
        lineworks_channel_id=_optional(environ, 'LINEWORKS_CHANNEL_ID'),
        lineworks_client_id=_optional(environ, 'LINEWORKS_CLIENT_ID'),
        lineworks_client_secret=_optional(environ, 'LINEWORKS_CLIENT_SECRET'),
        lineworks_token_url=_optional(environ, 'LINEWORKS_TOKEN_URL'),
        lineworks_message_url=_optional(environ, 'LINEWORKS_MESSAGE_URL'),
        audit_dir=_optional(environ, 'AUDIT_DIR') or './proofs',
        audit_retention_days=_int(environ, 'AUDIT_RETENTION_DAYS', 180, minimum=1),
        skip_unchanged=_bool(environ, 'SKIP_UNCHANGED', True),
        log_level=(_optional(environ, 'LOG_LEVEL') or 'INFO').upper(),
        log_file=_optional(environ, 'LOG_FILE'),
        run_once=_bool(environ, 'RUN_ONCE', False)
    )

    if settings.notification_enabled:
        for key in ('LINEWORKS_CHANNEL_ID', 'LINEWORKS_CLIENT_ID', 'LINEWORKS_CLIENT_SECRET'):
            _required(environ, key)

    return settings
