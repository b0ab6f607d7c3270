"""Unit tests for error classification and cancellation tokens."""
import logging
import threading
import zipfile

import pytest

from sync.cancellation import CancellationToken
from sync.errors import (
    ClassifiedError,
    ErrorDomain,
    FatalCycleError,
    Severity,
    classify_exception,
    log_classified,
)


class TestClassifiedError:
    """Test cases for ClassifiedError factories."""

    @pytest.mark.parametrize('error, code, retryable', [
        (ClassifiedError.source_not_found('a.xlsm'), 'SOURCE-NOT-FOUND', False),
        (ClassifiedError.source_locked('a.xlsm', 5.0), 'SOURCE-LOCKED', True),
        (ClassifiedError.source_read_failed('a.xlsm', 'io'), 'SOURCE-READ-FAILED', True),
        (ClassifiedError.source_format('a.xlsm', 'zip'), 'SOURCE-FORMAT', False),
        (ClassifiedError.remote_auth('query', 'denied'), 'REMOTE-AUTH', False),
        (ClassifiedError.remote_connection('query', 'reset'), 'REMOTE-CONNECTION', True),
        (ClassifiedError.notify_auth('https://x', 403), 'NOTIFY-AUTH', False),
        (ClassifiedError.notify_connection('https://x', 'reset'), 'NOTIFY-CONNECTION', True),
        (ClassifiedError.notify_send('https://x', 'boom', 500), 'NOTIFY-SEND', True),
        (ClassifiedError.config_key_not_found('TABLE_NAME'), 'CONFIG-KEY-NOT-FOUND', False),
        (ClassifiedError.config_invalid_value('X', 'bad'), 'CONFIG-INVALID-VALUE', False),
    ])
    def test_codes_and_retryability(self, error, code, retryable):
        """Test the code and retry semantics of each factory."""
        assert error.code == code
        assert error.retryable is retryable
        assert not error.is_cancellation

    def test_config_file_not_found_is_fatal(self):
        """Test that a missing configured path is critical."""
        error = ClassifiedError.config_file_not_found('SOURCE_DIR', '/share')
        assert error.severity is Severity.CRITICAL
        assert error.is_fatal

    def test_cancellation_codes(self):
        """Test that cancellation and abandonment are recognised."""
        assert ClassifiedError.cancelled(ErrorDomain.REMOTE_SYNC).code == 'REMOTE-CANCELLED'
        assert ClassifiedError.cancelled(ErrorDomain.SOURCE_READ).is_cancellation
        assert ClassifiedError.abandoned('a.xlsm').is_cancellation

    def test_to_dict(self):
        """Test the serialisable view."""
        data = ClassifiedError.source_locked('a.xlsm', 1.234).to_dict()

        assert data['domain'] == 'source-read'
        assert data['severity'] == 'WARNING'
        assert data['details'] == {'path': 'a.xlsm', 'waited_seconds': '1.23'}

    def test_fatal_cycle_error(self):
        """Test the process-level signal carries its summary."""
        error = FatalCycleError('systemic', summary='partial', errors=[1, 2])
        assert error.code == 'CYCLE-SYSTEMIC-FAILURE'
        assert error.summary == 'partial'
        assert error.errors == [1, 2]


class TestClassifyException:
    """Test cases for classify_exception."""

    def test_passthrough(self):
        error = ClassifiedError.remote_auth('query', 'denied')
        assert classify_exception(error, ErrorDomain.SOURCE_READ) is error

    @pytest.mark.parametrize('exc, code', [
        (FileNotFoundError(2, 'missing', 'a.xlsm'), 'SOURCE-NOT-FOUND'),
        (zipfile.BadZipFile('not a zip'), 'SOURCE-FORMAT'),
        (KeyError('xl/workbook.xml'), 'SOURCE-FORMAT'),
        (PermissionError('denied'), 'SOURCE-READ-FAILED'),
    ])
    def test_source_read(self, exc, code):
        assert classify_exception(exc, ErrorDomain.SOURCE_READ).code == code

    def test_remote_and_notification(self):
        assert classify_exception(
            ConnectionResetError('reset'), ErrorDomain.REMOTE_SYNC
        ).code == 'REMOTE-CONNECTION'
        assert classify_exception(
            TimeoutError('slow'), ErrorDomain.NOTIFICATION
        ).code == 'NOTIFY-CONNECTION'
        assert classify_exception(
            RuntimeError('odd'), ErrorDomain.REMOTE_SYNC
        ).retryable is False

    def test_unexpected_lifecycle_error(self):
        error = classify_exception(RuntimeError('illegal transition'), ErrorDomain.LIFECYCLE)
        assert error.code == 'LIFECYCLE-UNEXPECTED'
        assert error.retryable is False


def test_log_classified_uses_severity(caplog):
    """Test the log level and structured fields."""
    logger = logging.getLogger('test.errors')
    with caplog.at_level(logging.DEBUG, logger='test.errors'):
        log_classified(logger, ClassifiedError.source_locked('a.xlsm', 5.0), 'open a.xlsm')
        log_classified(logger, ClassifiedError.remote_auth('query', 'denied'), 'fetch')

    assert [record.levelno for record in caplog.records] == [logging.WARNING, logging.ERROR]
    assert caplog.records[0].error_code == 'SOURCE-LOCKED'
    assert caplog.records[0].retryable is True
    assert caplog.records[1].operation == 'fetch'


class TestCancellationToken:
    """Test cases for CancellationToken."""

    def test_cancel_sets_reason(self):
        token = CancellationToken()
        assert not token.cancelled

        token.cancel('shutdown')
        token.cancel('second call ignored')

        assert token.cancelled
        assert token.reason == 'shutdown'

    def test_children_follow_parent(self):
        parent = CancellationToken()
        child = parent.child()
        grandchild = child.child()

        parent.cancel('shutdown')

        assert child.cancelled and grandchild.cancelled
        assert grandchild.reason == 'shutdown'

    def test_child_cancel_does_not_reach_parent(self):
        parent = CancellationToken()
        child = parent.child()

        child.cancel('systemic failure')

        assert child.cancelled
        assert not parent.cancelled

    def test_child_of_cancelled_parent_starts_cancelled(self):
        parent = CancellationToken()
        parent.cancel('shutdown')

        assert parent.child().cancelled

    def test_wait_wakes_on_cancel(self):
        token = CancellationToken()
        threading.Timer(0.05, token.cancel).start()

        assert token.wait(5.0) is True
        assert CancellationToken().wait(0.01) is False

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled(ErrorDomain.REMOTE_SYNC)
        token.cancel('shutdown')

        with pytest.raises(ClassifiedError) as exc_info:
            token.raise_if_cancelled(ErrorDomain.REMOTE_SYNC)
        assert exc_info.value.code == 'REMOTE-CANCELLED'
