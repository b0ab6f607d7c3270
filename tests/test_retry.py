"""Unit tests for the retry helper."""
import threading
import time
from unittest.mock import Mock, patch

import pytest

from sync.cancellation import CancellationToken
from sync.errors import ClassifiedError, ErrorDomain
from sync.retry import backoff_delays, call_with_retry


def test_backoff_delays_double_until_cap():
    """Test exponential growth bounded by max_delay."""
    assert list(backoff_delays(5, 1.0, 5.0)) == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert list(backoff_delays(0, 1.0, 5.0)) == []


@patch('sync.retry.time.sleep')
def test_retry_then_success(mock_sleep):
    """Test that retryable errors are retried until success."""
    func = Mock(side_effect=[
        ClassifiedError.remote_connection('query', 'reset'),
        ClassifiedError.remote_connection('query', 'reset'),
        'ok',
    ])
    on_retry = Mock()

    result = call_with_retry(func, ErrorDomain.REMOTE_SYNC, retry_count=3, on_retry=on_retry)

    assert result == 'ok'
    assert func.call_count == 3
    assert [call.args[0] for call in on_retry.call_args_list] == [1, 2]
    assert [call.args[0] for call in mock_sleep.call_args_list] == [1.0, 2.0]


@patch('sync.retry.time.sleep')
def test_non_retryable_raised_immediately(mock_sleep):
    """Test that non-retryable errors are not retried."""
    func = Mock(side_effect=ClassifiedError.remote_auth('query', 'denied'))

    with pytest.raises(ClassifiedError) as exc_info:
        call_with_retry(func, ErrorDomain.REMOTE_SYNC)

    assert exc_info.value.code == 'REMOTE-AUTH'
    assert func.call_count == 1
    mock_sleep.assert_not_called()


@patch('sync.retry.time.sleep')
def test_retries_exhausted(mock_sleep):
    """Test that the last error is raised after retry_count retries."""
    func = Mock(side_effect=ClassifiedError.source_locked('/share/a.xlsm', 5.0))

    with pytest.raises(ClassifiedError) as exc_info:
        call_with_retry(func, ErrorDomain.SOURCE_READ, retry_count=2)

    assert exc_info.value.code == 'SOURCE-LOCKED'
    assert func.call_count == 3


@patch('sync.retry.time.sleep')
def test_plain_exceptions_are_classified(mock_sleep):
    """Test classification of non-ClassifiedError exceptions."""
    func = Mock(side_effect=[OSError('device busy'), 'ok'])

    assert call_with_retry(func, ErrorDomain.SOURCE_READ, retry_count=1) == 'ok'

    func = Mock(side_effect=ValueError('bad cell'))
    with pytest.raises(ClassifiedError) as exc_info:
        call_with_retry(func, ErrorDomain.SOURCE_READ)
    assert exc_info.value.code == 'SOURCE-FORMAT'
    assert isinstance(exc_info.value.__cause__, ValueError)


def test_cancellation_interrupts_backoff():
    """Test that the backoff wait returns as soon as the token fires."""
    token = CancellationToken()
    func = Mock(side_effect=ClassifiedError.remote_connection('query', 'reset'))
    threading.Timer(0.1, token.cancel, args=('shutdown',)).start()

    started = time.monotonic()
    with pytest.raises(ClassifiedError) as exc_info:
        call_with_retry(
            func, ErrorDomain.REMOTE_SYNC, retry_count=3,
            initial_delay=5.0, max_delay=5.0, token=token
        )

    assert exc_info.value.code == 'REMOTE-CANCELLED'
    assert time.monotonic() - started < 2.0
    assert func.call_count == 1


def test_cancelled_token_skips_call():
    """Test that nothing runs once the token is cancelled."""
    token = CancellationToken()
    token.cancel('shutdown')
    func = Mock()

    with pytest.raises(ClassifiedError) as exc_info:
        call_with_retry(func, ErrorDomain.SOURCE_READ, token=token)

    assert exc_info.value.code == 'SOURCE-CANCELLED'
    func.assert_not_called()
