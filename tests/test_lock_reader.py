"""Unit tests for LockAwareReader."""
import hashlib
import threading
import time
from unittest.mock import patch

import pytest

from sync.cancellation import CancellationToken
from sync.errors import ClassifiedError
from workbook.lock_reader import LockAwareReader, WorkbookHandle


@pytest.fixture
def workbook_file(tmp_path):
    """Create a source file with known contents."""
    path = tmp_path / 'ふじみの予約.xlsm'
    path.write_bytes(b'workbook-bytes' * 100)
    return path


@pytest.fixture
def reader():
    """Create a reader with short waits."""
    return LockAwareReader(max_wait=0.3, poll_interval=0.05)


def owner_file(path):
    return path.parent / f"~${path.name}"


def test_open_unlocked_file(reader, workbook_file):
    """Test that an unlocked file opens immediately."""
    with reader.open(str(workbook_file)) as handle:
        assert isinstance(handle, WorkbookHandle)
        assert handle.name == 'ふじみの予約.xlsm'
        assert handle.stream.read(14) == b'workbook-bytes'
        assert not handle.closed

    assert handle.closed


def test_handle_released_on_exception(reader, workbook_file):
    """Test that the file object is closed when the block raises."""
    with pytest.raises(RuntimeError):
        with reader.open(str(workbook_file)) as handle:
            raise RuntimeError('extraction failed')

    assert handle.closed
    with pytest.raises(ValueError):
        handle.stream


def test_digest(reader, workbook_file):
    """Test that the digest is the sha256 of the contents."""
    expected = hashlib.sha256(workbook_file.read_bytes()).hexdigest()

    with reader.open(str(workbook_file)) as handle:
        assert handle.digest() == expected
        # digest leaves the stream readable from the start
        assert handle.stream.read(8) == b'workbook'


def test_missing_file(reader, tmp_path):
    """Test that a missing file is a non-retryable error."""
    with pytest.raises(ClassifiedError) as exc_info:
        reader.open(str(tmp_path / 'missing.xlsm'))

    assert exc_info.value.code == 'SOURCE-NOT-FOUND'
    assert exc_info.value.retryable is False


def test_office_owner_file_rejected(reader, workbook_file):
    """Test that Office temp files are never opened."""
    temp = owner_file(workbook_file)
    temp.write_bytes(b'owner')

    with pytest.raises(ClassifiedError) as exc_info:
        reader.open(str(temp))

    assert exc_info.value.code == 'SOURCE-NOT-FOUND'


def test_locked_file_times_out(reader, workbook_file):
    """Test that a lock held past max_wait raises SOURCE-LOCKED."""
    owner_file(workbook_file).write_bytes(b'owner')

    started = time.monotonic()
    with pytest.raises(ClassifiedError) as exc_info:
        reader.open(str(workbook_file))
    elapsed = time.monotonic() - started

    assert exc_info.value.code == 'SOURCE-LOCKED'
    assert exc_info.value.retryable is True
    assert 0.25 <= elapsed < 1.0
    assert reader.is_locked(str(workbook_file)) is True


def test_lock_released_during_wait(reader, workbook_file):
    """Test that the file opens once the owner file disappears."""
    lock = owner_file(workbook_file)
    lock.write_bytes(b'owner')
    threading.Timer(0.1, lock.unlink).start()

    with reader.open(str(workbook_file), max_wait=2.0) as handle:
        assert handle.stream.read(8) == b'workbook'


def test_permission_error_treated_as_locked(reader, workbook_file):
    """Test that a sharing violation on open counts as a lock."""
    with patch('workbook.lock_reader.open', side_effect=PermissionError('in use'), create=True):
        with pytest.raises(ClassifiedError) as exc_info:
            reader.open(str(workbook_file), max_wait=0.1, poll_interval=0.02)

    assert exc_info.value.code == 'SOURCE-LOCKED'


def test_cancellation_interrupts_lock_wait(reader, workbook_file):
    """Test that the wait observes the token within one poll interval."""
    owner_file(workbook_file).write_bytes(b'owner')
    token = CancellationToken()
    threading.Timer(0.1, token.cancel, args=('shutdown',)).start()

    started = time.monotonic()
    with pytest.raises(ClassifiedError) as exc_info:
        reader.open(str(workbook_file), max_wait=5.0, poll_interval=1.0, token=token)

    assert exc_info.value.code == 'SOURCE-CANCELLED'
    assert time.monotonic() - started < 1.0


def test_cancelled_token_never_opens(reader, workbook_file):
    """Test that an already cancelled token short-circuits."""
    token = CancellationToken()
    token.cancel('shutdown')

    with pytest.raises(ClassifiedError) as exc_info:
        reader.open(str(workbook_file), token=token)

    assert exc_info.value.is_cancellation
