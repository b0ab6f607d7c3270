"""Lock-aware opening of source workbooks."""
import hashlib
import logging
import os
import time
from typing import BinaryIO, Optional

from sync.cancellation import CancellationToken
from sync.errors import ClassifiedError, ErrorDomain
from workbook.discovery import OFFICE_OWNER_PREFIX

logger = logging.getLogger(__name__)


class WorkbookHandle:
    """
    Open, read-only handle on a source workbook.

    The handle owns the underlying file object; leaving the with-block (or
    calling close()) releases it whatever the exit path.
    """

    def __init__(self, path: str, stream: BinaryIO):
        self.path = path
        self.name = os.path.basename(path)
        self._stream = stream
        self._digest: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self._stream.closed

    @property
    def stream(self) -> BinaryIO:
        if self._stream.closed:
            raise ValueError(f"handle already released: {self.path}")
        self._stream.seek(0)
        return self._stream

    def digest(self) -> str:
        """Return the SHA256 of the file contents."""
        if self._digest is None:
            hash_obj = hashlib.sha256()
            stream = self.stream
            for chunk in iter(lambda: stream.read(81920), b''):
                hash_obj.update(chunk)
            self._digest = hash_obj.hexdigest()
        return self._digest

    def close(self) -> None:
        if not self._stream.closed:
            self._stream.close()
            logger.debug(f"Released handle: {self.path}")

    def __enter__(self) -> 'WorkbookHandle':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class LockAwareReader:
    """Open source files only once no other process holds them."""

    def __init__(self, max_wait: float = 5.0, poll_interval: float = 0.5):
        """
        Initialize the reader.

        Args:
            max_wait: Default seconds to wait for a lock to clear
            poll_interval: Default seconds between lock checks
        """
        self.max_wait = max_wait
        self.poll_interval = poll_interval

    def open(
        self,
        path: str,
        max_wait: Optional[float] = None,
        poll_interval: Optional[float] = None,
        token: Optional[CancellationToken] = None
    ) -> WorkbookHandle:
        """
        Open path once it is unlocked, polling with backoff.

        The poll interval doubles after each locked check, capped at half of
        max_wait. The wait observes the cancellation token.

        Args:
            path: File to open
            max_wait: Seconds to wait before giving up
            poll_interval: Initial seconds between lock checks
            token: Cancellation token

        Returns:
            WorkbookHandle to use as a context manager

        Raises:
            ClassifiedError: SOURCE-NOT-FOUND if the file is missing or an
                Office owner file, SOURCE-LOCKED (retryable) on timeout,
                SOURCE-CANCELLED if the token fires while waiting
        """
        max_wait = self.max_wait if max_wait is None else max_wait
        interval = self.poll_interval if poll_interval is None else poll_interval
        max_interval = max(interval, max_wait / 2)
        token = token or CancellationToken()

        if os.path.basename(path).startswith(OFFICE_OWNER_PREFIX):
            raise ClassifiedError.source_not_found(path)

        started = time.monotonic()
        attempt = 0

        while True:
            attempt += 1
            token.raise_if_cancelled(ErrorDomain.SOURCE_READ)

            if not os.path.exists(path):
                raise ClassifiedError.source_not_found(path)

            stream = self._try_open(path)
            if stream is not None:
                logger.debug(f"Opened {path} after {attempt} lock check(s)")
                return WorkbookHandle(path, stream)

            waited = time.monotonic() - started
            remaining = max_wait - waited
            if remaining <= 0:
                logger.warning(f"Lock wait timed out after {waited:.2f}s: {path}")
                raise ClassifiedError.source_locked(path, waited)

            delay = min(interval, remaining)
            logger.debug(
                f"File locked (check {attempt}), waiting {delay:.2f}s: {path}"
            )
            if token.wait(delay):
                raise ClassifiedError.cancelled(
                    ErrorDomain.SOURCE_READ, token.reason or 'cancelled during lock wait'
                )
            interval = min(interval * 2, max_interval)

    def is_locked(self, path: str) -> bool:
        """Check whether another process currently holds path."""
        stream = self._try_open(path)
        if stream is None:
            return True
        stream.close()
        return False

    def _try_open(self, path: str) -> Optional[BinaryIO]:
        if os.path.exists(self._owner_file(path)):
            return None

        try:
            return open(path, 'rb')
        except (PermissionError, BlockingIOError) as e:
            logger.debug(f"Open refused while locked: {path}: {e}")
            return None

    @staticmethod
    def _owner_file(path: str) -> str:
        directory, name = os.path.split(path)
        return os.path.join(directory, f"{OFFICE_OWNER_PREFIX}{name}")
