"""Cooperative cancellation signal shared by the scheduler and file tasks."""
import threading
import weakref
from typing import Optional

from sync.errors import ClassifiedError, ErrorDomain


class CancellationToken:
    """
    Thread-safe cancellation signal.

    Every blocking wait in the pipeline goes through wait() so that a
    cancel() wakes it immediately. Child tokens are cancelled together with
    their parent but can also be cancelled on their own, which lets one
    cycle abort its tasks without touching the service-wide token.
    """

    def __init__(self, parent: Optional['CancellationToken'] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children = weakref.WeakSet()
        self._reason: Optional[str] = None
        if parent is not None:
            parent._adopt(self)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = 'cancellation requested') -> None:
        """
        Signal cancellation to this token and all of its children.

        Args:
            reason: Human readable cause, carried into cancellation errors
        """
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            children = list(self._children)

        for child in children:
            child.cancel(reason)

    def child(self) -> 'CancellationToken':
        """Create a token that is cancelled whenever this one is."""
        return CancellationToken(parent=self)

    def wait(self, timeout: Optional[float]) -> bool:
        """
        Block for up to timeout seconds or until cancelled.

        Args:
            timeout: Seconds to wait, None waits until cancelled

        Returns:
            True if the token was cancelled, False if the timeout elapsed
        """
        return self._event.wait(timeout)

    def raise_if_cancelled(self, domain: ErrorDomain) -> None:
        """
        Raise a cancellation error for domain if the token is cancelled.

        Raises:
            ClassifiedError: with a *-CANCELLED code
        """
        if self._event.is_set():
            raise ClassifiedError.cancelled(domain, self._reason or 'cancelled')

    def _adopt(self, child: 'CancellationToken') -> None:
        with self._lock:
            already_cancelled = self._event.is_set()
            if not already_cancelled:
                self._children.add(child)
        if already_cancelled:
            child.cancel(self._reason or 'cancellation requested')
