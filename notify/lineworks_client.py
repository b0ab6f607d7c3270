"""LINE WORKS bot client for cycle notifications."""
import logging
import threading
import time
from datetime import datetime
from typing import Optional

import requests

from sync.cancellation import CancellationToken
from sync.errors import ClassifiedError, ErrorDomain
from sync.models import CycleSummary
from sync.retry import call_with_retry

logger = logging.getLogger(__name__)


class LineWorksNotifier:
    """Client sending text messages through a LINE WORKS bot."""

    DEFAULT_TOKEN_URL = 'https://auth.worksmobile.com/oauth2/v2.0/token'
    DEFAULT_MESSAGE_URL = (
        'https://www.worksapis.com/v1.0/bots/{bot_id}/channels/{channel_id}/messages'
    )
    TOKEN_EXPIRY_MARGIN = 300  # seconds before expiry a token is considered stale

    def __init__(
        self,
        bot_id: str,
        channel_id: str,
        client_id: str,
        client_secret: str,
        token_url: Optional[str] = None,
        message_url: Optional[str] = None,
        timeout: float = 15.0,
        max_attempts: int = 2,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the notifier.

        Args:
            bot_id: Bot identifier
            channel_id: Channel receiving the messages
            client_id: OAuth client id
            client_secret: OAuth client secret
            token_url: OAuth token endpoint
            message_url: Message endpoint template with {bot_id} and
                {channel_id} placeholders
            timeout: HTTP request timeout in seconds
            max_attempts: Attempts per message, including the first
            session: Shared HTTP session (default: new session)
        """
        self.bot_id = bot_id
        self.channel_id = channel_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url or self.DEFAULT_TOKEN_URL
        self.message_url = (message_url or self.DEFAULT_MESSAGE_URL).format(
            bot_id=bot_id, channel_id=channel_id
        )
        self.timeout = timeout
        self.max_attempts = max(max_attempts, 1)
        self.session = session or requests.Session()
        self._token_lock = threading.Lock()
        self._access_token: Optional[str] = None
        self._token_expiry = 0.0

    def send(
        self,
        summary: CycleSummary,
        token: Optional[CancellationToken] = None
    ) -> None:
        """
        Send the aggregate summary of a cycle.

        Args:
            summary: Cycle summary to report
            token: Cancellation token observed between attempts

        Raises:
            ClassifiedError: notification error once attempts are exhausted
        """
        self.send_text(self.format_summary(summary), token=token)
        logger.info(f"Sent cycle notification for cycle {summary.cycle_id}")

    def send_text(self, text: str, token: Optional[CancellationToken] = None) -> None:
        """
        Send a plain text message with retry.

        Args:
            text: Message body
            token: Cancellation token observed between attempts

        Raises:
            ClassifiedError: notification error once attempts are exhausted
        """
        payload = {'content': {'type': 'text', 'text': text}}
        call_with_retry(
            lambda: self._post_message(payload),
            ErrorDomain.NOTIFICATION,
            retry_count=self.max_attempts - 1,
            initial_delay=1.0,
            max_delay=2.0,
            token=token,
            operation='LINE WORKS message send'
        )

    def close(self) -> None:
        self.session.close()

    @staticmethod
    def format_summary(summary: CycleSummary) -> str:
        """
        Build the notification text for a cycle.

        Args:
            summary: Cycle summary

        Returns:
            Multi-line message text
        """
        finished = summary.finished_at or datetime.now()
        if summary.fatal:
            headline = 'Reservation sync STOPPED: systemic failure'
        elif summary.failed:
            headline = 'Reservation sync completed with failures'
        else:
            headline = 'Reservation sync completed'

        lines = [
            headline,
            f"Files: {summary.succeeded} succeeded, {summary.skipped} skipped, "
            f"{summary.failed} failed",
            f"Changes: {summary.changes_applied} applied "
            f"({summary.inserts} new, {summary.updates} changed, {summary.deletes} deleted)",
            f"Finished: {finished:%Y/%m/%d %H:%M:%S}",
        ]
        failures = [outcome for outcome in summary.outcomes if outcome.error is not None]
        for outcome in failures[:5]:
            lines.append(f"- {outcome.path}: {outcome.error.code}")
        if len(failures) > 5:
            lines.append(f"- ... and {len(failures) - 5} more")
        return '\n'.join(lines)

    def _get_access_token(self) -> str:
        with self._token_lock:
            if self._access_token and time.time() < self._token_expiry:
                return self._access_token

            try:
                response = self.session.post(
                    self.token_url,
                    data={
                        'grant_type': 'client_credentials',
                        'client_id': self.client_id,
                        'client_secret': self.client_secret,
                        'scope': 'bot',
                    },
                    timeout=self.timeout
                )
            except requests.RequestException as e:
                raise ClassifiedError.notify_connection(self.token_url, str(e)) from e

            if response.status_code in (400, 401, 403):
                raise ClassifiedError.notify_auth(self.token_url, response.status_code)
            if not response.ok:
                raise ClassifiedError.notify_send(
                    self.token_url, f"token request failed: {response.reason}",
                    status_code=response.status_code
                )

            try:
                body = response.json()
                self._access_token = body['access_token']
                expires_in = int(body.get('expires_in', 3600))
            except (ValueError, KeyError) as e:
                raise ClassifiedError.notify_send(
                    self.token_url, f"malformed token response: {e}"
                ) from e

            self._token_expiry = time.time() + max(expires_in - self.TOKEN_EXPIRY_MARGIN, 0)
            logger.info('Obtained new LINE WORKS access token')
            return self._access_token

    def _invalidate_token(self) -> None:
        with self._token_lock:
            self._access_token = None
            self._token_expiry = 0.0

    def _post_message(self, payload: dict) -> None:
        access_token = self._get_access_token()
        try:
            response = self.session.post(
                self.message_url,
                json=payload,
                headers={'Authorization': f"Bearer {access_token}"},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise ClassifiedError.notify_connection(self.message_url, str(e)) from e

        if response.status_code == 401:
            # next attempt fetches a fresh token
            self._invalidate_token()
            raise ClassifiedError.notify_send(
                self.message_url, 'access token rejected', status_code=401
            )
        if response.status_code == 403:
            raise ClassifiedError.notify_auth(self.message_url, response.status_code)
        if not response.ok:
            raise ClassifiedError.notify_send(
                self.message_url, response.reason or 'request failed',
                status_code=response.status_code
            )
