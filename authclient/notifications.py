"""
User-facing error notifications.

Turns errors surfaced by the API client into at most one single-line message
for the notification surface the host provides.
"""

import logging
from enum import Enum
from typing import Callable, List, Optional

from shared.exceptions import (
    APIResponseError, AuthClientError, AuthExemptRejectedError,
    AuthExpiredRepeatError, AuthInvalidError, NetworkError
)
from shared.interfaces import INotificationSink

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong!"
NETWORK_ERROR_MESSAGE = "Network error. Please try again."


class ErrorDisplayMode(Enum):
    """How errors should be displayed to the user."""
    SILENT = "silent"
    NOTIFICATION = "notification"


class LoggingNotificationSink(INotificationSink):
    """Sink that writes notifications to a logger."""

    def __init__(self, logger_name: str = "authclient.notifications"):
        self.logger = logging.getLogger(logger_name)

    def notify(self, message: str) -> None:
        self.logger.warning(message)


class CallbackNotificationSink(INotificationSink):
    """Sink that forwards notifications to host callbacks."""

    def __init__(self, *callbacks: Callable[[str], None]):
        self._callbacks: List[Callable[[str], None]] = list(callbacks)

    def add_callback(self, callback: Callable[[str], None]) -> None:
        self._callbacks.append(callback)

    def notify(self, message: str) -> None:
        for callback in self._callbacks:
            try:
                callback(message)
            except Exception as e:
                logger.error(f"Error in notification callback: {e}")


def single_line(message: Optional[str]) -> Optional[str]:
    """First non-empty line of a message, stripped."""
    if not message:
        return None
    for line in message.splitlines():
        line = line.strip()
        if line:
            return line
    return None


class ErrorNotifier:
    """
    Decides whether and what to show for a surfaced error.

    Unauthorized outcomes on regular endpoints are not shown because they
    redirect to the unauthenticated route instead. Errors from login, register
    and refresh are not shown either; the calling form renders them.
    """

    def __init__(self, sink: Optional[INotificationSink] = None,
                 display_mode: ErrorDisplayMode = ErrorDisplayMode.NOTIFICATION):
        self.sink = sink or LoggingNotificationSink()
        self.display_mode = display_mode

    def message_for(self, error: AuthClientError) -> Optional[str]:
        """
        Message to display for an error, or None when it is suppressed.

        Args:
            error: The error surfaced to the caller

        Returns:
            Single-line message or None
        """
        if isinstance(error, (AuthExemptRejectedError, AuthExpiredRepeatError, AuthInvalidError)):
            return None

        if isinstance(error, NetworkError):
            return NETWORK_ERROR_MESSAGE

        if isinstance(error, APIResponseError):
            if error.status_code == 401:
                return None
            data = error.response_data
            upstream = data.get('message') if isinstance(data, dict) else None
            return single_line(upstream if isinstance(upstream, str) else None) or GENERIC_ERROR_MESSAGE

        return single_line(error.user_message) or GENERIC_ERROR_MESSAGE

    def notify(self, error: AuthClientError) -> bool:
        """
        Send the notification for an error, if any.

        Returns:
            True if a notification was sent
        """
        if self.display_mode is ErrorDisplayMode.SILENT:
            return False

        message = self.message_for(error)
        if message is None:
            logger.debug(f"Notification suppressed for {type(error).__name__}")
            return False

        self.sink.notify(message)
        return True
