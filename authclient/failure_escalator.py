"""
Escalation to the unauthenticated state.

When credentials cannot be recovered the escalator wipes the session and tells
the host application to send the user back to its unauthenticated entry point.
"""

import logging
from typing import Callable, List, Optional

from shared.exceptions import AuthClientError, TokenStorageError
from shared.interfaces import ITokenStore
from shared.logging_config import AuditLogger

logger = logging.getLogger(__name__)

UnauthenticatedCallback = Callable[[str], None]


class FailureEscalator:
    """
    Clears session state and signals the host on unrecoverable auth failures.

    The escalator never renders user-facing messages; callers of auth-exempt
    endpoints display their own errors and everything else is redirected.
    """

    def __init__(self, token_store: ITokenStore, unauthenticated_route: str = "/"):
        self.token_store = token_store
        self.unauthenticated_route = unauthenticated_route

        self._coordinator = None
        self._callbacks: List[UnauthenticatedCallback] = []
        self._escalation_count = 0
        self._audit_logger = AuditLogger()

    @property
    def escalation_count(self) -> int:
        return self._escalation_count

    def bind_coordinator(self, coordinator) -> None:
        """Attach the refresh coordinator whose in-flight refresh gets aborted."""
        self._coordinator = coordinator

    def add_unauthenticated_callback(self, callback: UnauthenticatedCallback) -> None:
        """
        Add callback invoked when the session is dropped.

        Args:
            callback: Function called with the unauthenticated route (str)
        """
        self._callbacks.append(callback)

    def remove_unauthenticated_callback(self, callback: UnauthenticatedCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def on_unrecoverable(self, reason: Optional[AuthClientError] = None) -> None:
        """
        Drop the session and signal the host.

        Args:
            reason: The error that made recovery impossible
        """
        self._escalation_count += 1
        message = reason.message if reason is not None else "unrecoverable authentication failure"

        identity = None
        try:
            identity = self.token_store.get_current_identity()
            self.token_store.clear_tokens()
        except TokenStorageError as e:
            logger.error(f"Failed to clear token store during escalation: {e}")

        if self._coordinator is not None:
            self._coordinator.abort_refresh(reason)

        self._audit_logger.log_session_escalation(
            reason=message,
            route=self.unauthenticated_route,
            user_id=identity.id if identity else None
        )

        for callback in list(self._callbacks):
            try:
                callback(self.unauthenticated_route)
            except Exception as e:
                logger.error(f"Error in unauthenticated callback: {e}")
