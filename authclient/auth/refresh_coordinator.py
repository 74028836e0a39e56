"""
Single-flight token refresh.

The coordinator guarantees that at most one refresh call is in flight for a
client. Callers that observe an expired token while a refresh is running join
it and receive the same outcome as the call that started it.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from shared.exceptions import (
    AuthClientError, AuthInvalidError, ErrorCode, TokenStorageError, handle_exception
)
from shared.interfaces import ITokenStore
from shared.logging_config import AuditLogger
from shared.models import RefreshPhase, TokenPair

logger = logging.getLogger(__name__)

RefreshCall = Callable[[str], Awaitable[TokenPair]]


class RefreshCoordinator:
    """
    Owns the ``IDLE -> REFRESHING -> IDLE`` refresh state machine.

    One instance per client; it is bound to the event loop the client runs on.
    The phase check and the transition to ``REFRESHING`` (or the enqueue of a
    joining waiter) run without an intervening ``await``, which is what keeps a
    second refresh from starting on a cooperative scheduler.

    Every dropped session bumps a session epoch. A refresh that started under
    an older epoch never writes its tokens to the store.
    """

    def __init__(self, token_store: ITokenStore, refresh_call: RefreshCall, escalator=None):
        self.token_store = token_store
        self.escalator = escalator
        self._refresh_call = refresh_call

        self._phase = RefreshPhase.IDLE
        self._waiters: List[asyncio.Future] = []
        self._refresh_count = 0
        self._epoch = 0
        self._abort_error: Optional[AuthInvalidError] = None

        self._audit_logger = AuditLogger()

    @property
    def phase(self) -> RefreshPhase:
        return self._phase

    @property
    def is_refreshing(self) -> bool:
        return self._phase is RefreshPhase.REFRESHING

    @property
    def pending_count(self) -> int:
        """Number of callers waiting on the in-flight refresh."""
        return len(self._waiters)

    @property
    def refresh_count(self) -> int:
        """Number of refresh calls started over the coordinator's lifetime."""
        return self._refresh_count

    @property
    def epoch(self) -> int:
        """Session epoch, incremented each time the session is dropped."""
        return self._epoch

    async def ensure_fresh_token(self) -> str:
        """
        Return a freshly issued access token.

        Starts a refresh if none is running, otherwise waits for the running one.

        Returns:
            New access token

        Raises:
            AuthInvalidError: If the refresh failed, was aborted, or no refresh
                token is stored
        """
        if self._phase is RefreshPhase.REFRESHING:
            waiter = asyncio.get_running_loop().create_future()
            if self._abort_error is not None:
                waiter.set_exception(self._abort_error)
            else:
                self._waiters.append(waiter)
                logger.debug(f"Joined in-flight token refresh ({len(self._waiters)} waiting)")
            return await waiter

        self._phase = RefreshPhase.REFRESHING
        self._refresh_count += 1
        self._abort_error = None
        return await self._run_refresh(self._epoch)

    async def _run_refresh(self, epoch: int) -> str:
        logger.info("Refreshing access token")
        self._audit_logger.log_token_refresh("started")

        try:
            refresh_token = self.token_store.get_refresh_token()
            if not refresh_token:
                raise AuthInvalidError(
                    "No refresh token available",
                    error_code=ErrorCode.AUTH_NO_REFRESH_TOKEN
                )

            pair = await self._refresh_call(refresh_token)
            if self._epoch == epoch:
                if not pair.access_token:
                    raise AuthInvalidError("Refresh response did not contain an access token")
                self.token_store.store_token_pair(pair)

        except asyncio.CancelledError:
            error = self._abort_error or AuthInvalidError(
                "Token refresh was cancelled",
                error_code=ErrorCode.AUTH_REFRESH_CANCELLED
            )
            waiters = self._finish()
            logger.warning(f"Token refresh cancelled, rejecting {len(waiters)} waiting request(s)")
            self._settle(waiters, error=error)
            raise

        except Exception as e:
            if self._epoch != epoch:
                raise self._discard() from e

            error = self._as_refresh_error(e)
            waiters = self._finish()
            self._fail(waiters, error)
            if error is e:
                raise
            raise error from e

        if self._epoch != epoch:
            raise self._discard()

        waiters = self._finish()
        self._audit_logger.log_token_refresh("succeeded", waiters=len(waiters))
        self._settle(waiters, token=pair.access_token)
        return pair.access_token

    def _finish(self) -> List[asyncio.Future]:
        """Take the waiters and return to IDLE in one step."""
        waiters, self._waiters = self._waiters, []
        self._phase = RefreshPhase.IDLE
        return waiters

    def _fail(self, waiters: List[asyncio.Future], error: AuthInvalidError) -> None:
        logger.error(f"Token refresh failed: {error.message}")
        self._audit_logger.log_token_refresh("failed", waiters=len(waiters), failure_reason=error.message)

        try:
            self.token_store.clear_tokens()
        except TokenStorageError as e:
            logger.error(f"Could not clear token store after failed refresh: {e}")
        self._settle(waiters, error=error)

        if self.escalator is not None:
            self.escalator.on_unrecoverable(error)

    def _discard(self) -> AuthInvalidError:
        """Finish a refresh whose session was dropped while it ran."""
        error = self._abort_error
        waiters = self._finish()
        self._abort_error = None
        logger.warning("Session dropped during token refresh, discarding its result")
        self._audit_logger.log_token_refresh("discarded", waiters=len(waiters), failure_reason=error.message)
        self._settle(waiters, error=error)
        return error

    @staticmethod
    def _settle(
        waiters: List[asyncio.Future],
        token: Optional[str] = None,
        error: Optional[AuthClientError] = None
    ) -> None:
        """Resolve or reject each waiter, in the order they joined."""
        for waiter in waiters:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(token)

    @staticmethod
    def _as_refresh_error(exc: Exception) -> AuthInvalidError:
        if isinstance(exc, AuthInvalidError):
            return exc

        structured = handle_exception(exc)
        return AuthInvalidError(
            f"Token refresh failed: {structured.message}",
            status_code=getattr(structured, 'status_code', None),
            cause=exc
        )

    def abort_refresh(self, reason: Optional[AuthClientError] = None) -> int:
        """
        Start a new session epoch, aborting the in-flight refresh if any.

        An aborted refresh keeps running until its call returns, but its tokens
        are never stored. The waiters queued on it, and any that join later,
        are all rejected with one AuthInvalidError.

        Args:
            reason: Why the session was dropped

        Returns:
            Number of waiters rejected
        """
        self._epoch += 1
        if self._phase is not RefreshPhase.REFRESHING:
            return 0

        if self._abort_error is None:
            message = reason.message if reason is not None else "session dropped"
            self._abort_error = AuthInvalidError(
                f"Token refresh aborted: {message}",
                error_code=ErrorCode.AUTH_REFRESH_ABORTED,
                cause=reason
            )
        waiters, self._waiters = self._waiters, []
        self._settle(waiters, error=self._abort_error)
        logger.warning(f"Aborted in-flight token refresh, rejected {len(waiters)} waiting request(s)")
        return len(waiters)
