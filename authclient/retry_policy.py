"""
Response classification and the refresh-and-retry cycle.

An expired access token is the only failure this layer recovers from, and it
does so at most once per request. Everything else is turned into the matching
structured error and handed back to the caller.
"""

import logging
from enum import Enum
from typing import Awaitable, Callable

from shared.exceptions import (
    APIResponseError, AuthExemptRejectedError, AuthExpiredRepeatError,
    ServerError, ValidationError
)
from shared.interfaces import ITokenStore
from shared.models import ApiResponse, RequestDescriptor, SessionContext

from authclient.request_dispatcher import RequestDispatcher

logger = logging.getLogger(__name__)

# Upstream error message for an expired token, treated the same as a 401.
# Matched verbatim until the API exposes a structured error code.
EXPIRY_MARKER = "jwt expired"

SendCall = Callable[[RequestDescriptor], Awaitable[ApiResponse]]


class ResponseKind(Enum):
    """Classification of a received response."""
    SUCCESS = "success"
    AUTH_EXPIRED = "auth_expired"
    AUTH_EXPIRED_REPEAT = "auth_expired_repeat"
    AUTH_EXEMPT_REJECTED = "auth_exempt_rejected"
    SERVER_ERROR = "server_error"
    VALIDATION_ERROR = "validation_error"


def is_expiry_signal(response: ApiResponse) -> bool:
    """Unauthorized status, or the upstream expiry marker in the body."""
    return response.status == 401 or response.message == EXPIRY_MARKER


class RetryPolicy:
    """
    Routes expired-token responses through the refresh coordinator.

    Args:
        dispatcher: Request dispatcher used to re-prepare resubmitted requests
        coordinator: Refresh coordinator shared by the whole client
        token_store: Token store the identity is read from on resubmit
        send: Coroutine performing one HTTP round-trip
        escalator: Failure escalator, invoked on repeated expiry
    """

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        coordinator,
        token_store: ITokenStore,
        send: SendCall,
        escalator=None
    ):
        self.dispatcher = dispatcher
        self.coordinator = coordinator
        self.token_store = token_store
        self.escalator = escalator
        self._send = send

    def classify(self, request: RequestDescriptor, response: ApiResponse) -> ResponseKind:
        if response.ok:
            return ResponseKind.SUCCESS
        if self.dispatcher.is_auth_exempt(request.path):
            return ResponseKind.AUTH_EXEMPT_REJECTED
        if is_expiry_signal(response):
            return ResponseKind.AUTH_EXPIRED_REPEAT if request.retried else ResponseKind.AUTH_EXPIRED
        if response.status >= 500:
            return ResponseKind.SERVER_ERROR
        return ResponseKind.VALIDATION_ERROR

    async def handle_response(self, request: RequestDescriptor, response: ApiResponse) -> ApiResponse:
        """
        Pass a response through, or recover from an expired token once.

        Args:
            request: The request that produced the response
            response: The received response

        Returns:
            The successful response (original or from the resubmitted request)

        Raises:
            AuthInvalidError: If the token refresh failed
            APIResponseError: For every other unsuccessful response
        """
        kind = self.classify(request, response)

        if kind is ResponseKind.SUCCESS:
            return response

        if kind is ResponseKind.AUTH_EXPIRED:
            return await self._refresh_and_resubmit(request)

        error = self.error_for(request, response, kind)

        if kind is ResponseKind.AUTH_EXPIRED_REPEAT:
            logger.warning(f"{request.method} {request.path} still unauthorized after token refresh")
            if self.escalator is not None:
                self.escalator.on_unrecoverable(error)

        raise error

    async def _refresh_and_resubmit(self, request: RequestDescriptor) -> ApiResponse:
        request.mark_retried()
        logger.info(f"Access token expired on {request.method} {request.path}")

        access_token = self._newer_token(request)
        if access_token is not None:
            logger.info(f"Token was refreshed while {request.method} {request.path} was in flight, resubmitting")
        else:
            access_token = await self.coordinator.ensure_fresh_token()

        request.remove_header('Authorization')
        self.dispatcher.prepare(
            request,
            SessionContext(access_token=access_token, identity=self.token_store.get_current_identity())
        )

        response = await self._send(request)
        return await self.handle_response(request, response)

    def _newer_token(self, request: RequestDescriptor):
        """Return the stored token if it replaced the one the request was sent with."""
        if self.coordinator.is_refreshing:
            return None

        sent = request.get_header('Authorization')
        if not sent or not sent.startswith('Bearer '):
            return None

        current = self.token_store.get_access_token()
        if current and current != sent[len('Bearer '):]:
            return current
        return None

    @staticmethod
    def error_for(request: RequestDescriptor, response: ApiResponse, kind: ResponseKind) -> APIResponseError:
        """Build the structured error for an unsuccessful response."""
        kwargs = dict(
            status_code=response.status,
            response_data=response.data,
            path=request.path,
            user_message=response.message
        )

        if kind is ResponseKind.AUTH_EXEMPT_REJECTED:
            return AuthExemptRejectedError(
                response.message or f"Authentication request failed ({response.status})", **kwargs
            )
        if kind in (ResponseKind.AUTH_EXPIRED, ResponseKind.AUTH_EXPIRED_REPEAT):
            return AuthExpiredRepeatError(
                response.message or f"Unauthorized ({response.status})", **kwargs
            )
        if kind is ResponseKind.SERVER_ERROR:
            return ServerError(
                response.message or f"Server error ({response.status})", **kwargs
            )
        return ValidationError(
            response.message or f"Request failed ({response.status})", **kwargs
        )
