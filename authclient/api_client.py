"""
HTTP API Client with transparent access-token refresh.

This module provides the client applications use to call the remote API. It
attaches credentials to outgoing requests, refreshes an expired access token
once per expiry event even under concurrent traffic, replays the affected
requests, and drops the session when recovery is impossible.
"""

import asyncio
import json
import logging
from typing import Optional, Dict, Any, Iterable

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from shared.exceptions import AuthClientError, AuthInvalidError, handle_exception
from shared.interfaces import INotificationSink, ITokenStore
from shared.logging_config import AuditLogger, log_structured_error
from shared.models import ApiResponse, RequestDescriptor, SessionContext, TokenPair

from authclient.auth.refresh_coordinator import RefreshCoordinator
from authclient.auth.token_storage import MemoryTokenStorage, create_token_storage
from authclient.failure_escalator import FailureEscalator, UnauthenticatedCallback
from authclient.notifications import ErrorDisplayMode, ErrorNotifier
from authclient.request_dispatcher import AUTH_EXEMPT_PATTERNS, DEFAULT_IDENTITY_FIELD, RequestDispatcher
from authclient.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:5000/v1"
# Generation backends are slow; requests get minutes, not seconds.
DEFAULT_TIMEOUT = 120.0
REFRESH_PATH = "/auth/refresh"


def unwrap_envelope(data: Any) -> Any:
    """
    Return the payload of a ``{"success", "message", "data"}`` envelope.

    Bodies that are not enveloped are returned as-is.
    """
    if isinstance(data, dict) and isinstance(data.get('data'), dict):
        return data['data']
    return data


class AuthenticatedAPIClient:
    """
    HTTP client for the remote API.

    Owns the aiohttp session and one instance each of the request dispatcher,
    refresh coordinator, retry policy and failure escalator, all sharing the
    same token store.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        token_store: Optional[ITokenStore] = None,
        timeout: float = DEFAULT_TIMEOUT,
        notification_sink: Optional[INotificationSink] = None,
        show_notifications: bool = True,
        identity_field: str = DEFAULT_IDENTITY_FIELD,
        exempt_patterns: Iterable[str] = AUTH_EXEMPT_PATTERNS,
        unauthenticated_route: str = "/"
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self.token_store = token_store if token_store is not None else MemoryTokenStorage()

        self.dispatcher = RequestDispatcher(exempt_patterns=exempt_patterns, identity_field=identity_field)
        self.escalator = FailureEscalator(self.token_store, unauthenticated_route=unauthenticated_route)
        self.coordinator = RefreshCoordinator(
            self.token_store,
            refresh_call=self._request_token_refresh,
            escalator=self.escalator
        )
        self.escalator.bind_coordinator(self.coordinator)
        self.retry_policy = RetryPolicy(
            dispatcher=self.dispatcher,
            coordinator=self.coordinator,
            token_store=self.token_store,
            send=self._send,
            escalator=self.escalator
        )
        self.notifier = ErrorNotifier(
            notification_sink,
            display_mode=ErrorDisplayMode.NOTIFICATION if show_notifications else ErrorDisplayMode.SILENT
        )

        self._session: Optional[ClientSession] = None
        self._audit_logger = AuditLogger()

        logger.info(f"API client initialized for server: {self.base_url}")

    @classmethod
    def from_config(
        cls,
        config,
        token_store: Optional[ITokenStore] = None,
        notification_sink: Optional[INotificationSink] = None
    ) -> 'AuthenticatedAPIClient':
        """
        Build a client from a ClientConfiguration.

        Args:
            config: Client configuration
            token_store: Token store to use instead of the configured backend
            notification_sink: Notification surface for user-facing errors
        """
        if token_store is None:
            token_store = create_token_storage(
                config.get_token_storage_backend(),
                service_name=config.get_service_name()
            )

        return cls(
            base_url=config.get_base_url(),
            token_store=token_store,
            timeout=config.get_server_timeout(),
            notification_sink=notification_sink,
            show_notifications=config.should_show_notifications(),
            identity_field=config.get_identity_field(),
            unauthenticated_route=config.get_unauthenticated_route()
        )

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={
                    'User-Agent': 'AuthClient/1.0',
                    'Accept': 'application/json'
                }
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def add_unauthenticated_callback(self, callback: UnauthenticatedCallback) -> None:
        """Register a host callback for when the session is dropped."""
        self.escalator.add_unauthenticated_callback(callback)

    def _build_url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _send(self, request: RequestDescriptor) -> ApiResponse:
        """
        Perform one HTTP round-trip.

        Args:
            request: Prepared request

        Returns:
            The response, whatever its status

        Raises:
            NetworkError: If no response was received
        """
        await self._ensure_session()
        url = self._build_url(request.path)

        logger.debug(f"Making {request.method} request to {url}")

        try:
            async with self._session.request(
                method=request.method,
                url=url,
                json=request.json,
                params=request.params,
                headers=request.headers
            ) as response:
                data = await self._read_body(response)
                return ApiResponse(status=response.status, data=data, headers=dict(response.headers))

        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            error = handle_exception(e, context={'method': request.method, 'path': request.path})
            logger.warning(f"Network error on {request.method} {request.path}: {error.message}")
            raise error from e

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse) -> Any:
        """Decode a response body as JSON, falling back to text."""
        raw = await response.read()
        if not raw:
            return None

        text = raw.decode(response.charset or 'utf-8', errors='replace')
        try:
            return json.loads(text)
        except ValueError:
            return text

    async def _request_token_refresh(self, refresh_token: str) -> TokenPair:
        """
        Exchange a refresh token for a new token pair.

        Called by the refresh coordinator only; it never goes through the
        retry policy.
        """
        request = RequestDescriptor(method="POST", path=REFRESH_PATH, json={'refreshToken': refresh_token})
        self.dispatcher.prepare(request, SessionContext())

        response = await self._send(request)
        if not response.ok:
            raise AuthInvalidError(
                response.message or f"Token refresh rejected ({response.status})",
                status_code=response.status
            )

        payload = unwrap_envelope(response.data)
        if not isinstance(payload, dict) or not payload.get('accessToken'):
            raise AuthInvalidError("Refresh response did not contain an access token", status_code=response.status)

        return TokenPair(access_token=payload['accessToken'], refresh_token=payload.get('refreshToken'))

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> ApiResponse:
        """
        Make an authenticated request.

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE)
            path: API path relative to the base URL
            json: Request body
            params: Query parameters
            headers: Extra headers; an explicit Authorization header is kept

        Returns:
            The successful response

        Raises:
            AuthClientError: On request failure
        """
        descriptor = RequestDescriptor(
            method=method,
            path=path,
            json=json,
            params=params,
            headers=dict(headers or {})
        )

        context = None
        try:
            context = SessionContext.from_store(self.token_store)
            self.dispatcher.prepare(descriptor, context)
            response = await self._send(descriptor)
            return await self.retry_policy.handle_response(descriptor, response)

        except AuthClientError as e:
            log_structured_error(logger, e, logging.WARNING)
            identity = context.identity if context is not None else None
            self._audit_logger.log_error(e, user_id=identity.id if identity else None)

            if not self.dispatcher.is_auth_exempt(descriptor.path):
                self.notifier.notify(e)
            raise

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> ApiResponse:
        return await self.request('GET', path, params=params, **kwargs)

    async def post(self, path: str, json: Any = None, **kwargs) -> ApiResponse:
        return await self.request('POST', path, json=json, **kwargs)

    async def put(self, path: str, json: Any = None, **kwargs) -> ApiResponse:
        return await self.request('PUT', path, json=json, **kwargs)

    async def patch(self, path: str, json: Any = None, **kwargs) -> ApiResponse:
        return await self.request('PATCH', path, json=json, **kwargs)

    async def delete(self, path: str, **kwargs) -> ApiResponse:
        return await self.request('DELETE', path, **kwargs)
