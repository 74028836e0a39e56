"""
Request preparation for the authenticated API client.

Attaches the bearer token and the caller's identity to outgoing requests,
except for the authentication endpoints which must go out bare.
"""

import logging
from typing import Iterable, Tuple

from shared.models import RequestDescriptor, SessionContext

logger = logging.getLogger(__name__)


AUTH_EXEMPT_PATTERNS: Tuple[str, ...] = ("/auth/login", "/auth/register", "/auth/refresh")
DEFAULT_IDENTITY_FIELD = "userId"


class RequestDispatcher:
    """
    Builds outgoing requests from a session snapshot.

    ``prepare`` is synchronous and best-effort: it never raises and never
    performs I/O. The session is passed in explicitly so that callers decide
    when the token store is read.
    """

    def __init__(
        self,
        exempt_patterns: Iterable[str] = AUTH_EXEMPT_PATTERNS,
        identity_field: str = DEFAULT_IDENTITY_FIELD
    ):
        self.exempt_patterns = tuple(exempt_patterns)
        self.identity_field = identity_field

    def is_auth_exempt(self, path: str) -> bool:
        """Whether the path is a login, register or refresh endpoint."""
        return any(pattern in path for pattern in self.exempt_patterns)

    def prepare(self, request: RequestDescriptor, session: SessionContext) -> RequestDescriptor:
        """
        Attach credentials and identity to a request.

        Args:
            request: The outgoing request, modified in place
            session: Current access token and identity

        Returns:
            The same request descriptor
        """
        if self.is_auth_exempt(request.path):
            return request

        if session.access_token and request.get_header('Authorization') is None:
            request.headers['Authorization'] = f"Bearer {session.access_token}"

        identity = session.identity
        if request.is_mutating and identity is not None and isinstance(request.json, dict):
            request.json = {**request.json, self.identity_field: identity.id}

        logger.debug(f"Prepared {request.method} {request.path} (retried={request.retried})")
        return request
