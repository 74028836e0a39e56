"""
Session lifecycle operations on top of the API client.

Login and register store whatever the server issues; logout tells the server
and then forgets the session locally.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any

from jose import jwt, JWTError

from shared.exceptions import AuthClientError, ErrorCode
from shared.logging_config import AuditLogger
from shared.models import Identity, TokenPair

from authclient.api_client import AuthenticatedAPIClient, unwrap_envelope

logger = logging.getLogger(__name__)


class AuthService:
    """
    Login, register, logout and session inspection.

    Token issuance itself belongs to the server; this class only forwards
    credentials and records the result in the client's token store.
    """

    def __init__(self, client: AuthenticatedAPIClient):
        self.client = client
        self.token_store = client.token_store
        self._audit_logger = AuditLogger()

    def _store_session(self, payload: Dict[str, Any], action: str) -> Identity:
        if not isinstance(payload, dict) or not payload.get('accessToken') or not payload.get('user'):
            raise AuthClientError(
                f"Unexpected {action} response from server",
                error_code=ErrorCode.REQUEST_INVALID_RESPONSE,
                context={'action': action}
            )

        identity = Identity.from_api_user(payload['user'])
        self.token_store.clear_tokens()
        self.token_store.store_token_pair(
            TokenPair(access_token=payload['accessToken'], refresh_token=payload.get('refreshToken'))
        )
        self.token_store.set_current_identity(identity)

        self._audit_logger.log_authentication(action, user_id=identity.id)
        return identity

    async def login(self, email: str, password: str) -> Identity:
        """
        Log in and store the issued tokens.

        Args:
            email: Account email
            password: Account password

        Returns:
            The logged-in user

        Raises:
            AuthExemptRejectedError: If the server rejected the credentials
        """
        try:
            response = await self.client.post('/auth/login', json={'email': email, 'password': password})
        except AuthClientError as e:
            self._audit_logger.log_authentication("login", success=False, failure_reason=e.message)
            raise

        return self._store_session(unwrap_envelope(response.data), "login")

    async def register(self, first_name: str, last_name: str, email: str, password: str) -> Identity:
        """
        Create an account and store the issued tokens.

        Returns:
            The registered user
        """
        body = {
            'firstName': first_name,
            'lastName': last_name,
            'email': email,
            'password': password
        }
        try:
            response = await self.client.post('/auth/register', json=body)
        except AuthClientError as e:
            self._audit_logger.log_authentication("register", success=False, failure_reason=e.message)
            raise

        return self._store_session(unwrap_envelope(response.data), "register")

    async def logout(self) -> None:
        """
        Log out on the server (best effort) and clear the local session.
        """
        refresh_token = self.token_store.get_refresh_token()
        identity = self.token_store.get_current_identity()

        if refresh_token:
            try:
                await self.client.post('/auth/logout', json={'refreshToken': refresh_token})
            except AuthClientError as e:
                logger.warning(f"Server logout failed, clearing local session anyway: {e.message}")

        self.token_store.clear_tokens()
        self._audit_logger.log_authentication("logout", user_id=identity.id if identity else None)

    async def refresh_token(self) -> str:
        """Force a token refresh through the client's coordinator."""
        return await self.client.coordinator.ensure_fresh_token()

    def get_current_user(self) -> Optional[Identity]:
        return self.token_store.get_current_identity()

    def is_authenticated(self) -> bool:
        """Check if an access token and a user are stored."""
        return bool(self.token_store.get_access_token() and self.token_store.get_current_identity())

    def get_access_token_expiry(self) -> Optional[datetime]:
        """
        Expiration time of the stored access token.

        The token is decoded without verification; the value is informational
        and never used to skip a request.

        Returns:
            Expiration datetime or None if unavailable
        """
        token = self.token_store.get_access_token()
        if not token:
            return None

        try:
            claims = jwt.get_unverified_claims(token)
        except JWTError as e:
            logger.warning(f"Failed to parse token expiration: {e}")
            return None

        expires_at = claims.get('exp')
        if isinstance(expires_at, (int, float)):
            return datetime.fromtimestamp(expires_at)
        return None
