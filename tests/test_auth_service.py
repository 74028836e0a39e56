"""
Tests for AuthService against the in-process fake API.
"""

import time
from datetime import datetime

import pytest
from jose import jwt

from shared.exceptions import AuthClientError, AuthExemptRejectedError, ErrorCode
from shared.models import ApiResponse, TokenPair

from authclient.api_client import AuthenticatedAPIClient
from authclient.auth.auth_service import AuthService
from authclient.auth.token_storage import MemoryTokenStorage


@pytest.fixture
def service(api_client):
    return AuthService(api_client)


class TestLogin:
    """Test login and register."""

    @pytest.mark.asyncio
    async def test_login_stores_session(self, service, token_store):
        """Test a successful login stores the issued tokens and user."""
        token_store.clear_tokens()

        user = await service.login('ada@example.com', 'secret')

        assert user.id == 'user-42'
        assert user.name == 'Ada Lovelace'
        assert token_store.get_token_pair() == TokenPair('login-access', 'login-refresh')
        assert token_store.get_current_identity() == user
        assert service.is_authenticated()

    @pytest.mark.asyncio
    async def test_login_failure_keeps_state(self, service, token_store, caplog):
        """Test rejected credentials raise and leave the store alone."""
        with pytest.raises(AuthExemptRejectedError) as exc_info:
            await service.login('ada@example.com', 'wrong')

        assert exc_info.value.user_message == 'Invalid credentials'
        assert token_store.get_access_token() == 'old-access'
        audit = [r.audit_info for r in caplog.records if r.name == 'audit']
        assert audit[-1]['result'] == 'failure'

    @pytest.mark.asyncio
    async def test_register(self, service, token_store, fake_api):
        user = await service.register('Grace', 'Hopper', 'grace@example.com', 'pw')

        assert user.name == 'Grace Hopper'
        assert user.email == 'grace@example.com'
        assert token_store.get_access_token() == 'register-access'
        register = fake_api.requests_to('/auth/register')[0]
        assert register.authorization is None
        assert 'userId' not in register.body

    @pytest.mark.asyncio
    async def test_unexpected_payload(self, service, api_client, fake_api, monkeypatch):
        """Test a login response without tokens is rejected."""
        async def fake_post(path, json=None, **kwargs):
            return ApiResponse(200, {'success': True, 'data': {'user': None}})

        monkeypatch.setattr(api_client, 'post', fake_post)

        with pytest.raises(AuthClientError) as exc_info:
            await service.login('ada@example.com', 'secret')

        assert exc_info.value.error_code is ErrorCode.REQUEST_INVALID_RESPONSE

    @pytest.mark.asyncio
    async def test_login_without_refresh_token_drops_old_one(self, service, api_client, token_store, monkeypatch):
        """Test a new session never inherits the previous session's refresh token."""
        async def fake_post(path, json=None, **kwargs):
            user = {'id': 'user-7', 'firstName': 'Grace', 'lastName': 'Hopper'}
            return ApiResponse(200, {'success': True, 'data': {'user': user, 'accessToken': 'new-access'}})

        monkeypatch.setattr(api_client, 'post', fake_post)

        user = await service.login('grace@example.com', 'secret')

        assert user.id == 'user-7'
        assert token_store.get_access_token() == 'new-access'
        assert token_store.get_refresh_token() is None
        assert token_store.get_current_identity() == user


class TestLogout:
    """Test logout."""

    @pytest.mark.asyncio
    async def test_logout(self, service, token_store, fake_api):
        """Test logout notifies the server and clears the session."""
        await service.login('ada@example.com', 'secret')

        await service.logout()

        logout = fake_api.requests_to('/auth/logout')[0]
        assert logout.body['refreshToken'] == 'login-refresh'
        assert logout.authorization == 'Bearer login-access'
        assert token_store.get_access_token() is None
        assert token_store.get_current_identity() is None
        assert not service.is_authenticated()

    @pytest.mark.asyncio
    async def test_logout_server_failure(self, service, token_store, fake_api):
        """Test the local session is cleared even if the server call fails."""
        await service.login('ada@example.com', 'secret')
        fake_api.logout_status = 500

        await service.logout()

        assert token_store.get_access_token() is None

    @pytest.mark.asyncio
    async def test_logout_without_session(self, api_client, fake_api):
        api_client.token_store.clear_tokens()
        service = AuthService(api_client)

        await service.logout()

        assert fake_api.requests_to('/auth/logout') == []


class TestSessionInspection:
    """Test session inspection helpers."""

    @pytest.mark.asyncio
    async def test_refresh_token(self, service, token_store):
        assert await service.refresh_token() == 'access-1'
        assert token_store.get_refresh_token() == 'refresh-2'

    def test_access_token_expiry(self):
        expires_at = int(time.time()) + 900
        token = jwt.encode({'sub': 'user-1', 'exp': expires_at}, 'test-secret', algorithm='HS256')
        client = _offline_client(MemoryTokenStorage(access_token=token))

        expiry = AuthService(client).get_access_token_expiry()

        assert expiry == datetime.fromtimestamp(expires_at)

    def test_access_token_expiry_opaque_token(self):
        client = _offline_client(MemoryTokenStorage(access_token='not-a-jwt'))
        assert AuthService(client).get_access_token_expiry() is None

    def test_access_token_expiry_no_token(self):
        client = _offline_client(MemoryTokenStorage())
        service = AuthService(client)
        assert service.get_access_token_expiry() is None
        assert not service.is_authenticated()
        assert service.get_current_user() is None


def _offline_client(store):
    return AuthenticatedAPIClient(token_store=store)
