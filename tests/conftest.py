"""
Shared fixtures for the authenticated API client tests.

Provides an in-process fake of the remote API (an aiohttp web application
served by aiohttp's TestServer) and a client wired to it.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, List, Optional

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from shared.models import Identity

from authclient.api_client import AuthenticatedAPIClient
from authclient.auth.token_storage import MemoryTokenStorage
from authclient.notifications import CallbackNotificationSink


TEST_USER = {
    'id': 'user-42',
    'firstName': 'Ada',
    'lastName': 'Lovelace',
    'email': 'ada@example.com',
    'role': 'user',
    'credits': 10,
}


@dataclass
class RecordedRequest:
    method: str
    path: str
    authorization: Optional[str]
    body: Any


class FakeAPI:
    """
    Fake remote API.

    Only ``valid_access_token`` is accepted on protected routes; anything else
    gets a 401 with the ``jwt expired`` message. Each successful refresh issues
    ``access-<n>`` / ``refresh-<n+1>``.
    """

    def __init__(self):
        self.valid_access_token: Optional[str] = None
        self.valid_refresh_token: Optional[str] = "refresh-1"
        self.refresh_status = 200
        self.logout_status = 200
        self.refresh_gate: Optional[asyncio.Event] = None
        self.refresh_calls = 0
        self.requests: List[RecordedRequest] = []
        self.base_url: Optional[str] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/v1/users/profile', self.get_profile)
        app.router.add_put('/v1/users/profile', self.update_profile)
        app.router.add_get('/v1/legacy/profile', self.legacy_profile)
        app.router.add_get('/v1/always-unauthorized', self.always_unauthorized)
        app.router.add_get('/v1/boom', self.boom)
        app.router.add_get('/v1/missing', self.missing)
        app.router.add_get('/v1/slow', self.slow)
        app.router.add_post('/v1/auth/login', self.login)
        app.router.add_post('/v1/auth/register', self.register)
        app.router.add_post('/v1/auth/refresh', self.refresh)
        app.router.add_post('/v1/auth/logout', self.logout)
        return app

    def requests_to(self, path: str) -> List[RecordedRequest]:
        return [r for r in self.requests if r.path == f"/v1{path}"]

    async def _record(self, request: web.Request) -> Any:
        body = await request.json() if request.can_read_body else None
        self.requests.append(RecordedRequest(
            method=request.method,
            path=request.path,
            authorization=request.headers.get('Authorization'),
            body=body
        ))
        return body

    def _authorized(self, request: web.Request) -> bool:
        return (
            self.valid_access_token is not None
            and request.headers.get('Authorization') == f"Bearer {self.valid_access_token}"
        )

    def _issue_tokens(self, access_token: str, refresh_token: str) -> dict:
        self.valid_access_token = access_token
        self.valid_refresh_token = refresh_token
        return {'accessToken': access_token, 'refreshToken': refresh_token}

    async def get_profile(self, request: web.Request) -> web.Response:
        await self._record(request)
        if not self._authorized(request):
            return web.json_response({'message': 'jwt expired'}, status=401)
        return web.json_response({'success': True, 'data': TEST_USER})

    async def update_profile(self, request: web.Request) -> web.Response:
        body = await self._record(request)
        if not self._authorized(request):
            return web.json_response({'message': 'jwt expired'}, status=401)
        return web.json_response({'success': True, 'data': body})

    async def legacy_profile(self, request: web.Request) -> web.Response:
        await self._record(request)
        if not self._authorized(request):
            return web.json_response({'message': 'jwt expired'}, status=400)
        return web.json_response({'success': True, 'data': TEST_USER})

    async def always_unauthorized(self, request: web.Request) -> web.Response:
        await self._record(request)
        return web.json_response({'message': 'Unauthorized'}, status=401)

    async def boom(self, request: web.Request) -> web.Response:
        await self._record(request)
        return web.json_response({'message': 'Database unavailable\n  at query()'}, status=500)

    async def missing(self, request: web.Request) -> web.Response:
        await self._record(request)
        return web.json_response({'message': 'Not found'}, status=404)

    async def slow(self, request: web.Request) -> web.Response:
        await self._record(request)
        await asyncio.sleep(0.5)
        return web.json_response({'success': True})

    async def login(self, request: web.Request) -> web.Response:
        body = await self._record(request)
        if body.get('password') != 'secret':
            return web.json_response({'message': 'Invalid credentials'}, status=401)
        tokens = self._issue_tokens('login-access', 'login-refresh')
        return web.json_response({'success': True, 'message': 'Logged in', 'data': {'user': TEST_USER, **tokens}})

    async def register(self, request: web.Request) -> web.Response:
        body = await self._record(request)
        if body.get('email') == 'taken@example.com':
            return web.json_response({'message': 'Email already registered'}, status=409)
        user = {**TEST_USER, 'firstName': body['firstName'], 'lastName': body['lastName'], 'email': body['email']}
        tokens = self._issue_tokens('register-access', 'register-refresh')
        return web.json_response({'success': True, 'message': 'Registered', 'data': {'user': user, **tokens}},
                                 status=201)

    async def refresh(self, request: web.Request) -> web.Response:
        body = await self._record(request)
        self.refresh_calls += 1
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()

        if self.refresh_status != 200:
            return web.json_response({'message': 'Invalid refresh token'}, status=self.refresh_status)
        if body.get('refreshToken') != self.valid_refresh_token:
            return web.json_response({'message': 'Invalid refresh token'}, status=401)

        n = self.refresh_calls
        tokens = self._issue_tokens(f"access-{n}", f"refresh-{n + 1}")
        return web.json_response({'success': True, 'message': 'Token refreshed', 'data': tokens})

    async def logout(self, request: web.Request) -> web.Response:
        await self._record(request)
        if self.logout_status != 200:
            return web.json_response({'message': 'Logout failed'}, status=self.logout_status)
        return web.json_response({'success': True})


async def wait_for(condition, timeout: float = 2.0) -> None:
    """Poll until condition() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def identity():
    return Identity(id='user-1', name='Test User', email='test@example.com')


@pytest.fixture
def token_store(identity):
    """Store holding an access token the fake API no longer accepts."""
    return MemoryTokenStorage(access_token='old-access', refresh_token='refresh-1', identity=identity)


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def redirects():
    return []


@pytest_asyncio.fixture
async def fake_api():
    api = FakeAPI()
    server = TestServer(api.build_app())
    await server.start_server()
    api.base_url = str(server.make_url('/v1'))
    yield api
    await server.close()


@pytest_asyncio.fixture
async def api_client(fake_api, token_store, notifications, redirects):
    client = AuthenticatedAPIClient(
        base_url=fake_api.base_url,
        token_store=token_store,
        notification_sink=CallbackNotificationSink(notifications.append)
    )
    client.add_unauthenticated_callback(redirects.append)
    async with client:
        yield client
