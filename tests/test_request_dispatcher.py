"""
Unit tests for RequestDispatcher.

Covers bearer token attachment, identity injection for mutating methods and
the auth-exempt endpoint bypass.
"""

import pytest

from shared.models import Identity, RequestDescriptor, SessionContext

from authclient.request_dispatcher import AUTH_EXEMPT_PATTERNS, RequestDispatcher


@pytest.fixture
def dispatcher():
    return RequestDispatcher()


@pytest.fixture
def session():
    return SessionContext(access_token="tok-123", identity=Identity(id="user-1"))


class TestAuthExempt:
    """Test auth-exempt path matching."""

    @pytest.mark.parametrize("path", ["/auth/login", "/auth/register", "/auth/refresh", "/v2/auth/login?next=/"])
    def test_exempt_paths(self, dispatcher, path):
        """Test login, register and refresh paths are exempt."""
        assert dispatcher.is_auth_exempt(path)

    @pytest.mark.parametrize("path", ["/auth/logout", "/users/profile", "/projects/1"])
    def test_regular_paths(self, dispatcher, path):
        """Test other paths are not exempt."""
        assert not dispatcher.is_auth_exempt(path)

    def test_custom_patterns(self):
        """Test the exempt set is configurable."""
        dispatcher = RequestDispatcher(exempt_patterns=("/session/new",))
        assert dispatcher.is_auth_exempt("/session/new")
        assert not dispatcher.is_auth_exempt("/auth/login")

    def test_default_patterns(self):
        """Test the default exempt set."""
        assert AUTH_EXEMPT_PATTERNS == ("/auth/login", "/auth/register", "/auth/refresh")


class TestPrepare:
    """Test request preparation."""

    def test_attaches_bearer_token(self, dispatcher, session):
        """Test the access token is attached as a bearer credential."""
        request = RequestDescriptor("GET", "/users/profile")
        dispatcher.prepare(request, session)
        assert request.headers["Authorization"] == "Bearer tok-123"

    def test_no_token_no_header(self, dispatcher):
        """Test nothing is attached without an access token."""
        request = RequestDescriptor("GET", "/users/profile")
        dispatcher.prepare(request, SessionContext())
        assert "Authorization" not in request.headers

    def test_existing_authorization_is_kept(self, dispatcher, session):
        """Test an explicit Authorization header is not overwritten."""
        request = RequestDescriptor("GET", "/users/profile", headers={"authorization": "Basic abc"})
        dispatcher.prepare(request, session)
        assert request.headers == {"authorization": "Basic abc"}

    @pytest.mark.parametrize("method", ["post", "PUT", "patch"])
    def test_identity_injected_for_mutating_methods(self, dispatcher, session, method):
        """Test the identity is merged into the body of mutating requests."""
        request = RequestDescriptor(method, "/projects", json={"name": "demo"})
        dispatcher.prepare(request, session)
        assert request.json == {"name": "demo", "userId": "user-1"}

    def test_identity_overrides_body_field(self, dispatcher, session):
        """Test the stored identity wins over a caller-supplied id."""
        request = RequestDescriptor("POST", "/projects", json={"userId": "someone-else"})
        dispatcher.prepare(request, session)
        assert request.json["userId"] == "user-1"

    def test_original_body_not_mutated(self, dispatcher, session):
        """Test the caller's dict is left untouched."""
        body = {"name": "demo"}
        request = RequestDescriptor("POST", "/projects", json=body)
        dispatcher.prepare(request, session)
        assert body == {"name": "demo"}

    @pytest.mark.parametrize("method", ["GET", "DELETE"])
    def test_identity_not_injected_for_read_methods(self, dispatcher, session, method):
        """Test GET and DELETE bodies are left alone."""
        request = RequestDescriptor(method, "/projects", json={"name": "demo"})
        dispatcher.prepare(request, session)
        assert request.json == {"name": "demo"}

    def test_non_dict_body_left_alone(self, dispatcher, session):
        """Test list bodies are not merged."""
        request = RequestDescriptor("POST", "/projects/bulk", json=[1, 2])
        dispatcher.prepare(request, session)
        assert request.json == [1, 2]

    def test_no_identity_no_injection(self, dispatcher):
        """Test nothing is merged without an identity."""
        request = RequestDescriptor("POST", "/projects", json={"name": "demo"})
        dispatcher.prepare(request, SessionContext(access_token="tok"))
        assert request.json == {"name": "demo"}

    def test_custom_identity_field(self, session):
        """Test the identity field name is configurable."""
        dispatcher = RequestDispatcher(identity_field="ownerId")
        request = RequestDescriptor("POST", "/projects", json={})
        dispatcher.prepare(request, session)
        assert request.json == {"ownerId": "user-1"}

    @pytest.mark.parametrize("path", ["/auth/login", "/auth/register", "/auth/refresh"])
    def test_exempt_requests_go_out_bare(self, dispatcher, session, path):
        """Test exempt requests get neither a token nor an identity."""
        request = RequestDescriptor("POST", path, json={"email": "a@b.c"})
        dispatcher.prepare(request, session)
        assert "Authorization" not in request.headers
        assert request.json == {"email": "a@b.c"}

    def test_returns_same_descriptor(self, dispatcher, session):
        """Test prepare modifies and returns the same object."""
        request = RequestDescriptor("GET", "/users/profile")
        assert dispatcher.prepare(request, session) is request


class TestRequestDescriptor:
    """Test RequestDescriptor bookkeeping."""

    def test_method_upper_cased(self):
        assert RequestDescriptor("get", "/x").method == "GET"

    def test_empty_path_rejected(self):
        with pytest.raises(ValueError):
            RequestDescriptor("GET", "")

    def test_retried_only_once(self):
        """Test a request can be marked retried exactly once."""
        request = RequestDescriptor("GET", "/x")
        request.mark_retried()
        assert request.retried
        with pytest.raises(RuntimeError):
            request.mark_retried()

    def test_header_helpers_case_insensitive(self):
        request = RequestDescriptor("GET", "/x", headers={"AUTHORIZATION": "Bearer a", "X-Trace": "1"})
        assert request.get_header("authorization") == "Bearer a"
        request.remove_header("Authorization")
        assert request.headers == {"X-Trace": "1"}
