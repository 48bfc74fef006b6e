"""Tests for session handling against a mocked auth API."""
from __future__ import annotations

import json
from datetime import timedelta

import httpx
import pytest

from protee.sync.auth import AuthManager, AuthSession
from protee.sync.errors import AuthorizationError

from conftest import T0

BASE = "https://backend.test"


def token_body(access: str = "access-1", refresh: str = "refresh-1", expires_in: int = 3600) -> dict:
    return {
        "access_token": access,
        "refresh_token": refresh,
        "expires_in": expires_in,
        "user": {"id": "user-1", "email": "me@example.com"},
    }


class AuthApi:
    """Records requests and replays queued responses."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


@pytest.fixture
def session_path(tmp_path):
    return tmp_path / "session.json"


def make_manager(api, session_path, clock):
    http = httpx.AsyncClient(transport=httpx.MockTransport(api))
    return AuthManager(BASE, "anon-key", session_path=session_path, http=http, clock=clock)


class TestSignIn:
    async def test_password_grant(self, session_path, clock):
        api = AuthApi(httpx.Response(200, json=token_body()))
        auth = make_manager(api, session_path, clock)

        session = await auth.sign_in("me@example.com", "secret")

        assert session.user_id == "user-1"
        assert session.expires_at == T0 + timedelta(hours=1)
        [request] = api.requests
        assert request.url.path == "/auth/v1/token"
        assert request.url.params["grant_type"] == "password"
        assert json.loads(request.content) == {"email": "me@example.com", "password": "secret"}
        assert auth.is_signed_in

    async def test_session_survives_restart(self, session_path, clock):
        auth = make_manager(AuthApi(httpx.Response(200, json=token_body())), session_path, clock)
        await auth.sign_in("me@example.com", "secret")

        restarted = make_manager(AuthApi(), session_path, clock)
        assert restarted.session == auth.session

    async def test_bad_credentials(self, session_path, clock):
        api = AuthApi(httpx.Response(400, json={"error_description": "Invalid login credentials"}))
        auth = make_manager(api, session_path, clock)
        with pytest.raises(AuthorizationError, match="Invalid login credentials"):
            await auth.sign_in("me@example.com", "wrong")
        assert not auth.is_signed_in
        assert not session_path.exists()

    def test_unreadable_session_file_is_ignored(self, session_path, clock):
        session_path.write_text("{not json", encoding="utf-8")
        auth = make_manager(AuthApi(), session_path, clock)
        assert auth.session is None


class TestEnsureSession:
    async def test_not_signed_in(self, session_path, clock):
        auth = make_manager(AuthApi(), session_path, clock)
        with pytest.raises(AuthorizationError, match="Not signed in"):
            await auth.ensure_session()

    async def test_fresh_session_needs_no_request(self, session_path, clock):
        api = AuthApi(httpx.Response(200, json=token_body()))
        auth = make_manager(api, session_path, clock)
        await auth.sign_in("me@example.com", "secret")
        clock.advance(minutes=30)
        assert (await auth.ensure_session()).access_token == "access-1"
        assert len(api.requests) == 1

    async def test_refreshes_near_expiry(self, session_path, clock):
        api = AuthApi(
            httpx.Response(200, json=token_body()),
            httpx.Response(200, json=token_body(access="access-2", refresh="refresh-2")),
        )
        auth = make_manager(api, session_path, clock)
        await auth.sign_in("me@example.com", "secret")
        clock.advance(minutes=59, seconds=30)

        session = await auth.ensure_session()

        assert session.access_token == "access-2"
        refresh = api.requests[-1]
        assert refresh.url.params["grant_type"] == "refresh_token"
        assert json.loads(refresh.content) == {"refresh_token": "refresh-1"}
        assert AuthSession.model_validate_json(session_path.read_text()).access_token == "access-2"

    async def test_rejected_refresh_signs_out(self, session_path, clock):
        api = AuthApi(
            httpx.Response(200, json=token_body()),
            httpx.Response(400, json={"error_description": "Invalid Refresh Token"}),
        )
        auth = make_manager(api, session_path, clock)
        await auth.sign_in("me@example.com", "secret")
        clock.advance(hours=2)

        with pytest.raises(AuthorizationError, match="Session expired"):
            await auth.ensure_session()
        assert not auth.is_signed_in
        assert not session_path.exists()


class TestSignOut:
    async def test_clears_even_when_logout_fails(self, session_path, clock):
        api = AuthApi(httpx.Response(200, json=token_body()), httpx.Response(500))
        auth = make_manager(api, session_path, clock)
        await auth.sign_in("me@example.com", "secret")

        await auth.sign_out()

        assert api.requests[-1].url.path == "/auth/v1/logout"
        assert api.requests[-1].headers["Authorization"] == "Bearer access-1"
        assert not auth.is_signed_in
        assert not session_path.exists()
