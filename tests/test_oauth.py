"""Tests for the OAuth authorization-code + PKCE flow."""

from __future__ import annotations

import asyncio
import base64
import hashlib
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from mcp_hub.app.models.common import utc_now
from mcp_hub.app.models.oauth import OAuthToken, PendingFlow
from mcp_hub.app.models.server import HttpServerConfig, OAuthSettings, StdioServerConfig
from mcp_hub.app.services import event_bus as events
from mcp_hub.app.services import oauth_service
from mcp_hub.app.services.debug_recorder import DebugRecorder
from mcp_hub.app.services.errors import (
    AuthenticationFailed,
    AuthenticationRequired,
    InvalidConfiguration,
    OAuthStateMismatch,
    TokenExchangeFailed,
    TokenRefreshFailed,
)
from mcp_hub.app.services.event_bus import EventBus
from mcp_hub.app.services.persistence import MemoryStore


# ── helpers ──────────────────────────────────────────────────────────────

TOKEN_URL = "https://auth.example.com/token"


def _server(**oauth_overrides) -> HttpServerConfig:
    oauth = {
        "authorization_endpoint": "https://auth.example.com/authorize",
        "token_endpoint": TOKEN_URL,
        "client_id": "hub-client",
        "scope": "read write",
        **oauth_overrides,
    }
    return HttpServerConfig(name="remote", url="https://mcp.example.com/mcp", oauth=OAuthSettings(**oauth))


class TokenEndpoint:
    """Scripted token endpoint recording the submitted forms."""

    def __init__(self, *responses: httpx.Response | Exception):
        self.responses = list(responses)
        self.forms: list[dict[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert str(request.url) == TOKEN_URL
        self.forms.append({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _authenticator(server=None, endpoint=None, store=None, **kwargs):
    server = server or _server()
    bus = EventBus()
    seen = []
    bus.subscribe(seen.append)
    transport = httpx.MockTransport(endpoint) if endpoint is not None else None
    auth = oauth_service.OAuthAuthenticator(
        DebugRecorder(), bus, store or MemoryStore(), {server.id: server}.get, transport=transport, **kwargs
    )
    return auth, server, seen


# ── PKCE primitives ──────────────────────────────────────────────────────

class TestPkce:
    def test_verifier_shape(self):
        verifier = oauth_service.generate_code_verifier()
        assert len(verifier) == 128
        assert set(verifier) <= set(oauth_service.VERIFIER_CHARSET)
        assert verifier != oauth_service.generate_code_verifier()

    def test_challenge_is_unpadded_base64url_sha256(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        # Known answer from RFC 7636 appendix B
        assert oauth_service.code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
        assert oauth_service.code_challenge(verifier) == expected

    def test_authorization_url(self):
        settings = _server(additional_params={"audience": "mcp"}).oauth
        url = oauth_service.build_authorization_url(settings, "st", "ch")
        assert "scope=read%20write" in url
        query = parse_qs(urlparse(url).query)
        assert query["response_type"] == ["code"]
        assert query["code_challenge_method"] == ["S256"]
        assert query["state"] == ["st"]
        assert query["audience"] == ["mcp"]
        assert query["redirect_uri"] == ["http://127.0.0.1:8765/api/oauth/callback"]

    def test_authorization_url_with_existing_query(self):
        settings = _server(authorization_endpoint="https://auth.example.com/authorize?tenant=x").oauth
        url = oauth_service.build_authorization_url(settings, "st", "ch")
        assert url.startswith("https://auth.example.com/authorize?tenant=x&response_type=code")

    def test_is_expired_uses_buffer(self):
        now = utc_now()
        assert oauth_service.is_expired(OAuthToken(server_id="a", access_token="t")) is False
        assert oauth_service.is_expired(OAuthToken(server_id="a", access_token="t", expires_at=now + timedelta(seconds=30)))
        assert not oauth_service.is_expired(OAuthToken(server_id="a", access_token="t", expires_at=now + timedelta(hours=1)))


# ── authorization flow ───────────────────────────────────────────────────

class TestAuthorizationFlow:
    def test_full_exchange(self):
        endpoint = TokenEndpoint(httpx.Response(
            200, json={"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600, "token_type": "bearer"},
        ))
        opened = []
        auth, server, seen = _authenticator(endpoint=endpoint, url_opener=opened.append)

        request = auth.start_flow(server.id)
        assert opened == [request.url]
        flow = auth.pending_flows(server.id)[0]
        assert f"code_challenge={oauth_service.code_challenge(flow.code_verifier)}" in request.url

        token = asyncio.run(auth.complete_flow({"code": "the-code", "state": request.state}))
        assert token.access_token == "at-1"
        assert token.token_type == "bearer"
        assert token.scope == "read write"
        assert token.expires_at > utc_now() + timedelta(minutes=59)

        form = endpoint.forms[0]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "the-code"
        assert form["code_verifier"] == flow.code_verifier
        assert "client_secret" not in form
        assert auth.pending_flows() == []
        assert seen[-1].kind == events.OAUTH_TOKEN

    def test_state_mismatch_stores_nothing(self):
        auth, server, _ = _authenticator(endpoint=TokenEndpoint())
        auth.start_flow(server.id)
        with pytest.raises(OAuthStateMismatch):
            asyncio.run(auth.complete_flow({"code": "c", "state": "forged"}))
        assert auth.get_token(server.id) is None
        assert len(auth.pending_flows()) == 1

    def test_provider_error_discards_flow(self):
        auth, server, _ = _authenticator()
        request = auth.start_flow(server.id)
        with pytest.raises(AuthenticationFailed, match="user said no"):
            asyncio.run(auth.complete_flow({
                "state": request.state, "error": "access_denied", "error_description": "user said no",
            }))
        assert auth.pending_flows() == []

    def test_missing_code(self):
        auth, server, _ = _authenticator()
        request = auth.start_flow(server.id)
        with pytest.raises(AuthenticationFailed, match="missing the code"):
            asyncio.run(auth.complete_flow({"state": request.state}))

    @pytest.mark.parametrize(
        "response, match",
        [
            (httpx.Response(400, json={"error": "invalid_grant", "error_description": "code expired"}), "code expired"),
            (httpx.Response(500, text="oops"), "HTTP 500"),
            (httpx.Response(200, json={"token_type": "bearer"}), "no access_token"),
            (httpx.ConnectTimeout("slow"), "timed out"),
        ],
    )
    def test_exchange_failures(self, response, match):
        auth, server, _ = _authenticator(endpoint=TokenEndpoint(response))
        request = auth.start_flow(server.id)
        with pytest.raises(TokenExchangeFailed, match=match):
            asyncio.run(auth.complete_flow({"code": "c", "state": request.state}))
        assert auth.get_token(server.id) is None

    def test_client_secret_is_sent(self):
        endpoint = TokenEndpoint(httpx.Response(200, json={"access_token": "at"}))
        auth, server, _ = _authenticator(server=_server(client_secret="s3cret"), endpoint=endpoint)
        request = auth.start_flow(server.id)
        asyncio.run(auth.complete_flow({"code": "c", "state": request.state}))
        assert endpoint.forms[0]["client_secret"] == "s3cret"

    def test_servers_without_oauth(self):
        stdio = StdioServerConfig(name="local", command="node")
        auth = oauth_service.OAuthAuthenticator(DebugRecorder(), EventBus(), MemoryStore(), {stdio.id: stdio}.get)
        with pytest.raises(InvalidConfiguration):
            auth.start_flow(stdio.id)
        with pytest.raises(AuthenticationRequired):
            auth.start_flow("unknown")

    def test_expired_flows_are_pruned(self):
        auth, server, _ = _authenticator(flow_ttl=300)
        request = auth.start_flow(server.id)
        auth._pending[request.state] = auth._pending[request.state].model_copy(
            update={"created_at": utc_now() - timedelta(seconds=301)}
        )
        with pytest.raises(OAuthStateMismatch):
            asyncio.run(auth.complete_flow({"code": "c", "state": request.state}))

    def test_browser_failure_is_not_fatal(self):
        def broken_opener(url):
            raise RuntimeError("no display")

        auth, server, _ = _authenticator(url_opener=broken_opener)
        assert auth.start_flow(server.id).url.startswith("https://auth.example.com/authorize?")

    def test_pending_flows_survive_reload(self):
        store = MemoryStore()
        auth, server, _ = _authenticator(store=store)
        request = auth.start_flow(server.id)

        reloaded, _, _ = _authenticator(server=server, store=store)
        reloaded.load()
        assert [f.state for f in reloaded.pending_flows()] == [request.state]
        assert isinstance(reloaded.pending_flows()[0], PendingFlow)
        assert reloaded.cancel_flows(server.id) == 1


# ── tokens ───────────────────────────────────────────────────────────────

def _with_token(auth, server, **overrides) -> None:
    token = OAuthToken(server_id=server.id, server_name=server.name, access_token="old", **overrides)
    auth._store_token(token)


class TestTokens:
    def test_refresh_keeps_refresh_token_when_not_rotated(self):
        endpoint = TokenEndpoint(httpx.Response(200, json={"access_token": "new", "expires_in": 60}))
        auth, server, _ = _authenticator(endpoint=endpoint)
        _with_token(auth, server, refresh_token="rt", expires_at=utc_now() - timedelta(minutes=1))

        token = asyncio.run(auth.refresh(server.id))
        assert token.access_token == "new"
        assert token.refresh_token == "rt"
        assert endpoint.forms[0] == {"grant_type": "refresh_token", "refresh_token": "rt", "client_id": "hub-client"}

    def test_refresh_failure(self):
        endpoint = TokenEndpoint(httpx.Response(400, json={"error": "invalid_grant"}))
        auth, server, _ = _authenticator(endpoint=endpoint)
        _with_token(auth, server, refresh_token="rt")
        with pytest.raises(TokenRefreshFailed, match="invalid_grant"):
            asyncio.run(auth.refresh(server.id))
        assert auth.get_token(server.id).access_token == "old"

    def test_get_valid_token(self):
        endpoint = TokenEndpoint(httpx.Response(200, json={"access_token": "fresh"}))
        auth, server, _ = _authenticator(endpoint=endpoint)

        with pytest.raises(AuthenticationRequired):
            asyncio.run(auth.get_valid_token(server.id))

        _with_token(auth, server)
        assert asyncio.run(auth.get_valid_token(server.id)).access_token == "old"

        _with_token(auth, server, expires_at=utc_now() - timedelta(seconds=1))
        with pytest.raises(AuthenticationRequired, match="cannot be refreshed"):
            asyncio.run(auth.get_valid_token(server.id))

        _with_token(auth, server, refresh_token="rt", expires_at=utc_now() - timedelta(seconds=1))
        assert asyncio.run(auth.get_valid_token(server.id)).access_token == "fresh"

    def test_token_status_and_revoke(self):
        auth, server, seen = _authenticator()
        assert auth.token_status(server.id).has_token is False

        _with_token(auth, server, refresh_token="rt")
        status = auth.token_status(server.id)
        assert status.has_token is True
        assert status.has_refresh_token is True
        assert "old" not in status.model_dump_json()

        assert auth.revoke(server.id) is True
        assert auth.revoke(server.id) is False
        assert auth.get_token(server.id) is None
        assert seen[-1].data == {"revoked": True}

    def test_tokens_persist(self):
        store = MemoryStore()
        auth, server, _ = _authenticator(store=store)
        _with_token(auth, server, refresh_token="rt")

        reloaded, _, _ = _authenticator(server=server, store=store)
        reloaded.load()
        assert reloaded.get_token(server.id).refresh_token == "rt"
