"""OAuth 2.1 authorization-code flow with PKCE (S256) for remote servers.

Flow:
1. start_flow() creates a verifier/challenge pair and a random state,
   remembers them as a pending flow and returns the authorization URL.
2. The browser comes back to the redirect URI with ?code=...&state=...
3. complete_flow() matches the state, exchanges code + verifier at the
   token endpoint and stores the token for the server.

Tokens and pending flows are persisted; pending flows expire after
PENDING_FLOW_TTL_SECONDS.
"""

import base64
import hashlib
import secrets
import string
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from urllib.parse import quote, urlencode

import httpx
from pydantic import TypeAdapter

from mcp_hub.app.config import (
    PENDING_FLOW_TTL_SECONDS,
    TOKEN_EXCHANGE_TIMEOUT_SECONDS,
    TOKEN_EXPIRY_BUFFER_SECONDS,
)
from mcp_hub.app.models.common import utc_now
from mcp_hub.app.models.debug import LogCategory, LogLevel
from mcp_hub.app.models.oauth import (
    AuthorizationRequest,
    CallbackParams,
    OAuthToken,
    PendingFlow,
    TokenStatus,
)
from mcp_hub.app.models.server import OAuthSettings, RemoteServerConfig, ServerConfiguration
from mcp_hub.app.services import event_bus as events
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
from mcp_hub.app.services.logging_service import get_logger
from mcp_hub.app.services.persistence import (
    OAUTH_PENDING_KEY,
    OAUTH_TOKENS_KEY,
    KeyValueStore,
    load_models,
    save_models,
)

logger = get_logger(__name__)

VERIFIER_LENGTH = 128
VERIFIER_CHARSET = string.ascii_letters + string.digits + "-._~"

_token_list = TypeAdapter(list[OAuthToken])
_flow_list = TypeAdapter(list[PendingFlow])


def generate_code_verifier(length: int = VERIFIER_LENGTH) -> str:
    return "".join(secrets.choice(VERIFIER_CHARSET) for _ in range(length))


def code_challenge(verifier: str) -> str:
    """base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def build_authorization_url(settings: OAuthSettings, state: str, challenge: str) -> str:
    params = {
        "response_type": "code",
        "client_id": settings.client_id,
        "redirect_uri": settings.redirect_uri,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "state": state,
    }
    if settings.scope:
        params["scope"] = settings.scope
    params.update(settings.additional_params)
    separator = "&" if "?" in settings.authorization_endpoint else "?"
    return f"{settings.authorization_endpoint}{separator}{urlencode(params, quote_via=quote)}"


def is_expired(token: OAuthToken, buffer_seconds: int = TOKEN_EXPIRY_BUFFER_SECONDS) -> bool:
    """A token without an expiry never expires."""
    if token.expires_at is None:
        return False
    return utc_now() >= token.expires_at - timedelta(seconds=buffer_seconds)


def _expires_at(payload: dict[str, Any]) -> Optional[datetime]:
    expires_in = payload.get("expires_in")
    try:
        seconds = float(expires_in)
    except (TypeError, ValueError):
        return None
    return utc_now() + timedelta(seconds=seconds)


class OAuthAuthenticator:
    def __init__(
        self,
        recorder: DebugRecorder,
        bus: EventBus,
        store: KeyValueStore,
        config_lookup: Callable[[str], Optional[ServerConfiguration]],
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        url_opener: Optional[Callable[[str], Any]] = None,
        flow_ttl: int = PENDING_FLOW_TTL_SECONDS,
        exchange_timeout: float = TOKEN_EXCHANGE_TIMEOUT_SECONDS,
    ) -> None:
        self._recorder = recorder
        self._bus = bus
        self._store = store
        self._config_lookup = config_lookup
        self._transport = transport
        self._url_opener = url_opener
        self._flow_ttl = flow_ttl
        self._exchange_timeout = exchange_timeout
        self._tokens: dict[str, OAuthToken] = {}
        self._pending: dict[str, PendingFlow] = {}

    # ── persistence ────────────────────────────────────────────────────

    def load(self) -> None:
        self._tokens = {t.server_id: t for t in load_models(self._store, OAUTH_TOKENS_KEY, _token_list)}
        self._pending = {f.state: f for f in load_models(self._store, OAUTH_PENDING_KEY, _flow_list)}
        self.prune_expired_flows()

    def _save_tokens(self) -> None:
        save_models(self._store, OAUTH_TOKENS_KEY, _token_list, list(self._tokens.values()))

    def _save_pending(self) -> None:
        save_models(self._store, OAUTH_PENDING_KEY, _flow_list, list(self._pending.values()))

    # ── pending flows ──────────────────────────────────────────────────

    def _flow_expired(self, flow: PendingFlow) -> bool:
        return utc_now() - flow.created_at > timedelta(seconds=self._flow_ttl)

    def prune_expired_flows(self) -> int:
        expired = [state for state, flow in self._pending.items() if self._flow_expired(flow)]
        for state in expired:
            del self._pending[state]
        if expired:
            self._save_pending()
            logger.debug(f"Pruned {len(expired)} expired OAuth flow(s)")
        return len(expired)

    def pending_flows(self, server_id: Optional[str] = None) -> list[PendingFlow]:
        return [
            f.model_copy() for f in self._pending.values()
            if server_id is None or f.server_id == server_id
        ]

    def cancel_flows(self, server_id: str) -> int:
        states = [s for s, f in self._pending.items() if f.server_id == server_id]
        for state in states:
            del self._pending[state]
        if states:
            self._save_pending()
        return len(states)

    # ── authorization code flow ────────────────────────────────────────

    def _settings(self, server_id: str, config: Optional[ServerConfiguration] = None) -> tuple[RemoteServerConfig, OAuthSettings]:
        config = config or self._config_lookup(server_id)
        if config is None:
            raise AuthenticationRequired(f"Server '{server_id}' is not configured")
        if config.transport == "stdio" or config.oauth is None:
            raise InvalidConfiguration(f"Server '{config.name}' has no OAuth settings")
        return config, config.oauth

    def start_flow(self, server_id: str, config: Optional[ServerConfiguration] = None) -> AuthorizationRequest:
        config, settings = self._settings(server_id, config)
        self.prune_expired_flows()

        verifier = generate_code_verifier()
        state = generate_state()
        flow = PendingFlow(
            state=state,
            server_id=config.id,
            server_name=config.name,
            code_verifier=verifier,
            redirect_uri=settings.redirect_uri,
        )
        self._pending[state] = flow
        self._save_pending()

        url = build_authorization_url(settings, state, code_challenge(verifier))
        self._recorder.log(
            LogLevel.INFO, LogCategory.CONNECTION, "OAuth authorization started",
            server_id=config.id, server_name=config.name,
            data={"authorization_endpoint": settings.authorization_endpoint, "scope": settings.scope},
        )
        if self._url_opener is not None:
            try:
                self._url_opener(url)
            except Exception as e:
                logger.warning(f"Could not open browser for {config.name}: {e}")

        return AuthorizationRequest(
            server_id=config.id,
            url=url,
            state=state,
            expires_at=flow.created_at + timedelta(seconds=self._flow_ttl),
        )

    async def complete_flow(self, params: CallbackParams | dict[str, Any]) -> OAuthToken:
        if isinstance(params, dict):
            params = CallbackParams.model_validate(params)
        self.prune_expired_flows()

        if params.error:
            flow = self._pending.pop(params.state, None) if params.state else None
            if flow is not None:
                self._save_pending()
            message = params.error_description or params.error
            self._recorder.log(
                LogLevel.WARN, LogCategory.CONNECTION, f"OAuth authorization denied: {message}",
                server_id=flow.server_id if flow else None,
            )
            raise AuthenticationFailed(f"Authorization failed: {message}")

        flow = self._pending.pop(params.state, None) if params.state else None
        if flow is None:
            self._recorder.log(LogLevel.WARN, LogCategory.CONNECTION, "OAuth callback with unknown or expired state")
            raise OAuthStateMismatch("OAuth state does not match any pending authorization; start again")
        self._save_pending()

        if not params.code:
            raise AuthenticationFailed("Authorization response is missing the code")

        config, settings = self._settings(flow.server_id)
        form = {
            "grant_type": "authorization_code",
            "code": params.code,
            "redirect_uri": flow.redirect_uri,
            "client_id": settings.client_id,
            "code_verifier": flow.code_verifier,
        }
        if settings.client_secret:
            form["client_secret"] = settings.client_secret

        payload = await self._token_request(settings.token_endpoint, form, TokenExchangeFailed, "Token exchange")
        now = utc_now()
        token = OAuthToken(
            server_id=config.id,
            server_name=config.name,
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            token_type=payload.get("token_type") or "Bearer",
            expires_at=_expires_at(payload),
            scope=payload.get("scope") or settings.scope,
            created_at=now,
            updated_at=now,
        )
        self._store_token(token)
        self._recorder.log(
            LogLevel.INFO, LogCategory.CONNECTION, "OAuth token obtained",
            server_id=config.id, server_name=config.name,
            data={"expires_at": token.expires_at, "has_refresh_token": token.refresh_token is not None},
        )
        return token.model_copy()

    async def _token_request(
        self,
        endpoint: str,
        form: dict[str, str],
        error_cls: type,
        what: str,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._exchange_timeout, transport=self._transport) as client:
                response = await client.post(endpoint, data=form, headers={"Accept": "application/json"})
        except httpx.TimeoutException as e:
            raise error_cls(f"{what} timed out after {self._exchange_timeout:g}s") from e
        except httpx.HTTPError as e:
            raise error_cls(f"{what} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code >= 400:
            detail = payload.get("error_description") or payload.get("error") if isinstance(payload, dict) else None
            raise error_cls(f"{what} failed: {detail or f'HTTP {response.status_code}'}")
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise error_cls(f"{what} failed: response has no access_token")
        return payload

    def _store_token(self, token: OAuthToken) -> None:
        self._tokens[token.server_id] = token
        self._save_tokens()
        self._bus.publish(
            events.OAUTH_TOKEN, token.server_id,
            expires_at=token.expires_at.isoformat() if token.expires_at else None,
        )

    # ── tokens ─────────────────────────────────────────────────────────

    def get_token(self, server_id: str) -> Optional[OAuthToken]:
        token = self._tokens.get(server_id)
        return token.model_copy() if token else None

    def is_expired(self, token: OAuthToken) -> bool:
        return is_expired(token)

    def token_status(self, server_id: str) -> TokenStatus:
        token = self._tokens.get(server_id)
        if token is None:
            return TokenStatus(server_id=server_id, has_token=False)
        return TokenStatus(
            server_id=server_id,
            has_token=True,
            expired=is_expired(token),
            expires_at=token.expires_at,
            has_refresh_token=token.refresh_token is not None,
            token_type=token.token_type,
            scope=token.scope,
            updated_at=token.updated_at,
        )

    async def refresh(self, server_id: str) -> OAuthToken:
        token = self._tokens.get(server_id)
        if token is None:
            raise AuthenticationRequired(f"No token stored for '{server_id}'")
        if not token.refresh_token:
            raise AuthenticationRequired("Token has no refresh token; re-authentication required")

        _, settings = self._settings(server_id)
        form = {
            "grant_type": "refresh_token",
            "refresh_token": token.refresh_token,
            "client_id": settings.client_id,
        }
        if settings.client_secret:
            form["client_secret"] = settings.client_secret

        try:
            payload = await self._token_request(settings.token_endpoint, form, TokenRefreshFailed, "Token refresh")
        except TokenRefreshFailed as e:
            self._recorder.log(
                LogLevel.ERROR, LogCategory.CONNECTION, e.message,
                server_id=server_id, server_name=token.server_name, error=e,
            )
            raise

        refreshed = token.model_copy(
            update={
                "access_token": payload["access_token"],
                "token_type": payload.get("token_type") or token.token_type,
                "expires_at": _expires_at(payload),
                "refresh_token": payload.get("refresh_token") or token.refresh_token,
                "updated_at": utc_now(),
            }
        )
        self._store_token(refreshed)
        self._recorder.log(
            LogLevel.INFO, LogCategory.CONNECTION, "OAuth token refreshed",
            server_id=server_id, server_name=token.server_name,
        )
        return refreshed.model_copy()

    async def get_valid_token(self, server_id: str) -> OAuthToken:
        """A usable token, refreshing it first when it has expired."""
        token = self._tokens.get(server_id)
        if token is None:
            raise AuthenticationRequired("Authorization required: no token for this server")
        if not is_expired(token):
            return token.model_copy()
        if not token.refresh_token:
            raise AuthenticationRequired("Token expired and cannot be refreshed; re-authentication required")
        try:
            return await self.refresh(server_id)
        except TokenRefreshFailed as e:
            raise AuthenticationRequired(f"Token expired and refresh failed: {e.message}") from e

    def revoke(self, server_id: str) -> bool:
        """Forget the stored token (local revocation)."""
        removed = self._tokens.pop(server_id, None) is not None
        if removed:
            self._save_tokens()
            self._bus.publish(events.OAUTH_TOKEN, server_id, revoked=True)
        return removed
