"""OAuth token and pending-flow models."""

from datetime import datetime

from pydantic import BaseModel, Field

from mcp_hub.app.models.common import utc_now


class OAuthToken(BaseModel):
    """Bearer credentials for one remote server."""

    server_id: str
    server_name: str | None = None
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: datetime | None = Field(default=None, description="Absolute expiry; None never expires")
    scope: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class PendingFlow(BaseModel):
    """Authorization request waiting for its callback, keyed by state."""

    state: str
    server_id: str
    server_name: str | None = None
    code_verifier: str
    redirect_uri: str
    created_at: datetime = Field(default_factory=utc_now)


class AuthorizationRequest(BaseModel):
    server_id: str
    url: str
    state: str
    expires_at: datetime


class CallbackParams(BaseModel):
    """Query parameters delivered to the redirect URI."""

    state: str | None = None
    code: str | None = None
    error: str | None = None
    error_description: str | None = None


class TokenStatus(BaseModel):
    """Token summary that never exposes secrets."""

    server_id: str
    has_token: bool
    expired: bool = False
    expires_at: datetime | None = None
    has_refresh_token: bool = False
    token_type: str | None = None
    scope: str | None = None
    updated_at: datetime | None = None
