"""MCP server configuration models.

A configuration is a tagged union on ``transport``:
- stdio: command + args (+ env overlay, cwd), spawned locally
- sse: long-lived event stream at ``url`` with a POST back-channel
- http: request/response JSON-RPC at ``url``
"""

import uuid
from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from mcp_hub.app.config import HTTP_DEFAULT_TIMEOUT_SECONDS
from mcp_hub.app.models.common import utc_now

DEFAULT_OAUTH_REDIRECT_URI = "http://127.0.0.1:8765/api/oauth/callback"


class ConfigProvenance(BaseModel):
    """Where an imported configuration came from."""

    source_format: str = Field(..., description="Dialect the entry was imported from")
    source_path: str | None = Field(default=None, description="File the entry was read from")
    original_config: str | None = Field(default=None, description="Raw JSON of the source entry")


class OAuthSettings(BaseModel):
    """Authorization-code + PKCE settings for a remote server."""

    authorization_endpoint: str
    token_endpoint: str
    client_id: str = Field(..., min_length=1)
    client_secret: str | None = None
    scope: str | None = None
    redirect_uri: str = DEFAULT_OAUTH_REDIRECT_URI
    additional_params: dict[str, str] = Field(default_factory=dict)


class ServerBase(BaseModel):
    """Fields shared by every transport variant."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1)
    name: str = Field(..., min_length=1, description="Display name")
    description: str | None = None
    enabled: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    provenance: ConfigProvenance | None = None


def _check_url(value: str) -> str:
    value = value.strip()
    if not value.startswith(("http://", "https://")):
        raise ValueError("URL must start with http:// or https://")
    return value


class StdioServerConfig(ServerBase):
    transport: Literal["stdio"] = "stdio"
    command: str = Field(..., min_length=1, description="Executable to spawn")
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict, description="Overlay on the parent environment")
    cwd: str | None = None
    auto_restart: bool = Field(default=False, description="Respawn after an unexpected exit")


class SseServerConfig(ServerBase):
    transport: Literal["sse"] = "sse"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    sse_endpoint: str | None = Field(default=None, description="Event stream URL if it differs from url")
    post_endpoint: str | None = Field(default=None, description="Message URL, otherwise announced by the server")
    oauth: OAuthSettings | None = None

    @field_validator("url")
    @classmethod
    def _url_scheme(cls, value: str) -> str:
        return _check_url(value)


class HttpServerConfig(ServerBase):
    transport: Literal["http"] = "http"
    url: str
    method: Literal["GET", "POST"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: int = Field(default=HTTP_DEFAULT_TIMEOUT_SECONDS, ge=1, le=300, description="Request timeout in seconds")
    oauth: OAuthSettings | None = None

    @field_validator("url")
    @classmethod
    def _url_scheme(cls, value: str) -> str:
        return _check_url(value)


ServerConfiguration = Annotated[
    Union[StdioServerConfig, SseServerConfig, HttpServerConfig],
    Field(discriminator="transport"),
]
RemoteServerConfig = Union[SseServerConfig, HttpServerConfig]

server_config_adapter: TypeAdapter[ServerConfiguration] = TypeAdapter(ServerConfiguration)
server_list_adapter: TypeAdapter[list[ServerConfiguration]] = TypeAdapter(list[ServerConfiguration])


def transport_target(config: ServerConfiguration) -> str:
    """The transport-defining field: command for stdio, URL otherwise."""
    match config.transport:
        case "stdio":
            return config.command
        case "sse" | "http":
            return config.url.rstrip("/")
    raise ValueError(f"Unknown transport: {config.transport}")
