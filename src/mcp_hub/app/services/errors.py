"""Error taxonomy shared by every hub component.

Each error carries a stable ``code`` and a ``category`` so callers can
tell authentication problems apart from transport or process failures.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    CONFIGURATION = "configuration"
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    PROCESS = "process"
    INTERNAL = "internal"


class HubError(Exception):
    """Base class for all typed hub failures."""

    code = "hub_error"
    category = ErrorCategory.INTERNAL

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


# Configuration errors

class MalformedJSON(HubError):
    code = "malformed_json"
    category = ErrorCategory.CONFIGURATION


class UnknownFormat(HubError):
    code = "unknown_format"
    category = ErrorCategory.CONFIGURATION


class InvalidConfiguration(HubError):
    code = "invalid_configuration"
    category = ErrorCategory.CONFIGURATION


# Connection errors

class ServerNotFound(HubError):
    code = "server_not_found"
    category = ErrorCategory.CONNECTION


class AlreadyInProgress(HubError):
    code = "already_in_progress"
    category = ErrorCategory.CONNECTION


class AlreadyConnected(HubError):
    code = "already_connected"
    category = ErrorCategory.CONNECTION


class NotConnected(HubError):
    code = "not_connected"
    category = ErrorCategory.CONNECTION


class TransportError(HubError):
    """Network or protocol level failure on a channel."""

    code = "transport_error"
    category = ErrorCategory.CONNECTION


class RemoteError(TransportError):
    """The server answered with a JSON-RPC error object."""

    code = "remote_error"

    def __init__(self, message: str, *, rpc_code: Optional[int] = None, data: Any = None):
        super().__init__(message, details={"rpc_code": rpc_code, "data": data})
        self.rpc_code = rpc_code
        self.data = data


# Authentication errors

class AuthenticationRequired(HubError):
    code = "authentication_required"
    category = ErrorCategory.AUTHENTICATION


class AuthenticationFailed(HubError):
    code = "authentication_failed"
    category = ErrorCategory.AUTHENTICATION


class OAuthStateMismatch(HubError):
    code = "oauth_state_mismatch"
    category = ErrorCategory.AUTHENTICATION


class TokenExchangeFailed(HubError):
    code = "token_exchange_failed"
    category = ErrorCategory.AUTHENTICATION


class TokenRefreshFailed(HubError):
    code = "token_refresh_failed"
    category = ErrorCategory.AUTHENTICATION


# Process errors

class ProcessSpawnFailed(HubError):
    code = "process_spawn_failed"
    category = ErrorCategory.PROCESS


class RestartLimitExceeded(HubError):
    code = "restart_limit_exceeded"
    category = ErrorCategory.PROCESS


class ProcessNotFound(HubError):
    code = "process_not_found"
    category = ErrorCategory.PROCESS
