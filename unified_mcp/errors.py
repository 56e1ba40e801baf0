"""
Error taxonomy for the unified MCP server.

Supervisor-level failures (SpawnFailure) stay inside the supervisor and only
change registry contents. RouterError subclasses are surfaced to callers as
HTTP 500 bodies or JSON-RPC error envelopes.
"""
from typing import Any, Optional

# JSON-RPC codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
SERVER_ERROR = -32000


class GatewayError(Exception):
    """Base class for every error raised by this package"""


class ConfigError(GatewayError):
    pass


class DuplicateBackend(GatewayError):
    def __init__(self, name: str):
        super().__init__(f"Backend {name} is already registered")
        self.name = name


class SpawnFailure(GatewayError):
    def __init__(self, name: str, reason: str):
        super().__init__(f"Failed to start MCP server for {name}: {reason}")
        self.name = name
        self.reason = reason


class RouterError(GatewayError):
    """A failure the router reports back to the calling transport"""
    code = SERVER_ERROR


class UnknownMethod(RouterError):
    def __init__(self, method: str):
        super().__init__(f"Unknown method: {method}")
        self.method = method


class UnknownBackend(RouterError):
    def __init__(self, backend: str):
        super().__init__(f"Repository {backend} not available")
        self.backend = backend


class UnknownAction(RouterError):
    def __init__(self, action: str):
        super().__init__(f"Unknown action: {action}")
        self.action = action


class InvalidParams(RouterError):
    pass


class InvalidArguments(RouterError):
    pass


class BackendCallFailed(RouterError):
    def __init__(self, backend: str, reason: str):
        super().__init__(f"Call to {backend} failed: {reason}")
        self.backend = backend
        self.reason = reason


class MalformedRequest(GatewayError):
    """An inbound envelope that could not be turned into a request"""

    def __init__(self, message: str, code: int = INVALID_REQUEST, request_id: Optional[Any] = None):
        super().__init__(message)
        self.code = code
        self.request_id = request_id
