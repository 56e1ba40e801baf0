"""
Protocol router: maps the generic MCP methods onto the live backends.

Every request is independent. The dispatch table is fixed at construction;
tool names are split into (backend, action) and the action is checked against
ToolAction before any payload is produced. The router only reads the registry.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from unified_mcp import SERVER_NAME, __version__
from unified_mcp.capabilities import (
    CapabilityAggregator,
    ToolAction,
    split_qualified_name,
    split_resource_uri,
)
from unified_mcp.errors import InvalidArguments, InvalidParams, UnknownAction, UnknownBackend, UnknownMethod
from unified_mcp.proxy import SimulatedProxy
from unified_mcp.registry import BackendRegistry

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class ProtocolRouter:
    def __init__(
        self,
        registry: BackendRegistry,
        proxy=None,
        aggregator: Optional[CapabilityAggregator] = None,
        version: str = __version__,
    ):
        self.registry = registry
        self.aggregator = aggregator or CapabilityAggregator(registry)
        self.proxy = proxy or SimulatedProxy()
        self.version = version
        self._handlers: Dict[str, Handler] = {
            "initialize": self._initialize,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "resources/list": self._resources_list,
            "resources/read": self._resources_read,
        }

    @property
    def methods(self) -> List[str]:
        return list(self._handlers)

    async def handle(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        handler = self._handlers.get(method)
        if handler is None:
            raise UnknownMethod(method)
        logger.debug(f"Dispatching {method}")
        return await handler(params or {})

    # ---------------------------------------------------------------- operations
    def initialize(self) -> Dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {
                "tools": {},
                "resources": {},
            },
            "serverInfo": {
                "name": SERVER_NAME,
                "version": self.version,
            },
        }

    def list_tools(self) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self.aggregator.list_tools()]

    def list_resources(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.aggregator.list_resources()]

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        backend_name, action_name = split_qualified_name(name)

        backend = self.registry.get(backend_name)
        if backend is None or not self.registry.is_running(backend_name):
            raise UnknownBackend(backend_name)

        action = ToolAction.parse(action_name)
        if action is None:
            raise UnknownAction(action_name)

        try:
            args = action.arguments_model.model_validate(arguments or {})
        except ValidationError as e:
            raise InvalidArguments(f"Invalid arguments for {name}: {_first_error(e)}") from e

        logger.info(f"tools/call {action.value} on {backend_name}")
        return await self.proxy.call_tool(backend, action, args)

    async def read_resource(self, uri: str) -> Any:
        backend_name, path = split_resource_uri(uri)
        return await self.proxy.read_resource(
            backend_name, path, uri, backend=self.registry.get(backend_name)
        )

    # ---------------------------------------------------------------- handlers
    async def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.initialize()

    async def _tools_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"tools": self.list_tools()}

    async def _resources_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"resources": self.list_resources()}

    async def _tools_call(self, params: Dict[str, Any]) -> Any:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidParams("tools/call requires a string 'name'")
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise InvalidParams("tools/call 'arguments' must be an object")
        return await self.call_tool(name, arguments)

    async def _resources_read(self, params: Dict[str, Any]) -> Any:
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri:
            raise InvalidParams("resources/read requires a string 'uri'")
        return await self.read_resource(uri)


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    where = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
    return f"{where}: {err.get('msg', 'invalid value')}"
