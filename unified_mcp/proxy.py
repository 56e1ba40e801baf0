"""
Backend proxies produce the payload of tools/call and resources/read once the
router has resolved the target backend.

SimulatedProxy answers locally with placeholder content. McpProxy opens an MCP
client session to the backend endpoint over streamable HTTP and forwards the
call, keeping the same argument and result contract.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel

from mcp.client.session import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from unified_mcp.capabilities import ListArguments, SearchArguments, ToolAction
from unified_mcp.config import TIMEOUT_RPC
from unified_mcp.errors import BackendCallFailed
from unified_mcp.models import Backend

logger = logging.getLogger(__name__)


class SimulatedProxy:
    """Placeholder results; no traffic reaches the backend."""

    async def call_tool(self, backend: Backend, action: ToolAction, arguments: BaseModel) -> Dict[str, Any]:
        if action is ToolAction.SEARCH:
            return self._search(backend.name, arguments)
        return self._list(arguments)

    async def read_resource(self, backend_name: str, path: str, uri: str,
                            backend: Optional[Backend] = None) -> Dict[str, Any]:
        return {
            "contents": [
                {
                    "uri": uri,
                    "mimeType": "text/plain",
                    "text": f"Content of {path} from {backend_name} repository",
                }
            ]
        }

    @staticmethod
    def _search(name: str, args: SearchArguments) -> Dict[str, Any]:
        results = [
            {
                "path": f"/{name}/example.md",
                "content": f'Search results for "{args.query}" in {name}',
                "score": 0.95,
            }
        ]
        return {"results": results[:int(args.limit)]}

    @staticmethod
    def _list(args: ListArguments) -> Dict[str, Any]:
        base = args.path.rstrip("/")
        return {
            "files": [
                {"name": "README.md", "type": "file", "path": f"{base}/README.md"},
                {"name": "docs", "type": "directory", "path": f"{base}/docs/"},
            ]
        }


class McpProxy:
    """Forwards calls to the backend's own MCP endpoint."""

    def __init__(self, timeout: float = TIMEOUT_RPC):
        self.timeout = timeout

    async def call_tool(self, backend: Backend, action: ToolAction, arguments: BaseModel) -> Dict[str, Any]:
        async with self._session(backend.name, backend.url) as session:
            result = await self._bounded(
                backend.name, session.call_tool(action.value, arguments.model_dump())
            )
        return _to_obj(result)

    async def read_resource(self, backend_name: str, path: str, uri: str,
                            backend: Optional[Backend] = None) -> Dict[str, Any]:
        if backend is None:
            raise BackendCallFailed(backend_name, "backend is not running")
        async with self._session(backend_name, backend.url) as session:
            result = await self._bounded(backend_name, session.read_resource(uri))
        return _to_obj(result)

    @contextlib.asynccontextmanager
    async def _session(self, name: str, url: str):
        logger.debug(f"Opening MCP session to {name} at {url}")
        try:
            async with streamablehttp_client(url) as (read, write, _):
                async with ClientSession(read, write) as session:
                    await self._bounded(name, session.initialize())
                    yield session
        except Exception as e:
            cause = _leaf(e)
            if isinstance(cause, BackendCallFailed):
                raise BackendCallFailed(name, cause.reason) from e
            raise BackendCallFailed(name, str(cause) or cause.__class__.__name__) from e

    async def _bounded(self, name: str, coro):
        try:
            return await asyncio.wait_for(coro, self.timeout)
        except asyncio.TimeoutError as e:
            raise BackendCallFailed(name, f"timed out after {self.timeout}s") from e


def _leaf(exc: BaseException) -> BaseException:
    """First leaf of a (possibly nested) exception group raised by the transport task group."""
    while getattr(exc, "exceptions", None):
        exc = exc.exceptions[0]
    return exc


def _to_obj(result: Any) -> Dict[str, Any]:
    if isinstance(result, dict):
        return result
    return json.loads(result.model_dump_json(by_alias=True, exclude_none=True))
