"""
aiohttp façade: REST routes, JSON-RPC over HTTP and the WebSocket channel.

Every route calls into the same ProtocolRouter. Router failures become HTTP 500
with {"error": message}; on the channel they become JSON-RPC error envelopes.
"""
from __future__ import annotations

import dataclasses
import datetime
import enum
import json
import logging
from functools import partial, wraps
from typing import Any, Optional

from aiohttp import WSMsgType, web
from aiohttp_cors import ResourceOptions, setup as cors_setup

from unified_mcp import SERVER_NAME
from unified_mcp.errors import RouterError
from unified_mcp.jsonrpc import dispatch_envelope
from unified_mcp.registry import BackendRegistry
from unified_mcp.router import ProtocolRouter

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------- JSON encoding
class GatewayEncoder(json.JSONEncoder):
    def default(self, obj):
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        if dataclasses.is_dataclass(obj):
            return dataclasses.asdict(obj)
        if isinstance(obj, enum.Enum):
            return obj.value
        if hasattr(obj, "model_dump_json"):
            return json.loads(obj.model_dump_json())
        if isinstance(obj, datetime.datetime):
            return obj.isoformat()
        return super().default(obj)

_dumps = partial(json.dumps, cls=GatewayEncoder)

def utc_timestamp() -> str:
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")

# ==================================================================== aiohttp façade
def build_app(router: ProtocolRouter, registry: BackendRegistry, supervisor=None) -> web.Application:
    app = web.Application()

    cors = cors_setup(app, defaults={
        "*": ResourceOptions(
            allow_credentials=True,
            expose_headers="*",
            allow_headers="*",
            allow_methods="*"
        ),
    })

    app.router.add_get ("/",                         partial(_channel, router=router))
    app.router.add_get ("/mcp/ws",                   partial(_channel, router=router))
    app.router.add_get ("/health",                   partial(_health, registry=registry))
    app.router.add_get ("/status",                   partial(_status, registry=registry, supervisor=supervisor))
    app.router.add_post("/mcp",                      partial(_rpc, router=router))
    app.router.add_get ("/mcp/tools",                partial(_tools, router=router))
    app.router.add_post("/mcp/tools/{tool_name}",    partial(_call, router=router))
    app.router.add_get ("/mcp/resources",            partial(_resources, router=router))
    app.router.add_get ("/mcp/resources/{path:.*}",  partial(_read, router=router))

    for route in list(app.router.routes()):
        cors.add(route)

    return app

def health(registry: BackendRegistry) -> dict:
    backends = registry.snapshot()
    return {
        "status": "healthy",
        "timestamp": utc_timestamp(),
        "repositories": [b.name for b in backends],
        "processes": [b.to_process_info() for b in backends],
    }

def _guarded(handler):
    """Turn router failures into HTTP 500 with an error body."""
    @wraps(handler)
    async def wrapper(req, **kwargs):
        try:
            payload = await handler(req, **kwargs)
        except RouterError as e:
            logger.info(f"Request to {req.path} failed: {e}")
            return web.json_response({"error": str(e)}, status=500, dumps=_dumps)
        except Exception as e:
            logger.exception(f"Unexpected error while handling {req.path}")
            return web.json_response({"error": str(e) or e.__class__.__name__}, status=500, dumps=_dumps)
        return web.json_response(payload, dumps=_dumps)
    return wrapper

async def _health(req, registry: BackendRegistry):
    return web.json_response(health(registry), dumps=_dumps)

async def _status(req, registry: BackendRegistry, supervisor):
    if supervisor is None:
        payload = {b.name: {"state": b.state.value, "url": b.url, "pid": b.pid} for b in registry.snapshot()}
    else:
        payload = supervisor.status()
    return web.json_response(payload, dumps=_dumps)

@_guarded
async def _tools(req, router: ProtocolRouter):
    return {"tools": router.list_tools()}

@_guarded
async def _resources(req, router: ProtocolRouter):
    return {"resources": router.list_resources()}

@_guarded
async def _call(req, router: ProtocolRouter):
    body = await _read_json_body(req)
    arguments = body.get("arguments") if isinstance(body, dict) else None
    result = await router.call_tool(req.match_info["tool_name"], arguments or {})
    return {"result": result}

@_guarded
async def _read(req, router: ProtocolRouter):
    return await router.read_resource(f"mcp://{req.match_info['path']}")

async def _rpc(req, router: ProtocolRouter):
    reply = await dispatch_envelope(router, await req.read())
    if reply is None:
        return web.Response(status=202)
    return web.json_response(reply, dumps=_dumps)

async def _read_json_body(req) -> Optional[Any]:
    raw = await req.text()
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.debug("Ignoring request body that is not JSON")
        return None

def _index(router: ProtocolRouter) -> dict:
    return {
        "name": SERVER_NAME,
        "version": router.version,
        "methods": router.methods,
        "websocket": ["/", "/mcp/ws"],
    }

# ==================================================================== channel
async def _channel(req, router: ProtocolRouter):
    ws = web.WebSocketResponse(heartbeat=30)
    if not ws.can_prepare(req).ok:
        return web.json_response(_index(router), dumps=_dumps)
    await ws.prepare(req)
    logger.info("New MCP WebSocket connection")

    # frames are handled one at a time so replies keep request order
    async for msg in ws:
        if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
            reply = await dispatch_envelope(router, msg.data)
        elif msg.type == WSMsgType.ERROR:
            logger.warning(f"WebSocket error: {ws.exception()}")
            continue
        else:
            continue

        if reply is None:
            continue
        if ws.closed:
            logger.debug("Connection closed before reply could be sent, dropping it")
            break
        try:
            await ws.send_str(_dumps(reply))
        except ConnectionResetError:
            logger.debug("Connection reset while sending reply, dropping it")
            break

    logger.info("MCP WebSocket connection closed")
    return ws
