"""
JSON-RPC 2.0 envelopes shared by the WebSocket channel and POST /mcp.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ValidationError

from unified_mcp.errors import INVALID_REQUEST, PARSE_ERROR, SERVER_ERROR, MalformedRequest, RouterError

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"


class JsonRpcRequest(BaseModel):
    """JSON-RPC 2.0 request."""
    jsonrpc: str = JSONRPC_VERSION
    id: Any = None
    method: str
    params: Optional[Dict[str, Any]] = None

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set


def result_envelope(request_id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_envelope(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def parse_envelope(raw: Union[str, bytes]) -> JsonRpcRequest:
    """Turn one inbound frame into a request or raise MalformedRequest."""
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedRequest(f"Parse error: {e}", code=PARSE_ERROR) from e

    if not isinstance(data, dict):
        raise MalformedRequest("Invalid request: expected a JSON object")

    try:
        return JsonRpcRequest.model_validate(data)
    except ValidationError as e:
        raise MalformedRequest(
            f"Invalid request: {_describe(e)}", code=INVALID_REQUEST, request_id=data.get("id")
        ) from e


async def dispatch_envelope(router, raw: Union[str, bytes]) -> Optional[Dict[str, Any]]:
    """
    Handle one inbound envelope end to end.

    Returns the reply envelope, or None for a notification. Never raises for
    bad input: malformed frames and router failures become error envelopes.
    """
    try:
        request = parse_envelope(raw)
    except MalformedRequest as e:
        logger.warning(f"Malformed request: {e}")
        return error_envelope(e.request_id, e.code, str(e))

    try:
        result = await router.handle(request.method, request.params)
    except RouterError as e:
        logger.info(f"{request.method} failed: {e}")
        reply = error_envelope(request.id, e.code, str(e))
    except Exception as e:
        logger.exception(f"Unexpected error handling {request.method}")
        reply = error_envelope(request.id, SERVER_ERROR, str(e) or e.__class__.__name__)
    else:
        reply = result_envelope(request.id, result)

    if request.is_notification:
        return None
    return reply


def _describe(e: ValidationError) -> str:
    err = e.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ())) or "request"
    return f"{field}: {err.get('msg', 'invalid value')}"
