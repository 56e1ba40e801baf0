#!/usr/bin/env python3
# unified_mcp_server.py – one endpoint in front of several MCP backends
#
# CLI -----------------------------------------------------
#   python unified_mcp_server.py serve                [--port 3000] [--config unified_mcp.toml]
#   python unified_mcp_server.py health               [--port 3000]
#   python unified_mcp_server.py status               [--port 3000]
#   python unified_mcp_server.py tools                [--port 3000]
#   python unified_mcp_server.py resources            [--port 3000]
#   python unified_mcp_server.py call NAME [--args J] [--port 3000]
#   python unified_mcp_server.py read PATH            [--port 3000]
# ---------------------------------------------------------
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import web
from rich.console import Console

from unified_mcp.config import GatewayConfig, load_config
from unified_mcp.errors import ConfigError
from unified_mcp.http_app import build_app
from unified_mcp.logging_setup import setup_logging
from unified_mcp.proxy import McpProxy, SimulatedProxy
from unified_mcp.registry import BackendRegistry
from unified_mcp.router import ProtocolRouter
from unified_mcp.supervisor import Supervisor

logger = logging.getLogger("unified_mcp")
console = Console()


# ==================================================================== runners
async def run_serve(config: GatewayConfig) -> int:
    registry = BackendRegistry()
    proxy = McpProxy(config.rpc_timeout) if config.forward_calls else SimulatedProxy()
    router = ProtocolRouter(registry, proxy=proxy, version=config.version)
    stop_ev = asyncio.Event()

    def _stop(*_): stop_ev.set()

    async with Supervisor(registry, config.bridge_command, shutdown_grace=config.shutdown_grace) as sup:
        runner = web.AppRunner(build_app(router, registry, sup)); await runner.setup()
        site   = web.TCPSite(runner, config.host, config.port); await site.start()
        logger.info(f"Unified MCP Server running on port {config.port}")

        # cross-platform signal handling
        if sys.platform != "win32":
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, _stop)
        else:
            signal.signal(signal.SIGINT, _stop)

        try:
            await sup.start_all(config.repositories)
            await stop_ev.wait()
        finally:
            logger.info("Shutting down MCP servers...")
            sup.shutdown_all()
            await runner.cleanup()
    return 0


async def client_call(base_url: str, verb: str, target: Optional[str] = None,
                      arguments: Optional[Dict[str, Any]] = None) -> int:
    async with aiohttp.ClientSession() as s:
        try:
            if verb in ("health", "status"):
                r = await s.get(f"{base_url}/{verb}")
            elif verb in ("tools", "resources"):
                r = await s.get(f"{base_url}/mcp/{verb}")
            elif verb == "call":
                r = await s.post(f"{base_url}/mcp/tools/{target}", json={"arguments": arguments or {}})
            elif verb == "read":
                r = await s.get(f"{base_url}/mcp/resources/{target.lstrip('/')}")
            else:
                raise SystemExit(f"unknown verb {verb}")
            console.print_json(data=await r.json())
            return 0 if r.status < 400 else 1
        except aiohttp.ClientConnectorError:
            console.print("[red]Error: Could not connect to server (is it running?)[/red]")
            return 1


# ==================================================================== CLI
def _parser():
    p = argparse.ArgumentParser(description="Unified MCP server")
    p.add_argument("--config", help="TOML settings file (default: $UNIFIED_MCP_CONFIG or unified_mcp.toml)")
    p.add_argument("--host")
    p.add_argument("--port", type=int)
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)
    for verb in ("serve", "health", "status", "tools", "resources"):
        sub.add_parser(verb)
    call = sub.add_parser("call")
    call.add_argument("target", help="Qualified tool name, e.g. context7_search")
    call.add_argument("--args", default="{}", help="Tool arguments as a JSON object")
    read = sub.add_parser("read")
    read.add_argument("target", help="Resource path, e.g. context7/README.md")
    return p


def main(argv=None):
    a = _parser().parse_args(argv)
    setup_logging(a.verbose)
    try:
        config = load_config(a.config).with_overrides(host=a.host, port=a.port)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(2)

    if a.cmd == "serve":
        sys.exit(asyncio.run(run_serve(config)))

    arguments = None
    if a.cmd == "call":
        try:
            arguments = json.loads(a.args)
        except ValueError as e:
            raise SystemExit(f"--args is not valid JSON: {e}")
    host = "127.0.0.1" if config.host in ("0.0.0.0", "::") else config.host
    sys.exit(asyncio.run(client_call(f"http://{host}:{config.port}", a.cmd,
                                     getattr(a, "target", None), arguments)))


if __name__ == "__main__":
    main()
