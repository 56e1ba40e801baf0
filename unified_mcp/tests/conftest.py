import asyncio
import sys
import time

import pytest
import pytest_asyncio
from aiohttp import test_utils

from unified_mcp.http_app import build_app
from unified_mcp.registry import BackendRegistry
from unified_mcp.router import ProtocolRouter

SLEEPER = "import sys, time; print('bridge ready for', sys.argv[1], flush=True); time.sleep(60)"


@pytest.fixture
def registry():
    return BackendRegistry()


@pytest.fixture
def make_running(registry):
    """Register backends straight into the registry, bypassing subprocesses."""
    def _make(*names, url_prefix="http://"):
        for name in names:
            registry.register(name, f"{url_prefix}{name}")
            registry.mark_running(name, handle=None)
        return registry
    return _make


@pytest.fixture
def sleeper_command():
    return [sys.executable, "-c", SLEEPER, "{url}"]


@pytest.fixture
def script_command():
    def _command(script):
        return [sys.executable, "-c", script, "{url}"]
    return _command


@pytest.fixture
def wait_for():
    async def _wait(predicate, timeout=10.0, interval=0.02):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)
    return _wait


@pytest_asyncio.fixture
async def client(registry, make_running):
    make_running("alpha", "beta")
    app = build_app(ProtocolRouter(registry), registry)
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        yield client
