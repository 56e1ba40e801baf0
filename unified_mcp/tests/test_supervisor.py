"""
Supervisor tests against real child processes.

The bridge command is swapped for a short python script so the tests do not
need node or network access.
"""
import logging
import signal
import sys

import pytest
from aiohttp import test_utils

from unified_mcp.http_app import build_app
from unified_mcp.models import BackendState
from unified_mcp.router import ProtocolRouter
from unified_mcp.supervisor import Supervisor

REPOS = {"alpha": "http://alpha", "beta": "http://beta"}

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")


class HalfBrokenSupervisor(Supervisor):
    """Points one backend at a binary that does not exist."""

    def bridge_argv(self, name, url):
        if name == "broken":
            return ["/nonexistent/bridge-binary", url]
        return super().bridge_argv(name, url)


@pytest.mark.asyncio
async def test_start_all_marks_backends_running(registry, sleeper_command):
    async with Supervisor(registry, sleeper_command, shutdown_grace=2) as sup:
        started = await sup.start_all(REPOS)
        assert started == ["alpha", "beta"]
        assert [b.name for b in registry.list_running()] == ["alpha", "beta"]
        alpha = registry.get("alpha")
        assert alpha.pid == sup.children["alpha"].pid
        assert alpha.handle is sup.children["alpha"].proc


def test_bridge_argv_substitutes_placeholders(registry):
    sup = Supervisor(registry, ["bridge", "--name={name}", "{url}"])
    assert sup.bridge_argv("alpha", "http://a") == ["bridge", "--name=alpha", "http://a"]


@pytest.mark.asyncio
async def test_spawn_failure_does_not_block_others(registry, sleeper_command, caplog):
    caplog.set_level(logging.ERROR, logger="unified_mcp.supervisor")
    async with HalfBrokenSupervisor(registry, sleeper_command, shutdown_grace=2) as sup:
        started = await sup.start_all({"alpha": "http://alpha", "broken": "http://b", "beta": "http://beta"})
        assert started == ["alpha", "beta"]
        assert "broken" not in registry
        assert registry.names() == ["alpha", "beta"]
        assert "Failed to start MCP server for broken" in caplog.text


@pytest.mark.asyncio
async def test_self_exit_removes_backend(registry, script_command, sleeper_command, wait_for, caplog):
    caplog.set_level(logging.INFO, logger="unified_mcp.supervisor")

    class Mixed(Supervisor):
        def bridge_argv(self, name, url):
            if name == "quitter":
                return script_command("import sys; sys.exit(3)")
            return super().bridge_argv(name, url)

    async with Mixed(registry, sleeper_command, shutdown_grace=2) as sup:
        await sup.start_all({"alpha": "http://alpha", "quitter": "http://q"})
        await wait_for(lambda: "quitter" not in registry)
        assert registry.is_running("alpha")
        assert "quitter" not in sup.children
        assert "[quitter] Process exited with code 3" in caplog.text


@pytest.mark.asyncio
async def test_output_is_captured_and_logged(registry, sleeper_command, wait_for, caplog):
    caplog.set_level(logging.INFO, logger="unified_mcp.supervisor")
    async with Supervisor(registry, sleeper_command, shutdown_grace=2) as sup:
        await sup.start_all({"alpha": "http://alpha"})
        child = sup.children["alpha"]
        await wait_for(lambda: len(child.stdout_buffer) > 0)
        assert child.stdout_buffer[0]["line"] == "bridge ready for http://alpha"
        assert "[alpha] bridge ready for http://alpha" in caplog.text


@pytest.mark.asyncio
async def test_stderr_is_tagged(registry, script_command, wait_for, caplog):
    caplog.set_level(logging.INFO, logger="unified_mcp.supervisor")
    script = "import sys, time; print('warming up', file=sys.stderr, flush=True); time.sleep(60)"
    async with Supervisor(registry, script_command(script), shutdown_grace=2) as sup:
        await sup.start_all({"alpha": "http://alpha"})
        await wait_for(lambda: len(sup.children["alpha"].stderr_buffer) > 0)
        assert "[alpha:err] warming up" in caplog.text


@posix_only
@pytest.mark.asyncio
async def test_stop_removes_backend(registry, sleeper_command):
    async with Supervisor(registry, sleeper_command, shutdown_grace=2) as sup:
        await sup.start_all(REPOS)
        code = await sup.stop("beta")
        assert code == -signal.SIGTERM
        assert "beta" not in registry
        assert registry.is_running("alpha")
        assert await sup.stop("beta") is None


@posix_only
@pytest.mark.asyncio
async def test_leaving_the_block_reaps_every_child(registry, sleeper_command):
    async with Supervisor(registry, sleeper_command, shutdown_grace=2) as sup:
        await sup.start_all(REPOS)
        procs = [c.proc for c in sup.children.values()]
    assert all(p.returncode is not None for p in procs)
    assert len(registry) == 0
    assert sup.children == {}


@posix_only
@pytest.mark.asyncio
async def test_stubborn_child_is_killed_after_grace(registry, script_command, wait_for):
    script = (
        "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
        "print('ready', flush=True); time.sleep(60)"
    )
    async with Supervisor(registry, script_command(script), shutdown_grace=0.5) as sup:
        await sup.start_all({"alpha": "http://alpha"})
        child = sup.children["alpha"]
        await wait_for(lambda: len(child.stdout_buffer) > 0)
    assert child.proc.returncode == -signal.SIGKILL
    assert "alpha" not in registry


@pytest.mark.asyncio
async def test_shutdown_all_does_not_wait(registry, sleeper_command, wait_for):
    async with Supervisor(registry, sleeper_command, shutdown_grace=2) as sup:
        await sup.start_all(REPOS)
        sup.shutdown_all()
        await wait_for(lambda: len(registry) == 0)
        assert sup.children == {}


@pytest.mark.asyncio
async def test_already_known_name_is_skipped(registry, sleeper_command, make_running):
    make_running("alpha")
    async with Supervisor(registry, sleeper_command, shutdown_grace=2) as sup:
        assert await sup.start_all(REPOS) == ["beta"]
        assert "alpha" not in sup.children


@pytest.mark.asyncio
async def test_status_shape(registry, sleeper_command):
    async with Supervisor(registry, sleeper_command, shutdown_grace=2) as sup:
        await sup.start_all({"alpha": "http://alpha"})
        status = sup.status()
        assert list(status) == ["alpha"]
        info = status["alpha"]
        assert info["state"] == BackendState.RUNNING.value
        assert info["url"] == "http://alpha"
        assert info["pid"] == sup.children["alpha"].pid
        assert isinstance(info["stdout"], list)


# -------------------------------------------------------------------- end to end
@posix_only
@pytest.mark.asyncio
async def test_gateway_follows_backend_lifecycle(registry, sleeper_command):
    async with Supervisor(registry, sleeper_command, shutdown_grace=2) as sup:
        await sup.start_all(REPOS)
        app = build_app(ProtocolRouter(registry), registry, sup)
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            tools = (await (await client.get("/mcp/tools")).json())["tools"]
            assert len(tools) == 4

            resp = await client.post("/mcp/tools/alpha_search", json={"arguments": {"query": "foo"}})
            assert resp.status == 200
            assert "alpha" in (await resp.json())["result"]["results"][0]["path"]

            resp = await client.post("/mcp/tools/gamma_search", json={"arguments": {"query": "foo"}})
            assert resp.status == 500
            assert "gamma" in (await resp.json())["error"]

            await sup.stop("beta")

            tools = (await (await client.get("/mcp/tools")).json())["tools"]
            assert [t["name"] for t in tools] == ["alpha_search", "alpha_list"]

            resp = await client.post("/mcp/tools/beta_list", json={"arguments": {}})
            assert resp.status == 500

            health = await (await client.get("/health")).json()
            assert health["repositories"] == ["alpha"]
            assert len(health["processes"]) == len(registry.list_running()) == 1

            status = await (await client.get("/status")).json()
            assert status["alpha"]["pid"] == sup.children["alpha"].pid
