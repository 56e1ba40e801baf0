"""
Backend process supervisor.

One long-lived bridge subprocess per configured backend, spawned in its own
process group. Output is logged line by line with the backend tag; an exit
watcher reports the return code. Every registry change travels as a
LifecycleEvent through one queue and is applied by a single consumer task.
"""
from __future__ import annotations

import asyncio
import contextlib
import datetime
import logging
import os
import signal
import sys
import time
from collections import deque
from typing import Dict, List, Mapping, Optional, Sequence

from unified_mcp.config import DEFAULT_BRIDGE_COMMAND, SHUTDOWN_GRACE
from unified_mcp.errors import SpawnFailure
from unified_mcp.models import LifecycleEvent
from unified_mcp.registry import BackendRegistry

logger = logging.getLogger(__name__)

OUTPUT_BUFFER_LIMIT = 200   # lines kept per stream
DRAIN_TIMEOUT = 1.0         # s - reading output left after exit
SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


def iso_now() -> str:
    return datetime.datetime.now().isoformat()


# ==================================================================== Child
class Child:
    """A spawned bridge process and the tasks that watch it."""

    def __init__(self, name: str, url: str, proc: asyncio.subprocess.Process):
        self.name = name
        self.url = url
        self.proc = proc
        self.pid = proc.pid
        self.started_at = time.time()
        self.stdout_buffer: deque = deque(maxlen=OUTPUT_BUFFER_LIMIT)
        self.stderr_buffer: deque = deque(maxlen=OUTPUT_BUFFER_LIMIT)
        self.last_output_renewal: Optional[str] = None
        self._stdout_task = asyncio.create_task(self._capture(proc.stdout, self.stdout_buffer, "stdout"))
        self._stderr_task = asyncio.create_task(self._capture(proc.stderr, self.stderr_buffer, "stderr"))
        self.watcher: Optional[asyncio.Task] = None

    async def _capture(self, stream, buffer, stream_name):
        if stream is None:
            return
        try:
            while True:
                line = await stream.readline()
                if not line:
                    break
                decoded = line.decode("utf-8", errors="replace").rstrip("\r\n")
                if not decoded.strip():
                    continue
                entry = {"timestamp": iso_now(), "line": decoded}
                buffer.append(entry)
                self.last_output_renewal = entry["timestamp"]
                if stream_name == "stderr":
                    logger.warning(f"[{self.name}:err] {decoded}")
                else:
                    logger.info(f"[{self.name}] {decoded}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{self.name} {stream_name} capture error: {e}")

    async def wait(self) -> Optional[int]:
        code = await self.proc.wait()
        # grandchildren may keep the pipes open, so the drain is bounded
        await asyncio.wait([self._stdout_task, self._stderr_task], timeout=DRAIN_TIMEOUT)
        return code

    @property
    def running(self) -> bool:
        return self.proc.returncode is None

    def send_signal(self, sig: int = signal.SIGTERM) -> bool:
        """Signal the whole process group. Returns False if it is already gone."""
        if not self.running:
            return False
        try:
            if sys.platform != "win32":
                os.killpg(self.pid, sig)
            elif sig == SIGKILL:
                self.proc.kill()
            else:
                self.proc.terminate()
        except ProcessLookupError:
            return False
        return True

    def cancel_capture(self):
        for task in (self._stdout_task, self._stderr_task):
            if not task.done():
                task.cancel()

    def info(self) -> dict:
        return {
            "state": "running" if self.running else "exited",
            "url": self.url,
            "pid": self.pid,
            "uptime": round(time.time() - self.started_at, 1),
            "last_output_renewal": self.last_output_renewal,
            "stdout": list(self.stdout_buffer)[-20:],
            "stderr": list(self.stderr_buffer)[-20:],
        }


# ==================================================================== Supervisor
class Supervisor:
    """
    Owns every backend subprocess and is the only writer of the registry.

    Use as an async context manager: leaving the block on any path signals
    all children, reaps them and stops the event consumer.
    """

    def __init__(
        self,
        registry: BackendRegistry,
        command: Sequence[str] = DEFAULT_BRIDGE_COMMAND,
        env: Optional[Mapping[str, str]] = None,
        shutdown_grace: float = SHUTDOWN_GRACE,
    ):
        self.registry = registry
        self.command = tuple(command)
        self.env = dict(env) if env is not None else {**os.environ, "NODE_ENV": "production"}
        self.shutdown_grace = shutdown_grace
        self.children: Dict[str, Child] = {}
        self._events: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "Supervisor":
        self._ensure_consumer()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    # ---------------------------------------------------------------- lifecycle
    async def start_all(self, repositories: Mapping[str, str]) -> List[str]:
        """Spawn every configured backend; one failure never blocks the rest."""
        self._ensure_consumer()
        logger.info("Initializing MCP servers...")
        started = []
        for name, url in repositories.items():
            if name in self.registry or name in self.children:
                logger.warning(f"{name} is already known, skipping")
                continue
            self._post(LifecycleEvent("registered", name, url=url))
            try:
                child = await self._spawn(name, url)
            except SpawnFailure as e:
                logger.error(str(e))
                self._post(LifecycleEvent("failed", name, error=e.reason))
                continue
            self.children[name] = child
            self._post(LifecycleEvent("running", name, handle=child.proc))
            child.watcher = asyncio.create_task(self._watch(child))
            started.append(name)
        await self._events.join()
        return started

    async def stop(self, name: str) -> Optional[int]:
        """Terminate one backend and wait until its exit is in the registry."""
        child = self.children.get(name)
        if child is None:
            return None
        child.send_signal(signal.SIGTERM)
        if child.watcher is not None:
            await child.watcher
        await self._events.join()
        return child.proc.returncode

    def shutdown_all(self) -> None:
        """Send SIGTERM to every backend process group. Does not wait."""
        for name, child in list(self.children.items()):
            if child.send_signal(signal.SIGTERM):
                logger.info(f"Sent SIGTERM to {name} (pid {child.pid})")

    async def aclose(self) -> None:
        self.shutdown_all()
        watchers = [c.watcher for c in self.children.values() if c.watcher is not None]
        if watchers:
            _, pending = await asyncio.wait(watchers, timeout=self.shutdown_grace)
            if pending:
                for child in list(self.children.values()):
                    if child.send_signal(SIGKILL):
                        logger.warning(f"Killed {child.name} (pid {child.pid}) after {self.shutdown_grace}s")
                await asyncio.wait(pending, timeout=self.shutdown_grace)
        for child in list(self.children.values()):
            child.cancel_capture()
        if self._events is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._events.join(), timeout=self.shutdown_grace)
        if self._consumer is not None:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
            self._consumer = None

    def status(self) -> dict:
        out = {}
        for backend in self.registry.snapshot():
            child = self.children.get(backend.name)
            info = child.info() if child else {"url": backend.url, "pid": None}
            info["state"] = backend.state.value
            out[backend.name] = info
        return out

    # ---------------------------------------------------------------- internals
    def bridge_argv(self, name: str, url: str) -> List[str]:
        return [part.format(name=name, url=url) for part in self.command]

    async def _spawn(self, name: str, url: str) -> Child:
        argv = self.bridge_argv(name, url)
        logger.info(f"Starting MCP server for {name}...")
        logger.debug(f"Spawning {name} with command: {argv}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            raise SpawnFailure(name, str(e)) from e
        return Child(name, url, proc)

    async def _watch(self, child: Child):
        code = await child.wait()
        self._post(LifecycleEvent("exited", child.name, code=code))

    def _post(self, event: LifecycleEvent):
        self._events.put_nowait(event)

    def _ensure_consumer(self):
        if self._events is None:
            self._events = asyncio.Queue()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume())

    async def _consume(self):
        while True:
            event = await self._events.get()
            try:
                self._apply(event)
            except Exception:
                logger.exception(f"Failed to apply {event.kind} event for {event.name}")
            finally:
                self._events.task_done()

    def _apply(self, event: LifecycleEvent):
        if event.kind == "registered":
            self.registry.register(event.name, event.url)
        elif event.kind == "running":
            self.registry.mark_running(event.name, event.handle)
        elif event.kind == "failed":
            self.registry.discard(event.name)
        elif event.kind == "exited":
            self.registry.mark_exited(event.name, event.code)
            child = self.children.pop(event.name, None)
            if child is not None:
                child.cancel_capture()
            logger.info(f"[{event.name}] Process exited with code {event.code}")
        else:
            raise ValueError(f"unknown lifecycle event {event.kind!r}")
