"""
In-memory table of known backends and their lifecycle state.

The registry performs no I/O. It is written only by the supervisor's event
task and read by the aggregator, router and HTTP handlers, all on the same
event loop, so it carries no lock.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterator, List, Optional

from unified_mcp.errors import DuplicateBackend
from unified_mcp.models import Backend, BackendState

logger = logging.getLogger(__name__)


class BackendRegistry:
    def __init__(self):
        # dict keeps registration order
        self._backends: Dict[str, Backend] = {}

    def register(self, name: str, url: str) -> Backend:
        if name in self._backends:
            raise DuplicateBackend(name)
        backend = Backend(name=name, url=url)
        self._backends[name] = backend
        logger.debug(f"Registered backend {name} -> {url}")
        return backend

    def mark_running(self, name: str, handle: Any = None) -> Backend:
        backend = self._backends.get(name)
        if backend is None:
            raise KeyError(name)
        backend.state = BackendState.RUNNING
        backend.handle = handle
        backend.pid = getattr(handle, "pid", None)
        backend.started_at = time.time()
        return backend

    def mark_exited(self, name: str, code: Optional[int]) -> Optional[Backend]:
        """Record the exit code and drop the entry. Unknown names are ignored."""
        backend = self._backends.pop(name, None)
        if backend is None:
            return None
        backend.state = BackendState.EXITED
        backend.exit_code = code
        backend.handle = None
        return backend

    def discard(self, name: str) -> Optional[Backend]:
        """Drop an entry that never reached running."""
        return self._backends.pop(name, None)

    def get(self, name: str) -> Optional[Backend]:
        return self._backends.get(name)

    def is_running(self, name: str) -> bool:
        backend = self._backends.get(name)
        return backend is not None and backend.state is BackendState.RUNNING

    def list_running(self) -> List[Backend]:
        return [b for b in self._backends.values() if b.state is BackendState.RUNNING]

    def snapshot(self) -> List[Backend]:
        return list(self._backends.values())

    def names(self) -> List[str]:
        return list(self._backends)

    def __contains__(self, name: object) -> bool:
        return name in self._backends

    def __iter__(self) -> Iterator[Backend]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self._backends)
