"""
Data models for the Unified MCP Server
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class BackendState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


@dataclass
class Backend:
    """One supervised backend as seen by the registry"""
    name: str
    url: str
    state: BackendState = BackendState.STARTING
    handle: Any = field(default=None, repr=False, compare=False)  # owned by the supervisor
    pid: Optional[int] = None
    started_at: Optional[float] = None  # Unix timestamp
    exit_code: Optional[int] = None

    def to_process_info(self) -> Dict[str, str]:
        return {"name": self.name, "status": self.state.value, "url": self.url}


@dataclass(frozen=True)
class ToolDescriptor:
    """A tool exposed by the unified endpoint, derived from a running backend"""
    name: str
    description: str
    input_schema: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass(frozen=True)
class ResourceDescriptor:
    """An addressable resource root for one running backend"""
    uri: str
    name: str
    description: str
    mime_type: str = "application/json"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uri": self.uri,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
        }


@dataclass(frozen=True)
class LifecycleEvent:
    """Message posted by the supervisor and applied to the registry by one task"""
    kind: str  # "registered", "running", "failed", "exited"
    name: str
    url: Optional[str] = None
    handle: Any = field(default=None, compare=False)
    code: Optional[int] = None
    error: Optional[str] = None
