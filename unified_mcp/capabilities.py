"""
Capability aggregation: projects every running backend into tool and
resource descriptors. Nothing is cached; each call reads the registry.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, Field

from unified_mcp.models import ResourceDescriptor, ToolDescriptor
from unified_mcp.registry import BackendRegistry

NAME_SEPARATOR = "_"
RESOURCE_SCHEME = "mcp://"


class SearchArguments(BaseModel):
    query: str
    # advertised as "number"; fractional values are truncated when slicing
    limit: Union[int, float] = Field(default=10, ge=0)


class ListArguments(BaseModel):
    path: str = "/"


class ToolAction(Enum):
    SEARCH = "search"
    LIST = "list"

    @classmethod
    def parse(cls, value: str) -> Optional["ToolAction"]:
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def arguments_model(self) -> Type[BaseModel]:
        return _ARGUMENT_MODELS[self]

    def describe(self, backend: str) -> str:
        if self is ToolAction.SEARCH:
            return f"Search {backend} repository"
        return f"List files in {backend} repository"

    def input_schema(self) -> Dict[str, Any]:
        if self is ToolAction.SEARCH:
            return {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search query"},
                    "limit": {"type": "number", "default": 10},
                },
                "required": ["query"],
            }
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "default": "/"},
            },
        }


_ARGUMENT_MODELS = {
    ToolAction.SEARCH: SearchArguments,
    ToolAction.LIST: ListArguments,
}


def qualified_name(backend: str, action: ToolAction) -> str:
    return f"{backend}{NAME_SEPARATOR}{action.value}"


def split_qualified_name(name: str) -> Tuple[str, str]:
    """Split "<backend>_<action>" on the first separator."""
    backend, _, action = name.partition(NAME_SEPARATOR)
    return backend, action


def resource_uri(backend: str, path: str = "") -> str:
    return f"{RESOURCE_SCHEME}{backend}/{path.lstrip('/')}"


def split_resource_uri(uri: str) -> Tuple[str, str]:
    """Split "mcp://<backend>/<path>" into (backend, path)."""
    remainder = uri[len(RESOURCE_SCHEME):] if uri.startswith(RESOURCE_SCHEME) else uri
    backend, _, path = remainder.partition("/")
    return backend, path


class CapabilityAggregator:
    def __init__(self, registry: BackendRegistry):
        self.registry = registry

    def list_tools(self) -> List[ToolDescriptor]:
        tools = []
        for backend in self.registry.list_running():
            for action in ToolAction:
                tools.append(ToolDescriptor(
                    name=qualified_name(backend.name, action),
                    description=action.describe(backend.name),
                    input_schema=action.input_schema(),
                ))
        return tools

    def list_resources(self) -> List[ResourceDescriptor]:
        return [
            ResourceDescriptor(
                uri=resource_uri(backend.name),
                name=f"{backend.name} Repository",
                description=f"Access to {backend.name} repository files",
            )
            for backend in self.registry.list_running()
        ]
