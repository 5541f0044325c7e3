"""Vault tool registry.

Every public module in this package is imported and each `BaseTool` it
defines at module level is registered under its tool name. A new tool is a
module-level ``@tool("name")`` coroutine that takes a
``config: RunnableConfig`` argument; its `ToolContext` arrives in
``config["configurable"]["tool_context"]``.
"""

import importlib
import pkgutil
from types import ModuleType
from typing import Iterator

from langchain_core.tools import BaseTool


def _tool_modules() -> Iterator[ModuleType]:
    for _, module_name, _ in pkgutil.iter_modules(__path__):  # type: ignore[name-defined]
        if not module_name.startswith("_"):
            yield importlib.import_module(f"{__name__}.{module_name}")


def get_tool_map() -> dict[str, BaseTool]:
    """Tools keyed by name.

    Raises:
        ValueError: Two modules define a tool with the same name.
    """
    registry: dict[str, BaseTool] = {}
    for module in _tool_modules():
        for value in vars(module).values():
            if not isinstance(value, BaseTool):
                continue
            existing = registry.get(value.name)
            if existing is not None and existing is not value:
                raise ValueError(f"Duplicate tool name {value.name!r} in {module.__name__}")
            registry[value.name] = value
    return registry


def get_all_tools() -> list[BaseTool]:
    return list(get_tool_map().values())
