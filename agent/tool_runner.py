"""Tool executor.

Looks tools up by name, validates arguments against the tool's schema,
runs them with a `ToolContext`, and owns the session's pending edit. The
confirmation gate (`can_act`) is consulted before every write, append,
memory append and pending-edit apply; a denied action raises
`PermissionDenied` rather than silently doing nothing.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from langchain_core.tools import BaseTool
from pydantic import ValidationError

from agent import config
from agent.errors import (
    InvalidToolArguments,
    NoPendingEditError,
    PermissionDenied,
    StoreError,
    ToolError,
    ToolExecutionError,
    UnknownToolError,
)
from agent.guardrails import tool_logger
from agent.state import PendingEdit
from memory.documents import DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """What a running tool may touch."""

    store: DocumentStore
    ensure_can_act: Callable[[], None]
    log: Callable[[str], None]
    active_file_path: Optional[str] = None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ToolRunner:
    def __init__(
        self,
        store: DocumentStore,
        tools: list[BaseTool],
        can_act: Callable[[], bool],
        now: Callable[[], str] = _utc_now,
        on_activity: Optional[Callable[[str], None]] = None,
        get_active_file_path: Optional[Callable[[], Optional[str]]] = None,
    ):
        self._store = store
        self._tools = {t.name: t for t in tools}
        self._can_act = can_act
        self._now = now
        self._on_activity = on_activity
        self._get_active_file_path = get_active_file_path
        self._pending_edit: Optional[PendingEdit] = None

    # ── Registry ──────────────────────────────────────────────────────────

    @property
    def store(self) -> DocumentStore:
        return self._store

    @property
    def tools(self) -> list[BaseTool]:
        return list(self._tools.values())

    def get_tool(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(name)

    # ── Gate ──────────────────────────────────────────────────────────────

    def can_act(self) -> bool:
        return self._can_act()

    def ensure_can_act(self) -> None:
        if not self._can_act():
            raise PermissionDenied("Confirmation required to perform write operations.")

    # ── Execution ─────────────────────────────────────────────────────────

    async def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        """Run tool *name* with *arguments* and return its raw result.

        Raises:
            UnknownToolError: No tool is registered under *name*.
            InvalidToolArguments: A required argument is missing or mistyped.
            PermissionDenied: A write was attempted while the gate is closed.
            ToolExecutionError: The document store failed during the run.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(f"Unknown tool: {name}")

        self._emit(f"Tool: {name}")
        try:
            result = await self._invoke(tool, arguments)
        except ToolError as e:
            tool_logger.log(tool_name=name, tool_args=arguments, error=str(e))
            raise

        tool_logger.log(tool_name=name, tool_args=arguments, result_summary=str(result))

        if name == "line_edit" and isinstance(result, dict):
            self.set_pending_edit(PendingEdit.from_result(result))
        return result

    async def _invoke(self, tool: BaseTool, arguments: dict[str, Any]) -> Any:
        self._validate_args(arguments, tool)
        context = ToolContext(
            store=self._store,
            ensure_can_act=self.ensure_can_act,
            log=lambda message: logger.debug("[Tool:%s] %s", tool.name, message),
            active_file_path=self._get_active_file_path() if self._get_active_file_path else None,
        )
        try:
            return await tool.ainvoke(arguments, config={"configurable": {"tool_context": context}})
        except ValidationError as e:
            raise InvalidToolArguments(f"Invalid arguments for {tool.name}: {e}") from e
        except StoreError as e:
            raise ToolExecutionError(str(e)) from e

    def _validate_args(self, arguments: dict[str, Any], tool: BaseTool) -> None:
        for key, schema in tool.args.items():
            if key not in arguments:
                if "default" in schema:
                    continue
                raise InvalidToolArguments(f"Missing parameter: {key}")
            if schema.get("type") == "string" and not isinstance(arguments[key], str):
                raise InvalidToolArguments(f"Invalid parameter type for {key}")

    # ── Memory ────────────────────────────────────────────────────────────

    def append_memory(self, label: str, text: str) -> None:
        self.ensure_can_act()
        self._emit("Appending memory entry")
        self._store.append(config.MEMORY_PATH, f"- {self._now()} — {label}: {text}\n")

    # ── Pending edit ──────────────────────────────────────────────────────

    def set_pending_edit(self, edit: PendingEdit) -> None:
        self._pending_edit = edit

    def get_pending_edit(self) -> Optional[PendingEdit]:
        return self._pending_edit

    def clear_pending_edit(self) -> None:
        self._pending_edit = None

    def confirm_pending_edit(self) -> PendingEdit:
        """Write the staged edit to the store and clear it."""
        edit = self._pending_edit
        if edit is None:
            raise NoPendingEditError("No pending edit")
        self.ensure_can_act()
        self._emit(f"Writing: {edit.path}")
        self._store.write(edit.path, edit.updated_content)
        self.clear_pending_edit()
        return edit

    def _emit(self, message: str) -> None:
        if self._on_activity:
            self._on_activity(message)
