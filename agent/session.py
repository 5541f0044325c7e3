"""Chat sessions.

A `ChatSession` is the explicit per-chat context (messages, settings,
confirmation state, last header, last document, active file). The
`Assistant` wires a session to the vault, the rule loader, the tools, the
model client and the agent loop, and persists sessions through the chat
store.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from langchain_core.messages import BaseMessage, HumanMessage
from langchain_core.tools import BaseTool

from agent import config
from agent.config import AgentSettings
from agent.errors import InvalidStateError, StoreError
from agent.graph import run_agent_loop
from agent.history import build_conversation_history, ends_with_tool_result
from agent.model_client import ModelClient
from agent.prompts import build_prompt, describe_tools
from agent.state import AgentCallbacks, ModelResponse, ParsedHeader, PendingEdit, ToolExecutionResult
from agent.state_machine import StateMachine, default_state_machine
from agent.tool_runner import ToolRunner
from memory.documents import DocumentStore, FileSystemStore
from memory.rules import RuleManager
from memory.schema import DEFAULT_CHAT_TITLE, ChatRecord
from memory.store import ChatStore, decode_messages, derive_chat_title, encode_messages, utc_now
from tools import get_all_tools

logger = logging.getLogger(__name__)


@dataclass
class ChatSession:
    """Everything one chat needs between turns."""

    chat_id: str
    title: str = DEFAULT_CHAT_TITLE
    created_at: str = ""
    settings: AgentSettings = field(default_factory=AgentSettings)
    messages: list[BaseMessage] = field(default_factory=list)
    state_machine: StateMachine = field(default_factory=default_state_machine)
    header: Optional[ParsedHeader] = None
    last_document: Optional[dict[str, str]] = None
    active_file_path: Optional[str] = None

    @property
    def is_named(self) -> bool:
        return bool(self.title.strip()) and self.title != DEFAULT_CHAT_TITLE

    def apply_header(self, header: ParsedHeader) -> None:
        """Feed a reported header into the confirmation state machine."""
        self.header = header
        try:
            self.state_machine.set_state(header.state)
        except InvalidStateError:
            logger.warning("Ignoring unknown state %r reported by the model", header.state)
            return
        self.state_machine.set_needs_confirmation(header.needs_confirmation)

    def to_record(self, now: str) -> ChatRecord:
        return {
            "meta": {
                "id": self.chat_id,
                "title": self.title,
                "createdAt": self.created_at or now,
                "updatedAt": now,
            },
            "settings": self.settings.to_dict(),
            "state": {
                "header": self.header.to_dict() if self.header else None,
                "state": self.state_machine.state,
            },
            "messages": encode_messages(self.messages),
            "lastDocument": self.last_document,
        }

    @classmethod
    def from_record(cls, record: ChatRecord, global_settings: AgentSettings) -> "ChatSession":
        """Restore a saved chat; its budgets survive, backend and model follow *global_settings*."""
        settings = AgentSettings().merge(record.get("settings")).merge(
            {"base_url": global_settings.base_url, "model": global_settings.model}
        )
        session = cls(
            chat_id=record["meta"]["id"],
            title=record["meta"].get("title") or DEFAULT_CHAT_TITLE,
            created_at=record["meta"].get("createdAt", ""),
            settings=settings,
            messages=decode_messages(record.get("messages") or []),
            header=ParsedHeader.from_dict(record.get("state", {}).get("header")),
            last_document=record.get("lastDocument"),
        )
        try:
            session.state_machine.set_state(record.get("state", {}).get("state", "idle"))
        except InvalidStateError:
            logger.warning("Saved chat %s has an unknown state; starting idle", session.chat_id)
        return session


class Assistant:
    """Runs user messages through the agent loop for one active session."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[AgentSettings] = None,
        model: Optional[Any] = None,
        tools: Optional[list[BaseTool]] = None,
        on_activity: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.settings = settings or AgentSettings()
        self.rules = RuleManager(store)
        self.chats = ChatStore(store)
        self.tools = tools if tools is not None else get_all_tools()
        self._model = model
        self._on_activity = on_activity
        self.session = self._fresh_session()
        self.runner = self._build_runner()

    # ── Session lifecycle ─────────────────────────────────────────────────

    def _fresh_session(self) -> ChatSession:
        record = self.chats.create_chat(DEFAULT_CHAT_TITLE, self.settings.to_dict())
        return ChatSession(
            chat_id=record["meta"]["id"],
            created_at=record["meta"]["createdAt"],
            settings=self.settings.merge(),
        )

    def _build_runner(self) -> ToolRunner:
        return ToolRunner(
            self.store,
            self.tools,
            can_act=lambda: self.session.state_machine.can_act(),
            on_activity=self._on_activity,
            get_active_file_path=lambda: self.session.active_file_path,
        )

    def new_chat(self) -> ChatSession:
        self.session = self._fresh_session()
        self.runner = self._build_runner()
        return self.session

    def load(self, chat_id: str) -> ChatSession:
        self.session = ChatSession.from_record(self.chats.load_chat(chat_id), self.settings)
        self.runner = self._build_runner()
        return self.session

    def save(self) -> None:
        now = utc_now()
        self.chats.save_chat(self.session.to_record(now))

    def delete(self, chat_id: str) -> None:
        self.chats.delete_chat(chat_id)
        if chat_id == self.session.chat_id:
            self.new_chat()

    # ── Prompt ────────────────────────────────────────────────────────────

    def _model_client(self) -> Any:
        if self._model is not None:
            return self._model
        settings = self.session.settings
        return ModelClient(
            base_url=settings.base_url,
            model=settings.model,
            max_context_chars=settings.max_context_chars,
        )

    def _load_named_rules(self) -> dict[str, str]:
        try:
            files = self.rules.list_rule_files()
        except StoreError as e:
            logger.warning("Could not list rule files: %s", e)
            return {}
        names = [os.path.basename(path) for path in files if path.endswith(".md")]
        return self.rules.load_rules(names)

    def _active_note(self) -> Optional[str]:
        path = self.session.active_file_path
        if not (self.session.settings.include_active_note and path):
            return None
        try:
            return self.store.read(path)
        except StoreError as e:
            logger.warning("Could not read active note %s: %s", path, e)
            return None

    def _prompt_builder(self, selection: Optional[str]) -> Callable[[list[BaseMessage]], str]:
        settings = self.session.settings
        core = self.rules.load_core()
        memory = self.rules.load_memory()
        named_rules = self._load_named_rules()
        catalog = describe_tools(self.tools)
        active_note = self._active_note()

        def build(history: list[BaseMessage]) -> str:
            user_message = next(
                (str(m.content) for m in reversed(history) if isinstance(m, HumanMessage)),
                "",
            )
            rendered = build_conversation_history(
                history, settings.max_context_chars // 2, exclude_latest_user_message=True
            )
            return build_prompt(
                user_message,
                settings.max_context_chars,
                core,
                max_memory_chars=settings.max_memory_chars,
                rules=named_rules,
                tools=catalog,
                history=rendered,
                last_document=self.session.last_document,
                memory=memory,
                active_note=active_note,
                selection=selection,
                tool_result_pending=ends_with_tool_result(history),
            )

        return build

    # ── Conversation ──────────────────────────────────────────────────────

    async def send(
        self,
        text: str,
        on_delta: Optional[Callable[[str, str], None]] = None,
        selection: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        callbacks: Optional[AgentCallbacks] = None,
    ) -> ModelResponse:
        """Append the user's message and run the agent loop on it."""
        session = self.session
        self.runner.clear_pending_edit()
        if not session.is_named:
            session.title = derive_chat_title(text, 50)
        session.messages.append(HumanMessage(content=text))

        hooks = callbacks or AgentCallbacks()
        user_header_hook = hooks.on_header
        user_result_hook = hooks.on_tool_result

        def on_header(header: ParsedHeader) -> None:
            session.apply_header(header)
            if user_header_hook:
                user_header_hook(header)

        def on_tool_result(executed: ToolExecutionResult) -> None:
            if executed.name == "read" and isinstance(executed.result, str):
                session.last_document = {
                    "path": self._last_read_path(),
                    "content": executed.result,
                }
            if user_result_hook:
                user_result_hook(executed)

        hooks = AgentCallbacks(
            on_turn_start=hooks.on_turn_start,
            on_assistant_start=hooks.on_assistant_start,
            on_assistant_delta=on_delta or hooks.on_assistant_delta,
            on_header=on_header,
            on_tool_result=on_tool_result,
            on_tool_error=hooks.on_tool_error,
            on_message_added=hooks.on_message_added,
        )

        return await run_agent_loop(
            session.messages,
            self._prompt_builder(selection),
            self._model_client(),
            self.runner,
            max_turns=session.settings.max_turns,
            callbacks=hooks,
            cancel_event=cancel_event,
        )

    def _last_read_path(self) -> str:
        for msg in reversed(self.session.messages):
            for tc in getattr(msg, "tool_calls", None) or []:
                if tc["name"] == "read":
                    return str((tc.get("args") or {}).get("path", ""))
        return ""

    # ── Confirmation ──────────────────────────────────────────────────────

    @property
    def pending_edit(self) -> Optional[PendingEdit]:
        return self.runner.get_pending_edit()

    def confirm_pending_edit(self) -> PendingEdit:
        """Approve and apply the staged edit.

        Raises:
            NoPendingEditError: Nothing is staged.
            PermissionDenied: The gate still forbids acting.
        """
        self.session.state_machine.confirm()
        return self.runner.confirm_pending_edit()

    def reject_pending_edit(self) -> None:
        self.runner.clear_pending_edit()
        self.session.state_machine.set_state("idle")

    def confirm(self) -> None:
        """Approve the action the model is waiting on."""
        self.session.state_machine.confirm()

    def remember(self, label: str, text: str) -> None:
        self.runner.append_memory(label, text)


def default_assistant(**kwargs) -> Assistant:
    """Assistant over the configured vault directory."""
    return Assistant(FileSystemStore(config.VAULT_ROOT), **kwargs)
