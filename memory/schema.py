"""Schema for persisted chat records."""

from typing import Any, Optional, TypedDict


class ChatMeta(TypedDict):
    id: str
    title: str
    createdAt: str
    updatedAt: str


class ChatStateRecord(TypedDict):
    header: Optional[dict[str, Any]]
    state: str


class ChatRecord(TypedDict):
    meta: ChatMeta
    settings: dict[str, Any]
    state: ChatStateRecord
    messages: list[dict[str, Any]]
    lastDocument: Optional[dict[str, str]]


DEFAULT_CHAT_TITLE = "New Chat"
