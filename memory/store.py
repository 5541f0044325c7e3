"""Persistent JSON-backed chat store.

Each chat is one JSON file under the vault's chats directory, and
``index.json`` beside them lists the metadata of every chat. Messages are
stored in LangChain's message-dict format.
"""

import json
from datetime import datetime, timezone

from langchain_core.messages import BaseMessage, messages_from_dict, messages_to_dict

from agent import config
from memory.documents import DocumentStore
from memory.schema import ChatMeta, ChatRecord

_INDEX_PATH = f"{config.CHATS_DIR}/index.json"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def derive_chat_title(first_user_message: str, max_len: int = 40) -> str:
    """Collapse whitespace and shorten to *max_len* characters with an ellipsis."""
    normalized = " ".join(first_user_message.split())
    if not normalized:
        return "Chat"
    if len(normalized) <= max_len:
        return normalized
    return normalized[: max(0, max_len - 1)].rstrip() + "…"


def encode_messages(messages: list[BaseMessage]) -> list[dict]:
    return messages_to_dict(messages)


def decode_messages(data: list[dict]) -> list[BaseMessage]:
    return messages_from_dict(data)


class ChatStore:
    """Chat records kept as JSON documents in the vault."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    # ── Internal I/O ──────────────────────────────────────────────────────

    def _chat_path(self, chat_id: str) -> str:
        return f"{config.CHATS_DIR}/{chat_id}.json"

    # ── Public API ────────────────────────────────────────────────────────

    def create_chat(self, title: str, settings: dict) -> ChatRecord:
        """Build (but do not save) an empty chat record."""
        now = utc_now()
        chat_id = "chat-" + now.replace(":", "-").replace(".", "-").replace("+", "-")
        return {
            "meta": {"id": chat_id, "title": title, "createdAt": now, "updatedAt": now},
            "settings": settings,
            "state": {"header": None, "state": "idle"},
            "messages": [],
            "lastDocument": None,
        }

    def load_index(self) -> list[ChatMeta]:
        if not self._store.exists(_INDEX_PATH):
            return []
        return json.loads(self._store.read(_INDEX_PATH))

    def save_index(self, index: list[ChatMeta]) -> None:
        self._store.write(_INDEX_PATH, json.dumps(index, indent=2))

    def save_chat(self, record: ChatRecord) -> None:
        index = [meta for meta in self.load_index() if meta["id"] != record["meta"]["id"]]
        index.append(record["meta"])
        self.save_index(index)
        self._store.write(
            self._chat_path(record["meta"]["id"]),
            json.dumps(record, indent=2, ensure_ascii=False),
        )

    def load_chat(self, chat_id: str) -> ChatRecord:
        """Raises:
            DocumentNotFoundError: If no chat with *chat_id* was saved.
        """
        return json.loads(self._store.read(self._chat_path(chat_id)))

    def delete_chat(self, chat_id: str) -> None:
        self._store.remove(self._chat_path(chat_id))
        self.save_index([meta for meta in self.load_index() if meta["id"] != chat_id])
