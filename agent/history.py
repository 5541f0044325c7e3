"""Budgeted conversation history.

Renders the most recent turns as an OpenAI-style JSON array for the prompt.
Selection runs newest to oldest and stops at the first entry that would push
the encoded array past the character budget, so the oldest turns are the
ones dropped. The output is always in chronological order.
"""

import json
from typing import Any, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, ToolMessage

from agent.tool_protocol import strip_think_blocks, strip_tool_blocks


def _encode(entries: list[dict]) -> str:
    return json.dumps(entries, indent=2, ensure_ascii=False)


def _tool_call_descriptors(msg: AIMessage) -> list[dict]:
    return [{"name": tc["name"], "arguments": tc.get("args") or {}} for tc in msg.tool_calls]


def _originating_call(messages: list[BaseMessage], index: int) -> Optional[dict]:
    """Find the assistant tool call that produced the tool result at *index*."""
    tool_msg = messages[index]
    for i in range(index - 1, -1, -1):
        msg = messages[i]
        if isinstance(msg, AIMessage) and msg.tool_calls:
            for tc in msg.tool_calls:
                if tc.get("id") == tool_msg.tool_call_id:
                    return tc
            return msg.tool_calls[-1]
    return None


def _tool_label(messages: list[BaseMessage], index: int) -> str:
    call = _originating_call(messages, index)
    path = (call.get("args") or {}).get("path") if call else None
    if isinstance(path, str) and path:
        return f"[Tool result for file: {path}]"
    return "[Tool result]"


def _to_entry(messages: list[BaseMessage], index: int) -> Optional[dict[str, Any]]:
    msg = messages[index]
    if isinstance(msg, HumanMessage):
        text = str(msg.content).strip()
        return {"role": "user", "content": text} if text else None

    if isinstance(msg, AIMessage):
        # Reasoning and raw tool markup never go back to the model.
        text = strip_think_blocks(strip_tool_blocks(str(msg.content)))
        entry: dict[str, Any] = {"role": "assistant", "content": text}
        if msg.tool_calls:
            entry["tool_calls"] = _tool_call_descriptors(msg)
        elif not text:
            return None
        return entry

    if isinstance(msg, ToolMessage):
        return {
            "role": "tool",
            "content": f"{_tool_label(messages, index)}\n{msg.content}",
        }

    return None


def build_conversation_history(
    messages: list[BaseMessage],
    max_chars: int,
    exclude_latest_user_message: bool = False,
) -> str:
    """Serialize the newest messages that fit in *max_chars*.

    Args:
        messages: Full conversation, oldest first.
        max_chars: Budget for the encoded JSON array.
        exclude_latest_user_message: Skip the final message when it is the
            user's current request (the prompt appends it separately).

    Returns:
        The JSON array text, or ``""`` when nothing fits (always ``""`` for a
        budget of zero or less).
    """
    if max_chars <= 0:
        return ""

    start = len(messages) - 1
    if exclude_latest_user_message and messages and isinstance(messages[-1], HumanMessage):
        start -= 1

    kept: list[dict] = []
    for index in range(start, -1, -1):
        entry = _to_entry(messages, index)
        if entry is None:
            continue
        if len(_encode([*kept, entry])) > max_chars:
            break
        kept.append(entry)

    if not kept:
        return ""
    kept.reverse()
    return _encode(kept)


def parse_history(text: str) -> list[dict]:
    """Inverse of `build_conversation_history`."""
    if not text.strip():
        return []
    return json.loads(text)


def ends_with_tool_result(messages: list[BaseMessage]) -> bool:
    return bool(messages) and isinstance(messages[-1], ToolMessage)
