"""Tool-call markup embedded in model output.

Models request a tool by writing a JSON object inside one of two wrappers::

    <tool_call>{"name": "read", "arguments": {"path": "notes.md"}}</tool_call>

    ```tool
    {"name": "read", "args": {"path": "notes.md"}}
    ```

The XML form is also accepted without its closing tag when the object is
followed by end of text, another tag or a blank line. When several blocks
appear, the last one wins: models often sketch a planning call before the
real one.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

from agent.state import ToolCallInfo, ToolExecutionResult

_XML_BLOCK = re.compile(r"<tool_call>\s*([\s\S]*?)\s*</tool_call>", re.IGNORECASE)
_XML_UNCLOSED = re.compile(
    r"<tool_call>\s*(\{[\s\S]*?\})(?=\s*$|\s*<|\n\n)", re.IGNORECASE
)
_FENCED_BLOCK = re.compile(r"```tool(?![\w-])[ \t]*\r?\n?([\s\S]*?)```")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_STRAY_TAG = re.compile(r"</?tool_call>", re.IGNORECASE)
_BLANK_RUNS = re.compile(r"\n{3,}")
_THINK_BLOCK = re.compile(r"<think>([\s\S]*?)</think>", re.IGNORECASE)


@dataclass
class ToolCallParseError:
    """A tool block was present but could not be decoded."""

    error: str
    block_count: int
    raw_block: str = ""


ExtractionResult = Union[ToolCallInfo, ToolCallParseError]


def is_parse_error(result: Optional[ExtractionResult]) -> bool:
    return isinstance(result, ToolCallParseError)


def _find_blocks(text: str) -> list[tuple[int, str, str]]:
    """Return ``(position, raw_block, payload)`` for every candidate block."""
    blocks: list[tuple[int, str, str]] = []
    closed_starts: set[int] = set()

    for match in _XML_BLOCK.finditer(text):
        content = match.group(1).strip()
        obj = _JSON_OBJECT.search(content)
        payload = obj.group(0).strip() if obj else content
        blocks.append((match.start(), match.group(0), payload))
        closed_starts.add(match.start())

    for match in _XML_UNCLOSED.finditer(text):
        if match.start() in closed_starts:
            continue
        blocks.append((match.start(), match.group(0), match.group(1).strip()))

    for match in _FENCED_BLOCK.finditer(text):
        blocks.append((match.start(), match.group(0), match.group(1).strip()))

    blocks.sort(key=lambda block: block[0])
    return blocks


def _parse_payload(payload: str, raw_block: str, block_count: int) -> ExtractionResult:
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        return ToolCallParseError(
            error=f"Tool block is not valid JSON: {exc.msg}",
            block_count=block_count,
            raw_block=raw_block,
        )

    if not isinstance(parsed, dict):
        return ToolCallParseError("Tool block must contain a JSON object", block_count, raw_block)

    name = parsed.get("name")
    if not isinstance(name, str) or not name.strip():
        return ToolCallParseError("Tool block is missing a tool name", block_count, raw_block)

    arguments = parsed.get("arguments", parsed.get("args"))
    if not isinstance(arguments, dict):
        arguments = {}

    retrigger = parsed.get("retrigger")
    message = retrigger.get("message") if isinstance(retrigger, dict) else None

    return ToolCallInfo(
        name=name,
        arguments=arguments,
        retrigger_message=message if isinstance(message, str) else None,
        raw_block=raw_block,
    )


def extract_tool_call(text: str) -> Optional[ExtractionResult]:
    """Decode the authoritative (last) tool block in *text*.

    Returns:
        None when the text contains no tool block, a ToolCallParseError when
        the last block is not a valid call, otherwise the ToolCallInfo.
    """
    blocks = _find_blocks(text)
    if not blocks:
        return None
    _, raw_block, payload = blocks[-1]
    return _parse_payload(payload, raw_block, len(blocks))


def strip_tool_blocks(text: str) -> str:
    """Remove all tool markup so the remaining text can be displayed."""
    result = _XML_BLOCK.sub("", text)
    result = _XML_UNCLOSED.sub("", result)
    result = _FENCED_BLOCK.sub("", result)
    result = _STRAY_TAG.sub("", result)
    return _BLANK_RUNS.sub("\n\n", result).strip()


def extract_think(text: str) -> tuple[Optional[str], str]:
    """Split the first ``<think>`` block from the visible reply."""
    match = _THINK_BLOCK.search(text)
    if not match:
        return None, text
    think = match.group(1).strip()
    rest = (text[: match.start()] + text[match.end():]).strip()
    return think or None, rest


def strip_think_blocks(text: str) -> str:
    return _THINK_BLOCK.sub("", text).strip()


def format_tool_activity(call: ToolCallInfo) -> str:
    """Short status line describing what a tool call is doing."""
    args = call.arguments or {}
    path = args.get("path")
    path = path if isinstance(path, str) else "[file]"

    if call.name == "active_file":
        return "reading: [current file]"
    if call.name == "list":
        prefix = args.get("prefix")
        return f"listing: {prefix if isinstance(prefix, str) and prefix else '[all files]'}"
    if call.name == "read":
        return f"reading: {path}"
    if call.name in ("write", "append", "line_edit"):
        return f"editing: {path}"
    return f"tool: {call.name}"


class ToolExecutor(Protocol):
    async def execute(self, name: str, arguments: dict[str, Any]) -> Any: ...


async def execute_tool_call(executor: ToolExecutor, call: ToolCallInfo) -> ToolExecutionResult:
    result = await executor.execute(call.name, call.arguments or {})
    return ToolExecutionResult(
        name=call.name,
        result=result,
        retrigger_message=call.retrigger_message,
    )
