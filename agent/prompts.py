"""Prompt assembly.

Composes the response-format reminder, the vault's rule fragments, the tool
catalog, the rendered history and the user's request into one string that
never exceeds the character budget. When something has to give, context is
cut before the user's request is.
"""

import json
import logging
from typing import Any, Optional

from langchain_core.tools import BaseTool

from memory.rules import CoreRules

logger = logging.getLogger(__name__)

RESPONSE_FORMAT_REMINDER = """RESPONSE FORMAT:
- Use <think>...</think> tags for internal reasoning (both tags required)
- Everything outside <think> tags is shown to the user
- Start with STATE: <idle|thinking|acting> and NEEDS_CONFIRMATION: <true|false> lines
- For tools, use <tool_call>{"name": "...", "arguments": {...}}</tool_call>
- Output AT MOST ONE tool block per response
- After receiving tool results, respond in natural language - don't repeat tool calls"""

TOOL_RESULT_REMINDER = (
    "⚠️ TOOL RESULT AVAILABLE - You already called a tool and received data above. "
    "DO NOT call the same tool again. Respond to the user in natural language "
    "using the data you received."
)

_SEPARATOR = "\n\n"

# JSON-schema types mapped to the short names shown in the catalog.
_PARAM_TYPES = {"string": "string", "integer": "number", "number": "number", "boolean": "boolean"}


def clamp(value: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    return value[:max_chars]


def describe_tools(tools: list[BaseTool]) -> list[dict[str, Any]]:
    """Catalog entries ``{name, description, params}`` for the prompt."""
    catalog = []
    for tool in tools:
        params = {
            name: _PARAM_TYPES.get(schema.get("type", ""), schema.get("type", "any"))
            for name, schema in tool.args.items()
        }
        catalog.append({"name": tool.name, "description": tool.description, "params": params})
    return catalog


def _format_catalog(tools: list[dict[str, Any]]) -> str:
    return "\n".join(
        f"{t['name']}: {t['description']} (params: {json.dumps(t.get('params') or {})})"
        for t in tools
    )


def build_prompt(
    user_message: str,
    max_context_chars: int,
    core_rules: CoreRules,
    *,
    max_memory_chars: int = 0,
    voice_override: Optional[str] = None,
    rules: Optional[dict[str, str]] = None,
    tools: Optional[list[dict[str, Any]]] = None,
    history: Optional[str] = None,
    last_document: Optional[dict[str, str]] = None,
    memory: Optional[str] = None,
    active_note: Optional[str] = None,
    selection: Optional[str] = None,
    tool_result_pending: bool = False,
) -> str:
    """Build the model prompt.

    Section order is fixed: reminder, charter (and state rules), voice,
    named rules, tools, history, last document, memory, active note,
    selection, user request.

    Truncation when the whole prompt is over budget:

    1. If room remains for context after reserving the user request, only
       the context block is cut.
    2. Otherwise the user request is cut, keeping just the reminder.
    3. If even the reminder does not fit, the user request alone is cut to
       the budget.
    """
    if max_context_chars <= 0:
        return ""

    sections: list[str] = [f"Charter:\n{core_rules.charter}"]
    if core_rules.states.strip():
        sections.append(f"States:\n{core_rules.states}")

    voice = voice_override if voice_override is not None else core_rules.voice
    if voice and voice.strip():
        sections.append(f"Voice:\n{voice}")

    if rules:
        block = _SEPARATOR.join(f"Rule: {name}\n{content}" for name, content in rules.items())
        sections.append(f"Rules:\n{block}")

    if tools:
        sections.append(f"Tools:\n{_format_catalog(tools)}")

    if history and history.strip():
        sections.append(f"Conversation History:\n{history.strip()}")

    if last_document and last_document.get("content", "").strip():
        sections.append(f"Last Document ({last_document['path']}):\n{last_document['content']}")

    if memory and memory.strip():
        # +50 leaves room for the "Memory: " label
        sections.append(clamp(f"Memory: {memory.strip()}", max_memory_chars + 50))

    if active_note and active_note.strip():
        sections.append(f"Active Note:\n{active_note}")

    if selection and selection.strip():
        sections.append(f"Selection:\n{selection}")

    user_section = f"User Request:\n{user_message}"
    if tool_result_pending:
        user_section += _SEPARATOR + TOOL_RESULT_REMINDER

    context = _SEPARATOR.join([RESPONSE_FORMAT_REMINDER, *sections])
    full = f"{context}{_SEPARATOR}{user_section}"
    if len(full) <= max_context_chars:
        return full

    logger.debug("Prompt of %d chars exceeds budget of %d", len(full), max_context_chars)

    available_for_context = max_context_chars - len(_SEPARATOR) - len(user_section)
    if available_for_context > 0:
        return f"{clamp(context, available_for_context)}{_SEPARATOR}{user_section}"

    reminder_overhead = len(RESPONSE_FORMAT_REMINDER) + len(_SEPARATOR)
    if max_context_chars > reminder_overhead:
        truncated = clamp(user_section, max_context_chars - reminder_overhead)
        return f"{RESPONSE_FORMAT_REMINDER}{_SEPARATOR}{truncated}"

    return clamp(user_section, max_context_chars)
