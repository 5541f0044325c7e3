"""Graph node functions.

Each function takes the current AgentState and returns a partial state
update. LangGraph merges the returned dict into the shared state
automatically. Per-run collaborators arrive in ``config["configurable"]``:

    model           object with ``generate_stream(prompt, on_delta, cancel_event)``
    tool_runner     executor with ``execute(name, arguments)``
    build_prompt    ``(history) -> str``
    agent_callbacks AgentCallbacks
    cancel_event    optional asyncio.Event
    history_sink    optional ``append`` of the caller's history list
"""

import json
import logging
from typing import Any, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, ToolMessage
from langchain_core.runnables import RunnableConfig

from agent.errors import AbortedError, AgentError, PermissionDenied, ToolError
from agent.guardrails import check_confirmation_needed
from agent.state import AgentCallbacks, AgentState, ToolCallInfo
from agent.tool_protocol import (
    execute_tool_call,
    extract_think,
    extract_tool_call,
    format_tool_activity,
    is_parse_error,
)

logger = logging.getLogger(__name__)


def tool_call_id(turn: int, name: str) -> str:
    return f"{turn}-{name}"


def read_path(call: ToolCallInfo) -> Optional[str]:
    """Target of a ``read`` call, or None for any other call."""
    if call.name != "read":
        return None
    path = call.arguments.get("path")
    return path if isinstance(path, str) and path else None


def serialize_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2, ensure_ascii=False, default=str)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _callbacks(config: RunnableConfig) -> AgentCallbacks:
    return config["configurable"].get("agent_callbacks") or AgentCallbacks()


def _check_aborted(config: RunnableConfig) -> None:
    cancel_event = config["configurable"].get("cancel_event")
    if cancel_event is not None and cancel_event.is_set():
        raise AbortedError("Agent run aborted")


def _added(config: RunnableConfig, message: BaseMessage) -> BaseMessage:
    """Mirror *message* into the caller's history and notify listeners."""
    sink = config["configurable"].get("history_sink")
    if sink is not None:
        sink(message)
    callback = _callbacks(config).on_message_added
    if callback:
        callback(message)
    return message


# ── Model turn ────────────────────────────────────────────────────────────────


async def call_model(state: AgentState, config: RunnableConfig) -> dict:
    """Build the prompt, stream one reply and decode its tool request."""
    _check_aborted(config)
    configurable = config["configurable"]
    callbacks = _callbacks(config)
    turn = state["turn"]
    history = state["messages"]

    logger.info("Agent turn %d/%d", turn + 1, state["max_turns"])
    if callbacks.on_turn_start:
        callbacks.on_turn_start(turn, history)

    prompt = configurable["build_prompt"](history)
    logger.debug("Prompt for turn %d is %d chars", turn, len(prompt))

    if callbacks.on_assistant_start:
        callbacks.on_assistant_start()

    streamed = ""

    def on_delta(delta: str) -> None:
        nonlocal streamed
        streamed += delta
        if callbacks.on_assistant_delta:
            callbacks.on_assistant_delta(delta, streamed)

    try:
        response = await configurable["model"].generate_stream(
            prompt, on_delta, cancel_event=configurable.get("cancel_event")
        )
    except AgentError:
        # Keep whatever streamed before the abort or failure
        _added(config, AIMessage(content=streamed))
        raise

    if callbacks.on_header:
        callbacks.on_header(response.header)

    extracted = extract_tool_call(response.text)
    think, visible = extract_think(response.text)

    tool_calls = []
    if extracted is not None and not is_parse_error(extracted):
        tool_calls = [
            {
                "name": extracted.name,
                "args": extracted.arguments,
                "id": tool_call_id(turn, extracted.name),
            }
        ]
    message = AIMessage(
        content=visible,
        tool_calls=tool_calls,
        additional_kwargs={"think": think} if think else {},
    )

    return {
        "messages": [_added(config, message)],
        "turn": turn + 1,
        "tool_request": extracted,
        "last_response": response,
    }


# ── Tool execution ────────────────────────────────────────────────────────────


async def execute_tool(state: AgentState, config: RunnableConfig) -> dict:
    """Run the requested tool and record its result as a tool message.

    Tool failures become an error-status tool message so the model can
    react to them; they never end the run.
    """
    _check_aborted(config)
    call: ToolCallInfo = state["tool_request"]
    runner = config["configurable"]["tool_runner"]
    callbacks = _callbacks(config)
    call_id = tool_call_id(state["turn"] - 1, call.name)

    logger.info("Executing tool: %s", format_tool_activity(call))
    try:
        executed = await execute_tool_call(runner, call)
    except ToolError as exc:
        error = str(exc)
        if isinstance(exc, PermissionDenied) and hasattr(runner, "store"):
            error = f"{error}\n{check_confirmation_needed(call, runner.store) or ''}".rstrip()
        logger.warning("Tool %s failed: %s", call.name, error)
        if callbacks.on_tool_error:
            callbacks.on_tool_error(error)
        failed = ToolMessage(
            content=f"Error: {error}",
            tool_call_id=call_id,
            name=call.name,
            status="error",
        )
        return {"messages": [_added(config, failed)]}

    if callbacks.on_tool_result:
        callbacks.on_tool_result(executed)

    content = serialize_result(executed.result)
    messages: list[BaseMessage] = [
        _added(
            config,
            ToolMessage(content=content, tool_call_id=call_id, name=call.name, artifact=executed.result),
        )
    ]
    if executed.retrigger_message:
        messages.append(_added(config, HumanMessage(content=f"{executed.retrigger_message}\n\n{content}")))

    update: dict = {"messages": messages}
    path = read_path(call)
    if path:
        update["visited_paths"] = state["visited_paths"] | {path}
    return update


# ── Corrective nodes ──────────────────────────────────────────────────────────


def malformed_tool_node(state: AgentState, config: RunnableConfig) -> dict:
    """Ask the model to retry after an undecodable tool block."""
    error = state["tool_request"].error
    logger.warning("Malformed tool request: %s", error)
    callbacks = _callbacks(config)
    if callbacks.on_tool_error:
        callbacks.on_tool_error(error)
    message = HumanMessage(
        content=(
            f"ERROR: {error}\n\n"
            "Malformed tool request. Please try again with exactly ONE tool block."
        )
    )
    return {"messages": [_added(config, message)]}


def duplicate_read_node(state: AgentState, config: RunnableConfig) -> dict:
    """Skip re-reading a document whose contents are already in history."""
    path = read_path(state["tool_request"])
    logger.info("Skipping repeated read of %s", path)
    message = HumanMessage(
        content=(
            f"You already read {path} earlier in this conversation. "
            "Its contents are in the conversation history above; use them "
            "instead of reading the file again."
        )
    )
    return {"messages": [_added(config, message)]}


def limit_reached_node(state: AgentState) -> dict:
    """Stop once the turn budget is spent."""
    logger.warning("Turn limit of %d reached; returning the last response", state["max_turns"])
    return {"tool_request": None}
