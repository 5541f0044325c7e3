"""LangGraph graph construction and the agent loop entry point.

Builds the turn loop: one model reply per turn, at most one tool call per
reply, strictly sequential:

    ┌────────────┐                    ┌──────────────┐
    │ route_turn │── turn < max ─────▶│    agent     │
    └────────────┘                    │ (call_model) │
         ▲   │                        └──────────────┘
         │   └─ turn ≥ max ─▶ [limit_reached] ─▶ END    │
         │                                              ├─ no tool block ──▶ END
         ├──────────── [tools] ◀──── valid call ────────┤
         ├──────────── [malformed] ◀─ bad block ────────┤
         └──────────── [duplicate_read] ◀─ read again ──┘
"""

import asyncio
import logging
from typing import Callable, Optional

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from langgraph.graph import END, StateGraph

from agent import config
from agent.errors import NoResponseError
from agent.nodes import (
    call_model,
    duplicate_read_node,
    execute_tool,
    limit_reached_node,
    malformed_tool_node,
    read_path,
)
from agent.state import AgentCallbacks, AgentState, ModelResponse
from agent.tool_protocol import is_parse_error

logger = logging.getLogger(__name__)


def _route_turn(state: dict) -> str:
    """Start another model turn unless the turn budget is spent."""
    if state["turn"] >= state["max_turns"]:
        return "limit_reached"
    return "agent"


def _route_tool_request(state: dict) -> str:
    """Route on the tool request decoded from the latest reply."""
    request = state.get("tool_request")

    # 1. No tool block → done
    if request is None:
        return END

    # 2. Undecodable block → corrective message
    if is_parse_error(request):
        return "malformed"

    # 3. Re-reading a document already in history → hint instead
    path = read_path(request)
    if path and path in state["visited_paths"]:
        return "duplicate_read"

    return "tools"


def build_graph():
    """Construct and compile the agent loop graph."""
    workflow = StateGraph(AgentState)

    # ── Nodes ──────────────────────────────────────────────────────────────
    workflow.add_node("agent", call_model)
    workflow.add_node("tools", execute_tool)
    workflow.add_node("malformed", malformed_tool_node)
    workflow.add_node("duplicate_read", duplicate_read_node)
    workflow.add_node("limit_reached", limit_reached_node)

    # ── Edges ──────────────────────────────────────────────────────────────
    turn_routes = {"agent": "agent", "limit_reached": "limit_reached"}
    workflow.set_conditional_entry_point(_route_turn, turn_routes)

    workflow.add_conditional_edges(
        "agent",
        _route_tool_request,
        {
            "tools": "tools",
            "malformed": "malformed",
            "duplicate_read": "duplicate_read",
            END: END,
        },
    )
    for node in ("tools", "malformed", "duplicate_read"):
        workflow.add_conditional_edges(node, _route_turn, turn_routes)

    workflow.add_edge("limit_reached", END)

    return workflow.compile()


# Pre-built graph instance ready to use
graph = build_graph()


def collect_read_paths(history: list[BaseMessage]) -> set[str]:
    """Paths whose ``read`` in *history* returned content.

    A read counts only when the tool message answering it came back
    without an error, so a path that failed to load can be requested again.
    Tool call ids restart with every run, so each tool message is matched
    against the assistant message right before it.
    """
    paths: set[str] = set()
    requested: dict[str, str] = {}
    for msg in history:
        if isinstance(msg, AIMessage):
            requested = {}
            for tc in msg.tool_calls:
                path = (tc.get("args") or {}).get("path")
                if tc["name"] == "read" and isinstance(path, str) and path:
                    requested[tc.get("id")] = path
        elif isinstance(msg, ToolMessage):
            path = requested.pop(msg.tool_call_id, None)
            if path is not None and msg.status != "error":
                paths.add(path)
        else:
            requested = {}
    return paths


async def run_agent_loop(
    history: list[BaseMessage],
    build_prompt: Callable[[list[BaseMessage]], str],
    model,
    tool_runner,
    max_turns: int = config.MAX_TURNS,
    callbacks: Optional[AgentCallbacks] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> ModelResponse:
    """Run model → tool → model turns until the model stops calling tools.

    Every message the loop produces is appended to *history* as soon as it
    exists, so the caller's list stays current even if the run is aborted.

    Returns:
        The last model response obtained.

    Raises:
        NoResponseError: No model turn completed (e.g. ``max_turns`` of 0).
        AbortedError: *cancel_event* was set.
        TransportError: The model backend failed.
    """
    initial: AgentState = {
        "messages": list(history),
        "turn": 0,
        "max_turns": max_turns,
        "visited_paths": collect_read_paths(history),
        "tool_request": None,
        "last_response": None,
    }
    run_config = {
        "recursion_limit": max_turns * 3 + 5,
        "configurable": {
            "model": model,
            "tool_runner": tool_runner,
            "build_prompt": build_prompt,
            "agent_callbacks": callbacks or AgentCallbacks(),
            "cancel_event": cancel_event,
            "history_sink": history.append,
        },
    }

    final = await graph.ainvoke(initial, config=run_config)

    response = final.get("last_response")
    if response is None:
        raise NoResponseError("Agent loop did not produce a model response")
    logger.info("Agent run finished after %d turn(s)", final["turn"])
    return response
