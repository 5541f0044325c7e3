"""Tests for the agent loop graph.

The model is a scripted stand-in and the tool runner a recording fake, so
no backend or vault is needed.
"""

import asyncio

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage


class RecordingRunner:
    """Tool executor that records calls and returns canned results."""

    def __init__(self, results=None, error=None):
        self.results = results or {}
        self.error = error
        self.calls = []

    async def execute(self, name, arguments):
        self.calls.append((name, arguments))
        if self.error is not None:
            raise self.error
        return self.results.get(name, f"{name} done")


def _prompt_from(history):
    return "\n".join(str(m.content) for m in history)


def _read(path):
    return f'<tool_call>{{"name": "read", "arguments": {{"path": "{path}"}}}}</tool_call>'


# ── Structure ────────────────────────────────────────────────────────────────


def test_graph_compiles():
    """The graph compiles without errors."""
    from agent.graph import graph

    assert graph is not None


def test_graph_has_expected_nodes():
    """The compiled graph has the turn, tool and corrective nodes."""
    from agent.graph import graph

    node_names = set(graph.get_graph().nodes.keys())
    for expected in ("agent", "tools", "malformed", "duplicate_read", "limit_reached"):
        assert expected in node_names, f"'{expected}' node missing. Found: {node_names}"


def test_agent_state_keys():
    from agent.state import AgentState

    for key in ("messages", "turn", "max_turns", "visited_paths", "tool_request", "last_response"):
        assert key in AgentState.__annotations__


# ── Loop behavior ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_plain_reply_ends_after_one_turn(scripted_model):
    from agent.graph import run_agent_loop

    model = scripted_model(["STATE: idle\nNEEDS_CONFIRMATION: false\nHello!"])
    runner = RecordingRunner()
    history = [HumanMessage(content="hi")]

    response = await run_agent_loop(history, _prompt_from, model, runner)

    assert model.calls == 1
    assert runner.calls == []
    assert response.text.endswith("Hello!")
    assert len(history) == 2
    assert isinstance(history[-1], AIMessage)


@pytest.mark.asyncio
async def test_list_then_answer(scripted_model):
    """A list call is executed once and the follow-up answer ends the run."""
    from agent.graph import run_agent_loop

    model = scripted_model([
        '<tool_call>{"name": "list", "arguments": {"prefix": ""}}</tool_call>',
        "Found: a.md, b.md",
    ])
    runner = RecordingRunner(results={"list": ["a.md", "b.md"]})
    history = [HumanMessage(content="List files")]

    response = await run_agent_loop(history, _prompt_from, model, runner)

    assert response.text == "Found: a.md, b.md"
    assert model.calls == 2
    assert runner.calls == [("list", {"prefix": ""})]

    ai, tool_msg = history[1], history[2]
    assert ai.tool_calls[0]["name"] == "list"
    assert ai.tool_calls[0]["id"] == "0-list"
    assert isinstance(tool_msg, ToolMessage)
    assert tool_msg.tool_call_id == "0-list"
    assert tool_msg.artifact == ["a.md", "b.md"]
    assert '"a.md"' in tool_msg.content
    # The second prompt saw the tool result
    assert "b.md" in model.prompts[1]


@pytest.mark.asyncio
async def test_repeated_read_is_short_circuited(scripted_model):
    """A read of a path already read in history injects a hint instead."""
    from agent.graph import run_agent_loop

    history = [
        HumanMessage(content="Open a.md"),
        AIMessage(content="", tool_calls=[{"name": "read", "args": {"path": "a.md"}, "id": "0-read"}]),
        ToolMessage(content="alpha", tool_call_id="0-read", name="read"),
        AIMessage(content="It says alpha."),
        HumanMessage(content="Open it again"),
    ]
    model = scripted_model([_read("a.md"), "As before: alpha."])
    runner = RecordingRunner()

    response = await run_agent_loop(history, _prompt_from, model, runner)

    assert runner.calls == []
    assert model.calls == 2
    assert response.text == "As before: alpha."
    hint = history[-2]
    assert isinstance(hint, HumanMessage)
    assert "already read a.md" in hint.content


@pytest.mark.asyncio
async def test_failed_read_can_be_retried(scripted_model):
    """A read that errored earlier is executed again, not short-circuited."""
    from agent.graph import run_agent_loop

    history = [
        HumanMessage(content="Open a.md"),
        AIMessage(content="", tool_calls=[{"name": "read", "args": {"path": "a.md"}, "id": "0-read"}]),
        ToolMessage(
            content="Error: File does not exist: a.md", tool_call_id="0-read", name="read", status="error"
        ),
        AIMessage(content="a.md does not exist."),
        HumanMessage(content="I created it now, read a.md"),
    ]
    model = scripted_model([_read("a.md"), "It says alpha."])
    runner = RecordingRunner(results={"read": "alpha"})

    response = await run_agent_loop(history, _prompt_from, model, runner)

    assert runner.calls == [("read", {"path": "a.md"})]
    assert response.text == "It says alpha."
    assert not any(
        isinstance(m, HumanMessage) and "already read" in m.content for m in history
    )


@pytest.mark.asyncio
async def test_read_in_same_run_is_tracked(scripted_model):
    """A path read earlier in the run is not read a second time."""
    from agent.graph import run_agent_loop

    model = scripted_model([_read("a.md"), _read("a.md"), "Done."])
    runner = RecordingRunner(results={"read": "alpha"})

    await run_agent_loop([HumanMessage(content="read")], _prompt_from, model, runner)

    assert runner.calls == [("read", {"path": "a.md"})]
    assert model.calls == 3


@pytest.mark.asyncio
async def test_turn_limit_stops_a_looping_model(scripted_model):
    """A model that always calls a tool is invoked at most max_turns times."""
    from agent.graph import run_agent_loop

    model = scripted_model(['<tool_call>{"name": "list"}</tool_call>'])
    runner = RecordingRunner()

    response = await run_agent_loop([HumanMessage(content="go")], _prompt_from, model, runner, max_turns=2)

    assert model.calls == 2
    assert len(runner.calls) == 2
    assert "list" in response.text


@pytest.mark.asyncio
async def test_zero_turns_is_fatal(scripted_model):
    from agent.errors import NoResponseError
    from agent.graph import run_agent_loop

    model = scripted_model(["never used"])

    with pytest.raises(NoResponseError):
        await run_agent_loop([HumanMessage(content="hi")], _prompt_from, model, RecordingRunner(), max_turns=0)
    assert model.calls == 0


@pytest.mark.asyncio
async def test_malformed_block_gets_corrective_message(scripted_model):
    from agent.graph import run_agent_loop

    model = scripted_model(["<tool_call>{not json}</tool_call>", "Sorry, here is the answer."])
    runner = RecordingRunner()
    errors = []
    from agent.state import AgentCallbacks

    history = [HumanMessage(content="hi")]
    response = await run_agent_loop(
        history, _prompt_from, model, runner, callbacks=AgentCallbacks(on_tool_error=errors.append)
    )

    assert runner.calls == []
    assert response.text == "Sorry, here is the answer."
    corrective = history[2]
    assert isinstance(corrective, HumanMessage)
    assert "Malformed tool request" in corrective.content
    assert history[1].tool_calls == []
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_retrigger_feeds_message_with_result(scripted_model):
    from agent.graph import run_agent_loop

    model = scripted_model([
        '<tool_call>{"name": "read", "arguments": {"path": "a.md"}, "retrigger": {"message": "Now summarize"}}</tool_call>',
        "Summary: alpha.",
    ])
    runner = RecordingRunner(results={"read": "alpha"})
    history = [HumanMessage(content="Summarize a.md")]

    await run_agent_loop(history, _prompt_from, model, runner)

    retrigger = history[3]
    assert isinstance(retrigger, HumanMessage)
    assert retrigger.content == "Now summarize\n\nalpha"


@pytest.mark.asyncio
async def test_tool_failure_becomes_error_tool_message(scripted_model):
    """A denied write is recorded as a failed tool result, not raised."""
    from agent.errors import PermissionDenied
    from agent.graph import run_agent_loop

    model = scripted_model([
        '<tool_call>{"name": "write", "arguments": {"path": "a.md", "content": "x"}}</tool_call>',
        "I need your confirmation first.",
    ])
    runner = RecordingRunner(error=PermissionDenied("Confirmation required to perform write operations."))
    history = [HumanMessage(content="write it")]

    response = await run_agent_loop(history, _prompt_from, model, runner)

    failed = history[2]
    assert isinstance(failed, ToolMessage)
    assert failed.status == "error"
    assert failed.content.startswith("Error: Confirmation required")
    assert response.text == "I need your confirmation first."


@pytest.mark.asyncio
async def test_callbacks_fire_in_order(scripted_model):
    from agent.graph import run_agent_loop
    from agent.state import AgentCallbacks

    events = []
    callbacks = AgentCallbacks(
        on_turn_start=lambda turn, history: events.append(("turn", turn)),
        on_assistant_start=lambda: events.append(("start",)),
        on_assistant_delta=lambda delta, streamed: events.append(("delta", streamed)),
        on_header=lambda header: events.append(("header", header.state)),
        on_tool_result=lambda result: events.append(("result", result.name)),
        on_message_added=lambda message: events.append(("added", message.type)),
    )
    model = scripted_model(['STATE: thinking\n<tool_call>{"name": "list"}</tool_call>', "STATE: idle\nDone"])

    await run_agent_loop([HumanMessage(content="hi")], _prompt_from, model, RecordingRunner(), callbacks=callbacks)

    kinds = [event[0] for event in events]
    assert kinds[:2] == ["turn", "start"]
    assert ("header", "thinking") in events
    assert ("result", "list") in events
    assert kinds.index("result") < events.index(("added", "tool"))
    assert events[-1] == ("added", "ai")
    assert [e for e in events if e[0] == "turn"] == [("turn", 0), ("turn", 1)]


@pytest.mark.asyncio
async def test_abort_before_first_turn(scripted_model):
    from agent.errors import AbortedError
    from agent.graph import run_agent_loop

    cancel = asyncio.Event()
    cancel.set()
    model = scripted_model(["unused"])

    with pytest.raises(AbortedError):
        await run_agent_loop(
            [HumanMessage(content="hi")], _prompt_from, model, RecordingRunner(), cancel_event=cancel
        )
    assert model.calls == 0


@pytest.mark.asyncio
async def test_abort_before_tool_execution(scripted_model):
    """Cancelling during a turn prevents the tool from running."""
    from agent.errors import AbortedError
    from agent.graph import run_agent_loop
    from agent.state import AgentCallbacks

    cancel = asyncio.Event()
    model = scripted_model(['<tool_call>{"name": "list"}</tool_call>'])
    runner = RecordingRunner()
    history = [HumanMessage(content="hi")]

    with pytest.raises(AbortedError):
        await run_agent_loop(
            history,
            _prompt_from,
            model,
            runner,
            callbacks=AgentCallbacks(on_header=lambda header: cancel.set()),
            cancel_event=cancel,
        )
    assert runner.calls == []
    # The reply that was already produced stays in the caller's history
    assert isinstance(history[-1], AIMessage)


class FailingMidStreamModel:
    """Streams part of a reply and then fails with *error*."""

    def __init__(self, error):
        self.error = error

    async def generate_stream(self, prompt, on_delta, cancel_event=None):
        on_delta("partial reply ")
        raise self.error


@pytest.mark.asyncio
@pytest.mark.parametrize("error_name", ["AbortedError", "TransportError"])
async def test_partial_reply_is_kept_when_streaming_fails(error_name):
    """Text streamed before an abort or failure stays in the history."""
    from agent import errors
    from agent.graph import run_agent_loop
    from agent.state import AgentCallbacks

    error_type = getattr(errors, error_name)
    added = []
    history = [HumanMessage(content="hi")]

    with pytest.raises(error_type):
        await run_agent_loop(
            history,
            _prompt_from,
            FailingMidStreamModel(error_type("stopped")),
            RecordingRunner(),
            callbacks=AgentCallbacks(on_message_added=added.append),
        )

    assert [m.type for m in history] == ["human", "ai"]
    assert history[-1].content == "partial reply "
    assert added == [history[-1]]



def test_collect_read_paths():
    from agent.graph import collect_read_paths

    history = [
        AIMessage(content="", tool_calls=[{"name": "read", "args": {"path": "a.md"}, "id": "0-read"}]),
        ToolMessage(content="alpha", tool_call_id="0-read", name="read"),
        AIMessage(content="", tool_calls=[{"name": "list", "args": {"prefix": "b"}, "id": "1-list"}]),
        ToolMessage(content="[]", tool_call_id="1-list", name="list"),
    ]

    assert collect_read_paths(history) == {"a.md"}


def test_collect_read_paths_skips_failed_and_unanswered_reads():
    from agent.graph import collect_read_paths

    history = [
        AIMessage(content="", tool_calls=[{"name": "read", "args": {"path": "a.md"}, "id": "0-read"}]),
        ToolMessage(content="Error: File does not exist", tool_call_id="0-read", name="read", status="error"),
        HumanMessage(content="next run"),
        # Ids restart each run; this success answers b.md, not a.md
        AIMessage(content="", tool_calls=[{"name": "read", "args": {"path": "b.md"}, "id": "0-read"}]),
        ToolMessage(content="beta", tool_call_id="0-read", name="read"),
        AIMessage(content="", tool_calls=[{"name": "read", "args": {"path": "c.md"}, "id": "1-read"}]),
    ]

    assert collect_read_paths(history) == {"b.md"}
