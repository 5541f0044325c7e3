"""Tests for the streaming model client.

The backend is replaced by an ``httpx.MockTransport``; no server is needed.
"""

import asyncio
import json

import httpx
import pytest


def _ndjson(*chunks: dict) -> bytes:
    return "".join(json.dumps(chunk) + "\n" for chunk in chunks).encode()


def _client(handler, **kwargs):
    from agent.model_client import ModelClient

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ModelClient(base_url="http://backend:11434/", model="test-model", http_client=http_client, **kwargs)


# ── Header parsing ───────────────────────────────────────────────────────────


def test_header_keys_are_found():
    from agent.model_client import parse_header

    header = parse_header("Intro\nSTATE: acting\nNEEDS_CONFIRMATION: true\nbody")

    assert header.state == "acting"
    assert header.needs_confirmation is True


def test_header_defaults_when_absent():
    from agent.model_client import parse_header
    from agent.state import ParsedHeader

    assert parse_header("No header here.") == ParsedHeader()


def test_header_first_occurrence_wins():
    from agent.model_client import parse_header

    header = parse_header("STATE: thinking\nSTATE: acting\nNEEDS_CONFIRMATION: false\nNEEDS_CONFIRMATION: true")

    assert header.state == "thinking"
    assert header.needs_confirmation is False


def test_header_outside_first_40_lines_is_ignored():
    from agent.model_client import parse_header

    text = "\n" * 40 + "STATE: acting\nNEEDS_CONFIRMATION: true"

    assert parse_header(text).state == "idle"


# ── Hallucination truncation ─────────────────────────────────────────────────


@pytest.mark.parametrize("marker", ["User:", "Human:", "Memory:", "Assistant:"])
def test_invented_turns_are_cut(marker):
    from agent.model_client import truncate_hallucinated_turns

    text = f"Here is the answer.\n{marker} and now I speak for them"

    assert truncate_hallucinated_turns(text) == "Here is the answer."


def test_leading_assistant_label_is_removed():
    from agent.model_client import truncate_hallucinated_turns

    assert truncate_hallucinated_turns("Assistant: Hello there.") == "Hello there."


def test_marker_inside_a_line_is_kept():
    from agent.model_client import truncate_hallucinated_turns

    text = "The header says User: admin"

    assert truncate_hallucinated_turns(text) == text


def test_indented_marker_is_kept():
    from agent.model_client import truncate_hallucinated_turns

    text = "Example:\n\n    User: alice\n    Role: admin\n\nThat is the record."

    assert truncate_hallucinated_turns(text) == text


# ── Request body ─────────────────────────────────────────────────────────────


def test_context_size_is_estimated_and_capped():
    from agent.model_client import estimate_context_tokens

    assert estimate_context_tokens(32000) == 8000
    assert estimate_context_tokens(10) == 3
    assert estimate_context_tokens(10_000_000) == 32768


@pytest.mark.asyncio
async def test_request_body_and_url():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=_ndjson({"response": "ok", "done": True}))

    client = _client(handler, max_context_chars=4000)
    await client.generate_stream("the prompt", lambda delta: None)

    assert seen["url"] == "http://backend:11434/api/generate"
    assert seen["body"] == {
        "model": "test-model",
        "prompt": "the prompt",
        "stream": True,
        "options": {"context_size": 1000, "stop": ["\nUser:", "\nHuman:", "\nMemory:"]},
    }


# ── Streaming ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_deltas_are_forwarded_and_accumulated():
    def handler(request):
        return httpx.Response(
            200,
            content=_ndjson(
                {"response": "STATE: acting\n"},
                {"response": "NEEDS_CONFIRMATION: true\n"},
                {},
                {"response": "Writing now."},
                {"done": True},
            ),
        )

    deltas: list[str] = []
    response = await _client(handler).generate_stream("p", deltas.append)

    assert deltas == ["STATE: acting\n", "NEEDS_CONFIRMATION: true\n", "Writing now."]
    assert response.text == "STATE: acting\nNEEDS_CONFIRMATION: true\nWriting now."
    assert response.header.state == "acting"
    assert response.header.needs_confirmation is True


@pytest.mark.asyncio
async def test_chunks_after_done_are_ignored():
    def handler(request):
        return httpx.Response(200, content=_ndjson({"response": "a", "done": True}, {"response": "b"}))

    response = await _client(handler).generate_stream("p", lambda delta: None)

    assert response.text == "a"


@pytest.mark.asyncio
async def test_final_text_is_truncated_but_deltas_are_not():
    def handler(request):
        return httpx.Response(200, content=_ndjson({"response": "Answer.\nUser: more?"}, {"done": True}))

    deltas: list[str] = []
    response = await _client(handler).generate_stream("p", deltas.append)

    assert deltas == ["Answer.\nUser: more?"]
    assert response.text == "Answer."


# ── Failures ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_error_status_is_transport_error():
    from agent.errors import TransportError

    def handler(request):
        return httpx.Response(500, content=b"model not loaded")

    with pytest.raises(TransportError, match="500"):
        await _client(handler).generate_stream("p", lambda delta: None)


@pytest.mark.asyncio
async def test_connection_failure_is_transport_error():
    from agent.errors import TransportError

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError):
        await _client(handler).generate_stream("p", lambda delta: None)


@pytest.mark.asyncio
async def test_invalid_line_is_protocol_error():
    from agent.errors import StreamProtocolError

    def handler(request):
        return httpx.Response(200, content=b'{"response": "a"}\nnot json\n')

    with pytest.raises(StreamProtocolError):
        await _client(handler).generate_stream("p", lambda delta: None)


# ── Cancellation ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_preset_cancel_event_aborts_without_request():
    from agent.errors import AbortedError

    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, content=_ndjson({"done": True}))

    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(AbortedError):
        await _client(handler).generate_stream("p", lambda delta: None, cancel_event=cancel)
    assert requests == []


@pytest.mark.asyncio
async def test_cancel_during_request_aborts_promptly():
    from agent.errors import AbortedError

    async def handler(request):
        await asyncio.sleep(30)
        return httpx.Response(200, content=_ndjson({"done": True}))

    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)

    with pytest.raises(AbortedError):
        await asyncio.wait_for(
            _client(handler).generate_stream("p", lambda delta: None, cancel_event=cancel),
            timeout=5,
        )


@pytest.mark.asyncio
async def test_cancel_event_unset_completes_normally():
    def handler(request):
        return httpx.Response(200, content=_ndjson({"response": "fine"}, {"done": True}))

    response = await _client(handler).generate_stream("p", lambda delta: None, cancel_event=asyncio.Event())

    assert response.text == "fine"


@pytest.mark.asyncio
async def test_cancelling_the_caller_stops_the_request():
    """Cancelling the generate_stream task also cancels the in-flight request."""
    started = asyncio.Event()
    stopped = []

    async def handler(request):
        started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            stopped.append(True)
            raise
        return httpx.Response(200, content=_ndjson({"done": True}))

    task = asyncio.ensure_future(
        _client(handler).generate_stream("p", lambda delta: None, cancel_event=asyncio.Event())
    )
    await asyncio.wait_for(started.wait(), timeout=5)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    for _ in range(10):
        await asyncio.sleep(0)
    assert stopped == [True]
