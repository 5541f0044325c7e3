"""Streaming client for an Ollama-style ``/api/generate`` endpoint.

The backend answers with newline-delimited JSON objects, each optionally
carrying a ``response`` text fragment. Fragments are forwarded to a delta
callback as they arrive and accumulated into the full reply, which is then
cleaned of hallucinated follow-up turns and scanned for the
``STATE:`` / ``NEEDS_CONFIRMATION:`` header.
"""

import asyncio
import contextlib
import json
import logging
import math
import re
from typing import Callable, Optional

import httpx

from agent import config
from agent.errors import AbortedError, StreamProtocolError, TransportError
from agent.state import ModelResponse, ParsedHeader

logger = logging.getLogger(__name__)

DeltaCallback = Callable[[str], None]

# A line where the model starts speaking for someone else.
_CONTINUATION_MARKER = re.compile(r"^(User|Human|Memory|Assistant):", re.MULTILINE)
_LEADING_ASSISTANT_LABEL = re.compile(r"^\s*Assistant:[ \t]*")


def parse_header(text: str) -> ParsedHeader:
    """Read ``STATE:`` and ``NEEDS_CONFIRMATION:`` from the first 40 lines.

    The first occurrence of each key wins; missing keys keep their defaults.
    """
    header = ParsedHeader()
    seen_state = seen_confirmation = False

    for line in text.splitlines()[: config.HEADER_SCAN_LINES]:
        line = line.strip()
        if not seen_state and line.startswith("STATE:"):
            seen_state = True
            header.state = line[len("STATE:"):].strip() or header.state
        elif not seen_confirmation and line.startswith("NEEDS_CONFIRMATION:"):
            seen_confirmation = True
            value = line[len("NEEDS_CONFIRMATION:"):].strip().lower()
            header.needs_confirmation = value == "true"
        if seen_state and seen_confirmation:
            break

    return header


def truncate_hallucinated_turns(text: str) -> str:
    """Cut *text* at the first line that opens another speaker's turn.

    A leading ``Assistant:`` label is the model naming itself and is only
    removed; anywhere else it marks an invented continuation.
    """
    text = _LEADING_ASSISTANT_LABEL.sub("", text, count=1)
    match = _CONTINUATION_MARKER.search(text)
    if match:
        text = text[: match.start()]
    return text.rstrip()


def estimate_context_tokens(max_context_chars: int) -> int:
    tokens = math.ceil(max(max_context_chars, 0) / config.CHARS_PER_TOKEN)
    return min(tokens, config.MAX_CONTEXT_TOKENS)


class ModelClient:
    """Issues streaming generation requests."""

    def __init__(
        self,
        base_url: str = config.BASE_URL,
        model: str = config.MODEL_NAME,
        max_context_chars: int = config.MAX_CONTEXT_CHARS,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = config.REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_context_chars = max_context_chars
        self._http_client = http_client
        self._timeout = timeout

    def build_request_body(self, prompt: str) -> dict:
        return {
            "model": self.model,
            "prompt": prompt,
            "stream": True,
            "options": {
                "context_size": estimate_context_tokens(self.max_context_chars),
                "stop": list(config.STOP_SEQUENCES),
            },
        }

    async def generate_stream(
        self,
        prompt: str,
        on_delta: DeltaCallback,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ModelResponse:
        """Stream a reply for *prompt*.

        Raises:
            AbortedError: *cancel_event* was set before or during the request.
            TransportError: The backend failed or returned a non-2xx status.
            StreamProtocolError: A stream line was not valid JSON.
        """
        if cancel_event is None:
            text = await self._stream(prompt, on_delta)
        else:
            text = await self._stream_cancellable(prompt, on_delta, cancel_event)

        text = truncate_hallucinated_turns(text)
        return ModelResponse(header=parse_header(text), text=text)

    async def _stream_cancellable(
        self, prompt: str, on_delta: DeltaCallback, cancel_event: asyncio.Event
    ) -> str:
        if cancel_event.is_set():
            raise AbortedError("Generation aborted before the request was sent")

        stream_task = asyncio.ensure_future(self._stream(prompt, on_delta))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({stream_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
            # Also reached when the caller itself is cancelled
            if not stream_task.done():
                stream_task.cancel()

        if stream_task.done() and not stream_task.cancelled():
            return stream_task.result()

        with contextlib.suppress(asyncio.CancelledError):
            await stream_task
        raise AbortedError("Generation aborted")


    async def _stream(self, prompt: str, on_delta: DeltaCallback) -> str:
        url = f"{self.base_url}/api/generate"
        body = self.build_request_body(prompt)
        logger.debug("POST %s (%d prompt chars)", url, len(prompt))

        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        try:
            async with client.stream("POST", url, json=body) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(f"Backend error {response.status_code}: {detail}")
                return await self._read_stream(response, on_delta)
        except httpx.HTTPError as e:
            raise TransportError(f"Request to {url} failed: {e}") from e
        finally:
            if self._http_client is None:
                await client.aclose()

    async def _read_stream(self, response: httpx.Response, on_delta: DeltaCallback) -> str:
        parts: list[str] = []
        async for line in response.aiter_lines():
            line = line.strip()
            if not line:
                continue
            try:
                chunk = json.loads(line)
            except json.JSONDecodeError as e:
                raise StreamProtocolError(f"Invalid stream line: {line[:200]!r}") from e
            delta = chunk.get("response") if isinstance(chunk, dict) else None
            if delta:
                parts.append(delta)
                on_delta(delta)
            if isinstance(chunk, dict) and chunk.get("done"):
                break

        if not parts:
            logger.debug("Stream finished without any text")
        return "".join(parts)
