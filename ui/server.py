"""FastAPI server with WebSocket streaming for the vault assistant.

Client → server frames (JSON):
    {"type": "message", "content": "...", "selection": "...", "active_file": "..."}
    {"type": "confirm"}     apply the pending edit, or approve the waiting action
    {"type": "reject"}      discard the pending edit
    {"type": "new_chat"}

Server → client frames: ``status``, ``delta``, ``tool_result``,
``tool_error``, ``confirmation``, ``response``, ``edit_applied``,
``error``.
"""

import asyncio
import json
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from agent import config
from agent.errors import AgentError
from agent.guardrails import describe_pending_edit
from agent.prompts import describe_tools
from agent.session import Assistant, default_assistant
from agent.state import AgentCallbacks, ToolExecutionResult
from agent.tool_protocol import extract_think, strip_tool_blocks
from tools import get_all_tools

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Vault Agent")

# Replaced in tests to point the server at a scratch vault and a fake model.
assistant_factory = default_assistant


@app.get("/api/tools")
async def list_tools():
    """List all available tools the agent can use."""
    return describe_tools(get_all_tools())


def _frame(kind: str, content) -> str:
    return json.dumps({"type": kind, "content": content}, default=str)


async def _run_message(websocket: WebSocket, assistant: Assistant, message: dict) -> None:
    """Run one user message, forwarding loop events as they happen.

    If forwarding fails (the client went away), the run is cancelled
    through its cancel event and awaited before the error propagates.
    """
    events: asyncio.Queue = asyncio.Queue()
    tools_used: list[str] = []
    cancel_event = asyncio.Event()

    def on_tool_result(executed: ToolExecutionResult) -> None:
        tools_used.append(executed.name)
        events.put_nowait(_frame("tool_result", {"name": executed.name, "result": executed.result}))

    if "active_file" in message:
        assistant.session.active_file_path = message["active_file"] or None

    callbacks = AgentCallbacks(
        on_tool_result=on_tool_result,
        on_tool_error=lambda error: events.put_nowait(_frame("tool_error", error)),
    )
    run = asyncio.create_task(
        assistant.send(
            message.get("content", ""),
            on_delta=lambda delta, _: events.put_nowait(_frame("delta", delta)),
            selection=message.get("selection"),
            cancel_event=cancel_event,
            callbacks=callbacks,
        )
    )

    try:
        while not (run.done() and events.empty()):
            try:
                frame = await asyncio.wait_for(events.get(), timeout=0.1)
            except asyncio.TimeoutError:
                continue
            await websocket.send_text(frame)
    finally:
        if not run.done():
            cancel_event.set()
            await asyncio.wait({run})
            if not run.cancelled() and run.exception() is not None:
                logger.info("Run stopped after forwarding failed: %s", run.exception())

    response = run.result()

    assistant.save()

    pending = assistant.pending_edit
    if pending is not None:
        await websocket.send_text(_frame("confirmation", describe_pending_edit(pending)))

    _, visible = extract_think(response.text)
    await websocket.send_text(json.dumps({
        "type": "response",
        "content": strip_tool_blocks(visible),
        "header": response.header.to_dict(),
        "tools_used": tools_used,
    }))


@app.websocket("/ws/chat")
async def websocket_chat(websocket: WebSocket):
    """WebSocket endpoint for streaming agent responses."""
    await websocket.accept()

    # Each WebSocket connection gets its own chat session
    assistant = assistant_factory()

    try:
        while True:
            message = json.loads(await websocket.receive_text())
            kind = message.get("type", "message")

            try:
                if kind == "confirm":
                    if assistant.pending_edit is not None:
                        edit = assistant.confirm_pending_edit()
                        assistant.save()
                        await websocket.send_text(_frame("edit_applied", edit.path))
                    else:
                        assistant.confirm()
                        await websocket.send_text(_frame("status", "confirmed"))
                elif kind == "reject":
                    assistant.reject_pending_edit()
                    await websocket.send_text(_frame("status", "edit rejected"))
                elif kind == "new_chat":
                    session = assistant.new_chat()
                    await websocket.send_text(_frame("status", f"new chat {session.chat_id}"))
                elif message.get("content", "").strip():
                    await websocket.send_text(_frame("status", "thinking"))
                    await _run_message(websocket, assistant, message)
            except AgentError as e:
                logger.warning("Agent error: %s", e)
                await websocket.send_text(_frame("error", f"Agent error: {e}"))

    except WebSocketDisconnect:
        pass


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
