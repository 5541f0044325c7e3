"""Vault tools — list, read, write, append, line edit and the active file.

Each tool receives its `ToolContext` through the LangChain run config
(``config["configurable"]["tool_context"]``), so the same tool objects serve
every session. Write-capable tools ask the context's confirmation gate
before touching the store; `line_edit` never writes and only returns a
preview that the tool runner stages as the pending edit.
"""

import re
from typing import Any, Optional

from langchain_core.runnables import RunnableConfig
from langchain_core.tools import tool

from agent.tool_runner import ToolContext

_LINE_SPLIT = re.compile(r"\r?\n")


def _context(config: RunnableConfig) -> ToolContext:
    return config["configurable"]["tool_context"]


@tool("list")
async def list_documents(config: RunnableConfig, prefix: str = "") -> Any:
    """Search for vault files by substring match; an empty prefix lists every file."""
    ctx = _context(config)
    all_paths = ctx.store.list("")
    query = (prefix or "").strip()
    if not query:
        return all_paths

    query_lower = query.lower()
    query_md = (query if query.endswith(".md") else f"{query}.md").lower()
    matches = [p for p in all_paths if query_lower in p.lower() or query_md in p.lower()]

    if not matches:
        return {
            "ok": False,
            "message": f'No vault files matched "{query}". Make sure the path or filename exists.',
            "query": query,
            "count": 0,
        }
    return {"ok": True, "count": len(matches), "results": matches}


@tool("read")
async def read_document(path: str, config: RunnableConfig) -> str:
    """Read a file from the vault."""
    ctx = _context(config)
    ctx.log(f"Reading: {path}")
    return ctx.store.read(path)


@tool("write")
async def write_document(path: str, content: str, config: RunnableConfig) -> str:
    """Write content to a file (requires confirmation)."""
    ctx = _context(config)
    ctx.ensure_can_act()
    ctx.log(f"Writing: {path}")
    ctx.store.write(path, content)
    return f"Wrote {len(content)} characters to {path}"


@tool("append")
async def append_document(path: str, content: str, config: RunnableConfig) -> str:
    """Append content to a file (requires confirmation)."""
    ctx = _context(config)
    ctx.ensure_can_act()
    ctx.log(f"Appending: {path}")
    ctx.store.append(path, content)
    return f"Appended {len(content)} characters to {path}"


@tool("line_edit")
async def line_edit(
    path: str,
    startLine: int,  # noqa: N803 - argument names are part of the tool wire format
    endLine: int,  # noqa: N803
    replacement: str,
    config: RunnableConfig,
) -> dict:
    """Replace a range of lines with new content and return a preview."""
    ctx = _context(config)
    lines = _LINE_SPLIT.split(ctx.store.read(path))
    start_idx = max(1, startLine) - 1
    end_idx = min(len(lines), endLine) - 1
    before = "\n".join(lines[start_idx : end_idx + 1])
    updated = lines[:start_idx] + _LINE_SPLIT.split(replacement) + lines[end_idx + 1 :]
    return {
        "path": path,
        "preview": {
            "startLine": startLine,
            "endLine": endLine,
            "before": before,
            "after": replacement,
        },
        "updatedContent": "\n".join(updated),
    }


@tool("active_file")
async def active_file(config: RunnableConfig) -> Optional[str]:
    """Get the path of the currently active file in the vault (if any)."""
    return _context(config).active_file_path
