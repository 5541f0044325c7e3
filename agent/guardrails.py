"""Agent safety guardrails — tool audit logging and confirmation prompts.

The gate itself is the session's `StateMachine`; this module turns gated
actions into human-readable prompts and keeps an audit trail of every tool
invocation.
"""

import json
import os
from datetime import datetime, timezone
from typing import Optional

from agent import config
from agent.errors import StoreError
from agent.state import PendingEdit, ToolCallInfo
from memory.documents import DocumentStore

# ── Tool audit trail ──────────────────────────────────────────────────────────


class ToolUsageLogger:
    """Append-only JSON-lines record of every tool call, successful or not."""

    def __init__(self, log_dir: str = config.TOOL_LOG_DIR, max_result_chars: int = 500):
        self._log_path = os.path.join(log_dir, "tool_usage.jsonl")
        self._max_result_chars = max_result_chars

    def log(
        self,
        tool_name: str,
        tool_args: dict,
        result_summary: str = "",
        error: Optional[str] = None,
    ) -> None:
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "tool": tool_name,
            "args": tool_args,
            "ok": error is None,
        }
        if error is None:
            entry["result"] = result_summary[: self._max_result_chars]
        else:
            entry["error"] = error
        with open(self._log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str, ensure_ascii=False) + "\n")


# Shared singleton
tool_logger = ToolUsageLogger()


# ── Destructive-action confirmation ──────────────────────────────────────────


def check_confirmation_needed(call: ToolCallInfo, store: DocumentStore) -> Optional[str]:
    """Return a confirmation prompt if *call* would modify the vault.

    Reports whether the target document already exists (overwrite or append)
    or is new.

    Returns:
        A human-readable prompt string, or None for read-only tools.
    """
    if call.name not in config.WRITE_TOOLS:
        return None

    path = call.arguments.get("path", "")
    exists_note = ""
    if isinstance(path, str) and path:
        try:
            if store.exists(path):
                verb = "overwritten" if call.name == "write" else "appended to"
                exists_note = f" ⚠ file already exists (will be {verb})"
            else:
                exists_note = " (new file)"
        except StoreError:
            exists_note = " (could not verify path)"

    args_summary = ", ".join(
        f"{k}={v!r}" if k != "content" else f"content=<{len(str(v))} chars>"
        for k, v in call.arguments.items()
    )
    return (
        "⚠️  The following action requires your confirmation:\n"
        f"  • {call.name}({args_summary}){exists_note}\n\n"
        "Please confirm to proceed, or reply to cancel."
    )


def describe_pending_edit(edit: PendingEdit) -> str:
    """Render a staged line edit as a before/after preview."""
    preview = edit.preview
    return (
        f"Pending edit to {edit.path} (lines {preview.start_line}-{preview.end_line}):\n"
        f"--- before\n{preview.before}\n"
        f"+++ after\n{preview.after}"
    )
