"""Centralized agent configuration.

Reads from environment variables with sensible defaults so that the agent
works out of the box against a local Ollama server while remaining fully
customizable.
"""

import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ── LLM Settings ──────────────────────────────────────────────────────────────
BASE_URL: str = os.getenv("AGENT_BASE_URL", "http://127.0.0.1:11434")
MODEL_NAME: str = os.getenv("AGENT_MODEL", "qwen2.5:32b-instruct")
REQUEST_TIMEOUT: float = float(os.getenv("AGENT_REQUEST_TIMEOUT", "120"))
MAX_TURNS: int = int(os.getenv("AGENT_MAX_TURNS", "8"))

# Lines a model emits when it starts inventing the next speaker's turn.
STOP_SEQUENCES: list[str] = ["\nUser:", "\nHuman:", "\nMemory:"]
CHARS_PER_TOKEN: int = 4
MAX_CONTEXT_TOKENS: int = 32768
HEADER_SCAN_LINES: int = 40

# ── Prompt budgets ────────────────────────────────────────────────────────────
MAX_CONTEXT_CHARS: int = int(os.getenv("AGENT_MAX_CONTEXT_CHARS", "32000"))
MAX_MEMORY_CHARS: int = int(os.getenv("AGENT_MAX_MEMORY_CHARS", "2000"))
INCLUDE_ACTIVE_NOTE: bool = _env_bool("AGENT_INCLUDE_ACTIVE_NOTE", "false")

# ── Vault layout ──────────────────────────────────────────────────────────────
VAULT_ROOT = os.path.abspath(os.getenv("AGENT_VAULT_ROOT", "./workspace"))
os.makedirs(VAULT_ROOT, exist_ok=True)

AGENT_DIR = "AstraCodex"
CHARTER_PATH = f"{AGENT_DIR}/charter.md"
STATES_PATH = f"{AGENT_DIR}/states.md"
VOICE_PATH = f"{AGENT_DIR}/voice.md"
MEMORY_PATH = f"{AGENT_DIR}/Memory.md"
RULES_DIR = f"{AGENT_DIR}/Rules/"
CHATS_DIR = f"{AGENT_DIR}/Chats"

# ── Safety ────────────────────────────────────────────────────────────────────
AGENT_STATES: list[str] = ["idle", "thinking", "acting"]
ACTING_STATE = "acting"
STATE_ALIASES: dict[str, str] = {
    "reading": "thinking",
    "searching": "thinking",
    "checking": "thinking",
    "writing": "acting",
    "appending": "acting",
    "editing": "acting",
    "awaiting_confirmation": "acting",
}
WRITE_TOOLS: frozenset[str] = frozenset({"write", "append"})

TOOL_LOG_DIR: str = os.path.join(VAULT_ROOT, ".tool_logs")
os.makedirs(TOOL_LOG_DIR, exist_ok=True)

LOG_LEVEL: str = os.getenv("AGENT_LOG_LEVEL", "INFO").upper()


# ── Per-chat settings ─────────────────────────────────────────────────────────


@dataclass
class AgentSettings:
    """Settings a chat carries with it; defaults come from the environment."""

    base_url: str = BASE_URL
    model: str = MODEL_NAME
    max_context_chars: int = MAX_CONTEXT_CHARS
    max_memory_chars: int = MAX_MEMORY_CHARS
    include_active_note: bool = INCLUDE_ACTIVE_NOTE
    max_turns: int = MAX_TURNS

    def merge(self, overrides: Optional[dict[str, Any]] = None) -> "AgentSettings":
        """Return a copy with known keys from *overrides* applied."""
        known = {f.name for f in fields(self)}
        values = asdict(self)
        values.update({k: v for k, v in (overrides or {}).items() if k in known})
        return AgentSettings(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
