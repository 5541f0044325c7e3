"""Rule and prompt-fragment loader.

Reads the charter, state rules, voice and memory notes from the vault, plus
any number of named rule files under the rules directory. A fragment that
cannot be read becomes a short "Missing file" note instead of an error so a
half-configured vault still yields a usable prompt.
"""

from dataclasses import dataclass

from agent import config
from agent.errors import StoreError
from memory.documents import DocumentStore


@dataclass
class CoreRules:
    charter: str
    states: str
    voice: str


class RuleManager:
    def __init__(self, store: DocumentStore):
        self._store = store

    def load_core(self) -> CoreRules:
        return CoreRules(
            charter=self._safe_read(config.CHARTER_PATH),
            states=self._safe_read(config.STATES_PATH),
            voice=self._safe_read(config.VOICE_PATH),
        )

    def load_memory(self) -> str:
        return self._safe_read(config.MEMORY_PATH)

    def load_rules(self, names: list[str]) -> dict[str, str]:
        """Read ``Rules/<name>.md`` for each name, keyed by the bare name."""
        rules: dict[str, str] = {}
        for name in names:
            filename = name if name.endswith(".md") else f"{name}.md"
            rules[name.removesuffix(".md")] = self._safe_read(f"{config.RULES_DIR}{filename}")
        return rules

    def list_rule_files(self) -> list[str]:
        return self._store.list(config.RULES_DIR)

    def _safe_read(self, path: str) -> str:
        try:
            return self._store.read(path)
        except StoreError as e:
            return f"Missing file: {path}. ({e})"
