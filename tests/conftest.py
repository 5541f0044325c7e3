"""Shared fixtures: a scratch vault and a scripted stand-in for the model."""

import pytest


class ScriptedModel:
    """Replays canned replies through the same interface as ModelClient."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.prompts: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate_stream(self, prompt, on_delta, cancel_event=None):
        from agent.model_client import parse_header, truncate_hallucinated_turns
        from agent.state import ModelResponse

        self.prompts.append(prompt)
        # Repeat the final reply once the script runs out
        text = self.replies[min(len(self.prompts), len(self.replies)) - 1]
        for chunk in (text[: len(text) // 2], text[len(text) // 2 :]):
            if chunk:
                on_delta(chunk)
        text = truncate_hallucinated_turns(text)
        return ModelResponse(header=parse_header(text), text=text)


@pytest.fixture(autouse=True)
def tool_log_in_tmp(tmp_path, monkeypatch):
    """Keep the tool audit log out of the working tree."""
    from agent.guardrails import tool_logger

    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    monkeypatch.setattr(tool_logger, "_log_path", str(log_dir / "tool_usage.jsonl"))
    return log_dir / "tool_usage.jsonl"


@pytest.fixture
def vault(tmp_path):
    from memory.documents import FileSystemStore

    return FileSystemStore(str(tmp_path / "vault"))


@pytest.fixture
def scripted_model():
    return ScriptedModel
