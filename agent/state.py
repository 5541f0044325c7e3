"""Agent state and the small value types that flow through the agent loop.

The graph state is the shared data structure passed between every node of
the loop. It uses LangGraph's `add_messages` annotation to accumulate the
conversation, so nodes return only the messages they append.
"""

from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, Optional, TypedDict

from langchain_core.messages import BaseMessage
from langgraph.graph.message import add_messages


@dataclass
class ParsedHeader:
    """``STATE:`` / ``NEEDS_CONFIRMATION:`` values reported by the model."""

    state: str = "idle"
    needs_confirmation: bool = False

    def to_dict(self) -> dict:
        return {"state": self.state, "needsConfirmation": self.needs_confirmation}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ParsedHeader"]:
        if not data:
            return None
        return cls(
            state=data.get("state", "idle"),
            needs_confirmation=bool(data.get("needsConfirmation", False)),
        )


@dataclass
class ModelResponse:
    header: ParsedHeader
    text: str


@dataclass
class ToolCallInfo:
    """A tool invocation decoded from model output."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    retrigger_message: Optional[str] = None
    raw_block: str = ""


@dataclass
class ToolExecutionResult:
    name: str
    result: Any
    retrigger_message: Optional[str] = None


@dataclass
class EditPreview:
    start_line: int
    end_line: int
    before: str
    after: str


@dataclass
class PendingEdit:
    """A staged line edit awaiting explicit approval."""

    path: str
    preview: EditPreview
    updated_content: str

    @classmethod
    def from_result(cls, result: dict) -> "PendingEdit":
        preview = result["preview"]
        return cls(
            path=result["path"],
            preview=EditPreview(
                start_line=preview["startLine"],
                end_line=preview["endLine"],
                before=preview["before"],
                after=preview["after"],
            ),
            updated_content=result["updatedContent"],
        )


@dataclass
class AgentCallbacks:
    """Optional hooks invoked synchronously while the loop runs."""

    on_turn_start: Optional[Callable[[int, list[BaseMessage]], None]] = None
    on_assistant_start: Optional[Callable[[], None]] = None
    on_assistant_delta: Optional[Callable[[str, str], None]] = None
    on_header: Optional[Callable[[ParsedHeader], None]] = None
    on_tool_result: Optional[Callable[[ToolExecutionResult], None]] = None
    on_tool_error: Optional[Callable[[str], None]] = None
    on_message_added: Optional[Callable[[BaseMessage], None]] = None


class AgentState(TypedDict):
    """Shared state for the agent loop graph.

    Attributes:
        messages: Conversation history. Uses `add_messages` so that each node
                  can append messages without overwriting the list.
        turn: Number of model turns started so far.
        max_turns: Turn budget for this run.
        visited_paths: Documents already read, seeded from prior history.
        tool_request: Outcome of tool-call extraction on the latest reply:
                      a ToolCallInfo, a ToolCallParseError, or None.
        last_response: Most recent ModelResponse.
    """

    messages: Annotated[list, add_messages]
    turn: int
    max_turns: int
    visited_paths: set
    tool_request: Optional[Any]
    last_response: Optional[ModelResponse]
