"""Exception taxonomy shared by the agent, the tool runner and the stores."""


class AgentError(Exception):
    """Base class for every error raised by the agent package."""


# ── Model backend ─────────────────────────────────────────────────────────────


class TransportError(AgentError):
    """The generation backend returned a non-success status or no body."""


class StreamProtocolError(AgentError):
    """A line of the NDJSON response stream could not be decoded."""


class AbortedError(AgentError):
    """The run was cancelled through its cancellation event."""


class NoResponseError(AgentError):
    """The agent loop finished without obtaining a single model response."""


# ── State machine ─────────────────────────────────────────────────────────────


class InvalidStateError(AgentError, ValueError):
    """A state name outside the machine's allowed set was requested."""


# ── Tools ─────────────────────────────────────────────────────────────────────


class ToolError(AgentError):
    """A tool call failed; the loop records it as an error tool result."""


class UnknownToolError(ToolError):
    pass


class InvalidToolArguments(ToolError):
    pass


class PermissionDenied(ToolError):
    """A write-capable action was attempted while the gate forbids acting."""


class ToolExecutionError(ToolError):
    """A tool raised while running (usually a document-store failure)."""


class NoPendingEditError(ToolError):
    pass


# ── Document store ────────────────────────────────────────────────────────────


class StoreError(AgentError):
    pass


class DocumentNotFoundError(StoreError):
    pass


class SandboxViolationError(StoreError):
    pass
