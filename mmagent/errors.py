class MMAgentError(Exception):
    """Base exception class for mmagent errors."""


class MMAgentConfigurationError(MMAgentError):
    """Raised when the agent is misconfigured or missing required settings."""


class UnannotatedToolParamError(MMAgentConfigurationError):
    """Raised when a tool parameter carries no type annotation."""


class MMAgentValidationError(MMAgentError):
    """Raised when inputs fail validation."""


class ToolArgumentsError(MMAgentValidationError):
    """Raised when a model-produced arguments payload cannot be decoded for a tool."""


class MMAgentRuntimeError(MMAgentError):
    """Raised when runtime execution fails unexpectedly."""


class ToolNotFoundError(MMAgentRuntimeError):
    """Raised when the model calls a tool that is not in the execution tool set."""

    def __init__(self, name: str):
        super().__init__(f"Tool {name!r} not found")
        self.name = name


class AgentBusyError(MMAgentRuntimeError):
    """Raised when a run is requested while another run is executing."""


class AgentAbortedError(MMAgentRuntimeError):
    """Raised internally when the abort signal fires at a suspension point."""


class LLMProviderError(MMAgentError):
    """Wrapper for LLM provider errors bubbled up through mmagent."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "MMAgentError",
    "MMAgentConfigurationError",
    "UnannotatedToolParamError",
    "MMAgentValidationError",
    "ToolArgumentsError",
    "MMAgentRuntimeError",
    "ToolNotFoundError",
    "AgentBusyError",
    "AgentAbortedError",
    "LLMProviderError",
]
