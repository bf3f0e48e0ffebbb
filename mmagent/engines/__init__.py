from typing import Any

from mmagent.errors import MMAgentConfigurationError

from .base import ParsedModelResponse as ParsedModelResponse
from .base import PrepareRequestContext as PrepareRequestContext
from .base import StreamChunkResult as StreamChunkResult
from .base import StreamingToolCallUpdate as StreamingToolCallUpdate
from .base import StreamProcessingState as StreamProcessingState
from .base import ToolCallEngine as ToolCallEngine
from .native import NativeToolCallEngine as NativeToolCallEngine
from .prompt_engineering import (
    PromptEngineeringToolCallEngine as PromptEngineeringToolCallEngine,
)
from .structured_outputs import (
    StructuredOutputsToolCallEngine as StructuredOutputsToolCallEngine,
)

ENGINES: dict[str, type[ToolCallEngine[Any]]] = {
    "native": NativeToolCallEngine,
    "prompt_engineering": PromptEngineeringToolCallEngine,
    "structured_outputs": StructuredOutputsToolCallEngine,
}


def create_tool_call_engine(name: str) -> ToolCallEngine[Any]:
    try:
        return ENGINES[name]()
    except KeyError:
        raise MMAgentConfigurationError(
            f"Unknown tool call engine {name!r}, expected one of {sorted(ENGINES)}"
        ) from None
