from .llm_processor import IterationOutcome as IterationOutcome
from .llm_processor import LLMProcessor as LLMProcessor
from .loop import AgentLoop as AgentLoop
from .loop import RunOutcome as RunOutcome
from .tool_processor import ToolProcessor as ToolProcessor
