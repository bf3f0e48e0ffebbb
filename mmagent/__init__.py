"""
mmagent - multimodal tool-using LLM agent runtime over an event stream.
"""

__version__ = "0.1.0"

from ididi import Graph as Graph

from .abort import AbortController as AbortController
from .abort import AbortSignal as AbortSignal
from .agent import Agent as Agent
from .agent import AgentRunOptions as AgentRunOptions
from .agent import AgentRunResult as AgentRunResult
from .config import AgentOptions as AgentOptions
from .config import ModelOptions as ModelOptions
from .config import load_agent_options as load_agent_options
from .event_stream import EventStream as EventStream
from .hooks import AgentHooks as AgentHooks
from .hooks import ToolCallResult as ToolCallResult
from .llm import LLMService as LLMService
from .llm import image_part as image_part
from .llm import text_part as text_part
from .storage import JsonlEventStore as JsonlEventStore
from .storage import load_events as load_events
from .tools import Tool as Tool
from .tools import param as param
from .tools import tool as tool
