"""Agent configuration, decoded with msgspec from JSON, TOML or plain mappings."""

from pathlib import Path
from typing import Any, Literal

import msgspec
import msgspec.json
import msgspec.toml
from msgspec import field

from mmagent.errors import MMAgentConfigurationError
from mmagent.interface import Record
from mmagent.llm.client import resolve_model
from mmagent.llm.models import ResolvedModel

ToolCallEngineType = Literal["native", "prompt_engineering", "structured_outputs"]

DEFAULT_INSTRUCTIONS = (
    "You are a helpful multimodal assistant. Use the available tools when they "
    "help you answer, and answer directly once you have what you need."
)


class ModelOptions(Record):
    provider: str = "openai"
    id: str = "gpt-4o"
    api_key: str | None = None
    """Falls back to the `<PROVIDER>_API_KEY` environment variable."""
    base_url: str | None = None
    reasoning: bool = False
    use_responses_api: bool = False

    def resolve(self) -> ResolvedModel:
        return resolve_model(
            self.provider,
            self.id,
            api_key=self.api_key,
            base_url=self.base_url,
            reasoning=self.reasoning,
        )


class ContextAwarenessOptions(Record):
    max_images: int = 5
    """Images kept across the whole history; older ones become placeholders."""
    max_text_chars: int = 100_000
    """Longest text part sent to the model before the middle is elided."""

    def __post_init__(self) -> None:
        if self.max_images < 0:
            raise MMAgentConfigurationError("max_images must be >= 0")
        if self.max_text_chars < 64:
            raise MMAgentConfigurationError("max_text_chars must be >= 64")


class ReflectionOptions(Record):
    enabled: bool = False
    temperature: float = 0.2
    max_tokens: int = 500


class AgentOptions(Record):
    name: str = "mmagent"
    instructions: str = DEFAULT_INSTRUCTIONS
    model: ModelOptions = field(default_factory=ModelOptions)
    max_iterations: int = 10
    max_tokens: int | None = None
    temperature: float | None = 0.7
    tool_call_engine: ToolCallEngineType = "native"
    enable_streaming_tool_call_events: bool = False
    context: ContextAwarenessOptions = field(default_factory=ContextAwarenessOptions)
    reflection: ReflectionOptions = field(default_factory=ReflectionOptions)
    abort_grace_seconds: float = 5.0
    """How long in-flight tools may finish after an abort before being cancelled."""
    request_timeout_seconds: float | None = None
    planning: bool = False

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise MMAgentConfigurationError("max_iterations must be >= 1")
        if self.abort_grace_seconds < 0:
            raise MMAgentConfigurationError("abort_grace_seconds must be >= 0")
        if self.max_tokens is not None and self.max_tokens < 1:
            raise MMAgentConfigurationError("max_tokens must be >= 1")


def agent_options_from_mapping(data: dict[str, Any]) -> AgentOptions:
    try:
        return msgspec.convert(data, type=AgentOptions)
    except msgspec.ValidationError as err:
        raise MMAgentConfigurationError(f"Invalid agent options: {err}") from err


def load_agent_options(path: str | Path) -> AgentOptions:
    """Load options from a `.json` or `.toml` file."""
    path = Path(path)
    raw = path.read_bytes()
    try:
        match path.suffix:
            case ".json":
                return msgspec.json.decode(raw, type=AgentOptions)
            case ".toml":
                return msgspec.toml.decode(raw, type=AgentOptions)
            case _:
                raise MMAgentConfigurationError(
                    f"Unsupported config format {path.suffix!r}"
                )
    except (msgspec.ValidationError, msgspec.DecodeError) as err:
        raise MMAgentConfigurationError(f"Invalid config {path}: {err}") from err
