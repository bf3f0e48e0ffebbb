import logging
import os
from typing import Any, Callable, Protocol

from openai import AsyncOpenAI

from mmagent.errors import MMAgentConfigurationError

from .models import ResolvedModel

logger = logging.getLogger(__name__)

# OpenAI-compatible endpoints; `None` means the SDK default.
PROVIDER_BASE_URLS: dict[str, str | None] = {
    "openai": None,
    "azure-openai": None,
    "deepseek": "https://api.deepseek.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "volcengine": "https://ark.cn-beijing.volces.com/api/v3",
    "ollama": "http://127.0.0.1:11434/v1",
    "lm-studio": "http://127.0.0.1:1234/v1",
}

# Local servers ignore the key but the SDK insists on one.
_KEYLESS_PROVIDERS = {"ollama", "lm-studio"}


class IChatCompletions(Protocol):
    async def create(self, **kwargs: Any) -> Any: ...


class IChat(Protocol):
    @property
    def completions(self) -> IChatCompletions: ...


class IResponses(Protocol):
    async def create(self, **kwargs: Any) -> Any: ...


class ILLMClient(Protocol):
    """The slice of `AsyncOpenAI` the runtime talks to."""

    @property
    def chat(self) -> IChat: ...

    @property
    def responses(self) -> IResponses: ...


type LLMClientFactory = Callable[[ResolvedModel], ILLMClient]


def api_key_env_var(provider: str) -> str:
    return provider.upper().replace("-", "_") + "_API_KEY"


def resolve_model(
    provider: str,
    model_id: str,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    reasoning: bool = False,
) -> ResolvedModel:
    """Fill endpoint and credentials for `provider` from the known table and env."""
    if provider not in PROVIDER_BASE_URLS and base_url is None:
        raise MMAgentConfigurationError(
            f"Unknown provider {provider!r}, pass base_url for custom endpoints"
        )
    if api_key is None:
        api_key = os.environ.get(api_key_env_var(provider))
    if api_key is None and provider in _KEYLESS_PROVIDERS:
        api_key = provider
    return ResolvedModel(
        provider=provider,
        id=model_id,
        api_key=api_key,
        base_url=base_url or PROVIDER_BASE_URLS.get(provider),
        reasoning=reasoning,
    )


def create_llm_client(model: ResolvedModel) -> ILLMClient:
    if model.api_key is None:
        raise MMAgentConfigurationError(
            f"No API key for provider {model.provider!r}, "
            f"set {api_key_env_var(model.provider)} or pass api_key"
        )
    logger.info(
        "Creating LLM client provider=%s model=%s base_url=%s",
        model.provider,
        model.id,
        model.base_url or "default",
    )
    return AsyncOpenAI(api_key=model.api_key, base_url=model.base_url)
