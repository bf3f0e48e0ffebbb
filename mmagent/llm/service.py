"""LLM service: client lifecycle, timeouts, provider error mapping and JSON completions."""

import asyncio
import logging
from typing import Any, AsyncIterator, Type, TypeVar

import openai
from msgspec import DecodeError, ValidationError
from msgspec.json import decode
from msgspec.json import encode as json_encode
from msgspec.json import schema as get_schema

from mmagent.errors import LLMProviderError, MMAgentValidationError

from .client import ILLMClient, LLMClientFactory, create_llm_client
from .models import LLMMessage, ResolvedModel

logger = logging.getLogger(__name__)

JSONDecodeErrors = (ValidationError, DecodeError)

T = TypeVar("T")

ERROR_PROMPT_TEMPLATE = (
    "Error handling notice:\n"
    "Expected JSON schema: {schema_name}\n"
    "Decoder error: {error}\n"
    "Please respond again with ONLY valid JSON that conforms to the schema. "
    "Do not include explanations or surrounding text."
)


def _provider_error(exc: openai.APIError) -> Exception:
    if isinstance(exc, openai.APITimeoutError):
        return TimeoutError(str(exc))
    status = exc.status_code if isinstance(exc, openai.APIStatusError) else None
    return LLMProviderError(str(exc), status_code=status)


class LLMService:
    """
    Owns the OpenAI-compatible client used for a session.

    Responsibilities:
    - Lazily create the client on first use and reuse it while the model's
      endpoint stays the same
    - Timeouts on request creation
    - Translating SDK errors into `LLMProviderError` / `TimeoutError`
    - JSON completions with self-correcting retries

    Does NOT own:
    - Prompts, tool formats or stream interpretation (tool call engines do)
    """

    def __init__(
        self,
        client_factory: LLMClientFactory = create_llm_client,
        *,
        timeout_seconds: float | None = None,
        max_retries: int = 2,
    ):
        self._client_factory = client_factory
        self._timeout_seconds = timeout_seconds
        self._max_retries = max_retries
        self._client: ILLMClient | None = None
        self._client_key: tuple[str, str | None, str | None] | None = None

    def client_for(self, model: ResolvedModel) -> ILLMClient:
        if self._client is None or self._client_key != model.client_key:
            self._client = self._client_factory(model)
            self._client_key = model.client_key
        return self._client

    async def _create(self, coro: Any) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout_seconds)
        except openai.APIError as exc:
            raise _provider_error(exc) from exc

    async def _iterate(self, stream: Any) -> AsyncIterator[Any]:
        try:
            async for chunk in stream:
                yield chunk
        except openai.APIError as exc:
            raise _provider_error(exc) from exc
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()

    async def stream_chat(
        self, model: ResolvedModel, request: dict[str, Any]
    ) -> AsyncIterator[Any]:
        """Open a chat-completions stream; yields provider chunks untouched."""
        client = self.client_for(model)
        stream = await self._create(client.chat.completions.create(**request))
        async for chunk in self._iterate(stream):
            yield chunk

    async def stream_response(
        self, model: ResolvedModel, request: dict[str, Any]
    ) -> AsyncIterator[Any]:
        """Open a Responses API stream; yields provider events untouched."""
        client = self.client_for(model)
        stream = await self._create(client.responses.create(**request))
        async for event in self._iterate(stream):
            yield event

    async def complete(
        self, model: ResolvedModel, messages: list[LLMMessage], **params: Any
    ) -> str:
        """Single non-streaming chat completion, returning the message text."""
        client = self.client_for(model)
        resp = await self._create(
            client.chat.completions.create(
                model=model.id,
                messages=[m.asdict() for m in messages],
                **params,
            )
        )
        return resp.choices[0].message.content or ""

    async def complete_json(
        self,
        model: ResolvedModel,
        messages: list[LLMMessage],
        *,
        schema: Type[T],
        retries: int | None = None,
        **params: Any,
    ) -> T:
        """Complete a request and parse the response into `schema`.

        On decode failure, appends a system error-handling message with the
        decoder error to help the model self-correct, retrying up to
        `max_retries` times.
        """
        if not messages or messages[0].role != "system":
            raise MMAgentValidationError(
                "complete_json expects the first message to be a system message"
            )
        messages = list(messages)
        schema_output = get_schema(schema)
        messages.insert(
            1,
            LLMMessage.build(
                role="system",
                content="Return Format Advisory:\n"
                f"You must respond with ONLY JSON that matches the `{schema.__name__}` schema.\n"
                f"JSON Schema:\n{json_encode(schema_output).decode()}\n",
            ),
        )

        attempts = max(1, retries if retries is not None else self._max_retries)
        last_error: Exception | None = None
        for attempt in range(attempts):
            raw_text = await self.complete(model, messages, **params)
            try:
                return decode(raw_text, type=schema)
            except JSONDecodeErrors as err:
                last_error = err
                logger.debug("JSON completion attempt %d failed: %s", attempt + 1, err)
            messages.append(
                LLMMessage.build(
                    role="system",
                    content=ERROR_PROMPT_TEMPLATE.format(
                        schema_name=schema.__name__, error=str(last_error)
                    ),
                )
            )

        assert last_error is not None
        raise last_error
