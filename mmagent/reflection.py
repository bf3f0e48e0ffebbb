"""Second-opinion check run when the model answers without calling tools."""

import logging

from msgspec import DecodeError, ValidationError, field

from mmagent.event_stream import EventStream
from mmagent.events import UserMessageEvent
from mmagent.interface import Record
from mmagent.llm.models import LLMMessage, ResolvedModel, content_text
from mmagent.llm.service import LLMService

logger = logging.getLogger(__name__)

REFLECTION_PROMPT = """You are an evaluator that decides whether an AI assistant has fully completed the user's task.

Judge the assistant's latest answer against these criteria:
1. Does the answer address every part of the user's request?
2. Is the answer complete, rather than a plan or a promise to do more later?
3. Would further tool use or reasoning clearly improve the answer?

Respond with a JSON object:
{"shouldContinue": boolean, "reason": "one sentence", "analysis": "short analysis"}

Set shouldContinue to true only when the task is clearly unfinished."""


class ReflectionVerdict(Record, rename="camel"):
    should_continue: bool
    reason: str = ""
    analysis: str = ""


class ReflectionResult(Record):
    finished: bool
    reason: str = ""
    analysis: str = ""
    details: dict[str, str] = field(default_factory=dict)


class ReflectionService:
    def __init__(
        self,
        llm_service: LLMService,
        event_stream: EventStream,
        *,
        temperature: float = 0.2,
        max_tokens: int = 500,
    ):
        self._llm_service = llm_service
        self._event_stream = event_stream
        self._temperature = temperature
        self._max_tokens = max_tokens

    def _latest_user_request(self) -> str | None:
        for event in reversed(self._event_stream.get_events(["user_message"])):
            if isinstance(event, UserMessageEvent):
                return content_text(event.content)
        return None

    async def evaluate(
        self, model: ResolvedModel | None, assistant_content: str
    ) -> ReflectionResult:
        """Decide whether the run is finished; any failure counts as finished."""
        user_request = self._latest_user_request()
        if model is None or user_request is None:
            return ReflectionResult(finished=True, reason="Reflection unavailable")

        messages = [
            LLMMessage(role="system", content=REFLECTION_PROMPT),
            LLMMessage(
                role="user",
                content=f"User request:\n{user_request}\n\n"
                f"Assistant answer:\n{assistant_content}",
            ),
        ]
        try:
            verdict = await self._llm_service.complete_json(
                model,
                messages,
                schema=ReflectionVerdict,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                response_format={"type": "json_object"},
            )
        except (DecodeError, ValidationError) as err:
            logger.warning("Reflection returned unparsable output: %s", err)
            return ReflectionResult(finished=True, reason="Unparsable reflection")
        except Exception:
            logger.exception("Reflection request failed, treating the task as finished")
            return ReflectionResult(finished=True, reason="Reflection failed")

        return ReflectionResult(
            finished=not verdict.should_continue,
            reason=verdict.reason,
            analysis=verdict.analysis,
        )
