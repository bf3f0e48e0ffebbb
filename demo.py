import asyncio
import base64
import logging
import os
from typing import Annotated, cast

from dotenv import load_dotenv
from httpx import AsyncClient
from ididi import use
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from mmagent import (
    Agent,
    AgentOptions,
    AgentRunOptions,
    JsonlEventStore,
    ModelOptions,
    param,
    tool,
)
from mmagent.errors import MMAgentValidationError
from mmagent.events import (
    AgentRunEndEvent,
    AssistantStreamingMessageEvent,
    PlanUpdateEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from mmagent.config import ReflectionOptions

OPEN_METEO_GEOCODE = "https://geocoding-api.open-meteo.com/v1/search"
OPEN_METEO_FORECAST = "https://api.open-meteo.com/v1/forecast"


def build_tracer() -> trace.Tracer:
    """Export spans to Langfuse when its keys are configured."""
    otel_provider = TracerProvider(resource=Resource.create({"service.name": "mmagent-demo"}))
    if base_url := os.environ.get("LANGFUSE_BASE_URL"):
        auth = base64.b64encode(
            f"{os.environ['LANGFUSE_PUBLIC_KEY']}:{os.environ['LANGFUSE_SECRET_KEY']}".encode()
        ).decode()
        exporter = OTLPSpanExporter(
            endpoint=f"{base_url}/api/public/otel/v1/traces",
            headers={"Authorization": f"Basic {auth}"},
        )
        otel_provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(otel_provider)
    return trace.get_tracer("mmagent-demo")


async def build_async_http_client() -> AsyncClient:
    return AsyncClient(timeout=20.0)


@tool
async def get_weather(
    city: Annotated[str, param("City to look up, e.g. Boston")],
    client: Annotated[AsyncClient, use(build_async_http_client, reuse=False)],
) -> dict[str, object]:
    """Current temperature and precipitation probability for a city."""
    name = city.split(",")[0].strip()
    if not name:
        raise MMAgentValidationError("City must be a non-empty string")
    try:
        geo = await client.get(
            OPEN_METEO_GEOCODE,
            params={"name": name, "count": 1, "language": "en", "format": "json"},
        )
        geo.raise_for_status()
        results = geo.json().get("results", [])
        if not results:
            raise MMAgentValidationError(f"No coordinates found for {city}")
        location = results[0]

        forecast = await client.get(
            OPEN_METEO_FORECAST,
            params={
                "latitude": location["latitude"],
                "longitude": location["longitude"],
                "current": "temperature_2m,precipitation",
                "hourly": "precipitation_probability",
                "forecast_days": 1,
                "timezone": "auto",
            },
        )
        forecast.raise_for_status()
        payload = forecast.json()
        return {
            "city": location.get("name", name),
            "temperature_c": payload["current"]["temperature_2m"],
            "precipitation_mm": payload["current"]["precipitation"],
            "max_precip_probability": max(payload["hourly"]["precipitation_probability"]),
            "source": "open-meteo",
        }
    finally:
        await client.aclose()


async def main() -> None:
    load_dotenv(".env")
    logging.basicConfig(level=logging.INFO)
    tracer = build_tracer()

    options = AgentOptions(
        name="weather-demo",
        instructions="You are a concise travel assistant. Check the weather with tools before answering.",
        model=ModelOptions(
            provider=os.environ.get("MMAGENT_PROVIDER", "openai"),
            id=os.environ.get("MMAGENT_MODEL", "gpt-4o"),
        ),
        tool_call_engine=os.environ.get("MMAGENT_ENGINE", "native"),  # type: ignore[arg-type]
        reflection=ReflectionOptions(enabled=True),
        planning=True,
    )
    agent = Agent(options, tools=[get_weather], tracer=tracer)

    with JsonlEventStore(".mmagent/session.jsonl").attach(agent.event_stream):
        async for event in agent.stream(
            AgentRunOptions(
                input="Should I take an umbrella in Boston and in Seattle today?",
                stream=True,
            )
        ):
            match event:
                case AssistantStreamingMessageEvent(content=delta):
                    print(delta, end="", flush=True)
                case ToolCallEvent(name=name, arguments=arguments):
                    print(f"\n-> {name}({arguments})")
                case ToolResultEvent(name=name, content=content, is_error=is_error):
                    print(f"<- {name}{' [error]' if is_error else ''}: {content}")
                case PlanUpdateEvent(steps=steps):
                    for step in steps:
                        print(f"   [{'x' if step.done else ' '}] {step.content}")
                case AgentRunEndEvent(status=status, iterations=iterations):
                    print(f"\n== {status} after {iterations} iteration(s)")
                case _:
                    pass

    provider = cast(TracerProvider, trace.get_tracer_provider())
    provider.force_flush()
    provider.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
