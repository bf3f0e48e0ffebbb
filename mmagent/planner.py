"""Optional task planning: the model maintains a step list through two tools."""

import logging
from typing import Annotated, Any

from msgspec import field

from mmagent.event_stream import EventStream
from mmagent.events import (
    PlanFinishEvent,
    PlanStartEvent,
    PlanStep,
    PlanUpdateEvent,
)
from mmagent.interface import Record
from mmagent.tools import Tool, ToolMeta, param

logger = logging.getLogger(__name__)

PLANNING_PROMPT = """Planning:
For tasks that need more than one step, call `update_plan` with the full list of
steps before you start, and call it again whenever a step is done or the plan
changes. When every step is done, call `finish_plan` with a short summary, then
give your final answer."""


class Plan(Record):
    steps: list[PlanStep] = field(default_factory=list)
    completed: bool = False
    summary: str | None = None

    @property
    def progress(self) -> tuple[int, int]:
        return sum(1 for s in self.steps if s.done), len(self.steps)


class Planner:
    """Keeps a plan per session, derived only from `plan_*` events."""

    def __init__(self, event_stream: EventStream):
        self._event_stream = event_stream
        self.session_id = ""
        self._tools: list[Tool[..., Any]] = [
            Tool.from_func(self.update_plan, ToolMeta(name="update_plan")),
            Tool.from_func(self.finish_plan, ToolMeta(name="finish_plan")),
        ]

    def begin(self, session_id: str) -> None:
        self.session_id = session_id

    def plan(self, session_id: str | None = None) -> Plan | None:
        """The latest plan of a session, or None when none was started."""
        session_id = session_id or self.session_id
        current: Plan | None = None
        for event in self._event_stream.get_events(
            ["plan_start", "plan_update", "plan_finish"]
        ):
            match event:
                case PlanStartEvent(session_id=sid) if sid == session_id:
                    current = Plan()
                case PlanUpdateEvent(session_id=sid, steps=steps) if (
                    sid == session_id and current is not None
                ):
                    current = Plan(steps=list(steps))
                case PlanFinishEvent(session_id=sid, summary=summary) if (
                    sid == session_id and current is not None
                ):
                    current = Plan(steps=current.steps, completed=True, summary=summary)
                case _:
                    pass
        return current

    def _ensure_started(self) -> None:
        current = self.plan()
        if current is None or current.completed:
            self._event_stream.emit("plan_start", session_id=self.session_id)

    def update_plan(
        self,
        steps: Annotated[
            list[str], param("Every step of the plan, in order, as short imperatives")
        ],
        done: Annotated[
            list[int] | None,
            param("Zero-based indexes of the steps already completed"),
        ] = None,
    ) -> str:
        """Create or replace the plan for the current task."""
        self._ensure_started()
        finished = set(done or [])
        plan_steps = [
            PlanStep(content=content, done=i in finished)
            for i, content in enumerate(steps)
        ]
        self._event_stream.emit(
            "plan_update", session_id=self.session_id, steps=plan_steps
        )
        completed = len(finished & set(range(len(steps))))
        logger.debug("Plan updated: %d/%d steps done", completed, len(steps))
        return f"Plan updated: {completed}/{len(steps)} steps done."

    def finish_plan(
        self,
        summary: Annotated[str, param("What was accomplished")],
    ) -> str:
        """Mark the current plan as completed."""
        current = self.plan()
        if current is None or current.completed:
            return "There is no active plan to finish."
        self._event_stream.emit(
            "plan_finish", session_id=self.session_id, summary=summary
        )
        return "Plan finished."

    @property
    def tools(self) -> list[Tool[..., Any]]:
        return list(self._tools)

    def prompt(self, instructions: str) -> str:
        return f"{instructions}\n\n{PLANNING_PROMPT}"
