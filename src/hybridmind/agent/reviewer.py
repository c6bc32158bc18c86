"""Reviewer role: decide whether an executed plan reached its goal."""

import logging
from enum import Enum
from typing import (
    Any,
    ClassVar,
    List,
    Sequence,
)

from pydantic import (
    BaseModel,
    Field,
    field_validator,
)
from pydantic import ValidationError as PydanticValidationError

from hybridmind.agent.roles import (
    Invoke,
    TraceRecorder,
    context_block,
    corrective_messages,
    find_object_with,
)
from hybridmind.core.schema import WorkflowPlan
from hybridmind.providers import Message

logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    DONE = "done"
    REPLAN = "replan"


class Review(BaseModel):
    """Parsed reviewer answer."""

    verdict: Verdict
    summary: str = ""
    feedback: str = ""
    issues: List[Any] = Field(default_factory=list)
    forced: bool = False

    @field_validator("verdict", mode="before")
    @classmethod
    def _normalize_verdict(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            if value == "replanning":
                return Verdict.REPLAN.value
        return value


class _UnparseableReview(ValueError):
    pass


def parse_review(raw: str) -> Review:
    obj = find_object_with(raw or "", "verdict")
    if obj is None:
        raise _UnparseableReview("Response does not contain one JSON object with a 'verdict' field")
    try:
        return Review.model_validate(obj)
    except PydanticValidationError as exc:
        raise _UnparseableReview(
            "Review is malformed: verdict must be \"done\" or \"replan\" "
            f"({exc.error_count()} error(s))"
        ) from exc


class Reviewer:
    """Asks the reviewer model for a Done / Replan verdict."""

    TEMPERATURE: ClassVar[float] = 0.3

    SYSTEM_PROMPT: ClassVar[
        str
    ] = """\
You are the reviewing agent of HybridMind. Judge whether the executed steps achieve the goal.
Respond with ONE JSON object and no other text:
{"verdict": "done" | "replan", "summary": "<overall assessment>",
 "feedback": "<what the next plan must address, when replanning>", "issues": ["..."]}
"""

    AUTONOMOUS_DIRECTIVE: ClassVar[str] = (
        "\nVerify the work is complete: placeholders, TODOs or missing functionality mean replan."
    )

    CORRECTION: ClassVar[str] = (
        'Respond with exactly one JSON object with "verdict" set to "done" or "replan".'
    )

    def __init__(
        self,
        model: str,
        invoke: Invoke,
        recorder: TraceRecorder,
        *,
        autonomous: bool = True,
    ) -> None:
        self.model = model
        self._invoke = invoke
        self._recorder = recorder
        self.autonomous = autonomous

    def build_messages(
        self, plan: WorkflowPlan, history: Sequence[str], code: str | None = None
    ) -> List[Message]:
        steps = "\n".join(
            f"{i}. [{s.status.value}] {s.name} ({s.action.value})"
            for i, s in enumerate(plan.steps, start=1)
        )
        results = "\n".join(history) or "(none)"
        system = self.SYSTEM_PROMPT + (self.AUTONOMOUS_DIRECTIVE if self.autonomous else "")
        return [
            {"role": "system", "content": system},
            {
                "role": "user",
                "content": (
                    f"GOAL:\n{plan.goal}\n\nSTEPS:\n{steps}\n\nRESULTS:\n{results}"
                    f"{context_block(code, 'ORIGINAL CODE')}"
                ),
            },
        ]

    async def review(
        self, plan: WorkflowPlan, history: Sequence[str], code: str | None = None
    ) -> Review:
        """
        Return the reviewer's verdict.

        A malformed answer is re-requested once.  If the second answer is malformed too the run is
        closed as done, with ``forced`` set so the caller reports a partial result.
        """
        messages = self.build_messages(plan, history, code)
        options = {"role": "reviewer", "temperature": self.TEMPERATURE}

        result = await self._invoke(self.model, messages, options)
        self._recorder.ok("reviewer", result)
        try:
            return parse_review(result.content)
        except _UnparseableReview as exc:
            logger.warning("Reviewer reply rejected, asking once more: %s", exc)
            messages = corrective_messages(messages, result.content, str(exc), self.CORRECTION)

        result = await self._invoke(self.model, messages, options)
        self._recorder.ok("reviewer", result)
        try:
            return parse_review(result.content)
        except _UnparseableReview as exc:
            logger.warning("Reviewer reply unusable, closing the run: %s", exc)
            return Review(
                verdict=Verdict.DONE,
                summary=f"Review unavailable: {exc}",
                forced=True,
            )
