"""
Executor role: carry out one plan step as a validated tool call.

The executor model must answer with exactly one tool call.  Its reply goes through
:func:`validate_tool_call`; on rejection the model is re-prompted once with the validator's reason
appended.  A second rejection fails the step (the agent loop then skips its dependents).
"""

import logging
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    ClassVar,
    Dict,
    List,
    Mapping,
    Sequence,
)

from pydantic import BaseModel

from hybridmind.agent.roles import (
    Invoke,
    TraceRecorder,
    context_block,
    corrective_messages,
)
from hybridmind.agent.tool_executor import summarize_tool_call
from hybridmind.core.errors import (
    HybridMindError,
    SecurityViolation,
    ToolCallValidationError,
)
from hybridmind.core.schema import (
    Step,
    StepAction,
    Usage,
)
from hybridmind.providers import Message
from hybridmind.tools import (
    ToolSchema,
    get_tool_schemas,
    tool_call_to_dict,
)
from hybridmind.tools.validator import validate_tool_call

logger = logging.getLogger(__name__)

ACTION_INSTRUCTIONS: Dict[StepAction, str] = {
    StepAction.ANALYZE: "Provide a thorough analysis. Identify patterns and issues.",
    StepAction.REFACTOR: "Refactor the code while preserving functionality.",
    StepAction.OPTIMIZE: "Optimize for performance and efficiency.",
    StepAction.DOCUMENT: "Add documentation covering purpose, parameters, and examples.",
    StepAction.TEST: "Write tests covering edge cases and common scenarios.",
    StepAction.REVIEW: "Review the code critically and point out concrete problems.",
    StepAction.FIX: "Fix the identified issues.",
}

ACTION_TEMPERATURES: Dict[StepAction, float] = {
    StepAction.ANALYZE: 0.3,
    StepAction.REFACTOR: 0.5,
    StepAction.OPTIMIZE: 0.4,
    StepAction.DOCUMENT: 0.4,
    StepAction.TEST: 0.6,
    StepAction.REVIEW: 0.3,
    StepAction.FIX: 0.5,
}


@dataclass
class StepOutcome:
    """What happened when one step was attempted."""

    step_id: str
    model: str
    success: bool
    tool_call: BaseModel | None = None
    raw_output: str | None = None
    error: HybridMindError | None = None
    attempts: int = 0
    usage: Usage = field(default_factory=Usage)

    @property
    def summary(self) -> str:
        if self.tool_call is not None:
            return summarize_tool_call(self.tool_call)
        if self.error is not None:
            return f"failed: {self.error.reason}"
        return ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stepId": self.step_id,
            "model": self.model,
            "success": self.success,
            "toolCall": tool_call_to_dict(self.tool_call) if self.tool_call is not None else None,
            "summary": self.summary,
            "error": self.error.to_dict() if self.error is not None else None,
            "attempts": self.attempts,
        }


def describe_tools(tool_schemas: Mapping[str, ToolSchema]) -> str:
    lines = []
    for name, schema in tool_schemas.items():
        params = ", ".join(f"{p}: {info['type']}" for p, info in schema["parameters"].items())
        lines.append(f"- {name}({params}): {schema['description']}")
    return "\n".join(lines)


class StepExecutor:
    """Runs plan steps through an executor model."""

    SYSTEM_PROMPT: ClassVar[
        str
    ] = """\
You are the executor agent of HybridMind. Carry out exactly the step you are given.
Respond with ONE JSON tool call and no other text, e.g.
{"tool": "thought", "content": "..."}
Use {"tool": "batch", "actions": [...]} to group several actions (batches cannot be nested).
Paths must be relative to the workspace root.
"""

    CORRECTION: ClassVar[str] = "Respond again with exactly one valid JSON tool call."

    def __init__(
        self,
        invoke: Invoke,
        recorder: TraceRecorder,
        *,
        workspace_root: str | None = None,
        autonomous: bool = True,
    ) -> None:
        self._invoke = invoke
        self._recorder = recorder
        self.workspace_root = workspace_root
        self.autonomous = autonomous

    def _build_prompt(self) -> str:
        prompt = self.SYSTEM_PROMPT + "\nAvailable tools:\n" + describe_tools(get_tool_schemas())
        if self.autonomous:
            prompt += "\n\nProduce complete, working changes. No placeholders or TODOs."
        return prompt

    def build_messages(
        self,
        step: Step,
        goal: str,
        code: str | None = None,
        position: int = 1,
        total: int = 1,
        history: Sequence[str] = (),
    ) -> List[Message]:
        task = step.description or step.name
        user = f"GOAL:\n{goal}\n\nTask: {task}\nThis is step {position} of {total}.\n"
        user += ACTION_INSTRUCTIONS.get(step.action, "") + "\n"
        if history:
            user += "\nPREVIOUS STEPS:\n" + "\n".join(history) + "\n"
        user += context_block(code)
        return [
            {"role": "system", "content": self._build_prompt()},
            {"role": "user", "content": user},
        ]

    async def execute(
        self,
        step: Step,
        model: str,
        *,
        goal: str,
        code: str | None = None,
        position: int = 1,
        total: int = 1,
        history: Sequence[str] = (),
    ) -> StepOutcome:
        """
        Attempt *step* with *model*.

        Validation failures are returned as a failed :class:`StepOutcome`.  Security violations,
        dispatch and admission errors propagate without a corrective retry so the agent loop can
        halt.
        """
        messages = self.build_messages(step, goal, code, position, total, history)
        options = {
            "role": "executor",
            "temperature": ACTION_TEMPERATURES.get(step.action, 0.5),
        }
        usage = Usage()
        last_error: ToolCallValidationError | None = None
        raw = ""

        for attempt in (1, 2):
            result = await self._invoke(model, messages, options)
            usage = usage + result.usage
            raw = result.content
            try:
                call = validate_tool_call(raw, workspace_root=self.workspace_root)
            except SecurityViolation as exc:
                self._recorder.failed(
                    "executor",
                    result.model,
                    exc,
                    step_id=step.id,
                    output=raw,
                    usage=result.usage,
                )
                logger.warning("Step '%s' rejected: %s", step.id, exc.reason)
                raise
            except ToolCallValidationError as exc:
                last_error = exc
                self._recorder.failed(
                    "executor",
                    result.model,
                    exc,
                    step_id=step.id,
                    output=raw,
                    usage=result.usage,
                )
                messages = corrective_messages(messages, raw, exc.reason, self.CORRECTION)
                continue

            self._recorder.ok(
                "executor", result, step_id=step.id, tool_call=tool_call_to_dict(call)
            )
            logger.info("Step '%s' produced %s", step.id, summarize_tool_call(call))
            return StepOutcome(
                step_id=step.id,
                model=result.model,
                success=True,
                tool_call=call,
                raw_output=raw,
                attempts=attempt,
                usage=usage,
            )

        logger.warning("Step '%s' failed validation twice: %s", step.id, last_error)
        return StepOutcome(
            step_id=step.id,
            model=model,
            success=False,
            raw_output=raw,
            error=last_error,
            attempts=2,
            usage=usage,
        )
