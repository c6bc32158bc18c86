"""
Shared plumbing for the three agent roles.

Each role (planner, executor, reviewer) talks to its model only through an :data:`Invoke`
callable supplied by the execution engine, which applies admission control, retries and the
request deadline.  Roles therefore stay model- and provider-agnostic.
"""

import json
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
)

from hybridmind.core.errors import (
    HybridMindError,
    ToolCallValidationError,
)
from hybridmind.core.schema import (
    DispatchResult,
    ErrorInfo,
    StepTrace,
    Usage,
)
from hybridmind.providers import Message
from hybridmind.tools.validator import extract_json_objects

logger = logging.getLogger(__name__)

Invoke = Callable[[str, List[Message], Dict[str, Any]], Awaitable[DispatchResult]]
"""``invoke(model_id, messages, options) -> DispatchResult``"""


def find_object_with(raw: str, key: str) -> Optional[Mapping[str, Any]]:
    """Return the single JSON object in *raw* that has *key*, or ``None``."""
    try:
        objects = extract_json_objects(raw)
    except ToolCallValidationError as exc:
        logger.debug("Unparseable reply: %s", exc.reason)
        return None
    candidates = [o for o in objects if isinstance(o, dict) and key in o]
    if len(candidates) == 1:
        return candidates[0]
    return None


def context_block(code: str | None, label: str = "CODE CONTEXT") -> str:
    if not code:
        return ""
    return f"\n\n{label}:\n{code}"


def corrective_messages(
    messages: List[Message], raw: str, reason: str, instruction: str
) -> List[Message]:
    """Append the rejected answer and the rejection reason to *messages*."""
    return [
        *messages,
        {"role": "assistant", "content": raw},
        {
            "role": "user",
            "content": f"Your previous response was rejected: {reason}\n{instruction}",
        },
    ]


class TraceRecorder:
    """Collects :class:`StepTrace` entries and token usage for one run."""

    def __init__(self) -> None:
        self.trace: List[StepTrace] = []
        self.usage = Usage()

    def ok(
        self,
        role: str,
        result: DispatchResult,
        *,
        step_id: str | None = None,
        tool_call: Mapping[str, Any] | None = None,
    ) -> StepTrace:
        entry = StepTrace(
            index=len(self.trace),
            model=result.model,
            role=role,
            success=True,
            step_id=step_id,
            output=result.content,
            attempts=result.attempts,
            usage=result.usage,
            tool_call=dict(tool_call) if tool_call is not None else None,
        )
        self.trace.append(entry)
        self.usage = self.usage + result.usage
        return entry

    def failed(
        self,
        role: str,
        model: str,
        exc: HybridMindError,
        *,
        step_id: str | None = None,
        output: str | None = None,
        usage: Usage | None = None,
    ) -> StepTrace:
        entry = StepTrace(
            index=len(self.trace),
            model=model,
            role=role,
            success=False,
            step_id=step_id,
            output=output,
            error=ErrorInfo.from_exc(exc),
            usage=usage or Usage(),
        )
        self.trace.append(entry)
        if usage is not None:
            self.usage = self.usage + usage
        return entry


def dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, indent=2)
