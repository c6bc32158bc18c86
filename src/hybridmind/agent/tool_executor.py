"""Dispatches validated tool calls to a handler and wraps errors."""

import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Dict,
    List,
    Type,
)

from pydantic import BaseModel

from hybridmind.tools import (
    TOOL_VARIANTS,
    ApplyEdit,
    Batch,
    CreateFile,
    DeleteFile,
    InsertText,
    RequestClarification,
    Thought,
)

logger = logging.getLogger(__name__)


class ToolExecutionError(RuntimeError):
    """Raised when a tool call cannot be handled or its handler fails."""


class ToolCallHandler(ABC):
    """
    Executor-side counterpart of the tool-call union.

    One abstract method per variant: a handler that forgets a variant cannot be instantiated.
    Batches are unrolled by :func:`execute_tool_call`, so there is no ``batch`` method.
    """

    @abstractmethod
    def insert_text(self, call: InsertText) -> Any: ...

    @abstractmethod
    def apply_edit(self, call: ApplyEdit) -> Any: ...

    @abstractmethod
    def create_file(self, call: CreateFile) -> Any: ...

    @abstractmethod
    def delete_file(self, call: DeleteFile) -> Any: ...

    @abstractmethod
    def thought(self, call: Thought) -> Any: ...

    @abstractmethod
    def request_clarification(self, call: RequestClarification) -> Any: ...


_HANDLER_METHODS: Dict[Type[BaseModel], str] = {
    InsertText: "insert_text",
    ApplyEdit: "apply_edit",
    CreateFile: "create_file",
    DeleteFile: "delete_file",
    Thought: "thought",
    RequestClarification: "request_clarification",
}

# Every variant except batch must map to a handler method.
_unhandled = set(TOOL_VARIANTS.values()) - set(_HANDLER_METHODS) - {Batch}
if _unhandled:  # pragma: no cover
    raise TypeError(f"Tool variants without a handler: {sorted(c.__name__ for c in _unhandled)}")


def execute_tool_call(call: BaseModel, handler: ToolCallHandler) -> List[Any]:
    """
    Route *call* to the matching method of *handler*.

    Parameters
    ----------
    call:
        A validated tool call.  Batches run their actions in order.
    handler:
        The executor collaborator.

    Returns
    -------
    list
        One handler result per executed (non-batch) action.

    Raises
    ------
    ToolExecutionError
        If the call type is unknown or the handler raises.
    """

    if isinstance(call, Batch):
        results: List[Any] = []
        for action in call.actions:
            results.extend(execute_tool_call(action, handler))
        return results

    method_name = _HANDLER_METHODS.get(type(call))
    if method_name is None:
        raise ToolExecutionError(f"Tool call type '{type(call).__name__}' is not supported.")

    try:
        logger.debug("Executing tool '%s' with %s", method_name, call)
        return [getattr(handler, method_name)(call)]
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unhandled error in tool '%s'", method_name)
        raise ToolExecutionError(f"Tool '{method_name}' raised an error: {exc}") from exc


class SummaryHandler(ToolCallHandler):
    """Render tool calls as one-line descriptions (used in review prompts and traces)."""

    def insert_text(self, call: InsertText) -> str:
        return f"insert {len(call.text)} chars into {call.file} at line {call.position.line}"

    def apply_edit(self, call: ApplyEdit) -> str:
        return f"edit {call.file} lines {call.start.line}-{call.end.line}"

    def create_file(self, call: CreateFile) -> str:
        return f"create {call.path} ({len(call.content)} chars)"

    def delete_file(self, call: DeleteFile) -> str:
        return f"delete {call.path}"

    def thought(self, call: Thought) -> str:
        return f"thought: {call.content[:120]}"

    def request_clarification(self, call: RequestClarification) -> str:
        return f"asks: {call.question[:120]}"


def summarize_tool_call(call: BaseModel) -> str:
    """Semicolon-separated description of everything *call* would do."""
    return "; ".join(execute_tool_call(call, SummaryHandler()))
