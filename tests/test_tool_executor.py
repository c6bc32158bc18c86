"""
Basic sanity tests for the tool executor.

Run with:
$ pytest -q
"""

from typing import (
    Any,
    List,
)

from hybridmind.agent.tool_executor import (
    ToolCallHandler,
    ToolExecutionError,
    execute_tool_call,
    summarize_tool_call,
)
from hybridmind.tools import (
    ApplyEdit,
    Batch,
    CreateFile,
    DeleteFile,
    InsertText,
    RequestClarification,
    Thought,
)


class RecordingHandler(ToolCallHandler):
    """Handler that records which method ran (used only for tests)."""

    def __init__(self) -> None:
        self.seen: List[str] = []

    def insert_text(self, call: InsertText) -> Any:
        self.seen.append(f"insert:{call.file}")
        return len(call.text)

    def apply_edit(self, call: ApplyEdit) -> Any:
        self.seen.append(f"edit:{call.file}")
        return call.end.line - call.start.line

    def create_file(self, call: CreateFile) -> Any:
        self.seen.append(f"create:{call.path}")
        return call.path

    def delete_file(self, call: DeleteFile) -> Any:
        raise OSError(f"{call.path} is read-only")

    def thought(self, call: Thought) -> Any:
        self.seen.append("thought")
        return None

    def request_clarification(self, call: RequestClarification) -> Any:
        self.seen.append("ask")
        return call.question


def test_execute_tool_call_success() -> None:
    """Executor should route the call to the matching handler method."""

    handler = RecordingHandler()
    call = CreateFile(path="src/new.py", content="x = 1\n")

    assert execute_tool_call(call, handler) == ["src/new.py"]
    assert handler.seen == ["create:src/new.py"]


def test_execute_batch_runs_actions_in_order() -> None:
    """A batch should be unrolled and each action executed in order."""

    handler = RecordingHandler()
    call = Batch(
        actions=[
            Thought(content="plan the edit"),
            InsertText(file="a.py", position={"line": 3}, text="pass\n"),
            ApplyEdit(file="b.py", start={"line": 1}, end={"line": 4}, text=""),
        ]
    )

    assert execute_tool_call(call, handler) == [None, 5, 3]
    assert handler.seen == ["thought", "insert:a.py", "edit:b.py"]


def test_execute_tool_call_handler_error() -> None:
    """Executor should wrap handler exceptions in *ToolExecutionError*."""

    try:
        execute_tool_call(DeleteFile(path="locked.txt"), RecordingHandler())
    except ToolExecutionError as exc:
        assert "delete_file" in str(exc)
        assert "read-only" in str(exc)
    else:  # pragma: no cover
        raise AssertionError("ToolExecutionError was not raised")


def test_summarize_tool_call() -> None:
    """Summaries should describe every action of a batch on one line."""

    call = Batch(
        actions=[
            CreateFile(path="docs/README.md", content="hello"),
            RequestClarification(question="Which branch?"),
        ]
    )

    assert summarize_tool_call(call) == "create docs/README.md (5 chars); asks: Which branch?"
