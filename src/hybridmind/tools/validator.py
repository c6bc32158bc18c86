"""
Strict validator for tool calls produced by a model.

It expects the model's raw text to contain exactly one JSON object of the form
    {"tool": "<name>", ...variant fields...}
optionally wrapped in a markdown code fence, and returns the typed :data:`ToolCall`.  Every
rejection is a :class:`ToolCallValidationError` whose message can be pasted verbatim into a
corrective prompt.  Validation never executes anything.
"""

import json
import logging
import posixpath
import re
from pathlib import Path
from typing import (
    Any,
    List,
    Mapping,
)

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from hybridmind.core.errors import (
    SecurityViolation,
    ToolCallValidationError,
)
from hybridmind.tools import (
    PATH_FIELDS,
    TOOL_CALL_ADAPTER,
    TOOL_VARIANTS,
    Batch,
)

logger = logging.getLogger(__name__)

MAX_BATCH_DEPTH = 1
"""Batches may contain actions but not further batches."""

_DRIVE_RE = re.compile(r"^[A-Za-z]:")
_DECODER = json.JSONDecoder()


# ---------------------------------------------------------------------------
# Step 1: extraction
# ---------------------------------------------------------------------------
def extract_json_objects(text: str) -> List[Any]:
    """
    Return every top-level JSON object embedded in *text*, in order.

    Scanning resumes after each decoded object, so nested objects are not reported separately.
    Markdown fences need no special handling: they contain no braces, so objects inside and
    outside a fence are all found and counted.

    Raises
    ------
    ToolCallValidationError
        If an object nests too deeply to decode.
    """
    found: List[Any] = []
    i = 0
    while True:
        i = text.find("{", i)
        if i < 0:
            return found
        try:
            value, end = _DECODER.raw_decode(text, i)
        except json.JSONDecodeError:
            i += 1
            continue
        except RecursionError as exc:
            raise ToolCallValidationError(
                "JSON nesting too deep; respond with one flat tool call object"
            ) from exc
        found.append(value)
        i = end


def extract_single_object(raw: str) -> Mapping[str, Any]:
    """Extract exactly one JSON object from *raw* or raise."""
    if not raw or not raw.strip():
        raise ToolCallValidationError("Response is empty; expected one JSON tool call object")

    objects = extract_json_objects(raw)
    if not objects:
        raise ToolCallValidationError("No JSON object found; respond with exactly one tool call")
    if len(objects) > 1:
        raise ToolCallValidationError(
            f"Found {len(objects)} top-level JSON objects; respond with exactly one tool call "
            "(use a 'batch' tool call to group several actions)"
        )
    return objects[0]


# ---------------------------------------------------------------------------
# Steps 2 and 4: discriminator and batch structure
# ---------------------------------------------------------------------------
def _check_structure(obj: Any, depth: int, where: str, max_depth: int) -> None:
    prefix = f"{where}: " if where else ""
    if not isinstance(obj, dict):
        raise ToolCallValidationError(f"{prefix}tool call must be a JSON object")

    tool = obj.get("tool")
    if not isinstance(tool, str) or not tool:
        raise ToolCallValidationError(f"{prefix}missing or invalid \"tool\" field")
    if tool not in TOOL_VARIANTS:
        known = ", ".join(sorted(TOOL_VARIANTS))
        raise ToolCallValidationError(f"{prefix}unknown tool '{tool}'. Known tools: {known}")

    if tool != "batch":
        return
    if depth >= max_depth:
        raise ToolCallValidationError(
            f"{prefix}batch nesting exceeds the maximum depth of {max_depth}; "
            "batches may not contain batches"
        )
    actions = obj.get("actions")
    if not isinstance(actions, list) or not actions:
        raise ToolCallValidationError(f"{prefix}batch requires a non-empty \"actions\" array")
    for index, action in enumerate(actions):
        _check_structure(action, depth + 1, f"{prefix}batch action {index}", max_depth)


# ---------------------------------------------------------------------------
# Step 3: field types
# ---------------------------------------------------------------------------
def _format_errors(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


# ---------------------------------------------------------------------------
# Step 5: paths
# ---------------------------------------------------------------------------
def check_path(path: str, workspace_root: str | Path | None = None) -> None:
    """
    Reject paths that leave the workspace.

    Raises
    ------
    SecurityViolation
        For absolute paths and for ``..`` traversal out of the root.
    """
    candidate = path.replace("\\", "/")
    if candidate.startswith("/") or _DRIVE_RE.match(candidate):
        raise SecurityViolation(
            f"Security violation: absolute path '{path}' is not allowed; "
            "use a workspace-relative path"
        )
    normalized = posixpath.normpath(candidate)
    if normalized == ".." or normalized.startswith("../"):
        raise SecurityViolation(f"Security violation: path '{path}' escapes the workspace root")

    if workspace_root is not None:
        root = Path(workspace_root).resolve()
        target = (root / normalized).resolve()
        if target != root and root not in target.parents:
            raise SecurityViolation(
                f"Security violation: path '{path}' resolves outside the workspace root"
            )


def _check_paths(call: BaseModel, workspace_root: str | Path | None) -> None:
    if isinstance(call, Batch):
        for action in call.actions:
            _check_paths(action, workspace_root)
        return
    for field_name in PATH_FIELDS.get(getattr(call, "tool", ""), ()):
        check_path(getattr(call, field_name), workspace_root)


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------
def validate_tool_call(
    raw: str,
    *,
    workspace_root: str | Path | None = None,
    max_batch_depth: int = MAX_BATCH_DEPTH,
) -> BaseModel:
    """
    Turn raw model output into a typed tool call.

    Steps, in order: extract one JSON object, check the ``tool`` discriminator, validate the
    variant's fields, bound batch nesting, and reject paths escaping the workspace.

    Raises
    ------
    ToolCallValidationError
        With a reason suitable for a corrective re-prompt.
    SecurityViolation
        If any path escapes the workspace root.
    """
    try:
        obj = extract_single_object(raw)
        _check_structure(obj, 0, "", max_batch_depth)
        try:
            call = TOOL_CALL_ADAPTER.validate_python(obj)
        except PydanticValidationError as exc:
            raise ToolCallValidationError(
                f"Invalid '{obj['tool']}' tool call: {_format_errors(exc)}"
            ) from exc
        _check_paths(call, workspace_root)
    except ToolCallValidationError as exc:
        logger.warning("Rejected tool call (%s): %s", exc.kind.value, exc.reason)
        raise
    return call
