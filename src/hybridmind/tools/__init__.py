"""
Tool-call protocol for HybridMind.

A :data:`ToolCall` is a closed tagged union over the actions an autonomous model may request.
Every variant is a Pydantic model whose ``tool`` literal is the discriminator; the union is closed,
so a new action only exists once it is added here (and to the executor-side handler, which checks
coverage at import time).
"""

from typing import (
    Annotated,
    Dict,
    List,
    Literal,
    Mapping,
    Type,
    TypedDict,
    Union,
    get_args,
)

from pydantic import (
    BaseModel,
    Field,
    StrictInt,
    StrictStr,
    TypeAdapter,
)

NonNegativeInt = Annotated[StrictInt, Field(ge=0)]


class Position(BaseModel):
    """Zero-based line / character position in a file."""

    line: NonNegativeInt
    character: NonNegativeInt = 0


class InsertText(BaseModel):
    """Insert *text* at *position* in *file*."""

    tool: Literal["insert_text"] = "insert_text"
    file: StrictStr = Field(..., min_length=1)
    position: Position
    text: StrictStr


class ApplyEdit(BaseModel):
    """Replace the range *start*..*end* of *file* with *text*."""

    tool: Literal["apply_edit"] = "apply_edit"
    file: StrictStr = Field(..., min_length=1)
    start: Position
    end: Position
    text: StrictStr


class CreateFile(BaseModel):
    """Create *path* with optional initial *content*."""

    tool: Literal["create_file"] = "create_file"
    path: StrictStr = Field(..., min_length=1)
    content: StrictStr = ""


class DeleteFile(BaseModel):
    """Delete *path*."""

    tool: Literal["delete_file"] = "delete_file"
    path: StrictStr = Field(..., min_length=1)


class Thought(BaseModel):
    """Reasoning with no side effects."""

    tool: Literal["thought"] = "thought"
    content: StrictStr = Field(..., min_length=1)


class RequestClarification(BaseModel):
    """Ask the user a question instead of acting."""

    tool: Literal["request_clarification"] = "request_clarification"
    question: StrictStr = Field(..., min_length=1)


class Batch(BaseModel):
    """Several actions applied in order."""

    tool: Literal["batch"] = "batch"
    actions: List["ToolCall"] = Field(..., min_length=1)


ToolCall = Annotated[
    Union[InsertText, ApplyEdit, CreateFile, DeleteFile, Batch, Thought, RequestClarification],
    Field(discriminator="tool"),
]
Batch.model_rebuild()

TOOL_VARIANTS: Dict[str, Type[BaseModel]] = {
    cls.model_fields["tool"].default: cls for cls in get_args(get_args(ToolCall)[0])
}
"""Discriminator value -> variant class."""

TOOL_CALL_ADAPTER: TypeAdapter = TypeAdapter(ToolCall)

# Fields that hold workspace-relative paths, per variant.
PATH_FIELDS: Dict[str, tuple[str, ...]] = {
    "insert_text": ("file",),
    "apply_edit": ("file",),
    "create_file": ("path",),
    "delete_file": ("path",),
}


class ParameterInfo(TypedDict):
    """
    Information about a tool parameter.
    """

    type: str
    required: bool


class ToolSchema(TypedDict):
    """
    Schema for a tool variant
    """

    description: str
    parameters: Mapping[str, ParameterInfo]


def get_tool_schemas() -> Mapping[str, ToolSchema]:
    """Describe every variant for inclusion in prompts."""
    tool_schemas: Dict[str, ToolSchema] = {}
    for name, cls in TOOL_VARIANTS.items():
        params: Dict[str, ParameterInfo] = {}
        for field_name, info in cls.model_fields.items():
            if field_name == "tool":
                continue
            annotation = info.annotation
            type_name = getattr(annotation, "__name__", None) or str(annotation)
            params[field_name] = ParameterInfo(type=type_name, required=info.is_required())
        tool_schemas[name] = {"description": (cls.__doc__ or "").strip(), "parameters": params}
    return tool_schemas


def tool_call_to_dict(call: BaseModel) -> dict:
    """Serialize a tool call the way models are asked to write it."""
    return call.model_dump(mode="json")


def iter_tool_calls(call: BaseModel) -> List[BaseModel]:
    """Flatten *call*: a batch yields its actions in order, anything else yields itself."""
    if isinstance(call, Batch):
        out: List[BaseModel] = []
        for action in call.actions:
            out.extend(iter_tool_calls(action))
        return out
    return [call]


__all__ = [
    "ApplyEdit",
    "Batch",
    "CreateFile",
    "DeleteFile",
    "InsertText",
    "PATH_FIELDS",
    "Position",
    "RequestClarification",
    "TOOL_CALL_ADAPTER",
    "TOOL_VARIANTS",
    "Thought",
    "ToolCall",
    "get_tool_schemas",
    "iter_tool_calls",
    "tool_call_to_dict",
]
