# models.py
# Data contracts for the agent scaffold.
# No business logic lives here. Pure schema and validation.

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator


# ---------------------------------------------------------------------------
# Task & conversation
# ---------------------------------------------------------------------------


class Task(BaseModel):
    """What the agent was asked to do. Owned by exactly one agent run."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., min_length=1, description="Task description given by the caller.")
    files: dict[str, str] = Field(
        default_factory=dict,
        description="Pre-supplied context, keyed by file name.",
    )


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool"


class Message(BaseModel):
    """One role-tagged entry of a Conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    summarized: bool = Field(
        default=False,
        description="True when this message stands in for steps dropped to fit the budget.",
    )


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------


class ParameterType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ENUM = "enum"
    ANY = "any"


class ParameterSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    type: ParameterType
    description: str = ""
    required: bool = True
    choices: tuple[str, ...] = Field(default=(), description="Allowed values for enum parameters.")

    @model_validator(mode="after")
    def _enum_needs_choices(self) -> "ParameterSpec":
        if self.type is ParameterType.ENUM and not self.choices:
            raise ValueError(f"Enum parameter '{self.name}' declares no choices.")
        return self


class ToolSchema(BaseModel):
    """Name, description and ordered parameters of a registered tool."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    description: str
    parameters: tuple[ParameterSpec, ...] = ()

    @model_validator(mode="after")
    def _unique_parameters(self) -> "ToolSchema":
        names = [p.name for p in self.parameters]
        if len(names) != len(set(names)):
            raise ValueError(f"Tool '{self.name}' declares duplicate parameter names.")
        return self

    def json_schema(self) -> dict[str, Any]:
        """Function-calling schema in the OpenAI wire shape."""
        properties: dict[str, Any] = {}
        for param in self.parameters:
            if param.type is ParameterType.ENUM:
                prop: dict[str, Any] = {"type": "string", "enum": list(param.choices)}
            elif param.type is ParameterType.ANY:
                prop = {}
            else:
                prop = {"type": param.type.value}
            if param.description:
                prop["description"] = param.description
            properties[param.name] = prop
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": [p.name for p in self.parameters if p.required],
                },
            },
        }


# ---------------------------------------------------------------------------
# Model backend payloads
# ---------------------------------------------------------------------------


class FunctionCall(BaseModel):
    """A tool call exactly as the backend reported it, before validation."""

    id: str | None = None
    name: str
    arguments: dict[str, Any] | str = Field(default_factory=dict)


class Completion(BaseModel):
    content: str = ""
    tool_calls: list[FunctionCall] = Field(default_factory=list)


class CompletionChunk(BaseModel):
    """Incremental fragment of a streamed completion."""

    text: str = ""
    tool_calls: list[FunctionCall] = Field(
        default_factory=list,
        description="Fully assembled tool calls, only ever set on the last chunk.",
    )


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    error: str | None = Field(
        default=None, description="Why this call failed validation. Such calls are reported, never dispatched."
    )


class ToolCallBatch(BaseModel):
    """One or more validated tool calls, dispatched in order."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["tool_calls"] = "tool_calls"
    calls: tuple[ToolCall, ...] = Field(..., min_length=1)


class CodeBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["code"] = "code"
    source: str
    language: str = "python"


class FinalAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["final_answer"] = "final_answer"
    value: Any

    @field_serializer("value", when_used="json")
    def _value_as_json(self, value: Any) -> Any:
        # Values JSON would render differently (tuples, non-string keys, objects) are kept as text.
        try:
            decoded = json.loads(json.dumps(value))
        except (TypeError, ValueError):
            return str(value)
        return value if str(decoded) == str(value) else str(value)


Action = Annotated[Union[ToolCallBatch, CodeBlock, FinalAnswer], Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Observations & steps
# ---------------------------------------------------------------------------


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str = Field(..., description="Error class, e.g. parse_error or policy_violation.")
    message: str


class Observation(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str = ""
    truncated: bool = False
    error: ErrorInfo | None = None
    results: dict[int, str] = Field(
        default_factory=dict,
        description="Per-call observations of a tool-call batch, keyed by call index.",
    )


class Timing(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_time: float
    end_time: float

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


class Step(BaseModel):
    """Immutable record of one Action/Observation cycle."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=1, description="1-based, strictly increasing within a run.")
    model_output: str = Field(default="", description="Raw completion text from the model.")
    action: Action | None = Field(default=None, description="None when the completion failed to parse.")
    observation: Observation
    timing: Timing


class PlanningEntry(BaseModel):
    """Facts and plan produced by a planning call; not counted as a Step."""

    model_config = ConfigDict(frozen=True)

    before_step: int = Field(..., ge=1)
    facts: str
    plan: str


class RunResult(BaseModel):
    output: Any
    state: Literal["success", "max_steps"]
    steps: list[Step]
    timing: Timing


# ---------------------------------------------------------------------------
# Sandbox results
# ---------------------------------------------------------------------------


class ExecutionOutput(BaseModel):
    """Accepted code ran to completion (or was clipped by a limit)."""

    kind: Literal["value"] = "value"
    output: str = Field(default="", description="Text emitted through print().")
    value: Any = Field(default=None, description="Value of the final expression statement.")
    truncated: bool = False
    is_final_answer: bool = False


class PolicyViolation(BaseModel):
    kind: Literal["policy_violation"] = "policy_violation"
    symbol: str = Field(..., description="Rejected node kind or symbol name.")
    line: int | None = None


class RuntimeFailure(BaseModel):
    kind: Literal["runtime_failure"] = "runtime_failure"
    message: str
    output: str = Field(default="", description="Text printed before the failure.")


SandboxResult = Annotated[
    Union[ExecutionOutput, PolicyViolation, RuntimeFailure], Field(discriminator="kind")
]
