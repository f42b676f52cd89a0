# parser.py
# Action Parser: raw model completion -> typed Action.
#
# Two dialects:
#   tool_calls  native function calls, or the ReAct text form
#               (Action: / Args:), or a JSON {"name", "arguments"} payload
#   code        fenced code blocks
#
# Parsing is strict. Every malformed completion raises ParseError with a
# message the model can act on; nothing falls through as a no-op.

import json
import re
from collections.abc import Mapping
from typing import Any

from agent_scaffold.errors import ParseError, ToolArgumentError
from agent_scaffold.models import (
    Action,
    CodeBlock,
    Completion,
    FinalAnswer,
    FunctionCall,
    ToolCall,
    ToolCallBatch,
    ToolSchema,
)
from agent_scaffold.tools import FINAL_ANSWER, validate_arguments

TOOL_CALLS = "tool_calls"
CODE = "code"

CODE_BLOCK_PATTERN = re.compile(r"```([\w+-]*)[ \t]*\n([\s\S]*?)\n[ \t]*```")
PYTHON_FENCES = {"", "py", "python", "python3"}

FINAL_ANSWER_HINT = """\
The code blob is invalid. It seems like you're trying to return the final answer. Use:
Code:
```py
final_answer("YOUR FINAL ANSWER HERE")
```"""

CODE_FORMAT_HINT = """\
The code blob is invalid. Make sure to include code with the correct pattern, for instance:
Thoughts: Your thoughts
Code:
```py
# Your python code here
```"""


# ---------------------------------------------------------------------------
# Tool-call dialect
# ---------------------------------------------------------------------------


def _decode_arguments(call: FunctionCall) -> Any:
    if not isinstance(call.arguments, str):
        return call.arguments
    raw = call.arguments.strip()
    if not raw:
        return {}
    try:
        return json.loads(raw, strict=False)
    except json.JSONDecodeError as exc:
        raise ParseError(
            f"Arguments for tool '{call.name}' are not valid JSON: {exc}\nPayload: {raw}"
        ) from exc


def _to_tool_call(call: FunctionCall, schemas: Mapping[str, ToolSchema]) -> ToolCall:
    if call.name not in schemas:
        raise ParseError(f"Unknown tool '{call.name}', should be one of: {', '.join(schemas)}.")
    arguments = _decode_arguments(call)
    try:
        validated = validate_arguments(schemas[call.name], arguments)
    except ToolArgumentError as exc:
        raise ParseError(str(exc)) from exc
    return ToolCall(id=call.id, name=call.name, arguments=validated)


def _invalid_tool_call(call: FunctionCall, exc: ParseError) -> ToolCall:
    arguments = call.arguments if isinstance(call.arguments, dict) else {}
    return ToolCall(id=call.id, name=call.name, arguments=arguments, error=str(exc))


def _batch(calls: list[FunctionCall], schemas: Mapping[str, ToolSchema]) -> Action:
    """
    A lone call must be valid or the whole completion is a ParseError. In a
    batch, each call is validated on its own; a bad one is carried as an
    invalid ToolCall so the calls around it still run.
    """
    if len(calls) == 1:
        call = _to_tool_call(calls[0], schemas)
        if call.name == FINAL_ANSWER:
            return FinalAnswer(value=call.arguments.get("answer"))
        return ToolCallBatch(calls=(call,))

    parsed = []
    for call in calls:
        try:
            parsed.append(_to_tool_call(call, schemas))
        except ParseError as exc:
            parsed.append(_invalid_tool_call(call, exc))
    return ToolCallBatch(calls=tuple(parsed))


def _strip_fence(raw: str) -> str:
    # Strip markdown code blocks if the LLM injected them
    if raw.startswith("```"):
        raw = re.sub(r"^```(?:json)?\s*", "", raw)
        raw = re.sub(r"\s*```$", "", raw)
    return raw


def _react_calls(text: str) -> list[FunctionCall] | None:
    """
    Extract `Action: <tool>` / `Args: {json}` from a ReAct-format response.
    Returns None if the text has no Action line.
    """
    action_match = re.search(r"^\s*Action:\s*(\w+)", text, re.MULTILINE)
    if not action_match:
        return None

    args_match = re.search(r"Args:\s*(\{.*\}|```.*```)", text[action_match.end():], re.DOTALL)
    if not args_match:
        raise ParseError(
            f"Response names tool '{action_match.group(1)}' but has no 'Args:' JSON object:\n{text}"
        )
    args_raw = _strip_fence(args_match.group(1).strip())
    try:
        args = json.loads(args_raw, strict=False)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Args JSON is malformed: {exc}\nPayload: {args_raw}") from exc
    return [FunctionCall(name=action_match.group(1), arguments=args)]


def _json_calls(text: str) -> list[FunctionCall] | None:
    """A JSON object or list of objects carrying "name" and "arguments" (or "args")."""
    raw = _strip_fence(text.strip())
    if not raw.startswith(("{", "[")):
        return None
    try:
        data = json.loads(raw, strict=False)
    except json.JSONDecodeError:
        return None

    items = data if isinstance(data, list) else [data]
    calls = []
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            return None
        arguments = item.get("arguments", item.get("args", {}))
        calls.append(FunctionCall(id=item.get("id"), name=item["name"], arguments=arguments))
    return calls or None


def parse_tool_calls(completion: Completion, schemas: Mapping[str, ToolSchema]) -> Action:
    if completion.tool_calls:
        return _batch(completion.tool_calls, schemas)

    text = completion.content.strip()
    if not text:
        raise ParseError("The model returned an empty completion: no tool call and no answer.")

    calls = _react_calls(text)
    if calls is None:
        calls = _json_calls(text)
    if calls is not None:
        return _batch(calls, schemas)

    # Plain text without any tool call is the model answering directly.
    return FinalAnswer(value=text)


# ---------------------------------------------------------------------------
# Code dialect
# ---------------------------------------------------------------------------


def parse_code(completion: Completion) -> CodeBlock:
    text = completion.content
    blocks = [(lang.lower(), body.strip()) for lang, body in CODE_BLOCK_PATTERN.findall(text)]
    blocks = [(lang, body) for lang, body in blocks if body]

    if not blocks:
        lowered = text.lower()
        if "final" in lowered and "answer" in lowered:
            raise ParseError(FINAL_ANSWER_HINT)
        raise ParseError(CODE_FORMAT_HINT)

    languages = {"python" if lang in PYTHON_FENCES else lang for lang, _ in blocks}
    if len(languages) > 1:
        raise ParseError(
            f"Code blocks mix languages ({', '.join(sorted(languages))}); use a single ```py block."
        )
    return CodeBlock(source="\n\n".join(body for _, body in blocks), language=languages.pop())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def parse(completion: Completion | str, schemas: Mapping[str, ToolSchema], dialect: str = TOOL_CALLS) -> Action:
    """
    Turn a completion into exactly one Action, or raise ParseError.

    `schemas` maps tool name to schema. In the tool_calls dialect unknown
    names, missing required arguments and type mismatches are all parse
    errors; the message names the failing constraint.
    """
    if isinstance(completion, str):
        completion = Completion(content=completion)
    if dialect == TOOL_CALLS:
        return parse_tool_calls(completion, schemas)
    if dialect == CODE:
        return parse_code(completion)
    raise ValueError(f"Unknown completion dialect '{dialect}'.")
