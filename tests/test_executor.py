import pytest

from agent_scaffold.backends import CancellationToken
from agent_scaffold.errors import AgentError, RunCancelled
from agent_scaffold.executor import StepExecutor, clip
from agent_scaffold.models import (
    CodeBlock,
    FinalAnswer,
    ParameterSpec,
    ParameterType,
    ToolCall,
    ToolCallBatch,
)
from agent_scaffold.sandbox import Sandbox
from agent_scaffold.tools import FunctionTool, ToolRegistry


def _registry(log=None):
    def echo(args):
        if log is not None:
            log.append(args["text"])
        return args["text"]

    def fail(args):
        raise RuntimeError("backend unavailable")

    return ToolRegistry([
        FunctionTool("echo", "Echo text back.", [ParameterSpec(name="text", type=ParameterType.STRING)], echo),
        FunctionTool("fail", "Always fails.", [], fail),
    ])


def _batch(*calls):
    return ToolCallBatch(calls=tuple(ToolCall(id=f"c{i}", name=n, arguments=a) for i, (n, a) in enumerate(calls)))

# ---------------------------------------------------------------------------
# Clipping Tests
# ---------------------------------------------------------------------------

def test_clip_short_text_untouched():
    assert clip("hello", 10) == ("hello", False)

def test_clip_long_text():
    text, truncated = clip("a" * 20, 5)
    assert truncated is True
    assert text.startswith("aaaaa\n")
    assert "5 character limit" in text

# ---------------------------------------------------------------------------
# Tool Call Tests
# ---------------------------------------------------------------------------

def test_final_answer_action():
    outcome = StepExecutor(_registry()).execute(FinalAnswer(value=42))
    assert outcome.is_final is True
    assert outcome.final_answer == 42
    assert outcome.observation.text == "42"

def test_batch_runs_in_order():
    log = []
    outcome = StepExecutor(_registry(log)).execute(_batch(("echo", {"text": "one"}), ("echo", {"text": "two"})))
    assert log == ["one", "two"]
    assert outcome.observation.results == {0: "one", 1: "two"}
    assert outcome.observation.text == "one\n\ntwo"
    assert outcome.observation.error is None
    assert outcome.is_final is False

def test_failing_call_does_not_stop_the_batch():
    log = []
    outcome = StepExecutor(_registry(log)).execute(_batch(("fail", {}), ("echo", {"text": "after"})))
    assert log == ["after"]
    assert outcome.observation.results[0].startswith("Error: Error executing tool 'fail'")
    assert outcome.observation.results[1] == "after"
    assert outcome.observation.error.kind == "tool_error"

def test_unknown_tool_in_batch_is_error_observation():
    outcome = StepExecutor(_registry()).execute(_batch(("missing", {})))
    assert "Unknown tool 'missing'" in outcome.observation.text
    assert outcome.observation.error is not None

def test_invalid_call_is_reported_and_neighbours_run():
    log = []
    batch = ToolCallBatch(calls=(
        ToolCall(id="c0", name="echo", arguments={"text": "first"}),
        ToolCall(id="c1", name="nope", error="Unknown tool 'nope', should be one of: echo, fail, final_answer."),
        ToolCall(id="c2", name="echo", arguments={"text": "third"}),
    ))
    outcome = StepExecutor(_registry(log)).execute(batch)
    assert log == ["first", "third"]
    assert outcome.observation.results[0] == "first"
    assert outcome.observation.results[1].startswith("Error: Unknown tool 'nope'")
    assert outcome.observation.results[2] == "third"
    assert outcome.observation.error.kind == "parse_error"

def test_final_answer_call_inside_batch():
    outcome = StepExecutor(_registry()).execute(
        _batch(("echo", {"text": "checked"}), ("final_answer", {"answer": "done"}))
    )
    assert outcome.is_final is True
    assert outcome.final_answer == "done"
    assert outcome.observation.results == {0: "checked", 1: "done"}

def test_tool_output_is_clipped():
    outcome = StepExecutor(_registry(), max_observation_chars=10).execute(_batch(("echo", {"text": "z" * 50})))
    assert outcome.observation.truncated is True
    assert outcome.observation.text.startswith("z" * 10 + "\n")

def test_on_call_hook_sees_every_call():
    seen = []
    executor = StepExecutor(_registry(), on_call=seen.append)
    executor.execute(_batch(("echo", {"text": "a"}), ("fail", {})))
    assert [call.name for call in seen] == ["echo", "fail"]

def test_cancelled_before_execution():
    token = CancellationToken()
    token.cancel()
    with pytest.raises(RunCancelled):
        StepExecutor(_registry(), cancel=token).execute(FinalAnswer(value="x"))

def test_unhandled_action_type():
    with pytest.raises(TypeError):
        StepExecutor(_registry()).execute("not an action")

# ---------------------------------------------------------------------------
# Code Action Tests
# ---------------------------------------------------------------------------

def test_code_without_sandbox_is_fatal():
    with pytest.raises(AgentError, match="no sandbox"):
        StepExecutor(_registry()).execute(CodeBlock(source="1"))

def test_code_output_and_value():
    executor = StepExecutor(_registry(), sandbox=Sandbox())
    outcome = executor.execute(CodeBlock(source="print('hi')\n6 * 7"))
    assert outcome.observation.text == "Execution logs:\nhi\nLast output from code snippet:\n42"
    assert outcome.is_final is False

def test_code_without_output_reports_none():
    outcome = StepExecutor(_registry(), sandbox=Sandbox()).execute(CodeBlock(source="x = 1"))
    assert outcome.observation.text == "Last output from code snippet:\nNone"

def test_code_final_answer():
    outcome = StepExecutor(_registry(), sandbox=Sandbox()).execute(CodeBlock(source="final_answer('Paris')"))
    assert outcome.is_final is True
    assert outcome.final_answer == "Paris"

def test_code_policy_violation_is_observation():
    outcome = StepExecutor(_registry(), sandbox=Sandbox()).execute(CodeBlock(source="import os"))
    assert outcome.observation.error.kind == "policy_violation"
    assert "'os' is not allowed (line 1)" in outcome.observation.error.message

def test_code_policy_violation_can_be_fatal():
    executor = StepExecutor(_registry(), sandbox=Sandbox(), fatal_policy_violations=True)
    with pytest.raises(AgentError, match="Fatal policy violation"):
        executor.execute(CodeBlock(source="import subprocess"))

def test_code_runtime_failure_keeps_logs():
    outcome = StepExecutor(_registry(), sandbox=Sandbox()).execute(CodeBlock(source="print('step 1')\n[][3]"))
    assert outcome.observation.error.kind == "runtime_failure"
    assert outcome.observation.error.message.startswith("IndexError")
    assert outcome.observation.text == "step 1\n"

def test_code_other_language_fails_closed():
    outcome = StepExecutor(_registry(), sandbox=Sandbox()).execute(CodeBlock(source="ls", language="bash"))
    assert outcome.observation.error.kind == "runtime_failure"
    assert "No executor" in outcome.observation.error.message
