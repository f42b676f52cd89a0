import pytest

from agent_scaffold.backends import CancellationToken, CompletionStream, RetryPolicy
from agent_scaffold.errors import AgentError, AuthError, MalformedResponse, ModelTimeout, RateLimited, RunCancelled
from agent_scaffold.harness import CodeAgent, ToolCallingAgent, render_system_prompt
from agent_scaffold.models import Completion, CompletionChunk, FunctionCall, ParameterSpec, ParameterType, Role
from agent_scaffold.tools import FunctionTool, ToolRegistry

from conftest import ScriptedModel, tool_call

FAST = RetryPolicy(initial_seconds_between_retry_attempts=0.0, max_seconds_between_retry_attempts=0.0)


def _echo():
    return FunctionTool(
        "echo", "Echo text back.", [ParameterSpec(name="text", type=ParameterType.STRING)], lambda args: args["text"]
    )


def _add():
    return FunctionTool(
        "add",
        "Add two numbers.",
        [ParameterSpec(name="a", type=ParameterType.NUMBER), ParameterSpec(name="b", type=ParameterType.NUMBER)],
        lambda args: str(args["a"] + args["b"]),
    )


def _agent(script, **kwargs):
    model = ScriptedModel(script)
    kwargs.setdefault("retry_policy", FAST)
    return ToolCallingAgent(model, kwargs.pop("tools", [_echo()]), **kwargs), model

# ---------------------------------------------------------------------------
# Construction Tests
# ---------------------------------------------------------------------------

def test_invalid_max_steps():
    with pytest.raises(AgentError, match="max_steps"):
        ToolCallingAgent(ScriptedModel(), max_steps=0)

def test_invalid_planning_interval():
    with pytest.raises(AgentError, match="planning_interval"):
        ToolCallingAgent(ScriptedModel(), planning_interval=0)

def test_invalid_sandbox_timeout():
    with pytest.raises(AgentError, match="sandbox_timeout"):
        CodeAgent(ScriptedModel(), sandbox_timeout=0)

def test_run_rejects_invalid_budget():
    agent, model = _agent([])
    with pytest.raises(AgentError):
        agent.run("anything", max_steps=0)
    assert model.calls == []

def test_system_prompt_lists_tools():
    agent, _ = _agent([])
    assert "echo, final_answer" in agent.system_prompt
    assert "echo: Echo text back." in agent.system_prompt
    assert "{{" not in agent.system_prompt

def test_code_prompt_lists_authorized_imports():
    agent = CodeAgent(ScriptedModel())
    assert "math" in agent.system_prompt
    assert "{{" not in agent.system_prompt

def test_custom_system_prompt_template():
    prompt = render_system_prompt("Tools: {{tool_names}}. Mood: {{mood}}", ToolRegistry([_echo()]), mood="calm")
    assert prompt == "Tools: echo, final_answer. Mood: calm"

# ---------------------------------------------------------------------------
# Tool-Calling Loop Tests
# ---------------------------------------------------------------------------

def test_final_answer_on_first_step():
    agent, model = _agent([tool_call("final_answer", {"answer": "Paris"})])
    result = agent.run("What is the capital of France?")
    assert result.output == "Paris"
    assert result.state == "success"
    assert len(result.steps) == 1
    assert len(model.calls) == 1

def test_first_call_carries_system_prompt_tools_and_stop():
    agent, model = _agent([tool_call("final_answer", {"answer": "x"})])
    agent.run("task")
    call = model.calls[0]
    assert call["messages"][0].role is Role.SYSTEM
    assert call["messages"][1].content == "New Task: task"
    assert [schema.name for schema in call["tools"]] == ["echo", "final_answer"]
    assert call["stop"] == ["Observation:"]

def test_tool_then_final_answer():
    agent, model = _agent([
        tool_call("echo", {"text": "looked it up"}),
        tool_call("final_answer", {"answer": "done"}, call_id="call_2"),
    ])
    result = agent.run("Use echo then answer.")
    assert result.output == "done"
    assert [step.index for step in result.steps] == [1, 2]
    assert result.steps[0].observation.text == "looked it up"
    second_call = [m.content for m in model.calls[1]["messages"]]
    assert "Call id: call_1\nObservation: looked it up" in second_call

def test_native_final_answer_keeps_number():
    agent, _ = _agent([tool_call("final_answer", {"answer": 391})])
    result = agent.run("What is 17 * 23?")
    assert result.output == 391

def test_plain_text_completion_is_final():
    agent, _ = _agent(["The answer is 4."])
    result = agent.run("What is 2 + 2?")
    assert result.output == "The answer is 4."
    assert result.state == "success"

def test_budget_exhaustion_makes_one_synthesis_call():
    agent, model = _agent(
        [tool_call("echo", {"text": "a"}), tool_call("echo", {"text": "b"}), "Best guess: 7"],
        max_steps=2,
    )
    result = agent.run("Loop forever.")
    assert result.state == "max_steps"
    assert result.output == "Best guess: 7"
    assert len(result.steps) == 2
    assert len(agent.memory) == 2
    assert len(model.calls) == 3
    synthesis = model.calls[2]
    assert synthesis["tools"] == []
    assert synthesis["messages"][0].content.startswith("An agent tried to answer a user query")
    assert synthesis["messages"][-1].content.endswith("Loop forever.")

def test_final_answer_on_last_budget_step_skips_synthesis():
    agent, model = _agent([tool_call("final_answer", {"answer": "just in time"})], max_steps=1)
    result = agent.run("task")
    assert result.state == "success"
    assert len(model.calls) == 1

def test_budget_reached_on_truncated_step():
    agent, _ = _agent(
        [tool_call("echo", {"text": "x" * 100}), "synthesized"],
        max_steps=1,
        max_observation_chars=10,
    )
    result = agent.run("task")
    assert result.state == "max_steps"
    assert result.steps[0].observation.truncated is True
    assert result.output == "synthesized"

def test_parse_error_is_recorded_and_recovered():
    agent, model = _agent([
        "Action: echo\nI forgot the arguments.",
        tool_call("final_answer", {"answer": "recovered"}),
    ])
    result = agent.run("task")
    assert result.output == "recovered"
    failed = result.steps[0]
    assert failed.action is None
    assert failed.observation.error.kind == "parse_error"
    retry_messages = model.calls[1]["messages"]
    assert retry_messages[-1].role is Role.USER
    assert retry_messages[-1].content.startswith("Error: ")

def test_unknown_tool_is_parse_error_step():
    agent, _ = _agent([tool_call("fly", {}), tool_call("final_answer", {"answer": "ok"})])
    result = agent.run("task")
    assert "Unknown tool 'fly'" in result.steps[0].observation.error.message

def test_unknown_tool_in_batch_keeps_other_calls():
    batch = Completion(tool_calls=[
        FunctionCall(id="call_1", name="echo", arguments={"text": "first"}),
        FunctionCall(id="call_2", name="nope", arguments={}),
        FunctionCall(id="call_3", name="echo", arguments={"text": "third"}),
    ])
    agent, model = _agent([batch, tool_call("final_answer", {"answer": "ok"}, call_id="call_4")])
    result = agent.run("task")
    observation = result.steps[0].observation
    assert observation.results[0] == "first"
    assert observation.results[1].startswith("Error: Unknown tool 'nope'")
    assert observation.results[2] == "third"
    assert observation.error.kind == "parse_error"
    second_call = [m.content for m in model.calls[1]["messages"]]
    assert "Call id: call_3\nObservation: third" in second_call
    assert result.output == "ok"

def test_malformed_response_is_parse_error_step():
    agent, _ = _agent([MalformedResponse("garbled body"), tool_call("final_answer", {"answer": "ok"})])
    result = agent.run("task")
    assert result.steps[0].observation.error.kind == "parse_error"
    assert "garbled body" in result.steps[0].observation.error.message

def test_tool_failure_is_observation():
    def broken(args):
        raise RuntimeError("disk full")

    tool = FunctionTool("save", "Save.", [], broken)
    agent, _ = _agent([tool_call("save", {}), tool_call("final_answer", {"answer": "gave up"})], tools=[tool])
    result = agent.run("task")
    assert result.steps[0].observation.error.kind == "tool_error"
    assert result.output == "gave up"

def test_on_step_callback():
    seen = []
    agent, _ = _agent([tool_call("echo", {"text": "a"}), tool_call("final_answer", {"answer": "b"})])
    agent.run("task", on_step=seen.append)
    assert [step.index for step in seen] == [1, 2]

def test_each_run_gets_fresh_memory():
    agent, _ = _agent([tool_call("final_answer", {"answer": "one"}), tool_call("final_answer", {"answer": "two"})])
    agent.run("first")
    first_memory = agent.memory
    agent.run("second")
    assert agent.memory is not first_memory
    assert agent.memory.task.text == "second"
    assert len(agent.memory) == 1

# ---------------------------------------------------------------------------
# Model Failure Tests
# ---------------------------------------------------------------------------

def test_auth_error_is_fatal_and_not_retried():
    agent, model = _agent([AuthError("invalid key")])
    with pytest.raises(AgentError, match="auth_error"):
        agent.run("task")
    assert len(model.calls) == 1
    assert len(agent.memory) == 0

def test_memory_keeps_steps_completed_before_failure():
    agent, _ = _agent([tool_call("echo", {"text": "a"}), AuthError("revoked")])
    with pytest.raises(AgentError):
        agent.run("task")
    assert len(agent.memory) == 1

def test_rate_limit_is_retried():
    agent, model = _agent([RateLimited("slow down", retry_after=0), tool_call("final_answer", {"answer": "ok"})])
    result = agent.run("task")
    assert result.output == "ok"
    assert len(model.calls) == 2
    assert len(result.steps) == 1

def test_timeouts_exhaust_retries():
    model = ScriptedModel(default=ModelTimeout("upstream down"))
    agent = ToolCallingAgent(
        model, retry_policy=RetryPolicy(max_retry_attempts=2, initial_seconds_between_retry_attempts=0.0)
    )
    with pytest.raises(AgentError, match="timeout"):
        agent.run("task")
    assert len(model.calls) == 3

def test_cancel_before_start():
    token = CancellationToken()
    token.cancel()
    agent, model = _agent([tool_call("final_answer", {"answer": "x"})])
    with pytest.raises(RunCancelled):
        agent.run("task", cancel=token)
    assert model.calls == []

# ---------------------------------------------------------------------------
# Streaming Tests
# ---------------------------------------------------------------------------

def test_streamed_tool_call():
    agent, _ = _agent([tool_call("final_answer", {"answer": "streamed"})], stream=True)
    assert agent.run("task").output == "streamed"

def test_streamed_text_is_reassembled():
    agent, _ = _agent(["The answer is 4"], stream=True)
    assert agent.run("task").output == "The answer is 4"

def test_cancel_mid_stream_leaves_memory_unchanged():
    token = CancellationToken()

    class CancellingModel(ScriptedModel):
        def stream(self, messages, tools=(), stop=(), cancel=None):
            if not self.calls:
                return super().stream(messages, tools, stop, cancel)
            self.calls.append({"messages": list(messages), "tools": list(tools), "stop": list(stop)})

            def chunks():
                yield CompletionChunk(text="partial ")
                token.cancel()
                yield CompletionChunk(text="text")
                yield CompletionChunk(text=" never seen")

            return CompletionStream(chunks(), cancel=cancel)

    model = CancellingModel([tool_call("echo", {"text": "first"})])
    agent = ToolCallingAgent(model, [_echo()], stream=True, retry_policy=FAST)
    with pytest.raises(RunCancelled):
        agent.run("task", cancel=token)
    assert len(agent.memory) == 1
    assert agent.memory.steps[0].observation.text == "first"

# ---------------------------------------------------------------------------
# Planning Tests
# ---------------------------------------------------------------------------

def test_planning_runs_at_interval():
    agent, model = _agent(
        [
            "facts one", "plan one",
            tool_call("echo", {"text": "a"}),
            tool_call("echo", {"text": "b"}),
            "facts two", "plan two",
            tool_call("final_answer", {"answer": "planned"}),
        ],
        planning_interval=2,
        max_steps=5,
    )
    result = agent.run("Plan the work.")
    assert result.output == "planned"
    assert len(result.steps) == 3
    plans = agent.memory.plans
    assert [entry.before_step for entry in plans] == [1, 3]
    assert plans[0].plan.endswith("plan one")
    assert model.calls[1]["stop"] == ["<end_plan>"]
    step_one_messages = [m.content for m in model.calls[2]["messages"]]
    assert any(content.startswith("[PLAN]:") for content in step_one_messages)

# ---------------------------------------------------------------------------
# Code Agent Tests
# ---------------------------------------------------------------------------

def _code(source):
    return f"Thought: run it.\nCode:\n```py\n{source}\n```<end_code>"

def test_code_agent_state_persists_between_steps():
    model = ScriptedModel([_code("x = 21"), _code("final_answer(x * 2)")])
    result = CodeAgent(model, retry_policy=FAST).run("Compute 42.")
    assert result.output == 42
    assert result.state == "success"
    assert model.calls[0]["tools"] == []
    assert model.calls[0]["stop"] == ["Observation:", "<end_code>"]

def test_code_agent_calls_tools_by_name():
    model = ScriptedModel([_code("print(add(a=2, b=3))\nprint(add(4, 5))"), _code("final_answer('ok')")])
    result = CodeAgent(model, [_add()], retry_policy=FAST).run("Add numbers.")
    assert result.steps[0].observation.text == "Execution logs:\n5\n9"

def test_code_agent_tool_argument_error_is_runtime_failure():
    model = ScriptedModel([_code("add(a='two', b=3)"), _code("final_answer('ok')")])
    result = CodeAgent(model, [_add()], retry_policy=FAST).run("Add numbers.")
    error = result.steps[0].observation.error
    assert error.kind == "runtime_failure"
    assert "ToolArgumentError" in error.message

def test_code_agent_recovers_from_policy_violation():
    model = ScriptedModel([_code("import os\nos.listdir('.')"), _code("final_answer('safe')")])
    result = CodeAgent(model, retry_policy=FAST).run("List files.")
    assert result.steps[0].observation.error.kind == "policy_violation"
    assert result.output == "safe"

def test_code_agent_fatal_policy_violation():
    model = ScriptedModel([_code("import subprocess")])
    agent = CodeAgent(model, retry_policy=FAST, fatal_policy_violations=True)
    with pytest.raises(AgentError, match="Fatal policy violation"):
        agent.run("task")

def test_code_agent_missing_code_block_hint():
    model = ScriptedModel(["I would compute it.", _code("final_answer(1)")])
    result = CodeAgent(model, retry_policy=FAST).run("task")
    assert "The code blob is invalid" in result.steps[0].observation.error.message

def test_code_agent_scratch_directory_is_removed(tmp_path):
    source = "with open('notes.txt', 'w') as f:\n    f.write('draft')\nfinal_answer(open('notes.txt').read())"
    model = ScriptedModel([_code(source)])
    result = CodeAgent(model, sandbox_dir=tmp_path, retry_policy=FAST).run("Write notes.")
    assert result.output == "draft"
    assert list(tmp_path.iterdir()) == []

def test_code_agent_scratch_removed_after_failure(tmp_path):
    model = ScriptedModel([AuthError("denied")])
    with pytest.raises(AgentError):
        CodeAgent(model, sandbox_dir=tmp_path, retry_policy=FAST).run("task")
    assert list(tmp_path.iterdir()) == []

def test_code_agent_sandbox_timeout_is_observation():
    model = ScriptedModel([_code("n = 0\nwhile True:\n    n += 1"), _code("final_answer(n > 0)")])
    result = CodeAgent(model, sandbox_timeout=0.2, retry_policy=FAST).run("Count.")
    assert result.steps[0].observation.truncated is True
    assert result.output is True
