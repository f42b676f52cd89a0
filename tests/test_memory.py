import json

import pytest

from agent_scaffold.errors import StepBudgetExceeded
from agent_scaffold.memory import RETRY_HINT, Memory, render_step
from agent_scaffold.models import (
    CodeBlock,
    ErrorInfo,
    FinalAnswer,
    Observation,
    PlanningEntry,
    Role,
    Step,
    Task,
    Timing,
    ToolCall,
    ToolCallBatch,
)

TIMING = Timing(start_time=0.0, end_time=1.0)


def _step(index, text="ok", action=None, error=None, model_output="thinking"):
    return Step(
        index=index,
        model_output=model_output,
        action=action,
        observation=Observation(text=text, error=error),
        timing=TIMING,
    )


def _memory(max_steps=5, text="What is 2 + 2?"):
    return Memory(Task(text=text), max_steps=max_steps)

# ---------------------------------------------------------------------------
# Append & Capacity Tests
# ---------------------------------------------------------------------------

def test_append_in_order():
    memory = _memory()
    memory.append(_step(1))
    memory.append(_step(2))
    assert len(memory) == 2
    assert [step.index for step in memory] == [1, 2]
    assert memory.next_index == 3

def test_empty_memory_starts_at_one():
    assert _memory().next_index == 1

def test_append_rejects_non_increasing_index():
    memory = _memory()
    memory.append(_step(2))
    with pytest.raises(ValueError, match="must increase"):
        memory.append(_step(2))

def test_capacity_is_step_budget():
    memory = _memory(max_steps=2)
    memory.append(_step(1))
    memory.append(_step(2))
    assert memory.full
    with pytest.raises(StepBudgetExceeded):
        memory.append(_step(3))
    assert len(memory) == 2

def test_steps_property_is_a_copy():
    memory = _memory()
    memory.append(_step(1))
    memory.steps.clear()
    assert len(memory) == 1

def test_plans_do_not_count_as_steps():
    memory = _memory(max_steps=1)
    memory.add_plan(PlanningEntry(before_step=1, facts="f", plan="p"))
    memory.append(_step(1))
    assert len(memory) == 1
    assert len(memory.plans) == 1

# ---------------------------------------------------------------------------
# Rendering Tests
# ---------------------------------------------------------------------------

def test_task_message_includes_files():
    memory = Memory(Task(text="Summarize", files={"notes.txt": "alpha"}), max_steps=3)
    first = memory.to_messages()[0]
    assert first.role is Role.USER
    assert first.content.startswith("New Task: Summarize")
    assert "File 'notes.txt':" in first.content
    assert "alpha" in first.content

def test_render_tool_call_step():
    batch = ToolCallBatch(calls=(ToolCall(id="c1", name="add", arguments={"a": 1}), ToolCall(name="add", arguments={"a": 2})))
    step = Step(
        index=1,
        model_output="",
        action=batch,
        observation=Observation(text="1\n\n2", results={0: "1", 1: "2"}),
        timing=TIMING,
    )
    messages = render_step(step)
    assert [m.role for m in messages] == [Role.ASSISTANT, Role.ASSISTANT, Role.TOOL_RESULT, Role.TOOL_RESULT]
    assert json.loads(messages[0].content) == {"id": "c1", "name": "add", "arguments": {"a": 1}}
    assert messages[2].content == "Call id: c1\nObservation: 1"
    assert messages[3].content == "Call id: 1\nObservation: 2"

def test_render_error_step_adds_retry_hint():
    step = _step(1, text="", error=ErrorInfo(kind="parse_error", message="Unknown tool 'x'"))
    messages = render_step(step)
    assert messages[0].content == "thinking"
    assert messages[-1].role is Role.USER
    assert messages[-1].content == f"Error: Unknown tool 'x'\n{RETRY_HINT}\n"

def test_render_code_step_in_summary_mode():
    step = _step(1, text="4", action=CodeBlock(source="2 + 2"))
    full = render_step(step)
    summary = render_step(step, summary_mode=True)
    assert full[0].content == "thinking"
    assert full[-1].content == "Observation: 4"
    assert summary[0].content == "Code:\n```py\n2 + 2\n```"
    assert all(m.content != "thinking" for m in summary)

def test_render_final_answer_has_no_observation():
    step = _step(1, text="Paris", action=FinalAnswer(value="Paris"))
    assert [m.content for m in render_step(step)] == ["thinking"]
    assert render_step(step, summary_mode=True)[-1].content == "Final answer: Paris"

def test_plans_interleave_with_steps():
    memory = _memory()
    memory.add_plan(PlanningEntry(before_step=1, facts="facts one", plan="plan one"))
    memory.append(_step(1, text="first"))
    memory.append(_step(2, text="second"))
    memory.add_plan(PlanningEntry(before_step=3, facts="facts two", plan="plan two"))
    contents = [m.content for m in memory.to_messages()]
    assert contents.index("[PLAN]:\nplan one") < contents.index("Observation: first")
    assert contents.index("Observation: second") < contents.index("[PLAN]:\nplan two")
    assert "[FACTS]:\nfacts two" in contents
    assert "[FACTS]:\nfacts two" not in [m.content for m in memory.to_messages(summary_mode=True)]

# ---------------------------------------------------------------------------
# Conversation Budget Tests
# ---------------------------------------------------------------------------

def test_conversation_includes_system_prompt():
    memory = _memory()
    conversation = memory.to_conversation(system_prompt="You are helpful.")
    assert conversation[0].role is Role.SYSTEM
    assert conversation[1].content == "New Task: What is 2 + 2?"

def test_conversation_without_budget_keeps_everything():
    memory = _memory(max_steps=10)
    for i in range(1, 6):
        memory.append(_step(i, text="x" * 100))
    conversation = memory.to_conversation()
    assert not any(m.summarized for m in conversation)
    assert sum(1 for m in conversation if m.role is Role.TOOL_RESULT) == 5

def test_budget_drops_oldest_steps_first():
    memory = _memory(max_steps=10)
    for i in range(1, 6):
        memory.append(_step(i, text=f"result {i} " + "x" * 100, model_output=""))
    conversation = memory.to_conversation(budget=300)
    observations = [m.content for m in conversation if m.role is Role.TOOL_RESULT]
    assert observations[-1].startswith("Observation: result 5")
    assert not any(o.startswith("Observation: result 1") for o in observations)
    marker = [m for m in conversation if m.summarized]
    assert len(marker) == 1
    assert marker[0].role is Role.USER
    assert "earlier step(s)" in marker[0].content
    assert conversation[0].content == "New Task: What is 2 + 2?"

def test_budget_keeps_latest_step_even_if_too_large():
    memory = _memory()
    memory.append(_step(1, text="small"))
    memory.append(_step(2, text="y" * 1000))
    conversation = memory.to_conversation(budget=50)
    contents = [m.content for m in conversation]
    assert "Observation: " + "y" * 1000 in contents
    assert "Observation: small" not in contents
    assert "[Summary: 1 earlier step(s) and 0 earlier plan(s)" in conversation[1].content

def test_budget_keeps_latest_plan():
    memory = _memory()
    memory.add_plan(PlanningEntry(before_step=1, facts="old facts", plan="old plan " + "z" * 200))
    memory.append(_step(1, text="a" * 200))
    memory.add_plan(PlanningEntry(before_step=2, facts="new facts", plan="new plan"))
    memory.append(_step(2, text="b"))
    contents = [m.content for m in memory.to_conversation(budget=100)]
    assert "[PLAN]:\nnew plan" in contents
    assert not any(c.startswith("[PLAN]:\nold plan") for c in contents)

# ---------------------------------------------------------------------------
# Transcript Tests
# ---------------------------------------------------------------------------

def test_transcript_is_json_and_restores():
    memory = _memory()
    memory.add_plan(PlanningEntry(before_step=1, facts="f", plan="p"))
    batch = ToolCallBatch(calls=(ToolCall(id="c1", name="add", arguments={"a": 1, "b": 2}),))
    memory.append(
        Step(index=1, model_output="", action=batch, observation=Observation(text="3", results={0: "3"}), timing=TIMING)
    )
    memory.append(_step(2, text="done", action=FinalAnswer(value="3")))

    data = json.loads(json.dumps(memory.to_transcript()))
    restored = Memory.from_transcript(data)
    assert restored.task == memory.task
    assert restored.steps == memory.steps
    assert restored.plans == memory.plans
    assert restored.to_conversation("sys") == memory.to_conversation("sys")
    assert restored.to_conversation("sys", summary_mode=True) == memory.to_conversation("sys", summary_mode=True)

def test_transcript_keeps_conversation_for_non_json_answers():
    memory = _memory()
    code = CodeBlock(source="final_answer((6, 7))")
    memory.append(_step(1, text="(6, 7)", action=code))
    memory.append(_step(2, text="(6, 7)", action=FinalAnswer(value=(6, 7))))
    memory.append(_step(3, text="{1: 'a'}", action=FinalAnswer(value={1: "a"})))

    restored = Memory.from_transcript(json.loads(json.dumps(memory.to_transcript())))
    assert restored.steps[1].action.value == "(6, 7)"
    assert restored.to_conversation("sys") == memory.to_conversation("sys")
    assert restored.to_conversation("sys", summary_mode=True) == memory.to_conversation("sys", summary_mode=True)
    assert "Final answer: (6, 7)" in [m.content for m in restored.to_conversation("sys", summary_mode=True)]
