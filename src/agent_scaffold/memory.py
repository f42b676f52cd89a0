# memory.py
# Append-only step log for one agent run, and the Conversation derived from it.
#
# Memory is never shared between agents. The Conversation is rebuilt from
# Memory before every model call; it is a view, not state. When it does not
# fit the character budget, the oldest steps are dropped behind a marker
# message flagged `summarized`. The task and the latest step always stay.

import json
from collections.abc import Iterator
from typing import Any

from agent_scaffold.errors import StepBudgetExceeded
from agent_scaffold.models import (
    CodeBlock,
    FinalAnswer,
    Message,
    PlanningEntry,
    Role,
    Step,
    Task,
    ToolCallBatch,
)

RETRY_HINT = (
    "Now let's retry: take care not to repeat previous errors! "
    "If you have retried several times, try a completely different approach."
)


def _render_task(task: Task) -> list[Message]:
    content = f"New Task: {task.text}"
    for name, body in task.files.items():
        content += f"\n\nFile '{name}':\n```\n{body}\n```"
    return [Message(role=Role.USER, content=content)]


def _render_plan(entry: PlanningEntry, summary_mode: bool) -> list[Message]:
    messages = [Message(role=Role.ASSISTANT, content=f"[PLAN]:\n{entry.plan}")]
    if not summary_mode:
        messages.append(Message(role=Role.ASSISTANT, content=f"[FACTS]:\n{entry.facts}"))
    return messages


def render_step(step: Step, summary_mode: bool = False) -> list[Message]:
    """Messages one Step contributes to the Conversation, in order."""
    messages: list[Message] = []
    if step.model_output and not summary_mode:
        messages.append(Message(role=Role.ASSISTANT, content=step.model_output))

    action = step.action
    observation = step.observation
    if isinstance(action, ToolCallBatch):
        for call in action.calls:
            payload = {"id": call.id, "name": call.name, "arguments": call.arguments}
            messages.append(Message(role=Role.ASSISTANT, content=json.dumps(payload, indent=2, default=str)))
        for index, call in enumerate(action.calls):
            if index in observation.results:
                call_id = call.id if call.id is not None else index
                messages.append(
                    Message(
                        role=Role.TOOL_RESULT,
                        content=f"Call id: {call_id}\nObservation: {observation.results[index]}",
                    )
                )
    else:
        if isinstance(action, CodeBlock) and summary_mode:
            messages.append(Message(role=Role.ASSISTANT, content=f"Code:\n```py\n{action.source}\n```"))
        if isinstance(action, FinalAnswer) and summary_mode:
            messages.append(Message(role=Role.ASSISTANT, content=f"Final answer: {action.value}"))
        if observation.text and not isinstance(action, FinalAnswer):
            messages.append(Message(role=Role.TOOL_RESULT, content=f"Observation: {observation.text}"))

    if observation.error is not None:
        messages.append(
            Message(role=Role.USER, content=f"Error: {observation.error.message}\n{RETRY_HINT}\n")
        )
    return messages


class Memory:
    """Ordered, append-only Steps for one run. Capacity is the step budget."""

    def __init__(self, task: Task, max_steps: int) -> None:
        self.task = task
        self.max_steps = max_steps
        self._steps: list[Step] = []
        self._plans: list[PlanningEntry] = []

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, step: Step) -> None:
        if len(self._steps) >= self.max_steps:
            raise StepBudgetExceeded(f"Memory already holds the maximum of {self.max_steps} steps.")
        if self._steps and step.index <= self._steps[-1].index:
            raise ValueError(
                f"Step index must increase: got {step.index} after {self._steps[-1].index}."
            )
        self._steps.append(step)

    def add_plan(self, entry: PlanningEntry) -> None:
        self._plans.append(entry)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps)

    @property
    def steps(self) -> list[Step]:
        return list(self._steps)

    @property
    def plans(self) -> list[PlanningEntry]:
        return list(self._plans)

    @property
    def next_index(self) -> int:
        return self._steps[-1].index + 1 if self._steps else 1

    @property
    def full(self) -> bool:
        return len(self._steps) >= self.max_steps

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    def _blocks(self, summary_mode: bool) -> list[tuple[str, list[Message]]]:
        """Plans and steps in the order they happened, one block each."""
        blocks: list[tuple[str, list[Message]]] = []
        plans = sorted(self._plans, key=lambda entry: entry.before_step)
        plan_pos = 0
        for step in self._steps:
            while plan_pos < len(plans) and plans[plan_pos].before_step <= step.index:
                blocks.append(("plan", _render_plan(plans[plan_pos], summary_mode)))
                plan_pos += 1
            blocks.append(("step", render_step(step, summary_mode)))
        for entry in plans[plan_pos:]:
            blocks.append(("plan", _render_plan(entry, summary_mode)))
        return blocks

    def to_messages(self, summary_mode: bool = False) -> list[Message]:
        messages = _render_task(self.task)
        for _, block in self._blocks(summary_mode):
            messages.extend(block)
        return messages

    def to_conversation(
        self,
        system_prompt: str | None = None,
        budget: int | None = None,
        summary_mode: bool = False,
    ) -> list[Message]:
        """
        Conversation for the next model call.

        With a `budget` (characters), the oldest plans and steps are dropped
        until the rest fits. The task, the latest plan and the latest step are
        never dropped; if they alone exceed the budget they are sent anyway.
        """
        head = [Message(role=Role.SYSTEM, content=system_prompt)] if system_prompt else []
        head += _render_task(self.task)
        blocks = self._blocks(summary_mode)

        def size(items: list[tuple[str, list[Message]]]) -> int:
            return sum(len(m.content) for m in head) + sum(len(m.content) for _, b in items for m in b)

        dropped_steps = 0
        dropped_plans = 0
        if budget is not None:
            last_step = max((i for i, (kind, _) in enumerate(blocks) if kind == "step"), default=None)
            last_plan = max((i for i, (kind, _) in enumerate(blocks) if kind == "plan"), default=None)
            keep = {last_step, last_plan}
            kept = list(enumerate(blocks))
            while size([b for _, b in kept]) > budget:
                victim = next((pos for pos, (i, _) in enumerate(kept) if i not in keep), None)
                if victim is None:
                    break
                kind = kept.pop(victim)[1][0]
                if kind == "step":
                    dropped_steps += 1
                else:
                    dropped_plans += 1
            blocks = [b for _, b in kept]

        messages = list(head)
        if dropped_steps or dropped_plans:
            messages.append(
                Message(
                    role=Role.USER,
                    content=(
                        f"[Summary: {dropped_steps} earlier step(s) and {dropped_plans} earlier plan(s) "
                        "were omitted to fit the context budget.]"
                    ),
                    summarized=True,
                )
            )
        for _, block in blocks:
            messages.extend(block)
        return messages

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------

    def to_transcript(self) -> dict[str, Any]:
        """JSON-safe export of the whole run."""
        return {
            "task": self.task.model_dump(mode="json"),
            "max_steps": self.max_steps,
            "plans": [entry.model_dump(mode="json") for entry in self._plans],
            "steps": [step.model_dump(mode="json") for step in self._steps],
        }

    @classmethod
    def from_transcript(cls, data: dict[str, Any]) -> "Memory":
        memory = cls(Task.model_validate(data["task"]), data["max_steps"])
        for entry in data.get("plans", []):
            memory.add_plan(PlanningEntry.model_validate(entry))
        for step in data.get("steps", []):
            memory.append(Step.model_validate(step))
        return memory
