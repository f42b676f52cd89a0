# executor.py
# Step Executor: one parsed Action -> one Observation.
#
# Tool-call batches run in the order the model wrote them. A failing call
# does not stop the calls after it; every result is kept, keyed by call
# index. Code blocks go through the sandbox. Observations are clipped to a
# fixed size and flagged as truncated.

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from agent_scaffold.backends import CancellationToken
from agent_scaffold.errors import AgentError, ParseError, PolicyViolationError, SandboxRuntimeError, ScaffoldError
from agent_scaffold.models import (
    Action,
    CodeBlock,
    ErrorInfo,
    ExecutionOutput,
    FinalAnswer,
    Observation,
    PolicyViolation,
    RuntimeFailure,
    ToolCall,
    ToolCallBatch,
)
from agent_scaffold.sandbox import Sandbox
from agent_scaffold.tools import FINAL_ANSWER, ToolRegistry

TRUNCATION_NOTICE = "\n....This content has been truncated due to the {limit} character limit....."


def clip(text: str, limit: int) -> tuple[str, bool]:
    if len(text) <= limit:
        return text, False
    return text[:limit] + TRUNCATION_NOTICE.format(limit=limit), True


def error_observation(exc: ScaffoldError, text: str = "") -> Observation:
    return Observation(text=text, error=exc.to_info())


@dataclass(frozen=True)
class ExecutionOutcome:
    observation: Observation
    is_final: bool = False
    final_answer: Any = None


class StepExecutor:
    """
    Dispatches Actions for one agent run.

    `on_call` is invoked before each tool call (display hook). With
    `fatal_policy_violations` set, a sandbox policy violation raises
    AgentError instead of becoming an error Observation.
    """

    def __init__(
        self,
        tools: ToolRegistry,
        sandbox: Sandbox | None = None,
        max_observation_chars: int = 30000,
        fatal_policy_violations: bool = False,
        cancel: CancellationToken | None = None,
        on_call: Callable[[ToolCall], None] | None = None,
    ) -> None:
        self.tools = tools
        self.sandbox = sandbox
        self.max_observation_chars = max_observation_chars
        self.fatal_policy_violations = fatal_policy_violations
        self.cancel = cancel or CancellationToken()
        self.on_call = on_call

    def execute(self, action: Action) -> ExecutionOutcome:
        self.cancel.raise_if_cancelled("before executing an action")
        if isinstance(action, FinalAnswer):
            return ExecutionOutcome(Observation(text=str(action.value)), is_final=True, final_answer=action.value)
        if isinstance(action, ToolCallBatch):
            return self._run_batch(action)
        if isinstance(action, CodeBlock):
            return self._run_code(action)
        raise TypeError(f"Unhandled action type: {type(action).__name__}")

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def _policy_check(self, exc: ScaffoldError) -> None:
        if self.fatal_policy_violations and isinstance(exc, PolicyViolationError):
            raise AgentError(f"Fatal policy violation: {exc}") from exc

    def _run_batch(self, batch: ToolCallBatch) -> ExecutionOutcome:
        results: dict[int, str] = {}
        first_error: ErrorInfo | None = None
        truncated = False
        final: tuple[bool, Any] = (False, None)

        for index, call in enumerate(batch.calls):
            self.cancel.raise_if_cancelled(f"before tool call {index}")
            if self.on_call is not None:
                self.on_call(call)

            if call.error is not None:
                results[index] = f"Error: {call.error}"
                if first_error is None:
                    first_error = ParseError(call.error).to_info()
                continue

            if call.name == FINAL_ANSWER:
                answer = call.arguments.get("answer")
                results[index] = str(answer)
                final = (True, answer)
                continue

            try:
                text = self.tools.call(call.name, call.arguments)
            except ScaffoldError as exc:
                self._policy_check(exc)
                results[index] = f"Error: {exc}"
                if first_error is None:
                    first_error = exc.to_info()
                continue

            text, clipped = clip(text, self.max_observation_chars)
            truncated = truncated or clipped
            results[index] = text

        merged = "\n\n".join(results[i] for i in sorted(results))
        observation = Observation(text=merged, truncated=truncated, error=first_error, results=results)
        return ExecutionOutcome(observation, is_final=final[0], final_answer=final[1])

    # ------------------------------------------------------------------
    # Code
    # ------------------------------------------------------------------

    def _run_code(self, block: CodeBlock) -> ExecutionOutcome:
        if self.sandbox is None:
            raise AgentError("Received a code action but this agent has no sandbox.")

        result = self.sandbox.execute(block.source, block.language)

        if isinstance(result, PolicyViolation):
            exc = PolicyViolationError(result.symbol, result.line)
            self._policy_check(exc)
            return ExecutionOutcome(error_observation(exc))

        if isinstance(result, RuntimeFailure):
            text, truncated = clip(result.output, self.max_observation_chars)
            observation = error_observation(SandboxRuntimeError(result.message), text)
            return ExecutionOutcome(observation.model_copy(update={"truncated": truncated}))

        assert isinstance(result, ExecutionOutput)
        parts = []
        if result.output:
            parts.append(f"Execution logs:\n{result.output.rstrip()}")
        if result.value is not None or not parts:
            parts.append(f"Last output from code snippet:\n{result.value!r}")
        text, clipped = clip("\n".join(parts), self.max_observation_chars)
        observation = Observation(text=text, truncated=clipped or result.truncated)
        return ExecutionOutcome(observation, is_final=result.is_final_answer, final_answer=result.value)
