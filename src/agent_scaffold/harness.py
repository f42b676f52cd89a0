# harness.py
# Agent state machine.
#
# The agent is the kernel. The model is a passive responder: this class owns
# all control flow, state and termination. One iteration:
#
#   Memory → Conversation → model → Action Parser → Step Executor
#   → Step appended to Memory → terminate?
#
# States: Planning (optional) → Acting → Observing → Acting | Terminated.
# Terminated is reached on a FinalAnswer, on an exhausted step budget (after
# exactly one synthesis call), or on an AgentError.
#
# All terminal output is delegated to display.py. No formatting here.

import time
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from agent_scaffold import display
from agent_scaffold.backends import CancellationToken, ModelBackend, RetryPolicy, call_with_retries
from agent_scaffold.errors import AgentError, MalformedResponse, ModelError, ParseError
from agent_scaffold.executor import ExecutionOutcome, StepExecutor, error_observation
from agent_scaffold.memory import Memory
from agent_scaffold.models import (
    CodeBlock,
    Completion,
    FinalAnswer,
    Message,
    PlanningEntry,
    Role,
    RunResult,
    Step,
    Task,
    Timing,
    ToolSchema,
)
from agent_scaffold.parser import CODE, TOOL_CALLS, parse
from agent_scaffold.sandbox import AllowListPolicy, Sandbox, ScratchDirectory
from agent_scaffold.tools import FINAL_ANSWER, Tool, ToolRegistry


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------

TOOL_CALLING_SYSTEM_PROMPT = """\
You are an expert assistant who can solve any task using tool calls. You will be given a task to solve \
as best you can. To do so, you have been given access to the following tools: {{tool_names}}

The tool call you write is an action: after the tool is executed, you will get the result of the tool \
call as an "observation". This Action/Observation can repeat N times; take several steps when needed.

You can use the result of the previous action as input for the next action.
To provide the final answer to the task, use an action blob with "name": "final_answer" tool. It is the \
only way to complete the task, else you will be stuck in a loop.

If your backend cannot emit native tool calls, respond in EXACTLY this format:

Thought: <your reasoning about the task and the prior observation>
Action: <tool_name>
Args: <valid JSON object matching the tool's inputs>

Above example were using notional tools that might not exist for you. You only have access to these tools:

{{tool_descriptions}}

Here are the rules you should always follow to solve your task:
1. ALWAYS provide a tool call, else you will fail.
2. Always use the right arguments for the tools. Never use variable names as the action arguments, use the value instead.
3. Call a tool only when needed: do not call the search agent if you do not need information, try to solve the task yourself.
4. Never re-do a tool call that you previously did with the exact same parameters.

The current time is {{current_time}}.
Now Begin! If you solve the task correctly, you will receive a reward of $1,000,000.\
"""

CODE_SYSTEM_PROMPT = """\
You are an expert assistant who can solve any task using code blobs. You will be given a task to solve \
as best you can. To do so, you have been given access to a list of tools: these tools are basically \
Python functions which you can call with code.

To solve the task, you must plan forward to proceed in a series of steps, in a cycle of 'Thought:', \
'Code:', and 'Observation:' sequences.

At each step, in the 'Thought:' sequence, you should first explain your reasoning towards solving the \
task and the tools that you want to use.
Then in the 'Code:' sequence, you should write the code in simple Python. The code sequence must end \
with '<end_code>' sequence.
During each intermediate step, you can use 'print()' to save whatever important information you will \
then need. These print outputs will then appear in the 'Observation:' field, which will be available \
as input for the next step.
In the end you have to return a final answer using the `final_answer` tool.

Here is an example:
Task: "What is the result of the following operation: 5 + 3 + 1294.678?"

Thought: I will use python code to compute the result of the operation and then return the final answer \
using the `final_answer` tool
Code:
```py
result = 5 + 3 + 1294.678
final_answer(result)
```<end_code>

You only have access to these tools:

{{tool_descriptions}}

Here are the rules you should always follow to solve your task:
1. Always provide a 'Thought:' sequence, and a 'Code:\\n```py' sequence ending with '```<end_code>' sequence, else you will fail.
2. Use only variables that you have defined!
3. Always use the right arguments for the tools: call them with keyword arguments, e.g. `web_search(query="...")`.
4. Don't name any new variable with the same name as a tool: for instance don't name a variable 'final_answer'.
5. You can only import these modules: {{authorized_imports}}. No other module, no file-system or process access.
6. Variables and function definitions persist between code steps.
7. Names starting with an underscore, classes, async code, generators and try/finally are not allowed.

The current time is {{current_time}}.
Now Begin! If you solve the task correctly, you will receive a reward of $1,000,000.\
"""

SYSTEM_PROMPT_FACTS = """\
Below I will present you a task.

You will now build a comprehensive preparatory survey of which facts we have at our disposal and which ones we still need.
To do so, you will have to read the task and identify things that must be discovered in order to successfully complete it.
Don't make any assumptions. For each item, provide a thorough reasoning. Here is how you will structure this survey:

---
### 1. Facts given in the task
List here the specific facts given in the task that could help you (there might be nothing here).

### 2. Facts to look up
List here any facts that we may need to look up.
Also list where to find each of these, for instance a website, a file... - maybe the task contains some sources that you should re-use here.

### 3. Facts to derive
List here anything that we want to derive from the above by logical reasoning, for instance computation or simulation.

Keep in mind that "facts" will typically be specific names, dates, values, etc. Your answer should use the below headings:
### 1. Facts given in the task
### 2. Facts to look up
### 3. Facts to derive
Do not add anything else.\
"""

SYSTEM_PROMPT_PLAN = """\
You are a world expert at making efficient plans to solve any task using a set of carefully crafted tools.

Now for the given task, develop a step-by-step high-level plan taking into account the above inputs and list of facts.
This plan should involve individual tasks based on the available tools, that if executed correctly will yield the correct answer.
Do not skip steps, do not add any superfluous steps. Only write the high-level plan, DO NOT DETAIL INDIVIDUAL TOOL CALLS.
After writing the final step of the plan, write the '\\n<end_plan>' tag and stop there.\
"""

USER_PROMPT_PLAN = """\
Here is your task:

Task:
```
{task}
```

Your plan can leverage any of these tools:
{tool_descriptions}

List of facts that you know:
```
{facts}
```
{progress}
Now begin! Write your plan below.\
"""

FORCED_ANSWER_SYSTEM_PROMPT = (
    "An agent tried to answer a user query but it got stuck and failed to do so. "
    "You are tasked with providing an answer instead. Here is the agent's memory:"
)

FORCED_ANSWER_USER_PROMPT = (
    "Based on the above, please provide an answer to the following user request: \n```\n{task}"
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def render_system_prompt(template: str, tools: ToolRegistry, **extra: str) -> str:
    """Fill the {{placeholder}} slots of a system prompt template."""
    values = {
        "tool_descriptions": tools.describe(),
        "tool_names": ", ".join(tools.names),
        "current_time": datetime.now().isoformat(sep=" ", timespec="seconds"),
        **extra,
    }
    prompt = template
    for key, value in values.items():
        prompt = prompt.replace("{{" + key + "}}", value)
    return prompt


def _tool_function(tools: ToolRegistry, name: str) -> Callable[..., str]:
    """Expose a registered tool to sandboxed code as a plain Python function."""
    params = [p.name for p in tools.get(name).schema().parameters]

    def call(*args: Any, **kwargs: Any) -> str:
        if len(args) > len(params):
            raise TypeError(f"{name}() takes at most {len(params)} positional argument(s)")
        for param, value in zip(params, args):
            if param in kwargs:
                raise TypeError(f"{name}() got multiple values for argument '{param}'")
            kwargs[param] = value
        return tools.call(name, kwargs)

    call.__name__ = name
    return call


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class MultiStepAgent:
    """
    Base ReAct loop shared by every agent variant.

    One instance runs one task at a time: `run()` builds a fresh Memory,
    executor and (for code agents) scratch directory. Subclasses choose the
    completion dialect, the system prompt and how Actions are executed.

    Example:
        agent = ToolCallingAgent(model=OpenAIServerModel("gpt-4o-mini"), tools=[WebSearchTool()])
        result = agent.run("What is the capital of Australia?")
        print(result.output)
    """

    name = "MultiStepAgent"
    dialect = TOOL_CALLS
    system_prompt_template = TOOL_CALLING_SYSTEM_PROMPT
    stop_sequences: tuple[str, ...] = ("Observation:",)

    def __init__(
        self,
        model: ModelBackend,
        tools: Iterable[Tool] = (),
        max_steps: int = 10,
        system_prompt: str | None = None,
        planning_interval: int | None = None,
        max_context_chars: int | None = 60000,
        max_observation_chars: int = 30000,
        retry_policy: RetryPolicy | None = None,
        stream: bool = False,
        fatal_policy_violations: bool = False,
    ) -> None:
        if max_steps < 1:
            raise AgentError(f"max_steps must be at least 1, got {max_steps}.")
        if planning_interval is not None and planning_interval < 1:
            raise AgentError(f"planning_interval must be at least 1, got {planning_interval}.")
        if max_observation_chars < 1:
            raise AgentError(f"max_observation_chars must be positive, got {max_observation_chars}.")

        self.model = model
        self.tools = ToolRegistry(tools)
        self.max_steps = max_steps
        self.planning_interval = planning_interval
        self.max_context_chars = max_context_chars
        self.max_observation_chars = max_observation_chars
        self.retry_policy = retry_policy or RetryPolicy()
        self.stream = stream
        self.fatal_policy_violations = fatal_policy_violations
        self.system_prompt = render_system_prompt(
            system_prompt or self.system_prompt_template, self.tools, **self._prompt_extras()
        )
        self.memory: Memory | None = None

    # ------------------------------------------------------------------
    # Variant hooks
    # ------------------------------------------------------------------

    def _prompt_extras(self) -> dict[str, str]:
        return {}

    def _model_tools(self) -> Sequence[ToolSchema]:
        return self.tools.schemas

    def _open_executor(self, cancel: CancellationToken) -> tuple[StepExecutor, Callable[[], None]]:
        """Executor for one run, plus a cleanup callback."""
        executor = StepExecutor(
            self.tools,
            max_observation_chars=self.max_observation_chars,
            fatal_policy_violations=self.fatal_policy_violations,
            cancel=cancel,
            on_call=display.react_action,
        )
        return executor, lambda: None

    # ------------------------------------------------------------------
    # Low-level model calls
    # ------------------------------------------------------------------

    def _generate(
        self,
        messages: list[Message],
        cancel: CancellationToken,
        tools: Sequence[ToolSchema] = (),
        stop: Sequence[str] = (),
        stream: bool = False,
    ) -> Completion:
        """
        One logical model call, retried on RateLimited / ModelTimeout.

        MalformedResponse propagates so the caller can record it as a parse
        error. Any other ModelError that survives the retries is fatal.
        """

        def attempt() -> Completion:
            if stream:
                completion = self.model.stream(messages, tools, stop, cancel=cancel).collect(
                    on_chunk=lambda chunk: display.stream_chunk(chunk.text)
                )
                display.stream_end()
                return completion
            return self.model.complete(messages, tools, stop)

        def on_retry(exc: ModelError, attempt_no: int, delay: float) -> None:
            display.model_retry(exc.kind, str(exc), attempt_no, delay)

        display.calling_model(self.model.model_id)
        try:
            return call_with_retries(attempt, self.retry_policy, cancel, on_retry)
        except MalformedResponse:
            raise
        except ModelError as exc:
            raise AgentError(f"Model backend failed ({exc.kind}): {exc}") from exc

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _should_plan(self, index: int) -> bool:
        if self.planning_interval is None:
            return False
        return index == 1 or (index - 1) % self.planning_interval == 0

    def planning_step(self, memory: Memory, cancel: CancellationToken) -> PlanningEntry:
        """Ask for known facts, then a plan. Recorded in Memory, not counted as a Step."""
        index = memory.next_index
        display.planning_start(index)

        task_text = memory.task.text
        progress = ""
        if len(memory):
            history = "\n".join(m.content for m in memory.to_messages(summary_mode=True)[1:])
            progress = f"\nProgress so far ({len(memory)} step(s)):\n```\n{history}\n```\n"

        try:
            facts = self._generate(
                [
                    Message(role=Role.SYSTEM, content=SYSTEM_PROMPT_FACTS),
                    Message(role=Role.USER, content=f"Here is the task:\n```\n{task_text}\n```\n{progress}Now Begin!"),
                ],
                cancel,
            ).content
            plan = self._generate(
                [
                    Message(role=Role.SYSTEM, content=SYSTEM_PROMPT_PLAN),
                    Message(
                        role=Role.USER,
                        content=USER_PROMPT_PLAN.format(
                            task=task_text,
                            tool_descriptions=self.tools.describe(),
                            facts=facts,
                            progress=progress,
                        ),
                    ),
                ],
                cancel,
                stop=("<end_plan>",),
            ).content
        except MalformedResponse as exc:
            raise AgentError(f"Planning failed: {exc}") from exc

        entry = PlanningEntry(
            before_step=index,
            facts=f"Here are the facts that I know so far: \n{facts}",
            plan=f"Here is the plan of action that I will follow for the task: \n{plan}",
        )
        memory.add_plan(entry)
        display.plan_ready(entry)
        return entry

    # ------------------------------------------------------------------
    # One step
    # ------------------------------------------------------------------

    def step(
        self,
        memory: Memory,
        executor: StepExecutor,
        cancel: CancellationToken,
        stream: bool = False,
    ) -> tuple[Step, ExecutionOutcome | None]:
        """
        One Acting → Observing cycle. Returns the finished Step without
        appending it; the caller appends only once the Step is complete.
        """
        index = memory.next_index
        started = time.time()
        display.step_start(index, memory.max_steps)

        messages = memory.to_conversation(self.system_prompt, self.max_context_chars)
        completion = Completion()
        try:
            completion = self._generate(messages, cancel, self._model_tools(), self.stop_sequences, stream)
            action = parse(completion, self.tools.schema_map(), self.dialect)
        except (ParseError, MalformedResponse) as exc:
            # A malformed backend response is recoverable the same way a bad completion is.
            error = exc if isinstance(exc, ParseError) else ParseError(str(exc))
            display.error_observation(error.to_info())
            step = Step(
                index=index,
                model_output=completion.content,
                action=None,
                observation=error_observation(error),
                timing=Timing(start_time=started, end_time=time.time()),
            )
            return step, None

        if isinstance(action, CodeBlock):
            display.code_action(action.source)

        outcome = executor.execute(action)
        observation = outcome.observation
        if observation.error is not None:
            display.error_observation(observation.error)
        if observation.text and not isinstance(action, FinalAnswer):
            display.react_observation(observation.text, observation.truncated)

        step = Step(
            index=index,
            model_output=completion.content,
            action=action,
            observation=observation,
            timing=Timing(start_time=started, end_time=time.time()),
        )
        return step, outcome

    # ------------------------------------------------------------------
    # Budget exhausted
    # ------------------------------------------------------------------

    def provide_final_answer(self, memory: Memory, cancel: CancellationToken) -> str:
        """The single synthesis call made when the step budget runs out."""
        display.budget_exhausted(memory.max_steps)
        messages = [Message(role=Role.SYSTEM, content=FORCED_ANSWER_SYSTEM_PROMPT)]
        messages += memory.to_conversation(budget=self.max_context_chars, summary_mode=True)
        messages.append(Message(role=Role.USER, content=FORCED_ANSWER_USER_PROMPT.format(task=memory.task.text)))
        try:
            return self._generate(messages, cancel).content
        except MalformedResponse as exc:
            raise AgentError(f"Final answer synthesis failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        task: Task | str,
        max_steps: int | None = None,
        cancel: CancellationToken | None = None,
        stream: bool | None = None,
        on_step: Callable[[Step], None] | None = None,
    ) -> RunResult:
        """
        Full loop entry point.

        Returns a RunResult whose state is "success" when the model produced
        a final answer and "max_steps" when the answer was synthesized at the
        budget. Raises AgentError (or RunCancelled) for anything fatal; Memory
        then holds exactly the Steps completed before the failure.
        """
        if isinstance(task, str):
            task = Task(text=task)
        max_steps = max_steps if max_steps is not None else self.max_steps
        if max_steps < 1:
            raise AgentError(f"max_steps must be at least 1, got {max_steps}.")
        cancel = cancel or CancellationToken()
        stream = self.stream if stream is None else stream

        memory = Memory(task, max_steps)
        self.memory = memory
        started = time.time()
        display.task_received(task.text)

        executor, cleanup = self._open_executor(cancel)
        try:
            while not memory.full:
                cancel.raise_if_cancelled("step start")
                if self._should_plan(memory.next_index):
                    self.planning_step(memory, cancel)

                step, outcome = self.step(memory, executor, cancel, stream)
                memory.append(step)
                if on_step is not None:
                    on_step(step)

                if outcome is not None and outcome.is_final:
                    display.final_answer(outcome.final_answer)
                    return RunResult(
                        output=outcome.final_answer,
                        state="success",
                        steps=memory.steps,
                        timing=Timing(start_time=started, end_time=time.time()),
                    )

            answer = self.provide_final_answer(memory, cancel)
            display.final_answer(answer)
            return RunResult(
                output=answer,
                state="max_steps",
                steps=memory.steps,
                timing=Timing(start_time=started, end_time=time.time()),
            )
        except AgentError as exc:
            display.halt(str(exc))
            raise
        finally:
            cleanup()


class ToolCallingAgent(MultiStepAgent):
    """Acts through native function calls (or the ReAct text form)."""

    name = "ToolCallingAgent"


class CodeAgent(MultiStepAgent):
    """
    Acts by writing Python that runs in the sandbox.

    Registered tools are callable from the code by name; `final_answer(...)`
    ends the run. Each run gets its own scratch directory under
    `sandbox_dir` (or the system temp dir) and its own interpreter state.
    """

    name = "CodeAgent"
    dialect = CODE
    system_prompt_template = CODE_SYSTEM_PROMPT
    stop_sequences = ("Observation:", "<end_code>")

    def __init__(
        self,
        model: ModelBackend,
        tools: Iterable[Tool] = (),
        policy: AllowListPolicy | None = None,
        sandbox_dir: str | Path | None = None,
        sandbox_timeout: float = 10.0,
        sandbox_max_output_chars: int = 30000,
        **kwargs: Any,
    ) -> None:
        if sandbox_timeout <= 0:
            raise AgentError(f"sandbox_timeout must be positive, got {sandbox_timeout}.")
        if sandbox_max_output_chars < 1:
            raise AgentError(f"sandbox_max_output_chars must be positive, got {sandbox_max_output_chars}.")
        self.policy = policy or AllowListPolicy()
        self.sandbox_dir = sandbox_dir
        self.sandbox_timeout = sandbox_timeout
        self.sandbox_max_output_chars = sandbox_max_output_chars
        super().__init__(model, tools, **kwargs)

    def _prompt_extras(self) -> dict[str, str]:
        return {"authorized_imports": ", ".join(sorted(self.policy.allowed_imports))}

    def _model_tools(self) -> Sequence[ToolSchema]:
        return ()

    def _open_executor(self, cancel: CancellationToken) -> tuple[StepExecutor, Callable[[], None]]:
        scratch = ScratchDirectory(self.sandbox_dir)
        functions = {name: _tool_function(self.tools, name) for name in self.tools.names if name != FINAL_ANSWER}
        sandbox = Sandbox(
            self.policy,
            scratch_dir=scratch.path,
            timeout=self.sandbox_timeout,
            max_output_chars=self.sandbox_max_output_chars,
            functions=functions,
            cancel=cancel,
        )
        executor = StepExecutor(
            self.tools,
            sandbox=sandbox,
            max_observation_chars=self.max_observation_chars,
            fatal_policy_violations=self.fatal_policy_violations,
            cancel=cancel,
        )
        return executor, scratch.cleanup
