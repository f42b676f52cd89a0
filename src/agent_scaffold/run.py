# run.py
# Entry point. Flag parsing and wiring only; no logic lives here.
#
#   agent-scaffold "What is 17 * 23?" --agent-type code
#   agent-scaffold "Latest news on fusion" --tools web_search visit_webpage --stream
#
# Several --task values run in parallel, one agent each.

import argparse
import json

from agent_scaffold import display
from agent_scaffold.config import AgentConfig, build_agent, build_model, build_tools
from agent_scaffold.errors import AgentError
from agent_scaffold.models import RunResult
from agent_scaffold.runner import run_many
from agent_scaffold.tools import TOOLS, PythonInterpreterTool


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agent-scaffold", description="Run a multi-step agent on a task.")
    parser.add_argument("task", nargs="?", help="Task description.")
    parser.add_argument("--task", dest="extra_tasks", action="append", default=[], help="Additional task (repeatable).")
    parser.add_argument("--agent-type", choices=["tool-calling", "code"], default=None)
    parser.add_argument(
        "--tools",
        nargs="*",
        default=None,
        choices=sorted([*TOOLS, PythonInterpreterTool.name]),
        help="Tools to give the agent.",
    )
    parser.add_argument("--model-type", choices=["openai", "azure", "ollama", "huggingface", "lightllm"], default=None)
    parser.add_argument("--model-id", default=None)
    parser.add_argument("--api-key", default=None)
    parser.add_argument("--base-url", default=None)
    parser.add_argument("--stream", action="store_true", default=None)
    parser.add_argument("--sandbox-dir", default=None)
    parser.add_argument("--max-steps", type=int, default=None)
    parser.add_argument("--planning-interval", type=int, default=None)
    parser.add_argument("--transcript", default=None, help="Write the run's memory as JSON to this path.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    tasks = ([args.task] if args.task else []) + args.extra_tasks
    if not tasks:
        _parser().error("at least one task is required")

    try:
        config = AgentConfig.from_env(
            agent_type=args.agent_type,
            tools=args.tools,
            model_type=args.model_type,
            model_id=args.model_id,
            api_key=args.api_key,
            base_url=args.base_url,
            stream=args.stream,
            sandbox_dir=args.sandbox_dir,
            max_steps=args.max_steps,
            planning_interval=args.planning_interval,
        )
        model = build_model(config)
        tools = build_tools(config)
        agent = build_agent(config, model=model, tools=tools)
    except AgentError as exc:
        display.halt(str(exc))
        return 1

    if len(tasks) == 1:
        display.banner(agent.name, model.model_id, agent.tools.names)
        try:
            agent.run(tasks[0])
        except AgentError:
            # Already reported by the agent.
            return 1
        finally:
            display.memory_summary(agent.memory.steps if agent.memory is not None else [])
            if args.transcript and agent.memory is not None:
                with open(args.transcript, "w", encoding="utf-8") as f:
                    json.dump(agent.memory.to_transcript(), f, indent=2)
        return 0

    # Parallel: one shared backend (thread-safe pool) and stateless tools, fresh agent per task.
    display.set_quiet(True)
    with run_many(lambda: build_agent(config, model=model, tools=tools), tasks) as handle:
        results = handle.wait()
    display.set_quiet(False)
    for task_id, outcome in results.items():
        display.runner_progress(task_id, isinstance(outcome, RunResult), str(getattr(outcome, "output", outcome)))
    return 0 if all(isinstance(o, RunResult) for o in results.values()) else 1


if __name__ == "__main__":
    raise SystemExit(main())
