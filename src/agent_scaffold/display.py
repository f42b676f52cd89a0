# display.py
# All terminal output for the agent scaffold.
#
# This module owns presentation entirely. The harness and runner never format
# strings; they call named functions here. Swap this file to change the UI.
#
# Colour language:
#   cyan    scaffolding / routing events
#   blue    model calls and responses
#   yellow  sandbox and validation checkpoints
#   green   success / confirmed
#   red     failures, halts
#   magenta ReAct internals (Action / Observation)

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from agent_scaffold.models import ErrorInfo, PlanningEntry, Step, ToolCall

console = Console()


def set_quiet(quiet: bool) -> None:
    """Silence all output (parallel runs, tests)."""
    console.quiet = quiet


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Run entry
# ---------------------------------------------------------------------------


def banner(agent_name: str, model_id: str, tool_names: list[str]) -> None:
    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]{agent_name}[/bold cyan]\n"
            "[dim]Reason, act, observe. Until a final answer or the step budget.[/dim]\n\n"
            f"[dim]Model :[/dim] [white]{model_id}[/white]\n"
            f"[dim]Tools :[/dim] [white]{', '.join(tool_names)}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def task_received(task: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW TASK[/cyan]", style="cyan"))
    console.print(
        Panel(
            Text(task, style="white"),
            title=_label("TASK", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def planning_start(before_step: int) -> None:
    console.print()
    console.print(_label("SCAFFOLD", "cyan"), f"[cyan] → Planning before step {before_step}…[/cyan]")


def plan_ready(entry: PlanningEntry) -> None:
    console.print(
        Panel(
            Text(entry.plan, style="white"),
            title=_label("PLAN", "blue"),
            subtitle=f"[dim]before step {entry.before_step}[/dim]",
            border_style="blue",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Step loop
# ---------------------------------------------------------------------------


def step_start(index: int, max_steps: int) -> None:
    console.print()
    console.print(Rule(f"[bold cyan]STEP {index}/{max_steps}[/bold cyan]", style="cyan"))


def calling_model(model_id: str) -> None:
    console.print(_label("MODEL", "blue"), f"[blue] → {model_id}[/blue]")


def stream_chunk(text: str) -> None:
    console.print(text, end="", style="blue", markup=False, highlight=False)


def stream_end() -> None:
    console.print()


def model_retry(kind: str, message: str, attempt: int, delay: float) -> None:
    console.print(
        f"  [yellow]↻ {kind}[/yellow] [dim]{escape(_mono(message, 100))}[/dim] "
        f"[yellow]retry {attempt} in {delay:.1f}s[/yellow]"
    )


def react_action(call: ToolCall) -> None:
    console.print(
        f"  [magenta]Action[/magenta]   [bold white]{call.name}[/bold white]"
        f"  [dim]{escape(_mono(json.dumps(call.arguments, default=str), 160))}[/dim]"
    )


def code_action(source: str) -> None:
    console.print(
        Panel(
            Syntax(source, "python", theme="monokai", line_numbers=False),
            title=_label("CODE", "magenta"),
            border_style="magenta",
            padding=(0, 1),
        )
    )


def react_observation(text: str, truncated: bool = False) -> None:
    suffix = " [yellow](truncated)[/yellow]" if truncated else ""
    console.print(f"  [magenta]Observe[/magenta]  [white]{escape(_mono(text, 140))}[/white]{suffix}")


def error_observation(error: ErrorInfo) -> None:
    color = "yellow" if error.kind == "policy_violation" else "red"
    console.print(
        Panel(
            Text(error.message, style="white"),
            title=_label(error.kind.upper().replace("_", " "), color),
            border_style=color,
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------


def budget_exhausted(max_steps: int) -> None:
    console.print()
    console.print(Rule("[yellow]STEP BUDGET EXHAUSTED[/yellow]", style="yellow"))
    console.print(
        f"[yellow]  {max_steps} step(s) used without a final answer. "
        "Asking the model to commit to a best-effort answer…[/yellow]"
    )


def final_answer(value: Any) -> None:
    console.print()
    console.print(
        Panel(
            Text(str(value), style="white"),
            title=_label("FINAL ANSWER", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            Text(reason, style="bold white"),
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


def memory_summary(steps: list[Step]) -> None:
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Step", justify="center", width=6)
    table.add_column("Action", width=14)
    table.add_column("OK", justify="center", width=4)
    table.add_column("Time", justify="right", width=8)
    table.add_column("Observation", style="dim white")

    for step in steps:
        kind = step.action.kind if step.action is not None else "unparsed"
        error = step.observation.error
        ok = "[bold red]✗[/bold red]" if error else "[bold green]✓[/bold green]"
        table.add_row(
            str(step.index),
            kind,
            ok,
            f"{step.timing.duration:.2f}s",
            escape(_mono(step.observation.text or (error.message if error else ""), 60)),
        )

    console.print(Panel(table, title="[dim]RUN SUMMARY[/dim]", border_style="dim", padding=(0, 1)))


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def runner_start(total: int, workers: int) -> None:
    console.print()
    console.print(Rule(f"[cyan]RUNNER: {total} task(s) on {workers} worker(s)[/cyan]", style="cyan"))


def runner_progress(task_id: str, ok: bool, detail: str) -> None:
    mark = "[bold green]✓[/bold green]" if ok else "[bold red]✗[/bold red]"
    console.print(f"  {mark} [bold white]{task_id}[/bold white]  [dim]{escape(_mono(detail, 100))}[/dim]")
