# runner.py
# Parallel runner: one fresh agent per task, one worker thread per running agent.
#
# Agents share nothing mutable. Each gets its own Memory, scratch directory
# and cancellation token; only read-only configuration (tool definitions,
# sandbox policy) and the backend's connection pool are shared. A task that
# fails yields its AgentError in the results instead of failing the batch.

import threading
from collections.abc import Callable, Iterator, Mapping, Sequence
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor, as_completed

from agent_scaffold import display
from agent_scaffold.backends import CancellationToken
from agent_scaffold.errors import AgentError, RunCancelled
from agent_scaffold.harness import MultiStepAgent
from agent_scaffold.models import RunResult, Task

TaskOutcome = RunResult | AgentError


def _run_one(
    factory: Callable[[], MultiStepAgent],
    task: Task | str,
    cancel: CancellationToken,
    max_steps: int | None,
) -> TaskOutcome:
    try:
        agent = factory()
        return agent.run(task, max_steps=max_steps, cancel=cancel)
    except AgentError as exc:
        return exc
    except Exception as exc:
        # Failures stay scoped to their own task.
        error = AgentError(f"Unexpected {type(exc).__name__}: {exc}")
        error.__cause__ = exc
        return error


class RunHandle:
    """
    Handle on a batch started by `run_many`.

    Results are available as they finish through `partial()` and
    `as_completed()`; `wait()` blocks for the full mapping, in task order.
    """

    def __init__(
        self,
        pool: ThreadPoolExecutor,
        futures: dict[str, Future],
        tokens: dict[str, CancellationToken],
    ) -> None:
        self._pool = pool
        self._futures = futures
        self._tokens = tokens
        self._lock = threading.Lock()
        self._shutdown = False

    @property
    def task_ids(self) -> list[str]:
        return list(self._futures)

    @property
    def done(self) -> bool:
        return all(future.done() for future in self._futures.values())

    @staticmethod
    def _outcome(future: Future) -> TaskOutcome:
        try:
            return future.result()
        except CancelledError:
            return RunCancelled("Task cancelled before it started.")

    def partial(self) -> dict[str, TaskOutcome]:
        """Results of the tasks finished so far. Never blocks."""
        return {
            task_id: self._outcome(future) for task_id, future in self._futures.items() if future.done()
        }

    def as_completed(self, timeout: float | None = None) -> Iterator[tuple[str, TaskOutcome]]:
        ids = {future: task_id for task_id, future in self._futures.items()}
        for future in as_completed(ids, timeout=timeout):
            yield ids[future], self._outcome(future)

    def wait(self, timeout: float | None = None) -> dict[str, TaskOutcome]:
        outcomes = dict(self.as_completed(timeout))
        self.close()
        return {task_id: outcomes[task_id] for task_id in self._futures}

    def cancel(self) -> None:
        """Signal every running agent and drop tasks that have not started."""
        for token in self._tokens.values():
            token.cancel()
        for future in self._futures.values():
            future.cancel()

    def close(self) -> None:
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
        self._pool.shutdown(wait=True)

    def __enter__(self) -> "RunHandle":
        return self

    def __exit__(self, *exc_info) -> None:
        if exc_info[0] is not None:
            self.cancel()
        self.close()


def run_many(
    factory: Callable[[], MultiStepAgent],
    tasks: Mapping[str, Task | str] | Sequence[Task | str],
    max_workers: int | None = None,
    max_steps: int | None = None,
) -> RunHandle:
    """
    Start one agent per task in parallel and return immediately.

    `factory` must build a new agent on every call. `tasks` is either a
    mapping of task id to task or a sequence, in which case ids are
    "task-0", "task-1", ...
    """
    if isinstance(tasks, Mapping):
        items = list(tasks.items())
    else:
        items = [(f"task-{i}", task) for i, task in enumerate(tasks)]
    if not items:
        raise AgentError("run_many needs at least one task.")

    workers = max_workers or len(items)
    display.runner_start(len(items), workers)
    pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="agent")

    futures: dict[str, Future] = {}
    tokens: dict[str, CancellationToken] = {}
    for task_id, task in items:
        token = CancellationToken()
        future = pool.submit(_run_one, factory, task, token, max_steps)
        future.add_done_callback(lambda f, task_id=task_id: _report(task_id, f))
        futures[task_id] = future
        tokens[task_id] = token
    return RunHandle(pool, futures, tokens)


def _report(task_id: str, future: Future) -> None:
    outcome = RunHandle._outcome(future)
    if isinstance(outcome, RunResult):
        display.runner_progress(task_id, True, str(outcome.output))
    else:
        display.runner_progress(task_id, False, str(outcome))
