# tools.py
# Tool interface, registry, and built-in tool implementations.
#
# The harness never calls a tool directly: every call goes through
# ToolRegistry.call(), which validates arguments against the tool's schema
# before anything runs.

import json
import re
import threading
from collections.abc import Iterable
from functools import cached_property
from typing import Any, Callable

import httpx
from bs4 import BeautifulSoup

from agent_scaffold.errors import (
    AgentError,
    PolicyViolationError,
    SandboxRuntimeError,
    ScaffoldError,
    ToolArgumentError,
    ToolExecutionError,
    ToolNotFoundError,
)
from agent_scaffold.models import (
    ExecutionOutput,
    ParameterSpec,
    ParameterType,
    PolicyViolation,
    RuntimeFailure,
    ToolSchema,
)
from agent_scaffold.sandbox import AllowListPolicy, execute

FINAL_ANSWER = "final_answer"

TOOL_DESCRIPTION_TEMPLATE = """\
{name}: {description}
    Takes inputs: {inputs}
"""


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------


def describe_inputs(schema: ToolSchema) -> str:
    """JSON rendering of a tool's inputs, used in prompts and error messages."""
    inputs = {}
    for param in schema.parameters:
        entry: dict[str, Any] = {"type": param.type.value, "required": param.required}
        if param.description:
            entry["description"] = param.description
        if param.choices:
            entry["choices"] = list(param.choices)
        inputs[param.name] = entry
    return json.dumps(inputs)


def _matches(param: ParameterSpec, value: Any) -> bool:
    if param.type is ParameterType.STRING:
        return isinstance(value, str)
    if param.type is ParameterType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if param.type is ParameterType.ANY:
        return True
    if param.type is ParameterType.BOOLEAN:
        return isinstance(value, bool)
    return isinstance(value, str) and value in param.choices


def validate_arguments(schema: ToolSchema, args: Any) -> dict[str, Any]:
    """
    Check `args` against `schema` and return them as a new dict.

    Raises ToolArgumentError naming the exact constraint that failed: a
    non-object payload, an unexpected name, a missing required argument, or
    a type mismatch.
    """
    if not isinstance(args, dict):
        raise ToolArgumentError(
            f"Tool '{schema.name}' expects a JSON object of arguments, got {type(args).__name__}."
        )

    known = {param.name: param for param in schema.parameters}
    unexpected = sorted(set(args) - set(known))
    if unexpected:
        raise ToolArgumentError(
            f"Tool '{schema.name}' got unexpected argument(s): {', '.join(unexpected)}. "
            f"Expected inputs: {describe_inputs(schema)}"
        )

    for param in schema.parameters:
        if param.name not in args:
            if param.required:
                raise ToolArgumentError(
                    f"Tool '{schema.name}' is missing required argument '{param.name}'. "
                    f"Expected inputs: {describe_inputs(schema)}"
                )
            continue
        value = args[param.name]
        if not _matches(param, value):
            expected = (
                f"one of {list(param.choices)}" if param.type is ParameterType.ENUM else f"a {param.type.value}"
            )
            raise ToolArgumentError(
                f"Argument '{param.name}' of tool '{schema.name}' must be {expected}, "
                f"got {type(value).__name__} {value!r}."
            )
    return dict(args)


# ---------------------------------------------------------------------------
# Tool interface
# ---------------------------------------------------------------------------


class Tool:
    """
    Base class for tools.

    Subclasses set `name`, `description` and `parameters`, and implement
    `forward(args)` returning the observation text. Tools are shared
    read-only between agents; a tool carrying mutable state guards it itself.
    """

    name: str = ""
    description: str = ""
    parameters: tuple[ParameterSpec, ...] = ()

    @cached_property
    def _schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description, parameters=self.parameters)

    def schema(self) -> ToolSchema:
        return self._schema

    def forward(self, args: dict[str, Any]) -> str:
        raise NotImplementedError

    def call(self, args: Any) -> str:
        """Validate, run, and wrap unexpected failures as ToolExecutionError."""
        validated = validate_arguments(self.schema(), args)
        try:
            result = self.forward(validated)
        except ScaffoldError:
            raise
        except Exception as exc:
            raise ToolExecutionError(
                f"Error executing tool '{self.name}' with arguments {json.dumps(args, default=str)}: "
                f"{type(exc).__name__}: {exc}\nPlease try again or use another tool."
            ) from exc
        return str(result)


class FunctionTool(Tool):
    """Adapts a plain `fn(args) -> str` into a Tool."""

    def __init__(
        self,
        name: str,
        description: str,
        parameters: Iterable[ParameterSpec],
        fn: Callable[[dict[str, Any]], str],
    ) -> None:
        self.name = name
        self.description = description
        self.parameters = tuple(parameters)
        self._fn = fn

    def forward(self, args: dict[str, Any]) -> str:
        return self._fn(args)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """The fixed set of tools an agent may call. final_answer is always present."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            try:
                schema = tool.schema()
            except ValueError as exc:
                raise AgentError(f"Tool {tool!r} has a malformed schema: {exc}") from exc
            if schema.name in self._tools:
                raise AgentError(f"Duplicate tool name '{schema.name}'.")
            self._tools[schema.name] = tool
        if FINAL_ANSWER not in self._tools:
            self._tools[FINAL_ANSWER] = FinalAnswerTool()

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    @property
    def schemas(self) -> tuple[ToolSchema, ...]:
        return tuple(tool.schema() for tool in self._tools.values())

    def schema_map(self) -> dict[str, ToolSchema]:
        return {name: tool.schema() for name, tool in self._tools.items()}

    def get(self, name: str) -> Tool:
        if name not in self._tools:
            raise ToolNotFoundError(f"Unknown tool '{name}', should be one of: {', '.join(self._tools)}.")
        return self._tools[name]

    def call(self, name: str, args: Any) -> str:
        return self.get(name).call(args)

    def describe(self) -> str:
        return "\n".join(
            TOOL_DESCRIPTION_TEMPLATE.format(
                name=schema.name, description=schema.description, inputs=describe_inputs(schema)
            )
            for schema in self.schemas
        )


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------


class FinalAnswerTool(Tool):
    name = FINAL_ANSWER
    description = "Provides a final answer to the given problem."
    parameters = (
        ParameterSpec(name="answer", type=ParameterType.ANY, description="The final answer to the problem"),
    )

    def forward(self, args: dict[str, Any]) -> str:
        return args["answer"]


class WebSearchTool(Tool):
    name = "web_search"
    description = (
        "Performs a duckduckgo web search for your query then returns a string of the top search results."
    )
    parameters = (ParameterSpec(name="query", type=ParameterType.STRING, description="The query to search for"),)

    def __init__(self, max_results: int = 4) -> None:
        self.max_results = max_results

    def forward(self, args: dict[str, Any]) -> str:
        from ddgs import DDGS

        query = args["query"].strip()
        if not query:
            raise ToolArgumentError("Tool 'web_search' needs a non-empty query.")

        try:
            # Coerce the generator to a list to ensure actual execution
            results = list(DDGS().text(query, max_results=self.max_results))
        except Exception as exc:
            raise ToolExecutionError(f"Search failed: {exc}") from exc

        if not results:
            return "No results found."

        lines = []
        for r in results:
            lines.append(f"[{r.get('title', 'No Title')}]\n{r.get('body', '')}\nSource: {r.get('href', '')}")
        return "\n\n".join(lines)


class VisitWebpageTool(Tool):
    name = "visit_webpage"
    description = (
        "Visits a webpage at the given url and reads its content as plain text. Use this to browse webpages."
    )
    parameters = (ParameterSpec(name="url", type=ParameterType.STRING, description="The url of the website to visit"),)

    def __init__(self, timeout: float = 20.0, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": "agent-scaffold/0.1"},
        )

    def forward(self, args: dict[str, Any]) -> str:
        url = args["url"].strip()
        if not url:
            raise ToolArgumentError("Tool 'visit_webpage' needs a non-empty url.")
        if "://" not in url:
            url = f"https://{url}"

        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ToolExecutionError(f"Failed to make the request to {url}: {exc}") from exc

        soup = BeautifulSoup(response.text, "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        text = soup.get_text("\n")
        return re.sub(r"\n\s*\n+", "\n\n", text).strip()


class WikipediaSearchTool(Tool):
    name = "wikipedia_search"
    description = "Search Wikipedia for a term and return a short summary of the top article."
    parameters = (
        ParameterSpec(name="query", type=ParameterType.STRING, description="The term to search Wikipedia for"),
    )

    SUMMARY_URL = "https://en.wikipedia.org/api/rest_v1/page/summary/{title}"

    def __init__(self, timeout: float = 15.0, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(timeout=timeout, headers={"User-Agent": "agent-scaffold/0.1"})
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def forward(self, args: dict[str, Any]) -> str:
        query = args["query"].strip()
        if not query:
            raise ToolArgumentError("Tool 'wikipedia_search' needs a non-empty query.")

        with self._lock:
            if query in self._cache:
                return self._cache[query]

        title = query.replace(" ", "_")
        try:
            response = self._client.get(self.SUMMARY_URL.format(title=title))
        except httpx.HTTPError as exc:
            raise ToolExecutionError(f"Failed to fetch article: {exc}") from exc
        if response.status_code == 404:
            return f"No Wikipedia article found for '{query}'."
        if response.status_code != 200:
            raise ToolExecutionError(f"Failed to fetch article: HTTP {response.status_code}")

        data = response.json()
        summary = f"{data.get('title', query)}\n{data.get('extract', '')}"
        page = (data.get("content_urls") or {}).get("desktop", {}).get("page")
        if page:
            summary += f"\nSource: {page}"

        with self._lock:
            self._cache[query] = summary
        return summary


class PythonInterpreterTool(Tool):
    """Exposes the code sandbox to tool-calling agents."""

    name = "python_interpreter"
    description = (
        "This is a tool that evaluates python code. It can be used to perform calculations. "
        "Only a restricted subset of Python is accepted."
    )
    parameters = (
        ParameterSpec(
            name="code",
            type=ParameterType.STRING,
            description=(
                "The code snippet to evaluate. All variables used in this snippet must be defined "
                "in this same snippet, else you will get an error."
            ),
        ),
    )

    def __init__(
        self, policy: AllowListPolicy | None = None, timeout: float = 10.0, max_output_chars: int = 30000
    ) -> None:
        self.policy = policy
        self.timeout = timeout
        self.max_output_chars = max_output_chars

    def forward(self, args: dict[str, Any]) -> str:
        # Fresh state and no scratch directory per call; the tool holds no mutable state.
        result = execute(
            args["code"], policy=self.policy, timeout=self.timeout, max_output_chars=self.max_output_chars
        )
        if isinstance(result, PolicyViolation):
            raise PolicyViolationError(result.symbol, result.line)
        if isinstance(result, RuntimeFailure):
            raise SandboxRuntimeError(result.message)
        assert isinstance(result, ExecutionOutput)
        parts = []
        if result.output:
            parts.append(result.output.rstrip("\n"))
        parts.append(f"Evaluation Result: {result.value!r}")
        return "\n".join(parts)


TOOLS: dict[str, type[Tool]] = {
    "web_search":       WebSearchTool,
    "visit_webpage":    VisitWebpageTool,
    "wikipedia_search": WikipediaSearchTool,
}
