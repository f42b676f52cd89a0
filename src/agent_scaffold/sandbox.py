# sandbox.py
# Validate-then-execute sandbox for model-written Python.
#
# Phase 1 walks the entire syntax tree against an AllowListPolicy and stops at
# the first disallowed node. Nothing runs unless the whole tree passes, so a
# forbidden call in a dead branch still rejects the snippet.
#
# Phase 2 compiles the accepted tree and runs it against a namespace holding
# only allow-listed callables, under a wall-clock deadline and an output cap.
# File access goes through an open() confined to the run's scratch directory.
# Imported modules are handed out as read-only proxies that refuse to expose
# modules (or functions from modules) the policy does not allow.
#
# Only Python has an executor. Any other language fails closed.

import ast
import builtins
import math
import sys
import tempfile
import time
import types
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

from agent_scaffold.backends import CancellationToken
from agent_scaffold.errors import PolicyViolationError, RunCancelled
from agent_scaffold.models import ExecutionOutput, PolicyViolation, RuntimeFailure, SandboxResult

CODE_FILENAME = "<agent-code>"


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

# Anything not listed here is denied: classes, async code, generators,
# global/nonlocal, match statements, try/finally, star-except.
DEFAULT_ALLOWED_NODES: frozenset[str] = frozenset({
    # structure
    "Module", "Expr", "Pass", "Break", "Continue", "Return",
    "Assign", "AugAssign", "AnnAssign", "NamedExpr", "Delete",
    "If", "For", "While", "With", "withitem", "Assert",
    "Try", "ExceptHandler", "Raise",
    "FunctionDef", "Lambda", "arguments", "arg",
    "Import", "ImportFrom", "alias",
    # expressions
    "Name", "Attribute", "Subscript", "Slice", "Starred", "Constant",
    "List", "Tuple", "Set", "Dict",
    "ListComp", "SetComp", "DictComp", "GeneratorExp", "comprehension",
    "Call", "keyword", "IfExp", "JoinedStr", "FormattedValue",
    "BinOp", "UnaryOp", "BoolOp", "Compare",
    # contexts & operators
    "Load", "Store", "Del",
    "Add", "Sub", "Mult", "Div", "FloorDiv", "Mod", "Pow",
    "LShift", "RShift", "BitOr", "BitXor", "BitAnd",
    "UAdd", "USub", "Not", "Invert", "And", "Or",
    "Eq", "NotEq", "Lt", "LtE", "Gt", "GtE", "Is", "IsNot", "In", "NotIn",
})

DEFAULT_FORBIDDEN_NAMES: frozenset[str] = frozenset({
    # dynamic code loading / eval-style re-entry
    "eval", "exec", "compile", "__import__", "breakpoint",
    # namespace and attribute escapes
    "globals", "locals", "vars", "getattr", "setattr", "delattr", "memoryview",
    # interactive / process control
    "input", "exit", "quit", "help",
    # modules that must never be reachable by name
    "os", "sys", "subprocess", "socket", "shutil", "importlib", "builtins", "ctypes",
})

# Frame and code objects reachable from generators, tracebacks and functions.
DEFAULT_FORBIDDEN_ATTRIBUTES: frozenset[str] = frozenset({
    "gi_frame", "gi_code", "gi_yieldfrom", "cr_frame", "cr_code", "ag_frame", "ag_code",
    "f_globals", "f_locals", "f_builtins", "f_back", "f_code",
    "tb_frame", "tb_next", "co_code", "mro",
    # str.format field traversal reaches dunder attributes
    "format", "format_map", "vformat", "get_field",
    # modules re-exported by allowed modules
    "os", "sys", "modules", "codecs", "subprocess", "socket", "shutil", "builtins",
})

DEFAULT_ALLOWED_IMPORTS: frozenset[str] = frozenset({
    "math", "cmath", "statistics", "random", "re", "json", "datetime",
    "collections", "itertools", "functools", "string", "decimal", "fractions",
    "unicodedata", "textwrap", "heapq", "bisect", "copy",
})

DEFAULT_FORBIDDEN_IMPORTS: frozenset[str] = frozenset({
    "os", "sys", "subprocess", "socket", "shutil", "importlib", "ctypes", "multiprocessing",
    "threading", "signal", "pathlib", "io", "builtins", "pickle", "marshal", "http", "urllib",
    "asyncio", "inspect", "gc", "code", "pty", "tempfile", "glob", "time", "operator",
    "codecs", "posix", "nt",
})


class AllowListPolicy(BaseModel):
    """
    What model-written code may contain. Immutable; loaded once per agent and
    shared read-only by every sandbox run. Compose stricter or looser policies
    with the `allow_*` / `deny_*` helpers, which return new policies.
    """

    model_config = ConfigDict(frozen=True)

    language: str = "python"
    allowed_nodes: frozenset[str] = DEFAULT_ALLOWED_NODES
    forbidden_names: frozenset[str] = DEFAULT_FORBIDDEN_NAMES
    forbidden_attributes: frozenset[str] = DEFAULT_FORBIDDEN_ATTRIBUTES
    allowed_imports: frozenset[str] = DEFAULT_ALLOWED_IMPORTS
    forbidden_imports: frozenset[str] = DEFAULT_FORBIDDEN_IMPORTS

    def allow_imports(self, *modules: str) -> "AllowListPolicy":
        return self.model_copy(
            update={
                "allowed_imports": self.allowed_imports | set(modules),
                "forbidden_imports": self.forbidden_imports - set(modules),
            }
        )

    def deny_imports(self, *modules: str) -> "AllowListPolicy":
        return self.model_copy(
            update={
                "allowed_imports": self.allowed_imports - set(modules),
                "forbidden_imports": self.forbidden_imports | set(modules),
            }
        )

    def deny_nodes(self, *kinds: str) -> "AllowListPolicy":
        return self.model_copy(update={"allowed_nodes": self.allowed_nodes - set(kinds)})

    def deny_names(self, *names: str) -> "AllowListPolicy":
        return self.model_copy(update={"forbidden_names": self.forbidden_names | set(names)})

    def import_allowed(self, module: str) -> bool:
        root = module.split(".")[0]
        if module in self.forbidden_imports or root in self.forbidden_imports:
            return False
        return root in self.allowed_imports


# ---------------------------------------------------------------------------
# Phase 1: validation
# ---------------------------------------------------------------------------


def _walk(tree: ast.AST) -> Iterator[ast.AST]:
    """Depth-first, pre-order, source order. Iterative so deep nesting cannot blow the stack."""
    stack = [tree]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(list(ast.iter_child_nodes(node))))


def _dotted_name(node: ast.AST) -> str | None:
    parts = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if isinstance(node, ast.Name):
        parts.append(node.id)
        return ".".join(reversed(parts))
    return None


def _check_identifier(name: str | None, node: ast.AST, policy: AllowListPolicy) -> None:
    if name is None:
        return
    if name.startswith("__") or name in policy.forbidden_names:
        raise PolicyViolationError(name, getattr(node, "lineno", None))


def _check_node(node: ast.AST, policy: AllowListPolicy) -> None:
    line = getattr(node, "lineno", None)
    kind = type(node).__name__
    if kind not in policy.allowed_nodes:
        raise PolicyViolationError(kind, line)

    if isinstance(node, ast.Name):
        _check_identifier(node.id, node, policy)
    elif isinstance(node, ast.Attribute):
        if node.attr.startswith("_") or node.attr in policy.forbidden_attributes:
            raise PolicyViolationError(node.attr, line)
    elif isinstance(node, ast.Call):
        target = _dotted_name(node.func)
        if target is not None:
            root = target.split(".")[0]
            if target in policy.forbidden_names or root in policy.forbidden_names:
                raise PolicyViolationError(target, line)
    elif isinstance(node, ast.Import):
        for alias in node.names:
            if not policy.import_allowed(alias.name):
                raise PolicyViolationError(alias.name, line)
    elif isinstance(node, ast.ImportFrom):
        module = node.module or ""
        if node.level:
            raise PolicyViolationError(f"relative import {'.' * node.level}{module}", line)
        if not policy.import_allowed(module):
            raise PolicyViolationError(module, line)
        for alias in node.names:
            if alias.name == "*" or alias.name.startswith("_") or alias.name in policy.forbidden_attributes:
                raise PolicyViolationError(f"{module}.{alias.name}", line)
    elif isinstance(node, ast.alias):
        _check_identifier(node.asname, node, policy)
    elif isinstance(node, ast.FunctionDef):
        _check_identifier(node.name, node, policy)
    elif isinstance(node, ast.arg):
        _check_identifier(node.arg, node, policy)
    elif isinstance(node, ast.ExceptHandler):
        if node.type is None:
            raise PolicyViolationError("bare except", line)
        _check_identifier(node.name, node, policy)
    elif isinstance(node, ast.Try):
        # Code in a finally block would keep running after the deadline fires.
        if node.finalbody:
            raise PolicyViolationError("finally", line)


def validate(tree: ast.AST, policy: AllowListPolicy) -> None:
    """Raise PolicyViolationError on the first node the policy does not allow."""
    for node in _walk(tree):
        _check_node(node, policy)


# ---------------------------------------------------------------------------
# Phase 2: execution
# ---------------------------------------------------------------------------


class _FinalAnswerSignal(BaseException):
    def __init__(self, value: Any) -> None:
        super().__init__()
        self.value = value


class _DeadlineExceeded(BaseException):
    pass


class _Cancelled(BaseException):
    pass


class _AccessDenied(BaseException):
    def __init__(self, symbol: str) -> None:
        super().__init__(symbol)
        self.symbol = symbol


_DANGEROUS_BUILTINS = (
    open, eval, exec, compile, __import__, breakpoint, input,
    getattr, setattr, delattr, globals, locals, vars,
)


def _guard_module_attribute(module: types.ModuleType, name: str, value: Any, policy: "AllowListPolicy") -> Any:
    symbol = f"{module.__name__}.{name}"
    if isinstance(value, types.ModuleType):
        if not policy.import_allowed(value.__name__):
            raise _AccessDenied(symbol)
        return _ModuleProxy(value, policy)
    if any(value is fn for fn in _DANGEROUS_BUILTINS):
        raise _AccessDenied(symbol)
    if isinstance(value, (type, types.FunctionType, types.BuiltinFunctionType)):
        origin = (getattr(value, "__module__", None) or "").split(".")[0]
        if origin != "builtins" and origin in policy.forbidden_imports:
            raise _AccessDenied(symbol)
    return value


class _ModuleProxy:
    """Read-only view of an allowed module."""

    __slots__ = ("_module", "_policy")

    def __init__(self, module: types.ModuleType, policy: "AllowListPolicy") -> None:
        object.__setattr__(self, "_module", module)
        object.__setattr__(self, "_policy", policy)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(f"module '{self._module.__name__}' has no attribute '{name}'")
        value = getattr(self._module, name)
        return _guard_module_attribute(self._module, name, value, self._policy)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"module '{self._module.__name__}' is read-only")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"module '{self._module.__name__}' is read-only")

    def __repr__(self) -> str:
        return f"<module '{self._module.__name__}'>"


def _code_line(tb: types.TracebackType | None) -> int | None:
    line = None
    while tb is not None:
        if tb.tb_frame.f_code.co_filename == CODE_FILENAME:
            line = tb.tb_lineno
        tb = tb.tb_next
    return line


BASE_CALLABLES: dict[str, Any] = {
    "isinstance": isinstance, "range": range, "float": float, "int": int, "bool": bool,
    "str": str, "set": set, "list": list, "dict": dict, "tuple": tuple, "round": round,
    "len": len, "sum": sum, "max": max, "min": min, "abs": abs, "enumerate": enumerate,
    "zip": zip, "reversed": reversed, "sorted": sorted, "all": all, "any": any,
    "map": map, "filter": filter, "ord": ord, "chr": chr, "next": next, "iter": iter,
    "divmod": divmod, "callable": callable, "hasattr": hasattr, "type": type,
    "complex": complex, "repr": repr, "format": format, "frozenset": frozenset,
    "ceil": math.ceil, "floor": math.floor, "log": math.log, "exp": math.exp,
    "sin": math.sin, "cos": math.cos, "tan": math.tan, "asin": math.asin,
    "acos": math.acos, "atan": math.atan, "atan2": math.atan2, "degrees": math.degrees,
    "radians": math.radians, "pow": math.pow, "sqrt": math.sqrt,
    "True": True, "False": False, "None": None,
}

SAFE_EXCEPTIONS: dict[str, type[Exception]] = {
    exc.__name__: exc
    for exc in (
        Exception, ValueError, TypeError, KeyError, IndexError, ZeroDivisionError,
        ArithmeticError, LookupError, AttributeError, NameError, RuntimeError,
        AssertionError, StopIteration, NotImplementedError, FileNotFoundError, PermissionError,
    )
}


class _OutputBuffer:
    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._parts: list[str] = []
        self._size = 0
        self.truncated = False

    def write(self, text: str) -> None:
        if self.truncated:
            return
        room = self._limit - self._size
        if len(text) > room:
            text = text[:room]
            self.truncated = True
        self._parts.append(text)
        self._size += len(text)

    def getvalue(self) -> str:
        return "".join(self._parts)


class ScratchDirectory:
    """Temporary directory exclusive to one agent run; removed on cleanup()."""

    def __init__(self, parent: str | Path | None = None) -> None:
        if parent is not None:
            Path(parent).mkdir(parents=True, exist_ok=True)
        self._tmp = tempfile.TemporaryDirectory(prefix="agent-scaffold-", dir=parent)
        self.path = Path(self._tmp.name).resolve()

    def cleanup(self) -> None:
        self._tmp.cleanup()

    def __enter__(self) -> "ScratchDirectory":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cleanup()


class Sandbox:
    """
    One sandbox per agent run. Variables assigned by one execute() call stay
    visible to the next, the way a notebook keeps its state.

    `functions` are extra callables (typically tool wrappers) made available
    by name. `final_answer(value)` is always available and ends the snippet.
    """

    def __init__(
        self,
        policy: AllowListPolicy | None = None,
        scratch_dir: str | Path | None = None,
        timeout: float = 10.0,
        max_output_chars: int = 30000,
        functions: Mapping[str, Callable[..., Any]] | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.policy = policy or AllowListPolicy()
        self.scratch_dir = Path(scratch_dir).resolve() if scratch_dir is not None else None
        self.timeout = timeout
        self.max_output_chars = max_output_chars
        self.functions = dict(functions or {})
        self.cancel = cancel
        self.state: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Namespace
    # ------------------------------------------------------------------

    def _open(self, file: str, mode: str = "r", encoding: str | None = None, newline: str | None = None):
        if self.scratch_dir is None:
            raise PermissionError("File access is disabled: no scratch directory is configured.")
        target = (self.scratch_dir / str(file)).resolve()
        if not target.is_relative_to(self.scratch_dir):
            raise PermissionError(f"Access outside the scratch directory is not allowed: {file}")
        if "b" in mode:
            return open(target, mode)
        return open(target, mode, encoding=encoding or "utf-8", newline=newline)

    def _import(self, name: str, globals=None, locals=None, fromlist=(), level: int = 0):
        if level or not self.policy.import_allowed(name):
            raise ImportError(f"Import of '{name}' is not allowed.")
        return _ModuleProxy(builtins.__import__(name, globals, locals, fromlist, level), self.policy)

    def _builtins(self, buffer: _OutputBuffer) -> dict[str, Any]:
        def _print(*args: Any, sep: str = " ", end: str = "\n", file: Any = None, flush: bool = False) -> None:
            buffer.write(sep.join(str(arg) for arg in args) + end)

        def final_answer(answer: Any) -> None:
            raise _FinalAnswerSignal(answer)

        namespace = {**BASE_CALLABLES, **SAFE_EXCEPTIONS}
        namespace.update(
            print=_print,
            open=self._open,
            final_answer=final_answer,
            __import__=self._import,
        )
        return namespace

    # ------------------------------------------------------------------
    # Deadline
    # ------------------------------------------------------------------

    def _tracer(self, deadline: float) -> Callable[..., Any]:
        cancel = self.cancel

        def check() -> None:
            if cancel is not None and cancel.cancelled:
                raise _Cancelled()
            if time.monotonic() > deadline:
                raise _DeadlineExceeded()

        def local(frame, event, arg):
            if event == "line":
                check()
            return local

        def global_(frame, event, arg):
            if frame.f_code.co_filename != CODE_FILENAME:
                return None
            check()
            return local

        return global_

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def execute(self, code: str, language: str = "python") -> SandboxResult:
        """Parse, validate, and (only if validation passes) run `code`."""
        if language.lower() not in ("python", "py") or self.policy.language != "python":
            return RuntimeFailure(message=f"No executor is available for language '{language}'.")

        try:
            tree = ast.parse(code, filename=CODE_FILENAME, mode="exec")
        except SyntaxError as exc:
            return RuntimeFailure(message=f"SyntaxError: {exc.msg} (line {exc.lineno})")
        except ValueError as exc:
            return RuntimeFailure(message=f"Could not parse code: {exc}")

        try:
            validate(tree, self.policy)
        except PolicyViolationError as exc:
            return PolicyViolation(symbol=exc.symbol, line=exc.line)

        return self._run(tree)

    def _run(self, tree: ast.Module) -> SandboxResult:
        body = list(tree.body)
        final_expr = None
        if body and isinstance(body[-1], ast.Expr):
            final_expr = ast.Expression(body=body.pop().value)
        module_code = compile(ast.Module(body=body, type_ignores=[]), CODE_FILENAME, "exec")
        expr_code = compile(final_expr, CODE_FILENAME, "eval") if final_expr is not None else None

        buffer = _OutputBuffer(self.max_output_chars)
        namespace = self.state
        namespace.update(self.functions)
        namespace["__builtins__"] = self._builtins(buffer)

        previous = sys.gettrace()
        sys.settrace(self._tracer(time.monotonic() + self.timeout))
        try:
            exec(module_code, namespace)
            value = eval(expr_code, namespace) if expr_code is not None else None
        except _FinalAnswerSignal as signal:
            return ExecutionOutput(
                output=buffer.getvalue(), value=signal.value, truncated=buffer.truncated, is_final_answer=True
            )
        except _DeadlineExceeded:
            return ExecutionOutput(
                output=buffer.getvalue()
                + f"\n....Execution stopped after the {self.timeout:g}s time limit.....",
                truncated=True,
            )
        except _Cancelled:
            raise RunCancelled("Run cancelled during sandbox execution.") from None
        except _AccessDenied as exc:
            return PolicyViolation(symbol=exc.symbol, line=_code_line(exc.__traceback__))
        except Exception as exc:
            return RuntimeFailure(message=f"{type(exc).__name__}: {exc}", output=buffer.getvalue())
        finally:
            sys.settrace(previous)

        output = buffer.getvalue()
        if buffer.truncated:
            output += f"\n....Output truncated at {self.max_output_chars} characters....."
        return ExecutionOutput(output=output, value=value, truncated=buffer.truncated)


def execute(
    code: str,
    language: str = "python",
    policy: AllowListPolicy | None = None,
    scratch_dir: str | Path | None = None,
    timeout: float = 10.0,
    max_output_chars: int = 30000,
) -> SandboxResult:
    """One-shot execution with fresh state."""
    sandbox = Sandbox(policy, scratch_dir=scratch_dir, timeout=timeout, max_output_chars=max_output_chars)
    return sandbox.execute(code, language)
