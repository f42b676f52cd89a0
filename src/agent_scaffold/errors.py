# errors.py
# Exception taxonomy for the scaffold.
#
# Only AgentError (and its subclass RunCancelled) escapes MultiStepAgent.run().
# Every other kind is absorbed into the loop and shown to the model as an
# error Observation so it gets a chance to recover.

from agent_scaffold.models import ErrorInfo


class ScaffoldError(Exception):
    """Base class for all scaffold errors."""

    kind = "error"

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(kind=self.kind, message=str(self))


# ---------------------------------------------------------------------------
# Recoverable: surfaced as Observations
# ---------------------------------------------------------------------------


class ParseError(ScaffoldError):
    """Model output does not describe a valid Action."""

    kind = "parse_error"


class ToolError(ScaffoldError):
    kind = "tool_error"


class ToolNotFoundError(ToolError):
    """Raised when a call names a tool absent from the registry."""


class ToolArgumentError(ToolError):
    """Arguments violate the tool's parameter schema."""


class ToolExecutionError(ToolError):
    """The tool itself failed while running."""


class PolicyViolationError(ScaffoldError):
    """Sandbox rejected a construct outside the allow-list."""

    kind = "policy_violation"

    def __init__(self, symbol: str, line: int | None = None) -> None:
        self.symbol = symbol
        self.line = line
        where = f" (line {line})" if line is not None else ""
        super().__init__(f"Code rejected by sandbox policy: '{symbol}' is not allowed{where}.")


class SandboxRuntimeError(ScaffoldError):
    """Code passed validation but faulted while executing."""

    kind = "runtime_failure"


class StepBudgetExceeded(ScaffoldError):
    """Step budget exhausted. Triggers final-answer synthesis, never returned."""

    kind = "max_steps"


# ---------------------------------------------------------------------------
# Model backend errors
# ---------------------------------------------------------------------------


class ModelError(ScaffoldError):
    kind = "model_error"
    retryable = False


class AuthError(ModelError):
    kind = "auth_error"


class RateLimited(ModelError):
    kind = "rate_limited"
    retryable = True

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ModelTimeout(ModelError):
    kind = "timeout"
    retryable = True


class MalformedResponse(ModelError):
    """Backend answered, but not in a shape we can read. Treated as a ParseError upstream."""

    kind = "malformed_response"


# ---------------------------------------------------------------------------
# Fatal
# ---------------------------------------------------------------------------


class AgentError(ScaffoldError):
    """Fatal to the run: bad configuration or an unrecoverable model failure."""

    kind = "agent_error"


class RunCancelled(AgentError):
    kind = "cancelled"
