import pytest

from agent_scaffold import display
from agent_scaffold.backends import CompletionStream, ModelBackend
from agent_scaffold.models import Completion, CompletionChunk, FunctionCall


class ScriptedModel(ModelBackend):
    """
    Backend that replays a script. Each entry is a Completion, a plain string
    (content only), or an exception instance to raise for that call.
    """

    model_id = "scripted"

    def __init__(self, script=(), default=None):
        self.script = list(script)
        self.default = default
        self.calls = []

    def _next(self):
        if self.script:
            item = self.script.pop(0)
        elif self.default is not None:
            item = self.default
        else:
            raise AssertionError("ScriptedModel ran out of completions")
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return Completion(content=item)
        return item

    def complete(self, messages, tools=(), stop=()):
        self.calls.append({"messages": list(messages), "tools": list(tools), "stop": list(stop)})
        return self._next()

    def stream(self, messages, tools=(), stop=(), cancel=None):
        self.calls.append({"messages": list(messages), "tools": list(tools), "stop": list(stop)})
        completion = self._next()
        words = completion.content.split(" ")
        chunks = [CompletionChunk(text=w + (" " if i < len(words) - 1 else "")) for i, w in enumerate(words)]
        if completion.tool_calls:
            chunks.append(CompletionChunk(tool_calls=completion.tool_calls))
        return CompletionStream(iter(chunks), cancel=cancel)


def tool_call(name, arguments, call_id="call_1"):
    return Completion(tool_calls=[FunctionCall(id=call_id, name=name, arguments=arguments)])


@pytest.fixture(autouse=True)
def quiet_display():
    display.set_quiet(True)
    yield
    display.set_quiet(False)
