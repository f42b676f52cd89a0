# backends.py
# Model backend abstraction and the concrete wire clients.
#
# The harness only ever sees ModelBackend.complete() / .stream(). Each backend
# translates its transport's failures into the ModelError kinds from errors.py
# so the harness can decide retry vs. fatal without knowing the transport.

import abc
import json
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
import openai
from openai import AzureOpenAI, OpenAI

from agent_scaffold.errors import (
    AuthError,
    MalformedResponse,
    ModelError,
    ModelTimeout,
    RateLimited,
    RunCancelled,
)
from agent_scaffold.models import Completion, CompletionChunk, FunctionCall, Message, ToolSchema

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Cancellation & streaming
# ---------------------------------------------------------------------------


class CancellationToken:
    """Run-level cancel signal, checked at every suspension point."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str) -> None:
        if self._event.is_set():
            raise RunCancelled(f"Run cancelled during {where}.")

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True early if cancelled meanwhile."""
        return self._event.wait(seconds)


class CompletionStream:
    """
    Lazy, finite, non-restartable sequence of CompletionChunks.

    The cancellation token is checked before every chunk is pulled. Closing
    the stream (explicitly, by exhaustion, on error or on cancel) releases the
    underlying connection exactly once.
    """

    def __init__(
        self,
        chunks: Iterator[CompletionChunk],
        close: Callable[[], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self._chunks = chunks
        self._close = close
        self._cancel = cancel
        self._closed = False

    def __iter__(self) -> "CompletionStream":
        return self

    def __next__(self) -> CompletionChunk:
        if self._closed:
            raise StopIteration
        if self._cancel is not None and self._cancel.cancelled:
            self.close()
            raise RunCancelled("Run cancelled while streaming the completion.")
        try:
            return next(self._chunks)
        except BaseException:
            self.close()
            raise

    def __enter__(self) -> "CompletionStream":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        close_gen = getattr(self._chunks, "close", None)
        if close_gen is not None:
            close_gen()
        if self._close is not None:
            self._close()

    def collect(self, on_chunk: Callable[[CompletionChunk], None] | None = None) -> Completion:
        """Drain the stream into a single Completion."""
        parts: list[str] = []
        tool_calls: list[FunctionCall] = []
        with self:
            for chunk in self:
                if on_chunk is not None:
                    on_chunk(chunk)
                parts.append(chunk.text)
                tool_calls.extend(chunk.tool_calls)
        return Completion(content="".join(parts), tool_calls=tool_calls)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for retryable ModelErrors."""

    max_retry_attempts: int = 3
    initial_seconds_between_retry_attempts: float = 1.0
    max_seconds_between_retry_attempts: float = 30.0

    def backoff(self, attempt: int, retry_after: float | None = None) -> float:
        delay = min(
            self.initial_seconds_between_retry_attempts * (2**attempt),
            self.max_seconds_between_retry_attempts,
        )
        if retry_after is not None:
            delay = min(max(delay, retry_after), self.max_seconds_between_retry_attempts)
        return delay


def call_with_retries(
    fn: Callable[[], T],
    policy: RetryPolicy,
    cancel: CancellationToken | None = None,
    on_retry: Callable[[ModelError, int, float], None] | None = None,
) -> T:
    """
    Call `fn`, retrying RateLimited / ModelTimeout with backoff.

    Non-retryable ModelErrors propagate immediately; a retryable one
    propagates once `policy.max_retry_attempts` retries are spent.
    """
    attempt = 0
    while True:
        if cancel is not None:
            cancel.raise_if_cancelled("model call")
        try:
            return fn()
        except ModelError as exc:
            if not exc.retryable or attempt >= policy.max_retry_attempts:
                raise
            retry_after = exc.retry_after if isinstance(exc, RateLimited) else None
            delay = policy.backoff(attempt, retry_after)
            attempt += 1
            if on_retry is not None:
                on_retry(exc, attempt, delay)
            if cancel is not None:
                if cancel.wait(delay):
                    raise RunCancelled("Run cancelled while backing off before a model retry.") from exc
            else:
                time.sleep(delay)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class ModelBackend(abc.ABC):
    """
    Turns a conversation plus the available tool schemas into a completion.

    Implementations must be safe to call from several agent threads at once;
    any connection pool they hold is shared without extra locking.
    """

    model_id: str

    @abc.abstractmethod
    def complete(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolSchema] = (),
        stop: Sequence[str] = (),
    ) -> Completion:
        """Return the full completion or raise a ModelError."""

    def stream(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolSchema] = (),
        stop: Sequence[str] = (),
        cancel: CancellationToken | None = None,
    ) -> CompletionStream:
        """Default for backends without native streaming: one chunk."""
        completion = self.complete(messages, tools, stop)
        chunk = CompletionChunk(text=completion.content, tool_calls=completion.tool_calls)
        return CompletionStream(iter([chunk]), cancel=cancel)

    def close(self) -> None:
        pass


def _wire_messages(messages: Sequence[Message]) -> list[dict[str, str]]:
    # Observations go back as user turns; not every backend accepts bare
    # "tool" messages without a matching tool_call_id.
    wire = []
    for message in messages:
        role = "user" if message.role.value == "tool" else message.role.value
        wire.append({"role": role, "content": message.content})
    return wire


def _parse_retry_after(headers: Any) -> float | None:
    if headers is None:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_openai_payload(data: Any) -> Completion:
    """Read a chat.completions JSON body (OpenAI, LightLLM, HF router)."""
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as exc:
        raise MalformedResponse(f"Response has no choices[0].message: {str(data)[:200]}") from exc
    tool_calls = []
    for raw in message.get("tool_calls") or []:
        function = raw.get("function") or {}
        if "name" not in function:
            raise MalformedResponse(f"Tool call without a function name: {raw}")
        tool_calls.append(
            FunctionCall(
                id=raw.get("id"),
                name=function["name"],
                arguments=function.get("arguments") or {},
            )
        )
    return Completion(content=message.get("content") or "", tool_calls=tool_calls)


# ---------------------------------------------------------------------------
# OpenAI-compatible (openai SDK)
# ---------------------------------------------------------------------------


class OpenAIServerModel(ModelBackend):
    """
    Any OpenAI-compatible chat completions server: OpenAI, OpenRouter, vLLM,
    or a local inference server exposing the same API.
    """

    def __init__(
        self,
        model_id: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
        temperature: float = 0.5,
        client: OpenAI | None = None,
    ) -> None:
        self.model_id = model_id
        self.temperature = temperature
        # Retries belong to the harness, not the SDK.
        self._client = client or OpenAI(
            base_url=base_url,
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
        )

    def _request(self, messages, tools, stop) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": self.model_id,
            "messages": _wire_messages(messages),
            "temperature": self.temperature,
        }
        if tools:
            request["tools"] = [tool.json_schema() for tool in tools]
            request["tool_choice"] = "auto"
        if stop:
            request["stop"] = list(stop)[:4]
        return request

    def _translate(self, exc: openai.OpenAIError) -> ModelError:
        if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return AuthError(f"{self.model_id}: authentication failed: {exc}")
        if isinstance(exc, openai.RateLimitError):
            return RateLimited(
                f"{self.model_id}: rate limited: {exc}",
                retry_after=_parse_retry_after(exc.response.headers),
            )
        if isinstance(exc, openai.APITimeoutError):
            return ModelTimeout(f"{self.model_id}: request timed out.")
        if isinstance(exc, (openai.APIConnectionError, openai.InternalServerError)):
            return ModelTimeout(f"{self.model_id}: server unavailable: {exc}")
        return ModelError(f"{self.model_id}: request rejected: {exc}")

    def complete(self, messages, tools=(), stop=()) -> Completion:
        try:
            response = self._client.chat.completions.create(**self._request(messages, tools, stop))
        except openai.OpenAIError as exc:
            raise self._translate(exc) from exc

        if not getattr(response, "choices", None):
            raise MalformedResponse(f"{self.model_id}: response has no choices.")
        message = response.choices[0].message
        tool_calls = [
            FunctionCall(id=call.id, name=call.function.name, arguments=call.function.arguments or {})
            for call in (message.tool_calls or [])
        ]
        return Completion(content=(message.content or "").strip(), tool_calls=tool_calls)

    def stream(self, messages, tools=(), stop=(), cancel=None) -> CompletionStream:
        try:
            raw_stream = self._client.chat.completions.create(
                stream=True, **self._request(messages, tools, stop)
            )
        except openai.OpenAIError as exc:
            raise self._translate(exc) from exc

        def chunks() -> Iterator[CompletionChunk]:
            pending: dict[int, dict[str, str]] = {}
            try:
                for event in raw_stream:
                    if not event.choices:
                        continue
                    delta = event.choices[0].delta
                    for call in delta.tool_calls or []:
                        slot = pending.setdefault(call.index, {"id": "", "name": "", "arguments": ""})
                        if call.id:
                            slot["id"] = call.id
                        if call.function is not None:
                            slot["name"] += call.function.name or ""
                            slot["arguments"] += call.function.arguments or ""
                    if delta.content:
                        yield CompletionChunk(text=delta.content)
            except openai.OpenAIError as exc:
                raise self._translate(exc) from exc
            if pending:
                yield CompletionChunk(
                    tool_calls=[
                        FunctionCall(id=slot["id"] or None, name=slot["name"], arguments=slot["arguments"])
                        for _, slot in sorted(pending.items())
                    ]
                )

        return CompletionStream(chunks(), close=raw_stream.close, cancel=cancel)


class AzureOpenAIModel(OpenAIServerModel):
    """Azure OpenAI deployment; `model_id` is the deployment name."""

    def __init__(
        self,
        model_id: str,
        api_key: str | None = None,
        azure_endpoint: str | None = None,
        api_version: str = "2024-10-21",
        timeout: float = 60.0,
        temperature: float = 0.5,
    ) -> None:
        client = AzureOpenAI(
            azure_endpoint=azure_endpoint,
            api_key=api_key,
            api_version=api_version,
            timeout=timeout,
            max_retries=0,
        )
        super().__init__(model_id, temperature=temperature, client=client)


# ---------------------------------------------------------------------------
# Plain-HTTP backends (httpx)
# ---------------------------------------------------------------------------


class _HttpBackend(ModelBackend):
    """Shared httpx plumbing. httpx.Client is safe to share between threads."""

    def __init__(
        self,
        model_id: str,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.model_id = model_id
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.Client(base_url=base_url, headers=headers, timeout=timeout)

    def _check(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        response.read()
        detail = response.text[:300]
        if status in (401, 403):
            raise AuthError(f"{self.model_id}: authentication failed ({status}): {detail}")
        if status == 429:
            raise RateLimited(
                f"{self.model_id}: rate limited: {detail}",
                retry_after=_parse_retry_after(response.headers),
            )
        if status in (408, 504):
            raise ModelTimeout(f"{self.model_id}: upstream timed out ({status}).")
        if status >= 500:
            raise ModelTimeout(f"{self.model_id}: server unavailable ({status}): {detail}")
        raise ModelError(f"{self.model_id}: request rejected ({status}): {detail}")

    def _post_json(self, path: str, payload: dict[str, Any]) -> Any:
        try:
            response = self._client.post(path, json=payload)
        except httpx.TimeoutException as exc:
            raise ModelTimeout(f"{self.model_id}: request timed out.") from exc
        except httpx.TransportError as exc:
            raise ModelTimeout(f"{self.model_id}: connection failed: {exc}") from exc
        self._check(response)
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise MalformedResponse(f"{self.model_id}: response is not JSON: {response.text[:200]}") from exc

    def _open_stream(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        request = self._client.build_request("POST", path, json=payload)
        try:
            response = self._client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise ModelTimeout(f"{self.model_id}: request timed out.") from exc
        except httpx.TransportError as exc:
            raise ModelTimeout(f"{self.model_id}: connection failed: {exc}") from exc
        try:
            self._check(response)
        except ModelError:
            response.close()
            raise
        return response

    def _lines(self, response: httpx.Response) -> Iterator[str]:
        try:
            for line in response.iter_lines():
                if line.strip():
                    yield line
        except httpx.TimeoutException as exc:
            raise ModelTimeout(f"{self.model_id}: stream timed out.") from exc
        except httpx.TransportError as exc:
            raise ModelTimeout(f"{self.model_id}: stream broke: {exc}") from exc

    def close(self) -> None:
        self._client.close()


class OllamaModel(_HttpBackend):
    """Ollama `/api/chat`, NDJSON streaming."""

    def __init__(
        self,
        model_id: str,
        base_url: str = "http://localhost:11434",
        temperature: float = 0.5,
        num_ctx: int = 8192,
        timeout: float = 120.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(model_id, base_url, timeout=timeout, client=client)
        self.temperature = temperature
        self.num_ctx = num_ctx

    def _payload(self, messages, tools, stop, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model_id,
            "messages": _wire_messages(messages),
            "stream": stream,
            "options": {"temperature": self.temperature, "num_ctx": self.num_ctx},
        }
        if tools:
            payload["tools"] = [tool.json_schema() for tool in tools]
        if stop:
            payload["options"]["stop"] = list(stop)
        return payload

    @staticmethod
    def _tool_calls(message: dict[str, Any]) -> list[FunctionCall]:
        calls = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function") or {}
            if "name" not in function:
                raise MalformedResponse(f"Tool call without a function name: {raw}")
            calls.append(FunctionCall(name=function["name"], arguments=function.get("arguments") or {}))
        return calls

    def complete(self, messages, tools=(), stop=()) -> Completion:
        data = self._post_json("/api/chat", self._payload(messages, tools, stop, stream=False))
        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message, dict):
            raise MalformedResponse(f"{self.model_id}: response has no message: {str(data)[:200]}")
        return Completion(content=message.get("content") or "", tool_calls=self._tool_calls(message))

    def stream(self, messages, tools=(), stop=(), cancel=None) -> CompletionStream:
        response = self._open_stream("/api/chat", self._payload(messages, tools, stop, stream=True))

        def chunks() -> Iterator[CompletionChunk]:
            for line in self._lines(response):
                try:
                    event = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise MalformedResponse(f"{self.model_id}: bad stream line: {line[:200]}") from exc
                message = event.get("message") or {}
                calls = self._tool_calls(message)
                if message.get("content") or calls:
                    yield CompletionChunk(text=message.get("content") or "", tool_calls=calls)
                if event.get("done"):
                    return

        return CompletionStream(chunks(), close=response.close, cancel=cancel)


class LightLLMModel(_HttpBackend):
    """LightLLM (or any bare OpenAI-shaped) chat endpoint over plain HTTP, SSE streaming."""

    def __init__(
        self,
        model_id: str = "gpt-3.5-turbo",
        base_url: str = "http://localhost:8080/v1",
        api_key: str | None = None,
        temperature: float = 0.5,
        max_tokens: int = 1500,
        timeout: float = 120.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(model_id, base_url, api_key=api_key, timeout=timeout, client=client)
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _payload(self, messages, tools, stop, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model_id,
            "messages": _wire_messages(messages),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": stream,
        }
        if tools:
            payload["tools"] = [tool.json_schema() for tool in tools]
            payload["tool_choice"] = "required"
        if stop:
            payload["stop"] = list(stop)
        return payload

    def complete(self, messages, tools=(), stop=()) -> Completion:
        data = self._post_json("/chat/completions", self._payload(messages, tools, stop, stream=False))
        return _parse_openai_payload(data)

    def stream(self, messages, tools=(), stop=(), cancel=None) -> CompletionStream:
        response = self._open_stream("/chat/completions", self._payload(messages, tools, stop, stream=True))

        def chunks() -> Iterator[CompletionChunk]:
            pending: dict[int, dict[str, str]] = {}
            for line in self._lines(response):
                if not line.startswith("data:"):
                    continue
                body = line[len("data:"):].strip()
                if body == "[DONE]":
                    break
                try:
                    event = json.loads(body)
                    delta = event["choices"][0].get("delta") or {}
                except (json.JSONDecodeError, KeyError, IndexError) as exc:
                    raise MalformedResponse(f"{self.model_id}: bad SSE event: {body[:200]}") from exc
                for call in delta.get("tool_calls") or []:
                    slot = pending.setdefault(call.get("index", 0), {"id": "", "name": "", "arguments": ""})
                    slot["id"] = call.get("id") or slot["id"]
                    function = call.get("function") or {}
                    slot["name"] += function.get("name") or ""
                    slot["arguments"] += function.get("arguments") or ""
                if delta.get("content"):
                    yield CompletionChunk(text=delta["content"])
            if pending:
                yield CompletionChunk(
                    tool_calls=[
                        FunctionCall(id=slot["id"] or None, name=slot["name"], arguments=slot["arguments"])
                        for _, slot in sorted(pending.items())
                    ]
                )

        return CompletionStream(chunks(), close=response.close, cancel=cancel)


class HuggingFaceModel(_HttpBackend):
    """
    Hugging Face text-generation inference endpoint.

    No native tool calling: the conversation is flattened to a prompt and the
    parser reads tool calls or code from the generated text.
    """

    _ROLE_LABELS = {"system": "System", "user": "User", "assistant": "Assistant", "tool": "ToolResponse"}

    def __init__(
        self,
        model_id: str = "HuggingFaceH4/zephyr-7b-beta",
        api_key: str | None = None,
        base_url: str = "https://api-inference.huggingface.co/models",
        temperature: float = 0.5,
        max_new_tokens: int = 1500,
        timeout: float = 120.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(model_id, base_url, api_key=api_key, timeout=timeout, client=client)
        self.temperature = temperature
        self.max_new_tokens = max_new_tokens

    def complete(self, messages, tools=(), stop=()) -> Completion:
        prompt = "\n".join(f"{self._ROLE_LABELS[m.role.value]}: {m.content}" for m in messages)
        parameters: dict[str, Any] = {
            "max_new_tokens": self.max_new_tokens,
            "temperature": self.temperature,
            "return_full_text": False,
        }
        if stop:
            parameters["stop"] = list(stop)
        data = self._post_json(f"/{self.model_id}", {"inputs": prompt, "parameters": parameters})
        if isinstance(data, list):
            data = data[0] if data else {}
        if not isinstance(data, dict) or not isinstance(data.get("generated_text"), str):
            raise MalformedResponse(f"{self.model_id}: response has no generated_text: {str(data)[:200]}")
        return Completion(content=data["generated_text"])
