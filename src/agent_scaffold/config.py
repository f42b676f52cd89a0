# config.py
# AgentConfig: the one place settings are resolved.
#
# No other module reads the environment. The config is built once (from
# keyword arguments, or from the environment and a .env file) and passed by
# reference into the factories below, which wire it into backends, tools and
# agents. Invalid settings raise AgentError before anything runs.

import os
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from agent_scaffold.backends import (
    AzureOpenAIModel,
    HuggingFaceModel,
    LightLLMModel,
    ModelBackend,
    OllamaModel,
    OpenAIServerModel,
    RetryPolicy,
)
from agent_scaffold.errors import AgentError
from agent_scaffold.harness import CodeAgent, MultiStepAgent, ToolCallingAgent
from agent_scaffold.sandbox import AllowListPolicy
from agent_scaffold.tools import TOOLS, PythonInterpreterTool, Tool

AgentType = Literal["tool-calling", "code"]
ModelType = Literal["openai", "azure", "ollama", "huggingface", "lightllm"]

# Environment variable -> config field.
ENV_FIELDS = {
    "AGENT_MODEL_TYPE": "model_type",
    "AGENT_MODEL_ID": "model_id",
    "SANDBOX_DIR": "sandbox_dir",
}

DEFAULT_MODEL_IDS = {
    "openai": "gpt-4o-mini",
    "azure": "gpt-4o-mini",
    "ollama": "qwen2.5",
    "huggingface": "HuggingFaceH4/zephyr-7b-beta",
    "lightllm": "gpt-3.5-turbo",
}


class AgentConfig(BaseModel):
    """Validated, task-independent settings for building agents."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    agent_type: AgentType = "tool-calling"
    tools: tuple[str, ...] = ()
    model_type: ModelType = "openai"
    model_id: str | None = None
    api_key: str | None = None
    base_url: str | None = None
    stream: bool = False
    sandbox_dir: Path | None = None

    max_steps: int = Field(default=10, ge=1)
    planning_interval: int | None = Field(default=None, ge=1)
    max_context_chars: int = Field(default=60000, ge=1)
    max_observation_chars: int = Field(default=30000, ge=1)
    sandbox_timeout: float = Field(default=10.0, gt=0)
    sandbox_max_output_chars: int = Field(default=30000, ge=1)
    request_timeout: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    initial_backoff: float = Field(default=1.0, ge=0)
    max_backoff: float = Field(default=30.0, ge=0)
    fatal_policy_violations: bool = False

    @field_validator("tools")
    @classmethod
    def _known_tools(cls, names: tuple[str, ...]) -> tuple[str, ...]:
        available = set(TOOLS) | {PythonInterpreterTool.name}
        unknown = [name for name in names if name not in available]
        if unknown:
            raise ValueError(f"unknown tool(s) {unknown}, available: {sorted(available)}")
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate tool names in {list(names)}")
        return names

    @classmethod
    def create(cls, **values: Any) -> "AgentConfig":
        """Validate `values`, raising AgentError instead of pydantic's ValidationError."""
        try:
            return cls(**values)
        except ValidationError as exc:
            raise AgentError(f"Invalid agent configuration:\n{exc}") from exc

    @classmethod
    def from_env(cls, env_file: str | Path | None = None, **overrides: Any) -> "AgentConfig":
        """
        Load `.env`, read the environment, then apply `overrides` on top.
        Overrides set to None are ignored so CLI defaults do not mask the environment.
        """
        load_dotenv(env_file)
        values: dict[str, Any] = {}
        for var, field in ENV_FIELDS.items():
            if os.getenv(var):
                values[field] = os.getenv(var)
        values.update({key: value for key, value in overrides.items() if value is not None})

        model_type = values.get("model_type", "openai")
        if "api_key" not in values:
            key_var = "HF_TOKEN" if model_type == "huggingface" else "OPENAI_API_KEY"
            if os.getenv(key_var):
                values["api_key"] = os.getenv(key_var)
        if "base_url" not in values:
            url_var = "OLLAMA_HOST" if model_type == "ollama" else "OPENAI_BASE_URL"
            if os.getenv(url_var):
                values["base_url"] = os.getenv(url_var)
        return cls.create(**values)

    @property
    def resolved_model_id(self) -> str:
        return self.model_id or DEFAULT_MODEL_IDS[self.model_type]

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retry_attempts=self.max_retries,
            initial_seconds_between_retry_attempts=self.initial_backoff,
            max_seconds_between_retry_attempts=self.max_backoff,
        )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def build_model(config: AgentConfig) -> ModelBackend:
    model_id = config.resolved_model_id
    timeout = config.request_timeout
    if config.model_type == "openai":
        return OpenAIServerModel(model_id, api_key=config.api_key, base_url=config.base_url, timeout=timeout)
    if config.model_type == "azure":
        if not config.base_url:
            raise AgentError("Azure OpenAI needs base_url set to the resource endpoint.")
        return AzureOpenAIModel(model_id, api_key=config.api_key, azure_endpoint=config.base_url, timeout=timeout)
    if config.model_type == "ollama":
        return OllamaModel(model_id, base_url=config.base_url or "http://localhost:11434", timeout=timeout)
    if config.model_type == "huggingface":
        kwargs = {"base_url": config.base_url} if config.base_url else {}
        return HuggingFaceModel(model_id, api_key=config.api_key, timeout=timeout, **kwargs)
    kwargs = {"base_url": config.base_url} if config.base_url else {}
    return LightLLMModel(model_id, api_key=config.api_key, timeout=timeout, **kwargs)


def build_tools(config: AgentConfig, policy: AllowListPolicy | None = None) -> list[Tool]:
    tools: list[Tool] = []
    for name in config.tools:
        if name == PythonInterpreterTool.name:
            tools.append(
                PythonInterpreterTool(
                    policy=policy,
                    timeout=config.sandbox_timeout,
                    max_output_chars=config.sandbox_max_output_chars,
                )
            )
        else:
            tools.append(TOOLS[name]())
    return tools


def build_agent(
    config: AgentConfig,
    model: ModelBackend | None = None,
    tools: list[Tool] | None = None,
    policy: AllowListPolicy | None = None,
) -> MultiStepAgent:
    """
    Wire one agent from `config`. Pass `model` / `tools` to share a backend
    connection pool or stateless tool instances between agents.
    """
    model = model or build_model(config)
    tools = tools if tools is not None else build_tools(config, policy)
    common: dict[str, Any] = {
        "max_steps": config.max_steps,
        "planning_interval": config.planning_interval,
        "max_context_chars": config.max_context_chars,
        "max_observation_chars": config.max_observation_chars,
        "retry_policy": config.retry_policy(),
        "stream": config.stream,
        "fatal_policy_violations": config.fatal_policy_violations,
    }
    if config.agent_type == "code":
        return CodeAgent(
            model,
            tools,
            policy=policy,
            sandbox_dir=config.sandbox_dir,
            sandbox_timeout=config.sandbox_timeout,
            sandbox_max_output_chars=config.sandbox_max_output_chars,
            **common,
        )
    return ToolCallingAgent(model, tools, **common)
