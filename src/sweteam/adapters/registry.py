"""Backend registry for the built-in coding-agent CLIs."""

from __future__ import annotations

from sweteam.adapters.aider import AiderBackend
from sweteam.adapters.base import CLIBackend
from sweteam.adapters.claude import ClaudeBackend
from sweteam.adapters.codex import CodexBackend
from sweteam.config.schema import PROVIDERS, AgentLLMConfig
from sweteam.errors import ConfigurationError

BACKENDS = PROVIDERS


def get_backend(provider: str, model: str = "", extra_flags: str = "", timeout: float = 900) -> CLIBackend:
    p = provider.lower()
    if p == "claude":
        return ClaudeBackend(model, extra_flags, timeout)
    if p == "codex":
        return CodexBackend(model, extra_flags, timeout)
    if p == "aider":
        return AiderBackend(model, extra_flags, timeout)
    raise ConfigurationError(f"Unsupported agent provider: {provider}")


def backend_for(config: AgentLLMConfig) -> CLIBackend:
    return get_backend(config.provider, config.model, config.extra_flags, config.timeout)
