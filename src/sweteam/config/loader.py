"""YAML config loader for sweteam."""

from __future__ import annotations

import os
from dataclasses import asdict
from pathlib import Path
from typing import Any

import yaml

from sweteam.config.schema import (
    FAILURE_POLICIES,
    PROVIDERS,
    INTERFACES,
    QUALITY_LEVELS,
    AgentLLMConfig,
    AgentsConfig,
    ApiConfig,
    DatabaseConfig,
    GitConfig,
    LoggingConfig,
    PoolConfig,
    ProcessingConfig,
    ReposConfig,
    SWETeamConfig,
    TelegramConfig,
    WorkflowConfig,
)
from sweteam.errors import ConfigurationError


def load_config(path: str | Path = "config.yaml", *, env: dict[str, str] | None = None) -> SWETeamConfig:
    """Load *path* over the defaults, apply env overrides and resolve paths.

    A missing file yields the defaults.
    """
    p = Path(path)
    raw = yaml.safe_load(p.read_text(encoding="utf-8")) if p.exists() else {}
    if not isinstance(raw, dict):
        raw = {}

    agents_raw = _section(raw, "agents")
    cfg = SWETeamConfig(
        interface=str(raw.get("interface", "cli")),
        telegram=TelegramConfig(**_pick(_section(raw, "telegram"), TelegramConfig)),
        api=ApiConfig(**_pick(_section(raw, "api"), ApiConfig)),
        agents=AgentsConfig(
            architect=_agent_config(agents_raw, "architect", AgentsConfig().architect),
            swe=_agent_config(agents_raw, "swe", AgentsConfig().swe),
        ),
        pool=PoolConfig(**_pick(_section(raw, "pool"), PoolConfig)),
        git=GitConfig(**_pick(_section(raw, "git"), GitConfig)),
        repos=ReposConfig(**_pick(_section(raw, "repos"), ReposConfig)),
        database=DatabaseConfig(**_pick(_section(raw, "database"), DatabaseConfig)),
        processing=ProcessingConfig(**_pick(_section(raw, "processing"), ProcessingConfig)),
        workflow=_workflow_config(_section(raw, "workflow")),
        logging=LoggingConfig(**_pick(_section(raw, "logging"), LoggingConfig)),
    )

    _apply_env(cfg, os.environ if env is None else env)
    _resolve_paths(cfg)
    validate_config(cfg)
    return cfg


def validate_config(cfg: SWETeamConfig) -> None:
    if cfg.interface not in INTERFACES:
        raise ConfigurationError(f"Unknown interface: {cfg.interface!r} (expected one of {INTERFACES})")
    if cfg.workflow.on_subtask_failure not in FAILURE_POLICIES:
        raise ConfigurationError(
            f"Unknown on_subtask_failure policy: {cfg.workflow.on_subtask_failure!r}"
        )
    if cfg.workflow.approval_threshold not in QUALITY_LEVELS:
        raise ConfigurationError(
            f"Unknown approval_threshold: {cfg.workflow.approval_threshold!r} (expected one of {QUALITY_LEVELS})"
        )
    if cfg.pool.max_workers < 1:
        raise ConfigurationError("pool.max_workers must be at least 1")
    if cfg.processing.max_concurrent_runs < 1:
        raise ConfigurationError("processing.max_concurrent_runs must be at least 1")
    for role, agent in (("architect", cfg.agents.architect), ("swe", cfg.agents.swe)):
        if agent.provider not in PROVIDERS:
            raise ConfigurationError(f"Unknown provider for agents.{role}: {agent.provider!r} (expected one of {PROVIDERS})")


def _agent_config(agents_raw: dict[str, Any], role: str, default: AgentLLMConfig) -> AgentLLMConfig:
    role_raw = agents_raw.get(role)
    if not isinstance(role_raw, dict):
        return default
    return AgentLLMConfig(**(asdict(default) | _pick(role_raw, AgentLLMConfig)))


def _workflow_config(raw: dict[str, Any]) -> WorkflowConfig:
    picked = _pick(raw, WorkflowConfig)
    prompts = picked.pop("prompts", None)
    wf = WorkflowConfig(**picked)
    if isinstance(prompts, dict):
        wf.prompts = wf.prompts | {str(k): str(v) for k, v in prompts.items()}
    return wf


def _apply_env(cfg: SWETeamConfig, env: Any) -> None:
    if env.get("TELEGRAM_BOT_TOKEN"):
        cfg.telegram.bot_token = env["TELEGRAM_BOT_TOKEN"]
    if env.get("GITHUB_TOKEN"):
        cfg.git.github_token = env["GITHUB_TOKEN"]
    if env.get("SWE_TEAM_LOG_LEVEL"):
        cfg.logging.level = env["SWE_TEAM_LOG_LEVEL"]


def _resolve_paths(cfg: SWETeamConfig) -> None:
    cfg.repos.base_path = os.path.abspath(cfg.repos.base_path)
    cfg.repos.workspaces_path = os.path.abspath(cfg.repos.workspaces_path)
    cfg.database.path = os.path.abspath(cfg.database.path)
    if cfg.logging.file:
        cfg.logging.file = os.path.abspath(cfg.logging.file)


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key, {})
    return value if isinstance(value, dict) else {}


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
