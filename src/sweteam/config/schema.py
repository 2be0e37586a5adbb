"""Configuration schema for sweteam YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field

INTERFACES = ("cli", "telegram", "api")
FAILURE_POLICIES = ("stop", "retry", "continue")
QUALITY_LEVELS = ("poor", "needs_work", "good", "excellent")
PROVIDERS = ("claude", "codex", "aider")


@dataclass(slots=True)
class AgentLLMConfig:
    provider: str = "claude"  # claude | codex | aider
    model: str = ""  # empty string = use the tool's own default model
    extra_flags: str = "--dangerously-skip-permissions"
    timeout: int = 900  # seconds per CLI invocation


def _architect_default() -> AgentLLMConfig:
    return AgentLLMConfig(model="claude-opus-4-6")


def _swe_default() -> AgentLLMConfig:
    return AgentLLMConfig(model="claude-sonnet-4-6")


@dataclass(slots=True)
class AgentsConfig:
    architect: AgentLLMConfig = field(default_factory=_architect_default)
    swe: AgentLLMConfig = field(default_factory=_swe_default)


@dataclass(slots=True)
class PoolConfig:
    max_workers: int = 4


@dataclass(slots=True)
class TelegramConfig:
    bot_token: str = ""
    allowed_users: list[int] = field(default_factory=list)


@dataclass(slots=True)
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 3000


@dataclass(slots=True)
class GitConfig:
    default_branch: str = "main"
    author_name: str = "SWE Team Bot"
    author_email: str = "bot@swe-team.local"
    github_token: str = ""
    command_timeout: int = 300


@dataclass(slots=True)
class ReposConfig:
    base_path: str = "./repos"
    workspaces_path: str = "./workspaces"
    clone_timeout: int = 300


@dataclass(slots=True)
class DatabaseConfig:
    path: str = "./state/swe-team.db"


@dataclass(slots=True)
class ProcessingConfig:
    max_concurrent_runs: int = 4
    workflow_timeout: int = 7200  # runs older than this are cancelled at startup instead of resumed
    response_timeout: int = 300
    max_idle_repo_locks: int = 256


def _default_prompts() -> dict[str, str]:
    return {
        "architect": "prompts/architect-system.md",
        "architect_clarify": "prompts/architect-clarify.md",
        "architect_review": "prompts/architect-review.md",
        "swe": "prompts/swe-system.md",
    }


@dataclass(slots=True)
class WorkflowConfig:
    max_review_iterations: int = 3
    max_clarification_rounds: int = 10
    skip_clarification: bool = False
    approval_threshold: str = "good"
    on_subtask_failure: str = "retry"
    analyze_codebase: bool = True
    prompts: dict[str, str] = field(default_factory=_default_prompts)


@dataclass(slots=True)
class LoggingConfig:
    level: str = "info"
    file: str = "./logs/swe-team.log"
    json: bool = False


@dataclass(slots=True)
class SWETeamConfig:
    interface: str = "cli"
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    git: GitConfig = field(default_factory=GitConfig)
    repos: ReposConfig = field(default_factory=ReposConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
