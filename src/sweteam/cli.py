"""CLI entrypoint for sweteam."""

from __future__ import annotations

import asyncio
import shutil
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import click

from sweteam.adapters.registry import backend_for
from sweteam.config.loader import load_config
from sweteam.config.schema import SWETeamConfig
from sweteam.errors import ConfigurationError
from sweteam.interfaces import messaging
from sweteam.interfaces.cli import CLI_CONVERSATION, CLIInterface
from sweteam.logger import setup_logging
from sweteam.protocol.models import RunStatus, WorkflowRun
from sweteam.state.store import StateStore

T = TypeVar("T")

DEFAULT_CONFIG = """\
# sweteam configuration
interface: cli            # cli | telegram | api

telegram:
  bot_token: ""           # or TELEGRAM_BOT_TOKEN
  allowed_users: []       # numeric Telegram user ids; empty allows everyone

api:
  host: 127.0.0.1
  port: 3000

agents:
  architect:
    provider: claude      # claude | codex | aider
    model: claude-opus-4-6
    extra_flags: "--dangerously-skip-permissions"
    timeout: 900
  swe:
    provider: claude
    model: claude-sonnet-4-6
    extra_flags: "--dangerously-skip-permissions"
    timeout: 900

pool:
  max_workers: 4

git:
  default_branch: main
  author_name: SWE Team Bot
  author_email: bot@swe-team.local
  github_token: ""        # or GITHUB_TOKEN
  command_timeout: 300    # seconds per git / gh call

repos:
  base_path: ./repos
  workspaces_path: ./workspaces
  clone_timeout: 300

database:
  path: ./state/swe-team.db

processing:
  max_concurrent_runs: 4
  workflow_timeout: 7200  # runs older than this are not resumed at startup
  response_timeout: 300
  max_idle_repo_locks: 256

workflow:
  max_review_iterations: 3
  max_clarification_rounds: 10
  skip_clarification: false
  approval_threshold: good          # poor | needs_work | good | excellent
  on_subtask_failure: retry         # stop | retry | continue
  analyze_codebase: true

logging:
  level: info
  file: ./logs/swe-team.log
  json: false
"""

DEFAULT_PROMPTS = {
    "architect-system.md": (
        "You are the architect of a small software team. You read the codebase, "
        "break work into independent tasks and review the changes your engineers make.\n"
    ),
    "architect-clarify.md": (
        "Decide whether the requirement is specific enough to plan. Ask one focused "
        "question at a time when it is not.\n"
    ),
    "architect-review.md": (
        "Review the diff against the task. Approve only changes that are complete, "
        "tested where tests exist, and consistent with the surrounding code.\n"
    ),
    "swe-system.md": (
        "You are a software engineer working in a git worktree. Make the requested "
        "change, keep it focused, and commit your work with a descriptive message.\n"
    ),
}


@click.group()
@click.option(
    "--config", "-c", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default="config.yaml",
    show_default=True,
    help="Path to the YAML config file",
)
@click.pass_context
def main(ctx: click.Context, config_path: Path) -> None:
    """SWE Team: turn a task description into a reviewed pull request."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _load(ctx: click.Context) -> SWETeamConfig:
    try:
        return load_config(ctx.obj["config_path"])
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc


def _setup_logging(cfg: SWETeamConfig) -> None:
    setup_logging(cfg.logging.level, log_file=cfg.logging.file or None, json_output=cfg.logging.json)


def _run_async(coro: Awaitable[T]) -> T:
    return asyncio.run(coro)  # type: ignore[arg-type]


async def _with_store(cfg: SWETeamConfig, fn: Callable[[StateStore], Awaitable[T]]) -> T:
    async with StateStore(cfg.database.path) as store:
        return await fn(store)


# ----------------------------------------------------------------------
# Service
# ----------------------------------------------------------------------


async def _serve(cfg: SWETeamConfig) -> None:
    from sweteam.coordinator.service import SWETeam

    team = SWETeam(cfg)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    await team.start()
    waiters = [asyncio.create_task(stop.wait())]
    if isinstance(team.interface, CLIInterface):
        waiters.append(asyncio.create_task(team.interface.closed.wait()))
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
        await team.shutdown()


@main.command("serve")
@click.pass_context
def serve_command(ctx: click.Context) -> None:
    """Run the service on the configured interface until interrupted."""
    cfg = _load(ctx)
    _setup_logging(cfg)
    _run_async(_serve(cfg))


async def _run_once(cfg: SWETeamConfig, repo: str, task: str) -> WorkflowRun | None:
    from sweteam.coordinator.service import SWETeam

    cfg.interface = "cli"
    team = SWETeam(cfg)
    interface = team.interface
    assert isinstance(interface, CLIInterface)
    interface.banner = False

    await team.setup()
    if not cfg.workflow.skip_clarification:
        click.echo("Answer the architect's questions below.")
        await interface.start()
    try:
        run = await team.handle_inbound_task(repo, task, CLI_CONVERSATION)
        await team.wait_idle()
        return await team.store.get_run(run.id)
    finally:
        await interface.stop()
        await team.shutdown()


@main.command("run")
@click.argument("repo")
@click.argument("task", nargs=-1, required=True)
@click.option("--skip-clarification", is_flag=True, help="Plan straight from the task description")
@click.pass_context
def run_command(ctx: click.Context, repo: str, task: tuple[str, ...], skip_clarification: bool) -> None:
    """Run one TASK against REPO (owner/name or URL) and wait for the PR."""
    cfg = _load(ctx)
    if skip_clarification:
        cfg.workflow.skip_clarification = True
    _setup_logging(cfg)
    run = _run_async(_run_once(cfg, repo, " ".join(task)))
    if run is None:
        raise SystemExit(1)
    click.echo(messaging.format_run_detail(run))
    raise SystemExit(0 if run.status == RunStatus.COMPLETED else 1)


# ----------------------------------------------------------------------
# Inspection
# ----------------------------------------------------------------------


@main.command("list")
@click.option("--limit", default=20, show_default=True, help="How many recent runs to show")
@click.option("--status", "status_filter", default=None, help="Only runs with this status")
@click.pass_context
def list_command(ctx: click.Context, limit: int, status_filter: str | None) -> None:
    """List recent runs."""
    cfg = _load(ctx)
    runs = _run_async(_with_store(cfg, lambda s: s.list_runs(status=status_filter, limit=limit)))
    click.echo(messaging.format_list(runs))


async def _find_run(store: StateStore, ref: str) -> WorkflowRun | None:
    ref = ref.lstrip("#")
    if ref.isdigit():
        run = await store.get_run(int(ref))
        if run is not None:
            return run
    return await store.get_run_by_external_id(ref)


@main.command("status")
@click.argument("run_id")
@click.pass_context
def status_command(ctx: click.Context, run_id: str) -> None:
    """Show one run in detail."""
    cfg = _load(ctx)
    run = _run_async(_with_store(cfg, lambda s: _find_run(s, run_id)))
    if run is None:
        raise click.ClickException(f"Run {run_id} not found.")
    click.echo(messaging.format_run_detail(run))


@main.command("stop")
@click.argument("run_id")
@click.pass_context
def stop_command(ctx: click.Context, run_id: str) -> None:
    """Cancel a run. A serving process stops it at its next phase boundary."""
    cfg = _load(ctx)

    async def _stop(store: StateStore) -> str:
        run = await _find_run(store, run_id)
        if run is None:
            raise click.ClickException(f"Run {run_id} not found.")
        if run.is_terminal:
            return f"Run #{run.id} is already {run.status}."
        await store.cancel_run(run.id)
        return f"Run #{run.id} cancelled."

    click.echo(_run_async(_with_store(cfg, _stop)))


# ----------------------------------------------------------------------
# Setup
# ----------------------------------------------------------------------


def _doctor_rows(cfg: SWETeamConfig) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for tool, purpose in (("git", "repository operations"), ("gh", "clone and pull requests")):
        found = shutil.which(tool) is not None
        rows.append({"name": tool, "binary": tool, "ok": found, "details": purpose if found else f"missing binary `{tool}`"})
    for role, agent_cfg in (("architect", cfg.agents.architect), ("swe", cfg.agents.swe)):
        try:
            binary = backend_for(agent_cfg).binary
        except ConfigurationError as exc:
            rows.append({"name": role, "binary": agent_cfg.provider, "ok": False, "details": str(exc)})
            continue
        found = shutil.which(binary) is not None
        rows.append({
            "name": role,
            "binary": binary,
            "ok": found,
            "details": f"model={agent_cfg.model or 'default'}" if found else f"missing binary `{binary}`",
        })
    return rows


def _print_doctor(rows: list[dict[str, Any]]) -> bool:
    click.echo("Preflight:")
    all_ok = True
    for row in rows:
        icon = "OK" if row["ok"] else "FAIL"
        click.echo(f"  [{icon}] {row['name']} binary={row['binary']} - {row['details']}")
        all_ok = all_ok and bool(row["ok"])
    return all_ok


@main.command("doctor")
@click.pass_context
def doctor_command(ctx: click.Context) -> None:
    """Check that git, gh and the agent CLIs are installed."""
    cfg = _load(ctx)
    ok = _print_doctor(_doctor_rows(cfg))
    raise SystemExit(0 if ok else 1)


@main.command("init")
@click.argument("target_dir", type=click.Path(file_okay=False, path_type=Path), required=False)
@click.option("--prompts/--no-prompts", default=True, help="Also write default system prompt files")
@click.option("--force", is_flag=True, help="Overwrite existing files")
def init_command(target_dir: Path | None, prompts: bool, force: bool) -> None:
    """Write a starter config.yaml (and prompt files) into TARGET_DIR."""
    base = target_dir or Path.cwd()
    base.mkdir(parents=True, exist_ok=True)

    written: list[Path] = []
    config_file = base / "config.yaml"
    if config_file.exists() and not force:
        click.echo(f"Keeping existing {config_file}")
    else:
        config_file.write_text(DEFAULT_CONFIG, encoding="utf-8")
        written.append(config_file)

    if prompts:
        prompt_dir = base / "prompts"
        prompt_dir.mkdir(exist_ok=True)
        for name, text in DEFAULT_PROMPTS.items():
            target = prompt_dir / name
            if target.exists() and not force:
                continue
            target.write_text(text, encoding="utf-8")
            written.append(target)

    for path in written:
        click.echo(f"Wrote {path}")
    click.echo("Next: `sweteam doctor`, then `sweteam serve` or `sweteam run <owner/repo> <task>`.")


if __name__ == "__main__":
    sys.exit(main())
