"""Async git / gh command wrappers."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tenacity import RetryCallState

from sweteam.config.schema import GitConfig
from sweteam.errors import GitError
from sweteam.retry import retry_async

log = logging.getLogger(__name__)

_PR_URL_RE = re.compile(r"https://github\.com/\S+")
# Failure output that usually clears up on a second attempt.
_TRANSIENT_RE = re.compile(
    r"could not resolve host|connection (?:timed out|reset|refused)|early eof|rpc failed"
    r"|remote end hung up|http (?:429|50[0234])|temporarily unavailable|rate limit",
    re.IGNORECASE,
)


async def _exec(
    binary: str,
    args: list[str],
    *,
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
) -> str:
    cmd = [binary, *args]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            env=env,
        )
    except FileNotFoundError as exc:
        raise GitError(f"'{binary}' not found. Install it or add it to PATH.", command=cmd) from exc
    except NotADirectoryError as exc:
        raise GitError(f"{binary} {args[0]} failed: bad working directory {cwd}", command=cmd) from exc

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise GitError(f"{binary} {args[0]} timed out after {timeout}s", command=cmd, retryable=True) from exc

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    if proc.returncode != 0:
        stderr = (stderr_bytes or b"").decode("utf-8", errors="replace").strip()
        detail = stderr or stdout.strip() or f"exit code {proc.returncode}"
        raise GitError(
            f"{binary} {args[0]} failed: {detail}",
            command=cmd,
            retryable=bool(_TRANSIENT_RE.search(detail)),
        )
    return stdout.strip()


class GitOps:
    """Git operations rooted at one working copy."""

    def __init__(
        self,
        repo_path: str | Path,
        *,
        github_token: str = "",
        timeout: float | None = 300,
        retries: int = 3,
        retry_wait: float = 1.0,
    ) -> None:
        self.repo_path = Path(repo_path)
        self._github_token = github_token
        self._timeout = timeout
        self._retries = retries
        self._retry_wait = retry_wait

    async def run(self, *args: str) -> str:
        return await _exec("git", list(args), cwd=self.repo_path, timeout=self._timeout)

    async def run_gh(self, *args: str) -> str:
        return await _exec("gh", list(args), cwd=self.repo_path, env=self._gh_env(), timeout=self._timeout)

    def _gh_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self._github_token:
            env["GITHUB_TOKEN"] = self._github_token
            env["GH_TOKEN"] = self._github_token
        return env

    async def _retrying(self, fn: Any, *args: Any, **kwargs: Any) -> str:
        """Run a network-bound command, retrying transient failures with backoff."""
        return await retry_async(
            fn, *args,
            max_attempts=self._retries,
            min_wait=self._retry_wait,
            multiplier=self._retry_wait,
            on_retry=_log_retry,
            **kwargs,
        )

    async def status(self) -> str:
        return await self.run("status", "--porcelain")

    async def current_branch(self) -> str:
        return await self.run("rev-parse", "--abbrev-ref", "HEAD")

    async def head(self) -> str:
        return await self.run("rev-parse", "HEAD")

    async def branch_exists(self, name: str) -> bool:
        try:
            await self.run("rev-parse", "--verify", name)
        except GitError:
            return False
        return True

    async def checkout(self, name: str) -> str:
        return await self.run("checkout", name)

    async def add(self, files: list[str] | None = None) -> str:
        return await self.run("add", *(files or ["-A"]))

    async def commit(self, message: str) -> str:
        return await self.run("commit", "-m", message)

    async def diff_against(self, base: str) -> str:
        return await self.run("diff", f"{base}..HEAD")

    async def fetch(self) -> str:
        return await self._retrying(self.run, "fetch", "--all")

    async def pull(self) -> str:
        return await self._retrying(self.run, "pull", "--rebase")

    async def push(self, remote: str, branch: str) -> str:
        return await self._retrying(self.run, "push", remote, branch)

    async def merge(self, branch: str) -> str:
        """Merge *branch* with a merge commit; raises ``GitError`` on conflict."""
        return await self.run("merge", "--no-ff", "--no-edit", branch)

    async def reset_hard(self, ref: str = "HEAD") -> str:
        return await self.run("reset", "--hard", ref)

    async def clone(self, url: str, timeout: float | None = None) -> str:
        self.repo_path.parent.mkdir(parents=True, exist_ok=True)
        return await self._retrying(
            _exec, "git", ["clone", url, str(self.repo_path)], timeout=timeout or self._timeout,
        )

    async def gh_clone(self, repo_spec: str, timeout: float | None = None) -> str:
        self.repo_path.parent.mkdir(parents=True, exist_ok=True)
        return await self._retrying(
            _exec, "gh", ["repo", "clone", repo_spec, str(self.repo_path)],
            env=self._gh_env(), timeout=timeout or self._timeout,
        )

    async def configure_user(self, name: str, email: str) -> None:
        await self.run("config", "user.name", name)
        await self.run("config", "user.email", email)

    async def create_pr(self, title: str, body: str, base: str, head: str, repo_spec: str = "") -> str:
        args = ["pr", "create", "--title", title, "--body", body, "--base", base, "--head", head]
        if repo_spec:
            args.extend(["--repo", repo_spec])
        output = await self._retrying(self.run_gh, *args)
        match = _PR_URL_RE.search(output)
        return match.group(0) if match else output

    async def worktree_add(self, path: str | Path, branch: str, base_ref: str) -> str:
        return await self.run("worktree", "add", "-b", branch, str(path), base_ref)

    async def worktree_attach(self, path: str | Path, branch: str) -> str:
        """Check out an existing *branch* in a new worktree at *path*."""
        return await self.run("worktree", "add", str(path), branch)

    async def worktree_remove(self, path: str | Path) -> str:
        return await self.run("worktree", "remove", "--force", str(path))

    async def worktree_prune(self) -> str:
        return await self.run("worktree", "prune")


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    log.warning("Transient git failure (attempt %d), retrying: %s", state.attempt_number, exc)


@dataclass(slots=True)
class RepoSyncResult:
    git: GitOps
    repo_path: str
    repo_url: str
    repo_spec: str
    base_branch: str
    cloned: bool


def infer_repo_spec(ref: str) -> str:
    """Normalise ``owner/repo``, HTTPS and SSH GitHub references to ``owner/repo``."""
    ref = ref.strip()
    m = re.search(r"github\.com[/:]([^/\s]+/[^/\s]+?)(?:\.git)?/?$", ref)
    if m:
        return m.group(1)
    return ref


def _is_plain_remote(repo_spec: str) -> bool:
    """True for clone URLs that are not GitHub repositories (``gh`` cannot clone those)."""
    return "://" in repo_spec or repo_spec.startswith("git@")


def _clone_dir_name(repo_spec: str) -> str:
    if _is_plain_remote(repo_spec):
        return "-".join(re.split(r"[/:]", repo_spec.rstrip("/"))[-2:]).removesuffix(".git")
    return repo_spec.replace("/", "-")


async def get_or_create_repo(
    repo_name: str, base_path: str | Path, git_config: GitConfig, *, clone_timeout: float | None = None,
) -> RepoSyncResult:
    """Clone *repo_name* under *base_path*, or refresh an existing clone."""
    repo_spec = infer_repo_spec(repo_name)
    repo_path = Path(base_path) / _clone_dir_name(repo_spec)
    git = GitOps(repo_path, github_token=git_config.github_token, timeout=git_config.command_timeout)
    cloned = False

    if (repo_path / ".git").exists():
        log.info("Refreshing existing clone %s", repo_path)
        await git.fetch()
        await git.checkout(git_config.default_branch)
        await git.pull()
    else:
        log.info("Cloning %s into %s", repo_spec, repo_path)
        if _is_plain_remote(repo_spec):
            await git.clone(repo_spec, timeout=clone_timeout)
        else:
            await git.gh_clone(repo_spec, timeout=clone_timeout)
        cloned = True

    await git.configure_user(git_config.author_name, git_config.author_email)
    base_branch = await git.current_branch()

    return RepoSyncResult(
        git=git,
        repo_path=str(repo_path),
        repo_url=repo_spec if _is_plain_remote(repo_spec) else f"https://github.com/{repo_spec}",
        repo_spec=repo_spec,
        base_branch=base_branch,
        cloned=cloned,
    )
