"""Git worktree workspaces.

Each run gets one integration worktree and each agent worker one more,
all branched off the run's origin clone. Worktree bookkeeping lives in the
origin's ``.git`` directory, so creation and removal are serialised by a
single lock per event loop.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import weakref
from pathlib import Path

from sweteam.errors import GitError, WorkspaceError
from sweteam.workspace.git_ops import GitOps

log = logging.getLogger(__name__)

HARVEST_COMMIT_MESSAGE = "chore: harvest uncommitted changes"

_worktree_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock] = weakref.WeakKeyDictionary()


def _worktree_lock() -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    lock = _worktree_locks.get(loop)
    if lock is None:
        lock = asyncio.Lock()
        _worktree_locks[loop] = lock
    return lock


def workspace_path_for(base_path: str | Path, run_key: str, branch: str) -> Path:
    return Path(base_path) / f"{run_key}-{branch.replace('/', '-')}"


class Workspace:
    """An isolated working directory checked out on its own branch."""

    def __init__(self, origin_path: str | Path, path: str | Path, branch: str) -> None:
        self.origin_path = Path(origin_path)
        self.path = Path(path)
        self.branch = branch
        self._git: GitOps | None = None

    def __repr__(self) -> str:
        return f"Workspace(path={str(self.path)!r}, branch={self.branch!r})"

    @classmethod
    async def create(
        cls,
        origin_path: str | Path,
        base_path: str | Path,
        run_key: str,
        branch: str,
        base_ref: str,
    ) -> Workspace:
        """Add a worktree for *branch* (created from *base_ref*) under *base_path*."""
        path = workspace_path_for(base_path, run_key, branch)
        origin = GitOps(origin_path)
        async with _worktree_lock():
            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                await origin.worktree_add(path, branch, base_ref)
            except GitError as exc:
                # Stale bookkeeping or a branch left by an interrupted run; keep the branch.
                log.warning("git worktree add %s failed, retrying after prune: %s", path.name, exc)
                await origin.worktree_prune()
                if path.exists():
                    shutil.rmtree(path, ignore_errors=True)
                if await origin.branch_exists(branch):
                    await origin.worktree_attach(path, branch)
                else:
                    await origin.worktree_add(path, branch, base_ref)
        log.info("Created workspace %s on %s", path, branch)
        return cls(origin_path, path, branch)

    @classmethod
    async def open_or_create(
        cls,
        origin_path: str | Path,
        base_path: str | Path,
        run_key: str,
        branch: str,
        base_ref: str,
    ) -> Workspace:
        """Reuse an existing worktree whose branch verifies, else create one."""
        path = workspace_path_for(base_path, run_key, branch)
        if path.exists():
            existing = cls(origin_path, path, branch)
            try:
                await existing.verify_branch()
            except (GitError, WorkspaceError) as exc:
                log.warning("Discarding unusable workspace %s: %s", path, exc)
                await existing.cleanup()
            else:
                log.info("Reusing workspace %s", path)
                return existing
        return await cls.create(origin_path, base_path, run_key, branch, base_ref)

    @classmethod
    def from_existing(cls, origin_path: str | Path, path: str | Path, branch: str) -> Workspace:
        return cls(origin_path, path, branch)

    @property
    def git(self) -> GitOps:
        if self._git is None:
            self._git = GitOps(self.path)
        return self._git

    async def harvest_uncommitted(self) -> bool:
        """Commit anything the agent left uncommitted. Returns True if a commit was made."""
        if not (await self.git.status()).strip():
            return False
        await self.git.add()
        await self.git.commit(HARVEST_COMMIT_MESSAGE)
        log.debug("Harvested uncommitted changes in %s", self.path)
        return True

    async def verify_branch(self) -> None:
        current = await self.git.current_branch()
        if current != self.branch:
            raise WorkspaceError(
                f"Workspace {self.path} is on branch {current!r}, expected {self.branch!r}",
                details={"path": str(self.path), "expected": self.branch, "actual": current},
            )

    async def cleanup(self) -> None:
        """Remove the worktree. The directory is gone on return."""
        origin = GitOps(self.origin_path)
        async with _worktree_lock():
            try:
                await origin.worktree_remove(self.path)
            except GitError as exc:
                log.warning("git worktree remove %s failed: %s", self.path, exc)
                shutil.rmtree(self.path, ignore_errors=True)
                try:
                    await origin.worktree_prune()
                except GitError as prune_exc:
                    log.warning("git worktree prune failed: %s", prune_exc)
            if self.path.exists():
                shutil.rmtree(self.path, ignore_errors=True)
