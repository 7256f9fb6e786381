"""Git worktree workspace provider.

Each unit attempt gets its own worktree on its own branch under
``worktrees_root``.  Branches outlive their worktrees so the merge flow can
fold them into the integration branch afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
from pathlib import Path

from trackswarm.adapters.base import MergeOutcome, WorkspaceHandle
from trackswarm.errors import CommitError, WorkspaceError

log = logging.getLogger(__name__)


def _slug(branch: str) -> str:
    return branch.replace("/", "-")


class GitWorktreeProvider:
    def __init__(
        self,
        repo_root: Path,
        worktrees_root: Path,
        *,
        binary: str = "git",
    ) -> None:
        self.repo_root = Path(repo_root)
        self.worktrees_root = Path(worktrees_root)
        self.binary = binary

    # ------------------------------------------------------------------
    # git plumbing (blocking; always called through asyncio.to_thread)
    # ------------------------------------------------------------------

    def _git(self, *args: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            [self.binary, *args],
            cwd=cwd or self.repo_root,
            check=True,
            capture_output=True,
            text=True,
        )

    def _prune_worktrees(self) -> None:
        """Run ``git worktree prune`` to clean up stale bookkeeping entries."""
        try:
            self._git("worktree", "prune")
        except subprocess.CalledProcessError as exc:
            log.warning("git worktree prune failed: %s", exc.stderr)

    def _delete_branch(self, branch: str) -> None:
        """Force-delete a local branch that may be left over from a previous run."""
        try:
            self._git("branch", "-D", branch)
        except subprocess.CalledProcessError as exc:
            log.debug("git branch -D %s: %s", branch, (exc.stderr or "").strip())

    def branch_exists(self, branch: str) -> bool:
        try:
            self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        except subprocess.CalledProcessError:
            return False
        return True

    def _create_sync(self, branch: str, path: Path) -> WorkspaceHandle:
        if not (self.repo_root / ".git").exists():
            raise WorkspaceError(f"Not a git repository: {self.repo_root}", branch=branch)
        if path.exists():
            raise WorkspaceError(f"Worktree path already exists: {path}", branch=branch)
        path.parent.mkdir(parents=True, exist_ok=True)

        self._prune_worktrees()
        try:
            self._git("worktree", "add", "-b", branch, str(path))
        except subprocess.CalledProcessError:
            # Branch may exist from a previous run; delete it and retry once.
            self._delete_branch(branch)
            try:
                self._git("worktree", "add", "-b", branch, str(path))
            except subprocess.CalledProcessError as exc:
                if path.exists():
                    shutil.rmtree(path, ignore_errors=True)
                self._prune_worktrees()
                raise WorkspaceError(
                    f"Failed to create worktree for {branch}: {(exc.stderr or '').strip()}",
                    branch=branch,
                ) from exc
        log.info("Worktree created at %s on %s", path, branch)
        return WorkspaceHandle(path=path, branch=branch)

    def _commit_sync(self, handle: WorkspaceHandle, message: str) -> None:
        try:
            self._git("add", "-A", cwd=handle.path)
            self._git("commit", "--allow-empty", "-m", message, cwd=handle.path)
        except subprocess.CalledProcessError as exc:
            raise CommitError(
                f"Failed to commit in {handle.path}: {(exc.stderr or exc.stdout or '').strip()}"
            ) from exc
        log.info("Committed %s: %s", handle.branch, message)

    def _remove_sync(self, handle: WorkspaceHandle) -> None:
        try:
            self._git("worktree", "remove", "--force", str(handle.path))
        except subprocess.CalledProcessError as exc:
            log.warning("git worktree remove %s failed: %s", handle.path, exc.stderr)
            if handle.path.exists():
                shutil.rmtree(handle.path, ignore_errors=True)
        self._prune_worktrees()

    # ------------------------------------------------------------------
    # Integration worktree (merge flow)
    # ------------------------------------------------------------------

    def integration_path(self, into: str) -> Path:
        return self.worktrees_root / "_integration" / _slug(into)

    def _ensure_integration_sync(self, into: str) -> Path:
        path = self.integration_path(into)
        if path.exists():
            return path
        path.parent.mkdir(parents=True, exist_ok=True)
        self._prune_worktrees()
        try:
            if self.branch_exists(into):
                self._git("worktree", "add", str(path), into)
            else:
                self._git("worktree", "add", "-b", into, str(path))
        except subprocess.CalledProcessError as exc:
            raise WorkspaceError(
                f"Failed to prepare integration worktree {into}: {(exc.stderr or '').strip()}",
                branch=into,
            ) from exc
        log.info("Integration worktree for %s at %s", into, path)
        return path

    def _conflicted_files(self, cwd: Path) -> list[str]:
        try:
            out = self._git("diff", "--name-only", "--diff-filter=U", cwd=cwd).stdout
        except subprocess.CalledProcessError:
            return []
        return [line.strip() for line in out.splitlines() if line.strip()]

    def _merge_sync(self, branch: str, into: str) -> MergeOutcome:
        if not self.branch_exists(branch):
            return MergeOutcome(success=False, message=f"Branch {branch} not found")
        cwd = self._ensure_integration_sync(into)
        try:
            result = self._git("merge", "--no-ff", "--no-edit", branch, cwd=cwd)
        except subprocess.CalledProcessError as exc:
            output = f"{exc.stdout or ''}\n{exc.stderr or ''}"
            conflicts = self._conflicted_files(cwd)
            if conflicts or "Automatic merge failed" in output:
                log.warning("Merge conflict merging %s into %s: %s", branch, into, conflicts)
                return MergeOutcome(
                    success=False, conflict=True, conflicts=conflicts, message="Automatic merge failed",
                )
            raise WorkspaceError(
                f"Failed to merge {branch} into {into}: {output.strip()}", branch=branch,
            ) from exc
        log.info("Merged %s into %s", branch, into)
        return MergeOutcome(success=True, message=result.stdout.strip())

    def _finish_merge_sync(self, into: str, accept: bool) -> None:
        cwd = self.integration_path(into)
        try:
            if accept:
                self._git("add", "-A", cwd=cwd)
                self._git("commit", "--no-edit", cwd=cwd)
            else:
                self._git("merge", "--abort", cwd=cwd)
        except subprocess.CalledProcessError as exc:
            raise WorkspaceError(
                f"Failed to {'conclude' if accept else 'abort'} merge on {into}: "
                f"{(exc.stderr or '').strip()}",
                branch=into,
            ) from exc

    # ------------------------------------------------------------------
    # WorkspaceProvider
    # ------------------------------------------------------------------

    async def create(self, branch: str, path: Path | None = None) -> WorkspaceHandle:
        target = Path(path) if path is not None else self.worktrees_root / _slug(branch)
        return await asyncio.to_thread(self._create_sync, branch, target)

    async def commit_all(self, handle: WorkspaceHandle, message: str) -> None:
        await asyncio.to_thread(self._commit_sync, handle, message)

    async def remove(self, handle: WorkspaceHandle) -> None:
        await asyncio.to_thread(self._remove_sync, handle)

    async def merge(self, branch: str, into: str) -> MergeOutcome:
        return await asyncio.to_thread(self._merge_sync, branch, into)

    async def finish_merge(self, into: str, *, accept: bool) -> None:
        """Commit (``accept``) or abort an in-progress conflicted merge."""
        await asyncio.to_thread(self._finish_merge_sync, into, accept)
