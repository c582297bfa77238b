"""Git worktree isolation for tasks.

Each task gets its own branch and worktree next to the repository.  Work
is merged back into the base branch with ``--no-ff`` or left in place for
inspection.  All calls are blocking ``git`` invocations; async callers run
them through ``asyncio.to_thread``.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from autocycle.errors import IsolationCreateFailedError

log = logging.getLogger(__name__)

_UNSAFE_REF_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
FALLBACK_IDENTITY = ["-c", "user.name=autocycle", "-c", "user.email=autocycle@localhost"]


@dataclass(slots=True)
class IsolationHandle:
    task_id: str
    path: Path
    branch_name: str
    base_branch: str
    repo_root: Path
    created_at: float = field(default_factory=time.time)
    valid: bool = True


@dataclass(slots=True)
class MergeOutcome:
    merged: bool
    noop: bool = False
    error: str | None = None
    commit: str | None = None


@dataclass(slots=True)
class WorktreeInfo:
    path: str
    branch: str | None
    head: str | None
    is_main: bool
    detached: bool = False


def _git(args: list[str], cwd: Path, *, check: bool = True) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=check,
        capture_output=True,
        text=True,
    )


def _stderr(exc: subprocess.CalledProcessError) -> str:
    return ((exc.stderr or "") or (exc.stdout or "")).strip()


def is_git_repo(path: Path) -> bool:
    try:
        result = _git(["rev-parse", "--is-inside-work-tree"], path, check=False)
    except (FileNotFoundError, NotADirectoryError):
        return False
    return result.returncode == 0 and result.stdout.strip() == "true"


def detect_main_branch(repo_root: Path) -> str:
    """Resolve the base branch: origin/HEAD, then main, master, current."""
    result = _git(["symbolic-ref", "refs/remotes/origin/HEAD"], repo_root, check=False)
    ref = result.stdout.strip()
    if result.returncode == 0 and ref:
        return ref.removeprefix("refs/remotes/origin/")
    for name in ("main", "master"):
        if _git(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"], repo_root, check=False).returncode == 0:
            return name
    current = _git(["rev-parse", "--abbrev-ref", "HEAD"], repo_root, check=False).stdout.strip()
    return current or "main"


def _prune_worktrees(repo_root: Path) -> None:
    """Run ``git worktree prune`` to clean up stale bookkeeping entries."""
    try:
        _git(["worktree", "prune"], repo_root)
    except subprocess.CalledProcessError as exc:
        log.warning("git worktree prune failed: %s", _stderr(exc))


def _delete_branch(repo_root: Path, branch_name: str) -> None:
    """Force-delete a local branch; a missing branch is not an error."""
    try:
        _git(["branch", "-D", branch_name], repo_root)
    except subprocess.CalledProcessError:
        log.debug("branch %s not deleted (already gone)", branch_name)


def _has_identity(repo_root: Path) -> bool:
    return _git(["config", "user.email"], repo_root, check=False).returncode == 0


class WorktreeProvider:
    def __init__(
        self,
        *,
        worktrees_root: str | Path | None = None,
        branch_prefix: str = "autocycle",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._worktrees_root = Path(worktrees_root).resolve() if worktrees_root else None
        self.branch_prefix = branch_prefix.strip("/") or "autocycle"
        self._clock = clock
        self._active: dict[str, IsolationHandle] = {}
        self._lock = threading.Lock()
        self._merge_lock = threading.Lock()

    def worktrees_root_for(self, repo_root: Path) -> Path:
        if self._worktrees_root is not None:
            return self._worktrees_root
        return repo_root.parent / f"{repo_root.name}-worktrees"

    def main_branch(self, repo: str | Path) -> str:
        return detect_main_branch(Path(repo).resolve())

    def active_handle(self, task_id: str) -> IsolationHandle | None:
        with self._lock:
            handle = self._active.get(task_id)
        return handle if handle is not None and handle.valid else None

    def active_handles(self) -> list[IsolationHandle]:
        with self._lock:
            return [h for h in self._active.values() if h.valid]

    def create(self, base: str | Path, task_id: str, base_branch: str | None = None) -> IsolationHandle:
        """Create a fresh branch and worktree for *task_id*."""
        repo = Path(base).resolve()
        with self._lock:
            existing = self._active.get(task_id)
            if existing is not None and existing.valid:
                raise IsolationCreateFailedError(
                    f"task {task_id} already has an active worktree at {existing.path}",
                    task_id=task_id,
                )
        if not is_git_repo(repo):
            raise IsolationCreateFailedError(f"{repo} is not a git repository", task_id=task_id)

        safe_id = _UNSAFE_REF_CHARS.sub("-", task_id).strip("-.") or "task"
        base_branch = base_branch or detect_main_branch(repo)
        branch_name = f"{self.branch_prefix}/{safe_id}-{int(self._clock() * 1000)}"
        path = self.worktrees_root_for(repo) / safe_id

        _prune_worktrees(repo)
        if path.exists():
            log.warning("removing stale worktree at %s", path)
            self._force_remove(repo, path)
        path.parent.mkdir(parents=True, exist_ok=True)

        try:
            _git(["worktree", "add", "-b", branch_name, str(path), base_branch], repo)
        except subprocess.CalledProcessError as exc:
            raise IsolationCreateFailedError(
                f"git worktree add failed for {task_id}: {_stderr(exc)}", task_id=task_id
            ) from exc
        except FileNotFoundError as exc:
            raise IsolationCreateFailedError("git executable not found", task_id=task_id) from exc

        handle = IsolationHandle(
            task_id=task_id,
            path=path,
            branch_name=branch_name,
            base_branch=base_branch,
            repo_root=repo,
        )
        with self._lock:
            self._active[task_id] = handle
        log.info("created worktree %s on %s (base %s)", path, branch_name, base_branch)
        return handle

    def commit_pending(self, handle: IsolationHandle, message: str) -> bool:
        """Commit uncommitted changes in the worktree. Returns True if a commit was made."""
        status = _git(["status", "--porcelain"], handle.path).stdout
        if not status.strip():
            return False
        _git(["add", "-A"], handle.path)
        identity = [] if _has_identity(handle.path) else FALLBACK_IDENTITY
        _git([*identity, "commit", "--no-verify", "-m", message], handle.path)
        log.info("committed pending changes in %s", handle.path)
        return True

    def diff(self, handle: IsolationHandle, *, max_chars: int = 50_000) -> str:
        """Stat plus full diff of the task branch against its base."""
        spec = f"{handle.base_branch}...HEAD"
        stat = _git(["diff", "--stat", spec], handle.path).stdout
        body = _git(["diff", spec], handle.path).stdout
        text = f"{stat.strip()}\n\n{body}" if stat.strip() else body
        if len(text) > max_chars:
            return text[:max_chars] + f"\n\n[diff truncated: {len(text)} characters total]"
        return text

    def merge(self, handle: IsolationHandle) -> MergeOutcome:
        """Merge the task branch into its base branch.

        A branch without commits beyond its base is a successful no-op and
        never produces an empty merge commit.  On conflict the merge is
        aborted so the base branch is left as it was.
        """
        if not handle.valid:
            return MergeOutcome(merged=False, error="isolation handle is no longer valid")
        repo = handle.repo_root
        with self._merge_lock:
            try:
                ahead = _git(
                    ["rev-list", "--count", f"{handle.base_branch}..{handle.branch_name}"], repo
                ).stdout.strip()
            except subprocess.CalledProcessError as exc:
                return MergeOutcome(merged=False, error=f"cannot compare branches: {_stderr(exc)}")
            if int(ahead or 0) == 0:
                log.info("merge of %s is a no-op: branch has no new commits", handle.branch_name)
                return MergeOutcome(merged=True, noop=True)

            try:
                current = _git(["rev-parse", "--abbrev-ref", "HEAD"], repo).stdout.strip()
                if current != handle.base_branch:
                    _git(["checkout", handle.base_branch], repo)
            except subprocess.CalledProcessError as exc:
                return MergeOutcome(
                    merged=False, error=f"cannot check out {handle.base_branch}: {_stderr(exc)}"
                )

            identity = [] if _has_identity(repo) else FALLBACK_IDENTITY
            message = f"Merge {handle.branch_name} ({handle.task_id})"
            try:
                _git([*identity, "merge", "--no-ff", "--no-edit", "-m", message, handle.branch_name], repo)
            except subprocess.CalledProcessError as exc:
                _git(["merge", "--abort"], repo, check=False)
                log.warning("merge of %s failed: %s", handle.branch_name, _stderr(exc))
                return MergeOutcome(merged=False, error=f"merge conflict: {_stderr(exc)}")
            head = _git(["rev-parse", "HEAD"], repo).stdout.strip()
        log.info("merged %s into %s at %s", handle.branch_name, handle.base_branch, head[:12])
        return MergeOutcome(merged=True, commit=head)

    def remove(self, path: str | Path, *, delete_branch: bool = True) -> None:
        """Remove a worktree (and by default its branch); invalidates its handle."""
        target = Path(path).resolve()
        handle = self._handle_for_path(target)
        repo = handle.repo_root if handle is not None else self._repo_for(target)
        if repo is not None:
            self._force_remove(repo, target)
        elif target.exists():
            shutil.rmtree(target, ignore_errors=True)
        if handle is not None:
            handle.valid = False
            with self._lock:
                if self._active.get(handle.task_id) is handle:
                    del self._active[handle.task_id]
            if delete_branch and repo is not None:
                _delete_branch(repo, handle.branch_name)
        log.info("removed worktree %s", target)

    def list(self, base: str | Path) -> list[WorktreeInfo]:
        """Parse ``git worktree list --porcelain``; the first entry is the main worktree."""
        output = _git(["worktree", "list", "--porcelain"], Path(base).resolve()).stdout
        infos: list[WorktreeInfo] = []
        for block in output.strip().split("\n\n"):
            fields: dict[str, str] = {}
            detached = False
            for line in block.splitlines():
                key, _, value = line.partition(" ")
                if key == "detached":
                    detached = True
                else:
                    fields[key] = value
            if "worktree" not in fields:
                continue
            branch = fields.get("branch")
            infos.append(
                WorktreeInfo(
                    path=fields["worktree"],
                    branch=branch.removeprefix("refs/heads/") if branch else None,
                    head=fields.get("HEAD"),
                    is_main=not infos,
                    detached=detached,
                )
            )
        return infos

    def _handle_for_path(self, path: Path) -> IsolationHandle | None:
        with self._lock:
            for handle in self._active.values():
                if handle.path.resolve() == path:
                    return handle
        return None

    def _repo_for(self, path: Path) -> Path | None:
        if not path.exists():
            return None
        result = _git(["rev-parse", "--path-format=absolute", "--git-common-dir"], path, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            return None
        return Path(result.stdout.strip()).parent

    def _force_remove(self, repo: Path, path: Path) -> None:
        try:
            _git(["worktree", "remove", "--force", str(path)], repo)
        except subprocess.CalledProcessError as exc:
            log.warning("git worktree remove failed for %s: %s", path, _stderr(exc))
            shutil.rmtree(path, ignore_errors=True)
            _prune_worktrees(repo)
