"""Git backends.

``GitBackend`` is the narrow, synchronous surface the inspector needs.
``GitPythonBackend`` runs git through GitPython. Each public call has one
deadline, and every command it runs is killed once the deadline passes.
``branchlink.testing.FakeGitBackend`` serves the same interface from memory.

Backends raise ``BranchLinkError`` subclasses and nothing else.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from git import Repo
from git.exc import (
    GitCommandError,
    GitCommandNotFound,
    InvalidGitRepositoryError,
    NoSuchPathError,
)

from .errors import (
    BranchLinkError,
    BranchNotFound,
    DirtyWorkingTree,
    GitUnavailable,
    NotARepository,
)
from .observability import log_debug

DEFAULT_TIMEOUT = 5.0

# stderr fragments -> error class, checked in order
_STDERR_CLASSIFIERS: list[tuple[tuple[str, ...], type[BranchLinkError]]] = [
    (("timeout:", "timed out"), GitUnavailable),
    (("not a git repository",), NotARepository),
    (
        (
            "would be overwritten",
            "please commit your changes or stash them",
            "you have local changes",
        ),
        DirtyWorkingTree,
    ),
    (
        (
            "did not match any",
            "not a valid object name",
            "invalid reference",
            "not a commit",
            "unknown revision",
        ),
        BranchNotFound,
    ),
]


def _is_timeout(error: GitCommandError) -> bool:
    text = f"{getattr(error, 'stderr', '') or ''} {error}".lower()
    return "timeout:" in text or "timed out" in text


def classify_git_error(error: GitCommandError, path: Path | str | None = None) -> BranchLinkError:
    """Map a failed git command onto the error taxonomy."""
    stderr = str(getattr(error, "stderr", "") or "")
    text = f"{stderr} {error}".lower()
    # GitPython formats stderr as "\n  stderr: '<text>'"
    detail = stderr.strip()
    if detail.startswith("stderr:"):
        detail = detail[len("stderr:"):].strip()
    detail = detail.strip("'").strip() or str(error)
    for fragments, error_cls in _STDERR_CLASSIFIERS:
        if any(fragment in text for fragment in fragments):
            return error_cls(detail, path=str(path) if path else None)
    return GitUnavailable(f"git failed: {detail}", path=str(path) if path else None)


class GitBackend(ABC):
    """Abstract interface for the git operations branchlink performs.

    All paths are absolute. Every method may raise ``GitUnavailable`` or
    ``NotARepository``; mutating methods also raise ``DirtyWorkingTree`` and
    ``BranchNotFound``.
    """

    @abstractmethod
    def toplevel(self, path: Path) -> Path:
        """Root of the working tree containing ``path``."""

    @abstractmethod
    def current_branch(self, path: Path) -> Optional[str]:
        """Checked-out branch, or None on detached HEAD."""

    @abstractmethod
    def local_branches(self, path: Path) -> list[str]:
        """Names under refs/heads."""

    @abstractmethod
    def remote_branches(self, path: Path, remote: str) -> list[str]:
        """Branch names under refs/remotes/<remote>, without the remote prefix."""

    @abstractmethod
    def remote_url(self, path: Path, remote: str) -> Optional[str]:
        """URL of ``remote``, else of the first configured remote, else None."""

    @abstractmethod
    def status_entries(self, path: Path, include_untracked: bool = False) -> list[str]:
        """``git status --porcelain`` lines."""

    @abstractmethod
    def checkout(self, path: Path, branch: str) -> None:
        ...

    @abstractmethod
    def create_branch(self, path: Path, branch: str, start_point: str) -> None:
        """Create ``branch`` at ``start_point`` and check it out."""

    @abstractmethod
    def create_tracking_branch(self, path: Path, branch: str, remote: str) -> None:
        """Create ``branch`` tracking ``<remote>/<branch>`` and check it out."""


@dataclass
class _Call:
    """An open repository and the deadline shared by every command of one call."""

    repo: Repo
    deadline: float

    def remaining(self, command: str) -> float:
        left = self.deadline - time.monotonic()
        if left <= 0:
            raise GitUnavailable(f"git {command} timed out", path=self.repo.working_tree_dir)
        return left


class GitPythonBackend(GitBackend):
    """GitBackend backed by GitPython.

    Each call opens the repository, runs its git commands and closes it
    again; no Repo object outlives a call. ``timeout`` bounds the whole
    call, however many commands it runs.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    @contextmanager
    def _open(self, path: Path) -> Iterator[_Call]:
        deadline = time.monotonic() + self.timeout
        try:
            repo = Repo(str(path), search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError):
            raise NotARepository(f"Not a git repository: {path}", path=str(path))
        except GitCommandNotFound as e:
            raise GitUnavailable(f"git executable not found: {e}", path=str(path))
        try:
            if repo.bare or repo.working_tree_dir is None:
                raise NotARepository(f"Bare repository has no working tree: {path}", path=str(path))
            yield _Call(repo, deadline)
        finally:
            repo.close()

    def _git(self, call: _Call, command: str, *args: str) -> str:
        log_debug(f"GIT_OP_START: {command} {' '.join(args)}")
        repo = call.repo
        try:
            output = getattr(repo.git, command)(*args, kill_after_timeout=call.remaining(command))
        except GitCommandNotFound as e:
            raise GitUnavailable(f"git executable not found: {e}", path=repo.working_tree_dir)
        except GitCommandError as e:
            raise classify_git_error(e, repo.working_tree_dir)
        log_debug(f"GIT_OP_END: {command}")
        return output

    def _try_git(self, call: _Call, command: str, *args: str) -> Optional[str]:
        """Like _git, but a plain non-zero exit means "no answer" (None)."""
        repo = call.repo
        try:
            return getattr(repo.git, command)(*args, kill_after_timeout=call.remaining(command))
        except GitCommandNotFound as e:
            raise GitUnavailable(f"git executable not found: {e}", path=repo.working_tree_dir)
        except GitCommandError as e:
            if _is_timeout(e):
                raise GitUnavailable(f"git {command} timed out", path=repo.working_tree_dir)
            return None

    def toplevel(self, path: Path) -> Path:
        with self._open(path) as call:
            return Path(call.repo.working_tree_dir)

    def current_branch(self, path: Path) -> Optional[str]:
        with self._open(path) as call:
            # symbolic-ref exits 1 on detached HEAD; works on unborn branches
            name = self._try_git(call, "symbolic_ref", "--quiet", "--short", "HEAD")
            return name.strip() if name else None

    def local_branches(self, path: Path) -> list[str]:
        with self._open(path) as call:
            out = self._git(call, "for_each_ref", "--format=%(refname:short)", "refs/heads")
            return [line.strip() for line in out.splitlines() if line.strip()]

    def remote_branches(self, path: Path, remote: str) -> list[str]:
        with self._open(path) as call:
            prefix = f"refs/remotes/{remote}/"
            out = self._git(call, "for_each_ref", "--format=%(refname)", prefix.rstrip("/"))
            names = []
            for line in out.splitlines():
                ref = line.strip()
                if not ref.startswith(prefix):
                    continue
                name = ref[len(prefix):]
                if name != "HEAD":
                    names.append(name)
            return names

    def remote_url(self, path: Path, remote: str) -> Optional[str]:
        with self._open(path) as call:
            url = self._try_git(call, "config", "--get", f"remote.{remote}.url")
            if url and url.strip():
                return url.strip()
            remotes = (self._try_git(call, "remote") or "").split()
            for name in remotes:
                url = self._try_git(call, "config", "--get", f"remote.{name}.url")
                if url and url.strip():
                    return url.strip()
            return None

    def status_entries(self, path: Path, include_untracked: bool = False) -> list[str]:
        with self._open(path) as call:
            untracked = "--untracked-files=normal" if include_untracked else "--untracked-files=no"
            out = self._git(call, "status", "--porcelain", untracked)
            return [line for line in out.splitlines() if line.strip()]

    def checkout(self, path: Path, branch: str) -> None:
        with self._open(path) as call:
            self._git(call, "checkout", branch, "--")

    def create_branch(self, path: Path, branch: str, start_point: str) -> None:
        with self._open(path) as call:
            self._git(call, "checkout", "-b", branch, start_point)

    def create_tracking_branch(self, path: Path, branch: str, remote: str) -> None:
        with self._open(path) as call:
            self._git(call, "checkout", "-b", branch, "--track", f"{remote}/{branch}")
