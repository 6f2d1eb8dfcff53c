"""Test doubles for branchlink.

Usage:
    from branchlink.testing import FakeGitBackend, RecordingNotifier

    git = FakeGitBackend()
    git.add_repo("/work/backend", branches=["main", "feat/eng-123-auth"],
                 remote_url="git@github.com:acme/backend.git")
    engine = BranchLinkEngine.create("/work/backend", git_backend=git,
                                     notifier=RecordingNotifier())
"""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional

from .errors import (
    BranchNotFound,
    DirtyWorkingTree,
    GitUnavailable,
    NotARepository,
)
from .fs import canonical_path
from .git_backend import GitBackend


@dataclass
class FakeRepo:
    """In-memory working tree."""

    path: Path
    branches: list[str] = field(default_factory=lambda: ["main"])
    current: Optional[str] = "main"  # None = detached HEAD
    remote_url: Optional[str] = None
    remote_branches: list[str] = field(default_factory=list)
    status: list[str] = field(default_factory=list)  # porcelain lines

    def delete_branch(self, name: str) -> None:
        self.branches.remove(name)


class FakeGitBackend(GitBackend):
    """GitBackend serving FakeRepos from memory.

    Attributes:
        delay: seconds every call sleeps first (drives timeout tests)
        unavailable: when True every call raises GitUnavailable
        calls: ``(method, path)`` log of every call
    """

    def __init__(self, *, delay: float = 0.0, remote: str = "origin"):
        self.repos: Dict[str, FakeRepo] = {}
        self.delay = delay
        self.unavailable = False
        self.remote = remote
        self.calls: list[tuple[str, str]] = []

    def add_repo(
        self,
        path: str | os.PathLike[str],
        *,
        branches: Iterable[str] = ("main",),
        current: Optional[str] = "main",
        remote_url: Optional[str] = None,
        remote_branches: Iterable[str] = (),
    ) -> FakeRepo:
        root = canonical_path(path)
        repo = FakeRepo(
            path=root,
            branches=list(branches),
            current=current,
            remote_url=remote_url,
            remote_branches=list(remote_branches),
        )
        self.repos[str(root)] = repo
        return repo

    def repo(self, path: str | os.PathLike[str]) -> FakeRepo:
        return self.repos[str(canonical_path(path))]

    def _enter(self, method: str, path: Path) -> FakeRepo:
        self.calls.append((method, str(path)))
        if self.delay:
            time.sleep(self.delay)
        if self.unavailable:
            raise GitUnavailable("git executable not found", path=str(path))
        candidate = canonical_path(path)
        for directory in (candidate, *candidate.parents):
            repo = self.repos.get(str(directory))
            if repo is not None:
                return repo
        raise NotARepository(f"Not a git repository: {path}", path=str(path))

    def toplevel(self, path: Path) -> Path:
        return self._enter("toplevel", path).path

    def current_branch(self, path: Path) -> Optional[str]:
        return self._enter("current_branch", path).current

    def local_branches(self, path: Path) -> list[str]:
        return list(self._enter("local_branches", path).branches)

    def remote_branches(self, path: Path, remote: str) -> list[str]:
        repo = self._enter("remote_branches", path)
        return list(repo.remote_branches) if remote == self.remote else []

    def remote_url(self, path: Path, remote: str) -> Optional[str]:
        return self._enter("remote_url", path).remote_url

    def status_entries(self, path: Path, include_untracked: bool = False) -> list[str]:
        entries = self._enter("status_entries", path).status
        if include_untracked:
            return list(entries)
        return [line for line in entries if not line.startswith("??")]

    def _refuse_if_dirty(self, repo: FakeRepo) -> None:
        if any(not line.startswith("??") for line in repo.status):
            raise DirtyWorkingTree(
                "Your local changes to the following files would be overwritten by checkout",
                path=str(repo.path),
            )

    def checkout(self, path: Path, branch: str) -> None:
        repo = self._enter("checkout", path)
        if branch not in repo.branches:
            raise BranchNotFound(f"pathspec '{branch}' did not match any file(s) known to git")
        self._refuse_if_dirty(repo)
        repo.current = branch

    def create_branch(self, path: Path, branch: str, start_point: str) -> None:
        repo = self._enter("create_branch", path)
        remote_start = start_point.split("/", 1)[1] if start_point.startswith(f"{self.remote}/") else None
        if start_point not in repo.branches and remote_start not in repo.remote_branches:
            raise BranchNotFound(f"'{start_point}' is not a commit")
        if branch in repo.branches:
            raise GitUnavailable(f"a branch named '{branch}' already exists")
        self._refuse_if_dirty(repo)
        repo.branches.append(branch)
        repo.current = branch

    def create_tracking_branch(self, path: Path, branch: str, remote: str) -> None:
        repo = self._enter("create_tracking_branch", path)
        if remote != self.remote or branch not in repo.remote_branches:
            raise BranchNotFound(f"'{remote}/{branch}' is not a commit")
        self._refuse_if_dirty(repo)
        repo.branches.append(branch)
        repo.current = branch


class RecordingNotifier:
    """Notifier that keeps every message, by level."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    def info(self, message: str) -> None:
        self.messages.append(("info", message))

    def warn(self, message: str) -> None:
        self.messages.append(("warn", message))

    def error(self, message: str) -> None:
        self.messages.append(("error", message))

    def of(self, level: str) -> list[str]:
        return [m for lvl, m in self.messages if lvl == level]


@contextmanager
def mock_env_vars(**env_vars: str) -> Iterator[None]:
    """Temporarily set environment variables, restoring previous values on exit.

    Example:
        with mock_env_vars(BRANCHLINK_STORAGE_MODE="global"):
            config = load_config()
    """
    old_values: Dict[str, Optional[str]] = {}
    for key, value in env_vars.items():
        old_values[key] = os.environ.get(key)
        os.environ[key] = value
    try:
        yield
    finally:
        for key, old_value in old_values.items():
            if old_value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = old_value
