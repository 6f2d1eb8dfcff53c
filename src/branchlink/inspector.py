"""Async git inspection and checkout with a hard per-call timeout.

The inspector knows nothing about tickets. Every backend call runs in a worker
thread under ``asyncio.wait_for``; a timeout becomes ``GitUnavailable``.
Queries fail closed (False, "" or []) and log a warning; ``checkout_or_create``
reports failures through ``CheckoutResult.error``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, TypeVar

from .errors import (
    BranchLinkError,
    BranchNotFound,
    DirtyWorkingTree,
    GitUnavailable,
)
from .git_backend import DEFAULT_TIMEOUT, GitBackend
from .naming import validate_branch_name
from .observability import log_debug, log_info, log_warning

T = TypeVar("T")

DEFAULT_BASE_FALLBACKS = ("main", "master")


class CheckoutAction(str, Enum):
    ALREADY_CURRENT = "already_current"
    CHECKED_OUT = "checked_out"
    TRACKED_REMOTE = "tracked_remote"  # local branch created from <remote>/<name>
    CREATED = "created"  # new branch from the base branch


@dataclass
class CheckoutResult:
    """Outcome of checkout_or_create."""

    success: bool
    branch: str
    action: Optional[CheckoutAction] = None
    base_branch: Optional[str] = None
    error: Optional[BranchLinkError] = None

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind.value if self.error else None


@dataclass
class ChangesSummary:
    staged: int = 0
    modified: int = 0
    untracked: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.staged or self.modified)

    def __str__(self) -> str:
        parts = []
        if self.staged:
            parts.append(f"{self.staged} staged")
        if self.modified:
            parts.append(f"{self.modified} modified")
        if self.untracked:
            parts.append(f"{self.untracked} untracked")
        return ", ".join(parts) or "clean"


def summarize_status(entries: Sequence[str]) -> ChangesSummary:
    """Count porcelain v1 status lines (``XY path``)."""
    summary = ChangesSummary()
    for line in entries:
        if len(line) < 2:
            continue
        x, y = line[0], line[1]
        if x == "?" and y == "?":
            summary.untracked += 1
            continue
        if x not in (" ", "?", "!"):
            summary.staged += 1
        if y not in (" ", "?", "!"):
            summary.modified += 1
    return summary


class GitRepositoryInspector:
    """Git plumbing for one or more working trees, async and timeout-bounded."""

    def __init__(
        self,
        backend: GitBackend,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        remote: str = "origin",
        base_branch: str = "main",
        base_fallbacks: Sequence[str] = DEFAULT_BASE_FALLBACKS,
    ):
        self.backend = backend
        self.timeout = timeout
        self.remote = remote
        self.base_branch = base_branch
        self.base_fallbacks = tuple(base_fallbacks)

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise GitUnavailable(f"git {operation} timed out after {self.timeout}s")

    def _absorb(self, operation: str, path: Path, error: BranchLinkError) -> None:
        log_warning(
            f"[GIT] {operation} failed",
            path=str(path),
            kind=error.kind.value,
            error=error.message,
        )

    async def is_git_repository(self, path: Path) -> bool:
        """True iff ``path`` is inside a git working tree. Never raises."""
        try:
            await self._call("rev-parse", self.backend.toplevel, Path(path))
            return True
        except BranchLinkError as e:
            log_debug("[GIT] not a repository", path=str(path), kind=e.kind.value)
            return False

    async def get_toplevel(self, path: Path) -> Optional[Path]:
        try:
            return await self._call("rev-parse", self.backend.toplevel, Path(path))
        except BranchLinkError as e:
            log_debug("[GIT] toplevel unavailable", path=str(path), kind=e.kind.value)
            return None

    async def get_current_branch(self, path: Path) -> str:
        """Checked-out branch name; "" on detached HEAD or any error."""
        try:
            name = await self._call("symbolic-ref", self.backend.current_branch, Path(path))
        except BranchLinkError as e:
            self._absorb("current branch", path, e)
            return ""
        return name or ""

    async def try_list_local_branches(self, path: Path) -> Optional[list[str]]:
        """Local branches, or None when git could not answer."""
        try:
            branches = await self._call("for-each-ref", self.backend.local_branches, Path(path))
        except BranchLinkError as e:
            self._absorb("list branches", path, e)
            return None
        return sorted(branches)

    async def list_local_branches(self, path: Path) -> list[str]:
        """Local branch names (no remote-tracking refs); [] on error."""
        return await self.try_list_local_branches(path) or []

    async def list_remote_branches(self, path: Path) -> list[str]:
        try:
            branches = await self._call(
                "for-each-ref", self.backend.remote_branches, Path(path), self.remote
            )
        except BranchLinkError as e:
            self._absorb("list remote branches", path, e)
            return []
        return sorted(branches)

    async def branch_exists(self, path: Path, name: str) -> bool:
        return name in await self.list_local_branches(path)

    async def get_remote_url(self, path: Path) -> Optional[str]:
        try:
            return await self._call("config", self.backend.remote_url, Path(path), self.remote)
        except BranchLinkError as e:
            self._absorb("remote url", path, e)
            return None

    async def uncommitted_changes_summary(self, path: Path) -> Optional[ChangesSummary]:
        try:
            entries = await self._call(
                "status", self.backend.status_entries, Path(path), True
            )
        except BranchLinkError as e:
            self._absorb("status", path, e)
            return None
        return summarize_status(entries)

    async def has_uncommitted_changes(self, path: Path) -> bool:
        """Staged or modified tracked files. Untracked files do not count."""
        summary = await self.uncommitted_changes_summary(path)
        return bool(summary and summary.has_changes)

    async def resolve_base_branch(self, path: Path, preferred: Optional[str] = None) -> Optional[str]:
        """First existing candidate among the configured base and its fallbacks.

        An explicit ``preferred`` base is the only candidate; it is never
        swapped for another branch. A candidate present only on the remote
        resolves to ``<remote>/<name>``.
        """
        candidates: list[str] = []
        for name in (preferred,) if preferred else (self.base_branch, *self.base_fallbacks):
            if name and name not in candidates:
                candidates.append(name)
        local = set(await self.list_local_branches(path))
        for name in candidates:
            if name in local:
                return name
        remote = set(await self.list_remote_branches(path))
        for name in candidates:
            if name in remote:
                return f"{self.remote}/{name}"
        return None

    async def checkout_or_create(
        self, path: Path, name: str, base_branch: Optional[str] = None
    ) -> CheckoutResult:
        """Switch ``path`` to branch ``name``, creating it when needed.

        Order: already current, local branch, remote-only branch (tracking),
        new branch from the base branch. Refuses with ``DirtyWorkingTree``
        when tracked files have uncommitted changes. The current branch is
        re-read afterwards, so an interrupted earlier call is never assumed
        to have succeeded.
        """
        path = Path(path)
        try:
            validate_branch_name(name)

            current = await self._call("symbolic-ref", self.backend.current_branch, path)
            if current == name:
                return CheckoutResult(True, name, CheckoutAction.ALREADY_CURRENT)

            entries = await self._call("status", self.backend.status_entries, path, False)
            summary = summarize_status(entries)
            if summary.has_changes:
                raise DirtyWorkingTree(
                    f"Cannot switch to {name!r}: working tree has uncommitted changes ({summary})",
                    path=str(path),
                )

            local = await self._call("for-each-ref", self.backend.local_branches, path)
            base_used: Optional[str] = None
            if name in local:
                await self._call("checkout", self.backend.checkout, path, name)
                action = CheckoutAction.CHECKED_OUT
            elif name in await self._call(
                "for-each-ref", self.backend.remote_branches, path, self.remote
            ):
                await self._call(
                    "checkout", self.backend.create_tracking_branch, path, name, self.remote
                )
                action = CheckoutAction.TRACKED_REMOTE
            else:
                base_used = await self.resolve_base_branch(path, base_branch)
                if base_used is None:
                    tried = base_branch or ", ".join((self.base_branch, *self.base_fallbacks))
                    raise BranchNotFound(
                        f"Cannot create {name!r}: no base branch found (tried {tried})",
                        path=str(path),
                    )
                await self._call("checkout", self.backend.create_branch, path, name, base_used)
                action = CheckoutAction.CREATED

            after = await self._call("symbolic-ref", self.backend.current_branch, path)
            if after != name:
                raise GitUnavailable(
                    f"Checkout of {name!r} did not take effect (HEAD is {after or 'detached'})",
                    path=str(path),
                )
        except BranchLinkError as e:
            self._absorb("checkout", path, e)
            return CheckoutResult(False, name, error=e)

        log_info("[GIT] checkout", path=str(path), branch=name, action=action.value)
        return CheckoutResult(True, name, action, base_branch=base_used)
