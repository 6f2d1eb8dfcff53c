"""Error taxonomy for branchlink.

Git backends and the association store raise these. The inspector, resolver
and orchestrator absorb them and report booleans, empty values or result
objects instead, so nothing here escapes the engine's public surface.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of engine failures."""

    GIT_UNAVAILABLE = "git_unavailable"  # git binary missing, timeout, or unexpected git failure
    NOT_A_REPOSITORY = "not_a_repository"  # path has no .git
    BRANCH_NOT_FOUND = "branch_not_found"  # referenced branch absent and not creatable
    DIRTY_WORKING_TREE = "dirty_working_tree"  # checkout would discard changes
    PERSISTENCE_CORRUPT = "persistence_corrupt"  # store file unreadable or invalid schema
    DUPLICATE_ASSOCIATION = "duplicate_association"  # invariant violation, treated as a bug
    INVALID_BRANCH_NAME = "invalid_branch_name"  # name rejected by git ref-format rules


class BranchLinkError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.GIT_UNAVAILABLE

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(message)
        self.message = message
        self.path = path

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "path": self.path}


class GitUnavailable(BranchLinkError):
    """git could not be run, timed out, or failed unexpectedly."""

    kind = ErrorKind.GIT_UNAVAILABLE


class NotARepository(BranchLinkError):
    kind = ErrorKind.NOT_A_REPOSITORY


class BranchNotFound(BranchLinkError):
    kind = ErrorKind.BRANCH_NOT_FOUND


class DirtyWorkingTree(BranchLinkError):
    """Checkout refused because the working tree has uncommitted changes."""

    kind = ErrorKind.DIRTY_WORKING_TREE


class PersistenceCorrupt(BranchLinkError):
    kind = ErrorKind.PERSISTENCE_CORRUPT


class DuplicateAssociation(BranchLinkError):
    """More than one record for a (ticketId, repositoryId) pair."""

    kind = ErrorKind.DUPLICATE_ASSOCIATION


class InvalidBranchName(BranchLinkError):
    kind = ErrorKind.INVALID_BRANCH_NAME
