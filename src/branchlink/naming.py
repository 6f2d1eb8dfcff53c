"""Branch name validation and generation from tickets."""

from __future__ import annotations

import re
from typing import Optional

from .errors import InvalidBranchName

# Branch name constraints (git refname rules)
MAX_BRANCH_LENGTH = 255
# Each tuple is (compiled_pattern, human_readable_message), per git-check-ref-format
_BRANCH_VALIDATION_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\.\.+"), "contains consecutive dots (..)"),
    (re.compile(r"^-"), "starts with hyphen (potential flag injection)"),
    (re.compile(r"^\.|\.$"), "starts or ends with dot"),
    (re.compile(r"/\."), "has a path component starting with dot"),
    (re.compile(r"\.lock$"), "ends with .lock (reserved suffix)"),
    (re.compile(r"@\{"), "contains reflog syntax (@{)"),
    (re.compile(r"[\x00-\x1f\x7f]"), "contains control characters"),
    (re.compile(r"[~^:?*\[\]\\]"), "contains invalid git characters (~^:?*[]\\)"),
    (re.compile(r"\s"), "contains whitespace"),
]

DEFAULT_BRANCH_TYPE = "feat"
DEFAULT_MAX_SLUG_LENGTH = 50

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def validate_branch_name(branch: str) -> None:
    """Reject names git would refuse or could read as an option.

    Raises:
        InvalidBranchName: with a human-readable reason
    """
    if not branch:
        raise InvalidBranchName("Branch name cannot be empty")

    if len(branch) > MAX_BRANCH_LENGTH:
        raise InvalidBranchName(
            f"Branch name too long: {len(branch)} chars (max {MAX_BRANCH_LENGTH})"
        )

    if branch == "@":
        raise InvalidBranchName("Branch name '@' is reserved")

    for compiled_pattern, message in _BRANCH_VALIDATION_RULES:
        if compiled_pattern.search(branch):
            raise InvalidBranchName(f"Branch name '{branch}' {message}")

    if "//" in branch:
        raise InvalidBranchName(f"Branch name '{branch}' contains consecutive slashes")

    if branch.startswith("/") or branch.endswith("/"):
        raise InvalidBranchName(f"Branch name '{branch}' cannot start or end with slash")


def slugify(title: str, max_length: int = DEFAULT_MAX_SLUG_LENGTH) -> str:
    """Lowercase, collapse non-alphanumerics to single hyphens, cap the length.

    >>> slugify("Fix: OAuth login (Safari)")
    'fix-oauth-login-safari'
    """
    slug = _SLUG_STRIP.sub("-", title.lower()).strip("-")
    if len(slug) > max_length:
        slug = slug[:max_length].rstrip("-")
    return slug


def generate_branch_name(
    ticket_id: str,
    title: str = "",
    *,
    convention: str = "conventional",
    custom_template: str = "",
    branch_type: str = DEFAULT_BRANCH_TYPE,
    max_slug_length: int = DEFAULT_MAX_SLUG_LENGTH,
) -> str:
    """Build a branch name for a ticket.

    Conventions:
        conventional  feat/eng-123-add-login
        simple        eng-123-add-login
        ticket-only   eng-123
        custom        custom_template with {type}, {identifier}, {slug}

    An empty slug drops the trailing ``-<slug>`` part. The result is validated.

    Raises:
        InvalidBranchName: if the generated name is not a legal ref
    """
    identifier = ticket_id.strip().lower()
    slug = slugify(title, max_slug_length)

    def _join(prefix: str) -> str:
        return f"{prefix}-{slug}" if slug else prefix

    if convention == "simple":
        name = _join(identifier)
    elif convention == "ticket-only":
        name = identifier
    elif convention == "custom":
        template = custom_template or "{type}/{identifier}-{slug}"
        name = template.format(type=branch_type, identifier=identifier, slug=slug)
        # Tidy separators left behind by an empty slug
        name = re.sub(r"[-_]+(?=/|$)", "", name).rstrip("/")
    else:
        name = f"{branch_type}/{_join(identifier)}"

    validate_branch_name(name)
    return name


def branch_type_for(labels: Optional[list[str]] = None) -> str:
    """Map ticket labels to a conventional branch type prefix."""
    lowered = {label.lower() for label in labels or []}
    if lowered & {"bug", "fix", "bugfix"}:
        return "fix"
    if lowered & {"chore", "maintenance"}:
        return "chore"
    if lowered & {"docs", "documentation"}:
        return "docs"
    return DEFAULT_BRANCH_TYPE
