"""Ticket identifier extraction and branch ranking.

A branch suggests ticket X only when X is a whole identifier token in the
branch name: ``ENG-1`` never matches ``feat/eng-10-search``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from .config_schema import SuggestionConfig

PROVIDER_GRAMMARS: dict[str, str] = {
    "linear": r"[A-Z]{2,10}-\d+",
    "jira": r"[A-Z][A-Z0-9_]{1,9}-\d+",
}
# Provider-neutral: a short alphanumeric team key, a hyphen, a number
DEFAULT_GRAMMAR = r"[A-Za-z][A-Za-z0-9]{1,9}-\d+"

_TOKEN = re.compile(r"[a-z]+|\d+")


class MatchKind(IntEnum):
    """Match confidence, highest first."""

    EXACT = 3  # identifier token with identical spelling
    CASE_INSENSITIVE = 2
    FUZZY = 1  # same alpha/digit token run, other separators (eng_123, ENG123)


@dataclass(frozen=True)
class Suggestion:
    ticket_id: str
    branch: str
    kind: MatchKind

    @property
    def confidence(self) -> float:
        return self.kind / MatchKind.EXACT


def _tokens(value: str) -> list[str]:
    return _TOKEN.findall(value.lower())


def _contains_run(haystack: list[str], needle: list[str]) -> bool:
    if not needle or len(needle) > len(haystack):
        return False
    width = len(needle)
    return any(haystack[i:i + width] == needle for i in range(len(haystack) - width + 1))


class SuggestionEngine:
    """Identifier grammar plus ranking for one provider.

    Branch names are usually lowercase (``feat/eng-123-auth``), so grammars
    are matched case-insensitively and identifiers are reported uppercased.
    """

    def __init__(self, grammar: str = DEFAULT_GRAMMAR):
        self.grammar = grammar
        self._pattern = re.compile(
            rf"(?<![A-Za-z0-9])(?:{grammar})(?![0-9])", re.IGNORECASE
        )

    @classmethod
    def for_provider(cls, provider: Optional[str] = None, pattern: str = "") -> "SuggestionEngine":
        if pattern:
            return cls(pattern)
        return cls(PROVIDER_GRAMMARS.get(provider or "", DEFAULT_GRAMMAR))

    @classmethod
    def from_config(cls, config: "SuggestionConfig") -> "SuggestionEngine":
        return cls.for_provider(config.provider, config.pattern)

    def _raw_matches(self, branch: str) -> list[str]:
        return [m.group(0) for m in self._pattern.finditer(branch)]

    def extract_ticket_ids(self, branch: str) -> list[str]:
        """Identifiers in ``branch``, uppercased, in order of appearance, deduplicated."""
        seen: list[str] = []
        for raw in self._raw_matches(branch):
            ticket_id = raw.upper()
            if ticket_id not in seen:
                seen.append(ticket_id)
        return seen

    def primary_ticket_id(self, branch: str) -> Optional[str]:
        ids = self.extract_ticket_ids(branch)
        return ids[0] if ids else None

    def match_kind(self, ticket_id: str, branch: str) -> Optional[MatchKind]:
        raw_matches = self._raw_matches(branch)
        if ticket_id in raw_matches:
            return MatchKind.EXACT
        if ticket_id.upper() in (raw.upper() for raw in raw_matches):
            return MatchKind.CASE_INSENSITIVE
        if _contains_run(_tokens(branch), _tokens(ticket_id)):
            return MatchKind.FUZZY
        return None

    def rank(self, ticket_id: str, branches: Iterable[str]) -> list[Suggestion]:
        """Suggestions for ``ticket_id``, best match first, then by branch name."""
        found = []
        for branch in branches:
            kind = self.match_kind(ticket_id, branch)
            if kind is not None:
                found.append(Suggestion(ticket_id, branch, kind))
        return sorted(found, key=lambda s: (-s.kind, s.branch))

    def rank_branches(self, ticket_id: str, branches: Iterable[str]) -> list[str]:
        return [s.branch for s in self.rank(ticket_id, branches)]
