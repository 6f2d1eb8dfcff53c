"""Answering "which branch is this ticket on, and is it in this repository?"

The resolver combines the registry (where am I), the store (what was
recorded) and the inspector (what git says now). It only reads, apart from
refreshing ``lastVerifiedAt`` and the one registry sighting per session.

Verification is asymmetric: an association in the current repository is
checked against git; one in any other repository is trusted as recorded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from .fs import canonical_path, utcnow
from .inspector import GitRepositoryInspector
from .models import Association, AssociationState, RepositoryDescriptor, Scope
from .observability import log_debug, log_info
from .registry import RepositoryRegistry
from .store import AssociationStore
from .suggestions import SuggestionEngine


@dataclass
class DuplicateBranch:
    repository_id: str
    branch_name: str
    ticket_ids: list[str]


@dataclass
class TicketLocation:
    """The open repository and the one a ticket's work belongs in."""

    ticket_id: str
    current: Optional[RepositoryDescriptor]
    ticket_repository: Optional[RepositoryDescriptor]

    @property
    def is_different(self) -> bool:
        """True only when both are known and they differ."""
        if self.current is None or self.ticket_repository is None:
            return False
        return self.current.id != self.ticket_repository.id


@dataclass
class CleanupReport:
    """Advisory findings; nothing here has been deleted."""

    stale: list[Association] = field(default_factory=list)
    old: list[Association] = field(default_factory=list)
    duplicate_branches: list[DuplicateBranch] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.stale or self.old or self.duplicate_branches)


class AssociationResolver:
    def __init__(
        self,
        workspace_path: Path | str,
        inspector: GitRepositoryInspector,
        registry: RepositoryRegistry,
        store: AssociationStore,
        suggestions: SuggestionEngine,
        *,
        stale_after_days: int = 30,
    ):
        self.workspace_path = canonical_path(workspace_path)
        self.inspector = inspector
        self.registry = registry
        self.store = store
        self.suggestions = suggestions
        self.stale_after_days = stale_after_days
        self._current: Optional[RepositoryDescriptor] = None
        self._identified = False

    # ------------------------------------------------------------------
    # Current repository
    # ------------------------------------------------------------------

    async def current_repository(self) -> Optional[RepositoryDescriptor]:
        """Repository of the open workspace; None when it is not a git working tree.

        Identified once per session. The first call records a registry
        sighting and claims migrated legacy records for this repository.
        """
        if self._identified:
            return self._current
        if await self.inspector.is_git_repository(self.workspace_path):
            descriptor = await self.registry.identify(self.workspace_path)
            descriptor = self.registry.register_sighting(descriptor)
            self.store.rebind_legacy(descriptor)
            self._current = descriptor
        else:
            log_info("[RESOLVER] workspace is not a git repository", path=str(self.workspace_path))
            self._current = None
        self._identified = True
        return self._current

    def forget_current_repository(self) -> None:
        """Re-identify on next use (after a remote change or a move)."""
        self._current = None
        self._identified = False

    async def _current_id(self) -> Optional[str]:
        current = await self.current_repository()
        return current.id if current else None

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_association(self, ticket_id: str) -> Optional[Association]:
        """Local scope first, then this repository's global record, then any repository's."""
        local = self.store.get(ticket_id, Scope.LOCAL)
        if local is not None:
            return local
        return await self.get_global_association_for_ticket(ticket_id)

    async def get_global_association_for_ticket(self, ticket_id: str) -> Optional[Association]:
        current_id = await self._current_id()
        if current_id is not None:
            here = self.store.get(ticket_id, Scope.GLOBAL, current_id)
            if here is not None:
                return here
        return self.store.get(ticket_id, Scope.GLOBAL)

    async def get_branch_for_ticket(self, ticket_id: str) -> Optional[str]:
        """Branch name for the ticket, whichever repository it lives in."""
        association = await self.get_association(ticket_id)
        return association.branch_name if association else None

    async def get_association_in_current_repo(self, ticket_id: str) -> Optional[Association]:
        current_id = await self._current_id()
        if current_id is None:
            return None
        local = self.store.get(ticket_id, Scope.LOCAL, current_id)
        return local or self.store.get(ticket_id, Scope.GLOBAL, current_id)

    async def is_ticket_in_current_repo(self, ticket_id: str) -> bool:
        association = await self.get_association(ticket_id)
        if association is None:
            return False
        return association.repository_id == await self._current_id()

    async def get_ticket_for_branch(self, branch_name: str) -> Optional[str]:
        """Ticket associated with ``branch_name`` in the current repository."""
        records = await self._current_repo_associations()
        matches = [a for a in records if a.branch_name == branch_name]
        if not matches:
            return None
        return max(matches, key=lambda a: a.updated_at).ticket_id

    async def _current_repo_associations(self) -> list[Association]:
        current_id = await self._current_id()
        if current_id is None:
            return []
        by_ticket = {a.ticket_id: a for a in self.store.get_all_for_repository(current_id)}
        for record in self.store.get_all(Scope.LOCAL):
            if record.repository_id == current_id:
                by_ticket[record.ticket_id] = record
        return sorted(by_ticket.values(), key=lambda a: a.ticket_id)

    async def get_global_associations_for_repository(self, path: Path | str) -> list[Association]:
        """Associations recorded for the repository at ``path``, open or not.

        Matches on the registry ids sighted at that path, the identity of a
        working tree currently there, and the last-known path on each record.
        """
        wanted = canonical_path(path)
        ids = {d.id for d in self.registry.find_by_path(wanted)}
        if wanted.exists() and await self.inspector.is_git_repository(wanted):
            ids.add((await self.registry.identify(wanted)).id)
        wanted_str = str(wanted)
        return [
            a
            for a in self.store.get_all(Scope.GLOBAL)
            if a.repository_id in ids
            or (a.repository_path and str(canonical_path(a.repository_path)) == wanted_str)
        ]

    async def repository_for_ticket(self, ticket_id: str) -> Optional[RepositoryDescriptor]:
        """Repository the ticket's work belongs in.

        Recorded associations decide first: the current repository when it
        holds one, else the most recently updated one the registry knows.
        Tickets with no usable association are routed by prefix.
        """
        current = await self.current_repository()
        records = self.store.get_all_for_ticket(ticket_id)
        local = self.store.get(ticket_id, Scope.LOCAL)
        if local is not None:
            records = [local, *records]
        if current is not None and any(r.repository_id == current.id for r in records):
            return current
        for record in records:
            descriptor = self.registry.get(record.repository_id)
            if descriptor is not None:
                return descriptor
        return self.registry.repository_for_ticket(ticket_id)

    async def locate_ticket(self, ticket_id: str) -> TicketLocation:
        return TicketLocation(
            ticket_id,
            await self.current_repository(),
            await self.repository_for_ticket(ticket_id),
        )

    async def get_all_associations(self) -> list[Association]:
        """Every global association, plus local ones the global scope lacks."""
        merged = {a.key: a for a in self.store.get_all(Scope.GLOBAL)}
        for record in self.store.get_all(Scope.LOCAL):
            merged.setdefault(record.key, record)
        return sorted(merged.values(), key=lambda a: (a.ticket_id, a.repository_id))

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify_branch_exists(self, ticket_id: str) -> bool:
        """True if the associated branch exists.

        Only checked with git when the association is in the current
        repository; associations elsewhere report True unchecked. A verified
        branch refreshes ``lastVerifiedAt``.
        """
        association = await self.get_association(ticket_id)
        if association is None:
            return False
        current = await self.current_repository()
        if current is None or association.repository_id != current.id:
            log_debug(
                "[RESOLVER] verification skipped for other repository",
                ticket=ticket_id,
                repository=association.repository_id,
            )
            return True
        exists = await self.inspector.branch_exists(Path(current.path), association.branch_name)
        if exists:
            self.store.mark_verified(ticket_id, current.id)
        else:
            log_info(
                "[RESOLVER] associated branch is missing",
                ticket=ticket_id,
                branch=association.branch_name,
            )
        return exists

    async def get_association_status(self, ticket_id: str) -> AssociationState:
        association = await self.get_association(ticket_id)
        if association is None:
            return AssociationState.UNASSOCIATED
        if association.repository_id != await self._current_id():
            return AssociationState.UNVERIFIED
        if await self.verify_branch_exists(ticket_id):
            return AssociationState.VERIFIED
        return AssociationState.STALE

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    async def unassociated_branches(self) -> list[str]:
        current = await self.current_repository()
        if current is None:
            return []
        associated = {a.branch_name for a in await self._current_repo_associations()}
        branches = await self.inspector.list_local_branches(Path(current.path))
        return [b for b in branches if b not in associated]

    async def suggest_associations_for_ticket(self, ticket_id: str) -> list[str]:
        """Unassociated local branches naming ``ticket_id``, best match first."""
        return self.suggestions.rank_branches(ticket_id, await self.unassociated_branches())

    async def auto_detect_branch_associations(self) -> list[tuple[str, str]]:
        """``(ticket_id, branch)`` candidates for unassociated branches carrying an identifier.

        Tickets already associated in this repository are skipped, and each
        ticket is proposed once.
        """
        taken = {a.ticket_id for a in await self._current_repo_associations()}
        found: list[tuple[str, str]] = []
        for branch in await self.unassociated_branches():
            ticket_id = self.suggestions.primary_ticket_id(branch)
            if ticket_id and ticket_id not in taken:
                taken.add(ticket_id)
                found.append((ticket_id, branch))
        return found

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def find_stale_associations(self) -> Optional[list[Association]]:
        """Current-repository associations whose branch is gone; None if git could not answer."""
        current = await self.current_repository()
        if current is None:
            return []
        branches = await self.inspector.try_list_local_branches(Path(current.path))
        if branches is None:
            return None
        present = set(branches)
        return [a for a in await self._current_repo_associations() if a.branch_name not in present]

    async def get_cleanup_suggestions(self, now: Optional[datetime] = None) -> CleanupReport:
        report = CleanupReport()
        report.stale = await self.find_stale_associations() or []

        all_records = await self.get_all_associations()
        cutoff = (now or utcnow()) - timedelta(days=self.stale_after_days)
        report.old = sorted(
            (a for a in all_records if a.updated_at < cutoff), key=lambda a: a.updated_at
        )

        by_branch: dict[tuple[str, str], list[str]] = {}
        for record in all_records:
            by_branch.setdefault((record.repository_id, record.branch_name), []).append(record.ticket_id)
        report.duplicate_branches = [
            DuplicateBranch(repo_id, branch, sorted(tickets))
            for (repo_id, branch), tickets in sorted(by_branch.items())
            if len(tickets) > 1
        ]
        return report
