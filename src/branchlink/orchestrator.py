"""Mutating operations: associate, remove, checkout, start, cleanup.

Every method returns a value or result object. Failures are logged and
surfaced through the notifier, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .config_schema import BranchNamingConfig
from .errors import BranchLinkError, ErrorKind
from .fs import utcnow
from .history import BranchHistory
from .inspector import CheckoutAction, GitRepositoryInspector
from .models import Association, AssociationSource, Scope
from .naming import branch_type_for, generate_branch_name, validate_branch_name
from .notify import Notifier
from .observability import log_info, log_warning
from .resolver import AssociationResolver
from .store import AssociationStore


class CheckoutStatus(str, Enum):
    CHECKED_OUT = "checked_out"
    NOT_ASSOCIATED = "not_associated"
    WRONG_REPOSITORY = "wrong_repository"  # open the other repository instead
    NOT_A_REPOSITORY = "not_a_repository"
    FAILED = "failed"


@dataclass
class CheckoutOutcome:
    status: CheckoutStatus
    ticket_id: str
    branch: Optional[str] = None
    action: Optional[CheckoutAction] = None
    repository_path: Optional[str] = None  # where the branch lives
    error_kind: Optional[ErrorKind] = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status is CheckoutStatus.CHECKED_OUT


class BranchOrchestrator:
    def __init__(
        self,
        resolver: AssociationResolver,
        inspector: GitRepositoryInspector,
        store: AssociationStore,
        notifier: Notifier,
        *,
        naming: Optional[BranchNamingConfig] = None,
        history: Optional[BranchHistory] = None,
    ):
        self.resolver = resolver
        self.inspector = inspector
        self.store = store
        self.notifier = notifier
        self.naming = naming or BranchNamingConfig()
        self.history = history

    def _fail(self, message: str, **fields) -> None:
        log_warning(f"[ORCHESTRATOR] {message}", **fields)
        self.notifier.warn(message)

    async def associate_branch(
        self,
        ticket_id: str,
        branch_name: str,
        *,
        source: AssociationSource = AssociationSource.MANUAL,
    ) -> bool:
        """Link ``ticket_id`` to an existing local branch of the current repository.

        Overwrites any earlier association for the ticket in this repository.
        Re-associating the same branch keeps the original ``createdAt``.
        """
        ticket_id = ticket_id.strip()
        if not ticket_id:
            self._fail("Failed to associate branch: ticket id is empty")
            return False
        current = await self.resolver.current_repository()
        if current is None:
            self._fail("Failed to associate branch: workspace is not a git repository")
            return False
        try:
            validate_branch_name(branch_name)
        except BranchLinkError as e:
            self._fail(f"Failed to associate branch: {e.message}", kind=e.kind.value)
            return False
        if not await self.inspector.branch_exists(Path(current.path), branch_name):
            self._fail(
                f"Failed to associate branch: {branch_name!r} does not exist in {current.path}",
                kind=ErrorKind.BRANCH_NOT_FOUND.value,
            )
            return False

        now = utcnow()
        previous = await self.resolver.get_association_in_current_repo(ticket_id)
        created_at = now
        if previous is not None and previous.branch_name == branch_name:
            created_at = previous.created_at
        association = Association(
            ticket_id=ticket_id,
            branch_name=branch_name,
            repository_id=current.id,
            repository_path=current.path,
            source=source,
            created_at=created_at,
            last_verified_at=now,
        )
        if not self.store.put(association):
            self.notifier.error(f"Failed to associate branch {branch_name!r} with {ticket_id}")
            return False
        if self.history is not None:
            self.history.record(ticket_id, branch_name, current.id, current.path, when=now)
        log_info(
            "[ORCHESTRATOR] associated",
            ticket=ticket_id,
            branch=branch_name,
            repository=current.id,
            source=source.value,
            replaced=previous.branch_name if previous and previous.branch_name != branch_name else None,
        )
        return True

    async def accept_suggestion(self, ticket_id: str, branch_name: str) -> bool:
        return await self.associate_branch(
            ticket_id, branch_name, source=AssociationSource.SUGGESTED_ACCEPTED
        )

    async def remove_association(self, ticket_id: str) -> bool:
        """Remove the ticket's association in the current repository only.

        The branch stays in the ticket's history, marked inactive.
        """
        current = await self.resolver.current_repository()
        if current is None:
            self._fail("Failed to remove association: workspace is not a git repository")
            return False
        if await self.resolver.get_association_in_current_repo(ticket_id) is None:
            self._fail(f"No association for {ticket_id} in this repository")
            return False
        if not self.store.remove(ticket_id, current.id):
            self.notifier.error(f"Failed to remove association for {ticket_id}")
            return False
        if self.history is not None:
            self.history.deactivate(ticket_id, current.id)
        log_info("[ORCHESTRATOR] removed", ticket=ticket_id, repository=current.id)
        return True

    async def checkout_ticket_branch(self, ticket_id: str) -> CheckoutOutcome:
        """Check out the ticket's branch if it belongs to the current repository.

        A branch recorded for another repository yields ``WRONG_REPOSITORY``
        with that repository's last-known path, so the caller can open it.
        """
        association = await self.resolver.get_association(ticket_id)
        if association is None:
            self._fail(f"No branch associated with {ticket_id}")
            return CheckoutOutcome(CheckoutStatus.NOT_ASSOCIATED, ticket_id)

        current = await self.resolver.current_repository()
        if current is None:
            self._fail("Cannot check out: workspace is not a git repository")
            return CheckoutOutcome(
                CheckoutStatus.NOT_A_REPOSITORY,
                ticket_id,
                branch=association.branch_name,
                repository_path=association.repository_path or None,
                error_kind=ErrorKind.NOT_A_REPOSITORY,
            )
        if association.repository_id != current.id:
            where = association.repository_path or association.repository_id
            message = f"Branch {association.branch_name!r} for {ticket_id} is in another repository ({where})"
            self.notifier.info(message)
            return CheckoutOutcome(
                CheckoutStatus.WRONG_REPOSITORY,
                ticket_id,
                branch=association.branch_name,
                repository_path=association.repository_path or None,
                message=message,
            )

        result = await self.inspector.checkout_or_create(Path(current.path), association.branch_name)
        if not result.success:
            error = result.error
            message = f"Failed to check out {association.branch_name!r}: {error.message if error else 'unknown error'}"
            self._fail(message, kind=result.error_kind)
            return CheckoutOutcome(
                CheckoutStatus.FAILED,
                ticket_id,
                branch=association.branch_name,
                repository_path=current.path,
                error_kind=error.kind if error else None,
                message=message,
            )
        self.store.mark_verified(ticket_id, current.id)
        if self.history is not None:
            self.history.record(ticket_id, association.branch_name, current.id, current.path)
        return CheckoutOutcome(
            CheckoutStatus.CHECKED_OUT,
            ticket_id,
            branch=association.branch_name,
            action=result.action,
            repository_path=current.path,
        )

    async def checkout_branch(self, ticket_id: str) -> bool:
        return (await self.checkout_ticket_branch(ticket_id)).success

    async def auto_associate_current_branch(self) -> Optional[str]:
        """Associate the checked-out branch with the identifier in its name.

        Returns the ticket id, or None when the branch carries no identifier
        or is already associated.
        """
        current = await self.resolver.current_repository()
        if current is None:
            return None
        branch = await self.inspector.get_current_branch(Path(current.path))
        if not branch:
            return None
        if await self.resolver.get_ticket_for_branch(branch) is not None:
            return None
        ticket_id = self.resolver.suggestions.primary_ticket_id(branch)
        if ticket_id is None:
            return None
        if await self.resolver.get_association_in_current_repo(ticket_id) is not None:
            return None
        ok = await self.associate_branch(ticket_id, branch, source=AssociationSource.AUTO_DETECTED)
        return ticket_id if ok else None

    def generate_branch_name(
        self,
        ticket_id: str,
        title: str = "",
        *,
        labels: Optional[list[str]] = None,
        convention: Optional[str] = None,
    ) -> str:
        return generate_branch_name(
            ticket_id,
            title,
            convention=convention or self.naming.convention,
            custom_template=self.naming.custom_template,
            branch_type=branch_type_for(labels),
            max_slug_length=self.naming.max_slug_length,
        )

    async def start_branch(
        self,
        ticket_id: str,
        title: str = "",
        *,
        branch_name: Optional[str] = None,
        base_branch: Optional[str] = None,
        labels: Optional[list[str]] = None,
    ) -> CheckoutOutcome:
        """Check out (creating from the base branch if needed) and associate a ticket branch."""
        current = await self.resolver.current_repository()
        if current is None:
            self._fail("Cannot start branch: workspace is not a git repository")
            return CheckoutOutcome(
                CheckoutStatus.NOT_A_REPOSITORY, ticket_id, error_kind=ErrorKind.NOT_A_REPOSITORY
            )
        try:
            name = branch_name or self.generate_branch_name(ticket_id, title, labels=labels)
        except BranchLinkError as e:
            self._fail(f"Cannot start branch: {e.message}", kind=e.kind.value)
            return CheckoutOutcome(CheckoutStatus.FAILED, ticket_id, error_kind=e.kind, message=e.message)

        result = await self.inspector.checkout_or_create(Path(current.path), name, base_branch)
        if not result.success:
            error = result.error
            message = f"Failed to start branch {name!r}: {error.message if error else 'unknown error'}"
            self._fail(message, kind=result.error_kind)
            return CheckoutOutcome(
                CheckoutStatus.FAILED,
                ticket_id,
                branch=name,
                repository_path=current.path,
                error_kind=error.kind if error else None,
                message=message,
            )
        if not await self.associate_branch(ticket_id, name):
            return CheckoutOutcome(
                CheckoutStatus.FAILED,
                ticket_id,
                branch=name,
                action=result.action,
                repository_path=current.path,
                message="Branch checked out but association could not be saved",
            )
        return CheckoutOutcome(
            CheckoutStatus.CHECKED_OUT,
            ticket_id,
            branch=name,
            action=result.action,
            repository_path=current.path,
        )

    async def cleanup_stale_associations(self) -> int:
        """Remove current-repository associations whose branch no longer exists.

        Other repositories are never touched. Does nothing if git cannot list
        branches, so an outage cannot wipe associations.
        """
        current = await self.resolver.current_repository()
        if current is None:
            return 0
        stale = await self.resolver.find_stale_associations()
        if stale is None:
            self._fail("Skipped cleanup: could not list branches")
            return 0
        removed = 0
        for association in stale:
            if self.store.remove(association.ticket_id, current.id):
                removed += 1
                if self.history is not None:
                    self.history.deactivate(association.ticket_id, current.id)
        if removed:
            log_info("[ORCHESTRATOR] cleaned up stale associations", repository=current.id, count=removed)
        return removed

    async def migrate_local_to_global(self) -> int:
        """Copy workspace associations missing from the global scope into it."""
        copied = 0
        for record in self.store.get_all(Scope.LOCAL, respect_mode=False):
            if self.store.has_global(record.ticket_id, record.repository_id):
                continue
            if self.store.put(record, scopes=[Scope.GLOBAL]):
                copied += 1
        if copied:
            log_info("[ORCHESTRATOR] migrated local associations", count=copied)
        return copied
