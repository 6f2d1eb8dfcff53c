"""Public entry point: one engine per open workspace.

State layout under the configured state directory::

    associations.json                 global scope
    workspaces/<workspace-key>.json   local scope of each workspace
    repositories.json                 repository registry
    history.json                      branch history of every ticket

Every public method is async, logged through ``timeit``, and returns a
value, a bool or a result object. Nothing raises across this boundary.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .config_loader import ConfigError, get_config
from .config_schema import BranchLinkConfig
from .errors import ErrorKind
from .fs import canonical_path, workspace_key
from .git_backend import GitBackend, GitPythonBackend
from .history import BranchHistory
from .inspector import ChangesSummary, GitRepositoryInspector
from .models import (
    Association,
    AssociationSource,
    AssociationState,
    RepositoryDescriptor,
    TicketHistory,
)
from .notify import LoggingNotifier, Notifier
from .observability import configure, log_error, log_warning, timeit
from .orchestrator import BranchOrchestrator, CheckoutOutcome, CheckoutStatus
from .persistence import JsonFileBackend, PersistenceBackend
from .registry import RepositoryRegistry
from .resolver import AssociationResolver, CleanupReport, TicketLocation
from .store import AssociationStore
from .suggestions import Suggestion, SuggestionEngine

T = TypeVar("T")

GLOBAL_STORE_FILENAME = "associations.json"
REGISTRY_FILENAME = "repositories.json"
HISTORY_FILENAME = "history.json"
WORKSPACES_DIRNAME = "workspaces"


class BranchLinkEngine:
    """Ticket/branch associations for one workspace.

    Build with ``BranchLinkEngine.create``; tests may assemble the parts
    directly and pass them to the constructor.
    """

    def __init__(
        self,
        workspace_path: Path,
        *,
        config: BranchLinkConfig,
        inspector: GitRepositoryInspector,
        registry: RepositoryRegistry,
        store: AssociationStore,
        resolver: AssociationResolver,
        orchestrator: BranchOrchestrator,
        notifier: Notifier,
        history: Optional[BranchHistory] = None,
    ):
        self.workspace_path = workspace_path
        self.config = config
        self.inspector = inspector
        self.registry = registry
        self.store = store
        self.resolver = resolver
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.history = history
        for warning in (*registry.warnings, *store.warnings, *(history.warnings if history else ())):
            notifier.warn(warning)

    @classmethod
    def create(
        cls,
        workspace_path: Path | str,
        *,
        config: Optional[BranchLinkConfig] = None,
        git_backend: Optional[GitBackend] = None,
        notifier: Optional[Notifier] = None,
        global_backend: Optional[PersistenceBackend] = None,
        local_backend: Optional[PersistenceBackend] = None,
        registry_backend: Optional[PersistenceBackend] = None,
        history_backend: Optional[PersistenceBackend] = None,
    ) -> "BranchLinkEngine":
        """Wire an engine from config.

        Without ``config``, configuration is loaded for ``workspace_path``;
        an invalid project config falls back to defaults with a warning.
        Persistence backends default to JSON files under the state directory.
        """
        workspace = canonical_path(workspace_path)
        notifier = notifier or LoggingNotifier()
        if config is None:
            try:
                config = get_config(workspace)
            except ConfigError as e:
                log_warning("[ENGINE] invalid configuration, using defaults", error=str(e))
                notifier.warn(f"Invalid branchlink configuration, using defaults: {e}")
                config = BranchLinkConfig.default()
            configure(config.logging)

        state_dir = config.state_dir()
        keep = config.storage.backup_count
        global_backend = global_backend or JsonFileBackend(
            state_dir / GLOBAL_STORE_FILENAME, backup_count=keep
        )
        local_backend = local_backend or JsonFileBackend(
            state_dir / WORKSPACES_DIRNAME / f"{workspace_key(workspace)}.json", backup_count=keep
        )
        registry_backend = registry_backend or JsonFileBackend(
            state_dir / REGISTRY_FILENAME, backup_count=keep
        )
        history_backend = history_backend or JsonFileBackend(
            state_dir / HISTORY_FILENAME, backup_count=keep
        )

        inspector = GitRepositoryInspector(
            git_backend or GitPythonBackend(timeout=config.git.timeout),
            timeout=config.git.timeout,
            remote=config.git.remote,
            base_branch=config.git.base_branch,
            base_fallbacks=config.git.base_branch_fallbacks,
        )
        registry = RepositoryRegistry(
            inspector, registry_backend, stale_after_days=config.registry.stale_after_days
        )
        store = AssociationStore(global_backend, local_backend, mode=config.storage.mode)
        history = BranchHistory(history_backend)
        resolver = AssociationResolver(
            workspace,
            inspector,
            registry,
            store,
            SuggestionEngine.from_config(config.suggestions),
            stale_after_days=config.registry.stale_after_days,
        )
        orchestrator = BranchOrchestrator(
            resolver, inspector, store, notifier, naming=config.branch_naming, history=history
        )
        return cls(
            workspace,
            config=config,
            inspector=inspector,
            registry=registry,
            store=store,
            resolver=resolver,
            orchestrator=orchestrator,
            notifier=notifier,
            history=history,
        )

    async def _guard(
        self,
        action: str,
        default: T,
        operation: Callable[[], Awaitable[T]],
        **fields: Any,
    ) -> T:
        """Run ``operation``; log it, and turn any exception into ``default``."""
        with timeit(f"engine.{action}", **fields) as info:
            try:
                result = await operation()
            except Exception as e:
                info["outcome"] = "error"
                info["error"] = f"{type(e).__name__}: {e}"
                log_error(f"[ENGINE] {action} failed unexpectedly", error=str(e))
                self.notifier.error(f"{action.replace('_', ' ').capitalize()} failed: {e}")
                return default
            if result is False or result is None:
                info["outcome"] = "negative"
            return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def current_repository(self) -> Optional[RepositoryDescriptor]:
        return await self._guard("current_repository", None, self.resolver.current_repository)

    async def get_branch_for_ticket(self, ticket_id: str) -> Optional[str]:
        return await self._guard(
            "get_branch_for_ticket", None,
            lambda: self.resolver.get_branch_for_ticket(ticket_id), ticket=ticket_id,
        )

    async def get_global_association_for_ticket(self, ticket_id: str) -> Optional[Association]:
        return await self._guard(
            "get_global_association_for_ticket", None,
            lambda: self.resolver.get_global_association_for_ticket(ticket_id), ticket=ticket_id,
        )

    async def is_ticket_in_current_repo(self, ticket_id: str) -> bool:
        return await self._guard(
            "is_ticket_in_current_repo", False,
            lambda: self.resolver.is_ticket_in_current_repo(ticket_id), ticket=ticket_id,
        )

    async def verify_branch_exists(self, ticket_id: str) -> bool:
        return await self._guard(
            "verify_branch_exists", False,
            lambda: self.resolver.verify_branch_exists(ticket_id), ticket=ticket_id,
        )

    async def get_association_status(self, ticket_id: str) -> AssociationState:
        return await self._guard(
            "get_association_status", AssociationState.UNASSOCIATED,
            lambda: self.resolver.get_association_status(ticket_id), ticket=ticket_id,
        )

    async def get_ticket_for_branch(self, branch_name: str) -> Optional[str]:
        return await self._guard(
            "get_ticket_for_branch", None,
            lambda: self.resolver.get_ticket_for_branch(branch_name), branch=branch_name,
        )

    async def get_all_local_branches(self) -> list[str]:
        return await self._guard(
            "get_all_local_branches", [],
            lambda: self.inspector.list_local_branches(self.workspace_path),
        )

    async def get_current_branch(self) -> str:
        return await self._guard(
            "get_current_branch", "",
            lambda: self.inspector.get_current_branch(self.workspace_path),
        )

    async def has_uncommitted_changes(self) -> bool:
        return await self._guard(
            "has_uncommitted_changes", False,
            lambda: self.inspector.has_uncommitted_changes(self.workspace_path),
        )

    async def uncommitted_changes_summary(self) -> Optional[ChangesSummary]:
        return await self._guard(
            "uncommitted_changes_summary", None,
            lambda: self.inspector.uncommitted_changes_summary(self.workspace_path),
        )

    async def suggest_associations_for_ticket(self, ticket_id: str) -> list[str]:
        return await self._guard(
            "suggest_associations_for_ticket", [],
            lambda: self.resolver.suggest_associations_for_ticket(ticket_id), ticket=ticket_id,
        )

    async def rank_suggestions(self, ticket_id: str) -> list[Suggestion]:
        """Like suggest_associations_for_ticket, with match confidence."""

        async def _rank() -> list[Suggestion]:
            return self.resolver.suggestions.rank(
                ticket_id, await self.resolver.unassociated_branches()
            )

        return await self._guard("rank_suggestions", [], _rank, ticket=ticket_id)

    async def auto_detect_branch_associations(self) -> list[tuple[str, str]]:
        return await self._guard(
            "auto_detect_branch_associations", [], self.resolver.auto_detect_branch_associations
        )

    async def get_global_associations_for_repository(self, path: Path | str) -> list[Association]:
        return await self._guard(
            "get_global_associations_for_repository", [],
            lambda: self.resolver.get_global_associations_for_repository(path), path=str(path),
        )

    async def get_all_associations(self) -> list[Association]:
        return await self._guard("get_all_associations", [], self.resolver.get_all_associations)

    async def get_cleanup_suggestions(self) -> CleanupReport:
        return await self._guard(
            "get_cleanup_suggestions", CleanupReport(), self.resolver.get_cleanup_suggestions
        )

    async def list_repositories(self) -> list[RepositoryDescriptor]:
        async def _all() -> list[RepositoryDescriptor]:
            return self.registry.all()

        return await self._guard("list_repositories", [], _all)

    async def stale_repositories(self) -> list[RepositoryDescriptor]:
        async def _stale() -> list[RepositoryDescriptor]:
            return self.registry.stale_repositories()

        return await self._guard("stale_repositories", [], _stale)

    async def get_repository_for_ticket(self, ticket_id: str) -> Optional[RepositoryDescriptor]:
        return await self._guard(
            "get_repository_for_ticket", None,
            lambda: self.resolver.repository_for_ticket(ticket_id), ticket=ticket_id,
        )

    async def is_ticket_in_different_repo(self, ticket_id: str) -> TicketLocation:
        return await self._guard(
            "is_ticket_in_different_repo", TicketLocation(ticket_id, None, None),
            lambda: self.resolver.locate_ticket(ticket_id), ticket=ticket_id,
        )

    async def get_history_for_ticket(self, ticket_id: str) -> Optional[TicketHistory]:
        async def _get() -> Optional[TicketHistory]:
            return self.history.get(ticket_id) if self.history else None

        return await self._guard("get_history_for_ticket", None, _get, ticket=ticket_id)

    async def get_all_history(self) -> list[TicketHistory]:
        async def _all() -> list[TicketHistory]:
            return self.history.all() if self.history else []

        return await self._guard("get_all_history", [], _all)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def associate_branch(self, ticket_id: str, branch_name: str) -> bool:
        return await self._guard(
            "associate_branch", False,
            lambda: self.orchestrator.associate_branch(ticket_id, branch_name),
            ticket=ticket_id, branch=branch_name,
        )

    async def accept_suggestion(self, ticket_id: str, branch_name: str) -> bool:
        return await self._guard(
            "accept_suggestion", False,
            lambda: self.orchestrator.accept_suggestion(ticket_id, branch_name),
            ticket=ticket_id, branch=branch_name,
        )

    async def associate_detected(self, ticket_id: str, branch_name: str) -> bool:
        """Persist an auto-detected pair (source=auto_detected)."""
        return await self._guard(
            "associate_detected", False,
            lambda: self.orchestrator.associate_branch(
                ticket_id, branch_name, source=AssociationSource.AUTO_DETECTED
            ),
            ticket=ticket_id, branch=branch_name,
        )

    async def remove_association(self, ticket_id: str) -> bool:
        return await self._guard(
            "remove_association", False,
            lambda: self.orchestrator.remove_association(ticket_id), ticket=ticket_id,
        )

    async def checkout_branch(self, ticket_id: str) -> bool:
        return await self._guard(
            "checkout_branch", False,
            lambda: self.orchestrator.checkout_branch(ticket_id), ticket=ticket_id,
        )

    async def checkout_ticket_branch(self, ticket_id: str) -> CheckoutOutcome:
        return await self._guard(
            "checkout_ticket_branch",
            CheckoutOutcome(CheckoutStatus.FAILED, ticket_id, error_kind=ErrorKind.GIT_UNAVAILABLE),
            lambda: self.orchestrator.checkout_ticket_branch(ticket_id), ticket=ticket_id,
        )

    async def auto_associate_current_branch(self) -> Optional[str]:
        return await self._guard(
            "auto_associate_current_branch", None, self.orchestrator.auto_associate_current_branch
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
        return await self._guard(
            "start_branch",
            CheckoutOutcome(CheckoutStatus.FAILED, ticket_id, branch=branch_name),
            lambda: self.orchestrator.start_branch(
                ticket_id, title, branch_name=branch_name, base_branch=base_branch, labels=labels
            ),
            ticket=ticket_id,
        )

    async def cleanup_stale_associations(self) -> int:
        return await self._guard(
            "cleanup_stale_associations", 0, self.orchestrator.cleanup_stale_associations
        )

    async def migrate_local_to_global(self) -> int:
        return await self._guard("migrate_local_to_global", 0, self.orchestrator.migrate_local_to_global)

    async def refresh_current_repository(self) -> Optional[RepositoryDescriptor]:
        """Identify the workspace again, after its remote changed or it moved."""

        async def _refresh() -> Optional[RepositoryDescriptor]:
            self.resolver.forget_current_repository()
            return await self.resolver.current_repository()

        return await self._guard("refresh_current_repository", None, _refresh)

    async def set_ticket_prefixes(self, prefixes: list[str]) -> Optional[RepositoryDescriptor]:
        """Route tickets with these prefixes to the current repository."""

        async def _set() -> Optional[RepositoryDescriptor]:
            current = await self.resolver.current_repository()
            if current is None:
                self.notifier.warn("Cannot set ticket prefixes: workspace is not a git repository")
                return None
            return self.registry.set_ticket_prefixes(current.id, prefixes)

        return await self._guard("set_ticket_prefixes", None, _set, prefixes=prefixes)

    async def discover_repositories(self, parent_dir: Optional[Path | str] = None) -> list[RepositoryDescriptor]:
        """Register the repositories under ``parent_dir``.

        Defaults to ``registry.parent_dir``, else the directory holding the
        current repository (or the workspace).
        """

        async def _discover() -> list[RepositoryDescriptor]:
            target = parent_dir or self.config.registry.parent_dir
            if not target:
                current = await self.resolver.current_repository()
                target = Path(current.path if current else self.workspace_path).parent
            return await self.registry.discover(Path(target).expanduser())

        return await self._guard("discover_repositories", [], _discover, path=str(parent_dir or ""))

    def generate_branch_name(
        self, ticket_id: str, title: str = "", *, convention: Optional[str] = None
    ) -> Optional[str]:
        """Branch name for a ticket under the configured convention; None if it would be invalid."""
        try:
            return self.orchestrator.generate_branch_name(ticket_id, title, convention=convention)
        except Exception as e:
            log_warning("[ENGINE] could not generate branch name", ticket=ticket_id, error=str(e))
            return None
