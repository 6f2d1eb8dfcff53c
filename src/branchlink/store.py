"""Durable association storage in two scopes.

``global`` holds every association keyed by ``(ticketId, repositoryId)``.
``local`` belongs to the open workspace and is keyed by ``ticketId`` alone.
Each scope is one versioned JSON document behind a ``PersistenceBackend``.

Writes are serialized by an in-process lock and go through copy-on-write:
a new snapshot is built from the latest persisted document (so records
written meanwhile by another session are kept), saved atomically, and only
then swapped in. Readers see the last committed snapshot until the next
write or ``reload``.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from .errors import DuplicateAssociation
from .fs import canonical_path, parse_iso, utcnow
from .models import (
    SCHEMA_VERSION,
    Association,
    AssociationDocument,
    AssociationSource,
    RepositoryDescriptor,
    Scope,
)
from .observability import log_debug, log_error, log_warning
from .persistence import PersistenceBackend, load_versioned

# Repository ids of records migrated from files that predate repository identity
LEGACY_REPOSITORY_PREFIX = "legacy:"

STORAGE_MODES = {
    "workspace": frozenset({Scope.LOCAL}),
    "global": frozenset({Scope.GLOBAL}),
    "both": frozenset({Scope.LOCAL, Scope.GLOBAL}),
}


def _legacy_timestamp(record: Dict[str, Any]) -> datetime:
    """``lastUpdated`` of a legacy record; unparseable or missing values become now."""
    for key in ("lastUpdated", "createdAt"):
        value = record.get(key)
        parsed = parse_iso(value) if isinstance(value, str) else None
        if parsed is not None:
            return parsed
    return utcnow()


def migrate_v0_associations(raw: Any) -> Dict[str, Any]:
    """Upgrade unversioned association files.

    Legacy records look like ``{ticketId, branchName, lastUpdated,
    isAutoDetected, repository, repositoryPath}``. The ``repository`` field
    was a display name rather than an identity, so migrated records get a
    ``legacy:`` id until ``AssociationStore.rebind_legacy`` claims them.
    """
    records = raw if isinstance(raw, list) else raw.get("associations", [])
    if not isinstance(records, list):
        raise TypeError("associations must be a list")
    migrated = []
    for record in records:
        if not isinstance(record, dict):
            raise TypeError(f"association record must be an object, got {type(record).__name__}")
        ticket_id = record.get("ticketId")
        branch_name = record.get("branchName")
        if not ticket_id or not branch_name:
            log_warning("[STORE] dropping legacy record without ticket or branch", record=record)
            continue
        repository_id = record.get("repositoryId") or (
            LEGACY_REPOSITORY_PREFIX + str(record.get("repository") or record.get("repositoryPath") or "")
        )
        migrated.append(
            {
                "ticketId": ticket_id,
                "branchName": branch_name,
                "repositoryId": repository_id,
                "repositoryPath": record.get("repositoryPath") or "",
                "source": (
                    AssociationSource.AUTO_DETECTED.value
                    if record.get("isAutoDetected")
                    else AssociationSource.MANUAL.value
                ),
                "createdAt": _legacy_timestamp(record),
                "lastVerifiedAt": None,
            }
        )
    return {"schemaVersion": 1, "associations": migrated}


def _newest(records: Iterable[Association]) -> Optional[Association]:
    return max(records, key=lambda a: a.updated_at, default=None)


class AssociationStore:
    """Associations at local and global scope, with atomic persistence.

    Args:
        global_backend: document for the cross-repository scope
        local_backend: document for the open workspace, or None
        mode: ``workspace``, ``global`` or ``both``; the scopes written by
            ``put`` and read by ``get``
    """

    def __init__(
        self,
        global_backend: PersistenceBackend,
        local_backend: Optional[PersistenceBackend] = None,
        *,
        mode: str = "both",
    ):
        if mode not in STORAGE_MODES:
            raise ValueError(f"Unknown storage mode: {mode!r}")
        self.mode = mode
        self.warnings: list[str] = []
        self._backends: dict[Scope, PersistenceBackend] = {Scope.GLOBAL: global_backend}
        if local_backend is not None:
            self._backends[Scope.LOCAL] = local_backend
        self._lock = threading.Lock()
        self._global: dict[tuple[str, str], Association] = {}
        self._local: dict[str, Association] = {}
        self.reload()

    @property
    def scopes(self) -> frozenset[Scope]:
        """Scopes that are both enabled by the mode and backed by storage."""
        return frozenset(s for s in STORAGE_MODES[self.mode] if s in self._backends)

    def _load_scope(self, scope: Scope) -> Optional[dict]:
        """Persisted records of ``scope``, keyed the way memory holds them.

        None when the document was unreadable; it has been backed up and a
        warning recorded.
        """
        backend = self._backends.get(scope)
        if backend is None:
            return {}
        document, warning = load_versioned(
            backend,
            current_version=SCHEMA_VERSION,
            migrations={0: migrate_v0_associations},
            validate=AssociationDocument.model_validate,
            empty=AssociationDocument,
            label=f"{scope.value} associations",
        )
        if warning:
            self.warnings.append(warning)
            return None
        records: dict = {}
        for record in document.associations:
            key = record.key if scope is Scope.GLOBAL else record.ticket_id
            self._keep_newest(records, key, record, scope)
        return records

    def reload(self) -> None:
        """Re-read both scopes from their backends."""
        global_records = self._load_scope(Scope.GLOBAL) or {}
        local_records = self._load_scope(Scope.LOCAL) or {}
        with self._lock:
            self._global = global_records
            self._local = local_records

    def _fresh(self, scope: Scope) -> dict:
        """Latest persisted records of ``scope`` to build a write on.

        Another session may have written since this one loaded; starting from
        the document keeps its records. An unreadable document falls back to
        the in-memory snapshot.
        """
        records = self._load_scope(scope)
        if records is None:
            records = self._global if scope is Scope.GLOBAL else self._local
        return dict(records)

    @staticmethod
    def _keep_newest(target: dict, key: Any, record: Association, scope: Scope) -> None:
        existing = target.get(key)
        if existing is None:
            target[key] = record
            return
        error = DuplicateAssociation(f"Duplicate {scope.value} association for {key}")
        log_error(
            f"[STORE] {error.message}",
            kind=error.kind.value,
            kept=max(existing, record, key=lambda a: a.updated_at).branch_name,
        )
        if record.updated_at >= existing.updated_at:
            target[key] = record

    def _save(self, scope: Scope, records: Iterable[Association]) -> bool:
        document = AssociationDocument(
            associations=sorted(records, key=lambda a: (a.ticket_id, a.repository_id))
        )
        backend = self._backends[scope]
        try:
            backend.save(document.to_dict())
        except (OSError, TypeError) as e:
            log_warning(
                f"[STORE] failed to save {scope.value} associations",
                target=backend.describe(),
                error=str(e),
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(
        self,
        ticket_id: str,
        scope: Scope = Scope.GLOBAL,
        repository_id: Optional[str] = None,
    ) -> Optional[Association]:
        """Association for ``ticket_id`` in ``scope``.

        At global scope without ``repository_id`` the most recently updated
        record across all repositories is returned.
        """
        if scope not in self.scopes:
            return None
        if scope is Scope.LOCAL:
            record = self._local.get(ticket_id)
            if record is not None and repository_id and record.repository_id != repository_id:
                return None
            return record
        if repository_id is not None:
            return self._global.get((ticket_id, repository_id))
        return _newest(a for a in self._global.values() if a.ticket_id == ticket_id)

    def has_global(self, ticket_id: str, repository_id: str) -> bool:
        """Whether the global document holds the key, regardless of mode."""
        return (ticket_id, repository_id) in self._global

    def get_all_for_repository(self, repository_id: str) -> list[Association]:
        """Global-scope associations for one repository."""
        if Scope.GLOBAL not in self.scopes:
            return []
        return sorted(
            (a for a in self._global.values() if a.repository_id == repository_id),
            key=lambda a: a.ticket_id,
        )

    def get_all_for_ticket(self, ticket_id: str) -> list[Association]:
        if Scope.GLOBAL not in self.scopes:
            return []
        return sorted(
            (a for a in self._global.values() if a.ticket_id == ticket_id),
            key=lambda a: a.updated_at,
            reverse=True,
        )

    def get_all(self, scope: Scope = Scope.GLOBAL, *, respect_mode: bool = True) -> list[Association]:
        if respect_mode and scope not in self.scopes:
            return []
        records = self._local.values() if scope is Scope.LOCAL else self._global.values()
        return sorted(records, key=lambda a: (a.ticket_id, a.repository_id))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, association: Association, scopes: Optional[Iterable[Scope]] = None) -> bool:
        """Insert or overwrite (last write wins). True when every write committed.

        Explicit ``scopes`` may name a scope the mode does not read, which is
        how local associations are copied to global before switching modes.
        """
        if scopes is None:
            targets = self.scopes
        else:
            targets = frozenset(scopes) & frozenset(self._backends)
        if not targets:
            log_warning("[STORE] no writable scope", mode=self.mode, ticket=association.ticket_id)
            return False
        ok = True
        with self._lock:
            if Scope.GLOBAL in targets:
                snapshot = self._fresh(Scope.GLOBAL)
                snapshot[association.key] = association
                if self._save(Scope.GLOBAL, snapshot.values()):
                    self._global = snapshot
                else:
                    ok = False
            if Scope.LOCAL in targets:
                local_snapshot = self._fresh(Scope.LOCAL)
                local_snapshot[association.ticket_id] = association
                if self._save(Scope.LOCAL, local_snapshot.values()):
                    self._local = local_snapshot
                else:
                    ok = False
        if ok:
            log_debug(
                "[STORE] put",
                ticket=association.ticket_id,
                branch=association.branch_name,
                repository=association.repository_id,
                scopes=sorted(s.value for s in targets),
            )
        return ok

    def remove(self, ticket_id: str, repository_id: str) -> bool:
        """Delete the ``(ticket_id, repository_id)`` record from every scope holding it.

        Records for the same ticket in other repositories are left alone.
        Returns True if anything was removed and persisted.
        """
        removed = False
        with self._lock:
            key = (ticket_id, repository_id)
            if Scope.GLOBAL in self.scopes:
                snapshot = self._fresh(Scope.GLOBAL)
                if snapshot.pop(key, None) is not None and self._save(Scope.GLOBAL, snapshot.values()):
                    self._global = snapshot
                    removed = True
            if Scope.LOCAL in self.scopes:
                local_snapshot = self._fresh(Scope.LOCAL)
                local = local_snapshot.get(ticket_id)
                if local is not None and local.repository_id == repository_id:
                    del local_snapshot[ticket_id]
                    if self._save(Scope.LOCAL, local_snapshot.values()):
                        self._local = local_snapshot
                        removed = True
        return removed

    def mark_verified(self, ticket_id: str, repository_id: str, when: Optional[datetime] = None) -> bool:
        """Refresh ``lastVerifiedAt`` wherever the record is held."""
        when = when or utcnow()
        touched: list[Scope] = []
        record = None
        for scope in self.scopes:
            candidate = self.get(ticket_id, scope, repository_id)
            if candidate is not None:
                record = candidate
                touched.append(scope)
        if record is None:
            return False
        return self.put(record.model_copy(update={"last_verified_at": when}), scopes=touched)

    def rebind_legacy(self, descriptor: RepositoryDescriptor) -> int:
        """Give migrated ``legacy:`` records the id of the repository they belong to.

        Local records always belong to the open workspace. Global records are
        claimed when their stored path is the repository's path.
        """
        repo_path = str(canonical_path(descriptor.path))
        claimed: list[Association] = []
        local_claimed: list[Association] = []
        for record in list(self._global.values()):
            if not record.repository_id.startswith(LEGACY_REPOSITORY_PREFIX):
                continue
            if record.repository_path and str(canonical_path(record.repository_path)) == repo_path:
                claimed.append(record)
        for record in list(self._local.values()):
            if record.repository_id.startswith(LEGACY_REPOSITORY_PREFIX):
                local_claimed.append(record)
        if not claimed and not local_claimed:
            return 0

        update = {"repository_id": descriptor.id, "repository_path": descriptor.path}
        with self._lock:
            if claimed:
                snapshot = self._fresh(Scope.GLOBAL)
                for record in claimed:
                    snapshot.pop(record.key, None)
                for record in claimed:
                    rebound = record.model_copy(update=update)
                    existing = snapshot.get(rebound.key)
                    if existing is None or rebound.updated_at > existing.updated_at:
                        snapshot[rebound.key] = rebound
                if self._save(Scope.GLOBAL, snapshot.values()):
                    self._global = snapshot
            if local_claimed:
                local_snapshot = self._fresh(Scope.LOCAL)
                for record in local_claimed:
                    local_snapshot[record.ticket_id] = record.model_copy(update=update)
                if self._save(Scope.LOCAL, local_snapshot.values()):
                    self._local = local_snapshot
        count = len(claimed) + len(local_claimed)
        log_debug("[STORE] rebound legacy associations", repository=descriptor.id, count=count)
        return count
