"""Per-ticket branch history.

Every branch a ticket was ever associated with stays listed, most recently
used first. The branch currently associated in a repository is the active
entry for that repository; removing the association only deactivates it.
The document is written copy-on-write from the latest persisted copy, like
the association store.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, Optional

from .fs import parse_iso, utcnow
from .models import SCHEMA_VERSION, BranchHistoryEntry, HistoryDocument, TicketHistory
from .observability import log_debug, log_warning
from .persistence import PersistenceBackend, load_versioned
from .store import LEGACY_REPOSITORY_PREFIX


def _timestamp(value: Any) -> datetime:
    parsed = parse_iso(value) if isinstance(value, str) else None
    return parsed or utcnow()


def migrate_v0_history(raw: Any) -> Dict[str, Any]:
    """Upgrade unversioned history lists.

    Legacy entries carry a display-name ``repository`` instead of an id, so
    they get a ``legacy:`` repository id, as migrated associations do.
    """
    tickets = raw if isinstance(raw, list) else raw.get("tickets", [])
    if not isinstance(tickets, list):
        raise TypeError("history must be a list")
    migrated = []
    for ticket in tickets:
        if not isinstance(ticket, dict) or not ticket.get("ticketId"):
            log_warning("[HISTORY] dropping legacy entry without ticket", entry=ticket)
            continue
        branches = []
        for branch in ticket.get("branches") or []:
            if not isinstance(branch, dict) or not branch.get("branchName"):
                continue
            branches.append(
                {
                    "branchName": branch["branchName"],
                    "repositoryId": branch.get("repositoryId") or (
                        LEGACY_REPOSITORY_PREFIX
                        + str(branch.get("repository") or branch.get("repositoryPath") or "")
                    ),
                    "repositoryPath": branch.get("repositoryPath") or "",
                    "associatedAt": _timestamp(branch.get("associatedAt")),
                    "lastUsed": _timestamp(branch.get("lastUsed") or branch.get("associatedAt")),
                    "isActive": bool(branch.get("isActive", False)),
                }
            )
        migrated.append({"ticketId": ticket["ticketId"], "branches": branches})
    return {"schemaVersion": 1, "tickets": migrated}


class BranchHistory:
    """Branch history of every ticket, persisted as one document."""

    def __init__(self, backend: PersistenceBackend):
        self.backend = backend
        self.warnings: list[str] = []
        self._lock = threading.Lock()
        self._tickets: dict[str, TicketHistory] = self._load() or {}

    def _load(self) -> Optional[dict[str, TicketHistory]]:
        document, warning = load_versioned(
            self.backend,
            current_version=SCHEMA_VERSION,
            migrations={0: migrate_v0_history},
            validate=HistoryDocument.model_validate,
            empty=HistoryDocument,
            label="branch history",
        )
        if warning:
            self.warnings.append(warning)
            return None
        return {ticket.ticket_id: ticket for ticket in document.tickets}

    def _commit(self, tickets: dict[str, TicketHistory]) -> bool:
        document = HistoryDocument(tickets=sorted(tickets.values(), key=lambda t: t.ticket_id))
        try:
            self.backend.save(document.to_dict())
        except (OSError, TypeError) as e:
            log_warning("[HISTORY] failed to save", target=self.backend.describe(), error=str(e))
            return False
        self._tickets = tickets
        return True

    def _fresh(self) -> dict[str, TicketHistory]:
        tickets = self._load()
        return dict(self._tickets if tickets is None else tickets)

    def get(self, ticket_id: str) -> Optional[TicketHistory]:
        return self._tickets.get(ticket_id)

    def all(self) -> list[TicketHistory]:
        return sorted(self._tickets.values(), key=lambda t: t.ticket_id)

    def record(
        self,
        ticket_id: str,
        branch_name: str,
        repository_id: str,
        repository_path: str = "",
        *,
        when: Optional[datetime] = None,
    ) -> bool:
        """Mark ``branch_name`` as the ticket's active branch in ``repository_id``.

        Other active entries of the ticket in the same repository are
        deactivated; entries in other repositories are left alone.
        """
        when = when or utcnow()
        with self._lock:
            tickets = self._fresh()
            existing = tickets.get(ticket_id)
            touched = BranchHistoryEntry(
                branch_name=branch_name,
                repository_id=repository_id,
                repository_path=repository_path,
                associated_at=when,
                last_used=when,
            )
            others: list[BranchHistoryEntry] = []
            for entry in existing.branches if existing else []:
                if entry.repository_id == repository_id and entry.branch_name == branch_name:
                    touched = entry.model_copy(
                        update={
                            "last_used": when,
                            "is_active": True,
                            "repository_path": repository_path or entry.repository_path,
                        }
                    )
                    continue
                if entry.repository_id == repository_id and entry.is_active:
                    entry = entry.model_copy(update={"is_active": False})
                others.append(entry)
            # stable sort: the touched entry stays first among equal timestamps
            entries = sorted([touched, *others], key=lambda e: e.last_used, reverse=True)
            tickets[ticket_id] = TicketHistory(ticket_id=ticket_id, branches=entries)
            ok = self._commit(tickets)
        if ok:
            log_debug("[HISTORY] recorded", ticket=ticket_id, branch=branch_name, repository=repository_id)
        return ok

    def deactivate(self, ticket_id: str, repository_id: str) -> bool:
        """Deactivate the ticket's entries in ``repository_id``; they stay in the history."""
        with self._lock:
            tickets = self._fresh()
            existing = tickets.get(ticket_id)
            if existing is None:
                return False
            changed = False
            entries = []
            for entry in existing.branches:
                if entry.repository_id == repository_id and entry.is_active:
                    entry = entry.model_copy(update={"is_active": False})
                    changed = True
                entries.append(entry)
            if not changed:
                return False
            tickets[ticket_id] = existing.model_copy(update={"branches": entries})
            return self._commit(tickets)
