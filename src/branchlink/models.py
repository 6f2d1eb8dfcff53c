"""Persisted data model: associations, repository descriptors and branch history.

Field names are snake_case in Python and camelCase on disk, e.g.::

    {"schemaVersion": 1,
     "associations": [{"ticketId": "ENG-123", "branchName": "feat/eng-123-auth",
                       "repositoryId": "r_ab12cd34ef56", "repositoryPath": "/work/backend",
                       "source": "manual", "createdAt": "...", "lastVerifiedAt": "..."}]}
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .fs import utcnow

SCHEMA_VERSION = 1


class AssociationSource(str, Enum):
    """How an association was created."""

    MANUAL = "manual"
    AUTO_DETECTED = "auto_detected"
    SUGGESTED_ACCEPTED = "suggested_accepted"


class Scope(str, Enum):
    """Association namespaces."""

    LOCAL = "local"  # bound to the open workspace
    GLOBAL = "global"  # every repository ever seen


class AssociationState(str, Enum):
    """Observable lifecycle state of a ticket's association."""

    UNASSOCIATED = "unassociated"
    VERIFIED = "verified"  # branch confirmed in the current repository
    STALE = "stale"  # branch missing from the current repository (advisory)
    UNVERIFIED = "unverified"  # lives in another repository; not checked


class Association(BaseModel):
    """A persisted link between a ticket and a branch in one repository."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    ticket_id: str = Field(alias="ticketId", min_length=1)
    branch_name: str = Field(alias="branchName", min_length=1)
    repository_id: str = Field(alias="repositoryId", min_length=1)
    repository_path: str = Field(alias="repositoryPath", default="")
    source: AssociationSource = AssociationSource.MANUAL
    created_at: datetime = Field(alias="createdAt", default_factory=utcnow)
    last_verified_at: Optional[datetime] = Field(alias="lastVerifiedAt", default=None)

    @property
    def key(self) -> tuple[str, str]:
        return (self.ticket_id, self.repository_id)

    @property
    def updated_at(self) -> datetime:
        return self.last_verified_at or self.created_at

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class RepositoryDescriptor(BaseModel):
    """Identity and last-known location of a working tree."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    path: str
    remote_url: Optional[str] = Field(alias="remoteUrl", default=None)
    last_seen_at: datetime = Field(alias="lastSeenAt", default_factory=utcnow)
    # upper-case ticket prefixes routed to this repository, e.g. ["FE", "WEB"]
    ticket_prefixes: List[str] = Field(alias="ticketPrefixes", default_factory=list)

    @property
    def is_path_derived(self) -> bool:
        """True when identity comes from the path and will not survive a move."""
        return self.remote_url is None

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class AssociationDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(alias="schemaVersion", default=SCHEMA_VERSION)
    associations: List[Association] = Field(default_factory=list)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class RegistryDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(alias="schemaVersion", default=SCHEMA_VERSION)
    repositories: List[RepositoryDescriptor] = Field(default_factory=list)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class BranchHistoryEntry(BaseModel):
    """One branch a ticket has been associated with, in one repository."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    branch_name: str = Field(alias="branchName", min_length=1)
    repository_id: str = Field(alias="repositoryId", min_length=1)
    repository_path: str = Field(alias="repositoryPath", default="")
    associated_at: datetime = Field(alias="associatedAt", default_factory=utcnow)
    last_used: datetime = Field(alias="lastUsed", default_factory=utcnow)
    is_active: bool = Field(alias="isActive", default=True)


class TicketHistory(BaseModel):
    """Every branch a ticket has used, most recently used first."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    ticket_id: str = Field(alias="ticketId", min_length=1)
    branches: List[BranchHistoryEntry] = Field(default_factory=list)

    @property
    def active(self) -> list[BranchHistoryEntry]:
        return [entry for entry in self.branches if entry.is_active]

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class HistoryDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(alias="schemaVersion", default=SCHEMA_VERSION)
    tickets: List[TicketHistory] = Field(default_factory=list)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
