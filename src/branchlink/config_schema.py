"""Configuration schema for branchlink.

Defines all configuration options with types, defaults, and validation.
Uses Pydantic for schema enforcement and clear error messages.
"""

from __future__ import annotations

import re
import warnings
from pathlib import Path
from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GitConfig(BaseModel):
    """Git invocation settings."""

    timeout: float = Field(
        default=5.0,
        gt=0,
        description="Hard ceiling in seconds for each git command",
    )
    remote: str = Field(
        default="origin",
        description="Remote used for identity and tracking branches",
    )
    base_branch: str = Field(
        default="main",
        description="Branch new ticket branches are created from",
    )
    base_branch_fallbacks: List[str] = Field(
        default=["main", "master"],
        description="Tried in order when base_branch does not exist",
    )


class StorageConfig(BaseModel):
    """Association persistence settings."""

    state_dir: str = Field(
        default="",
        description="Directory for persisted state (empty = ~/.branchlink)",
    )
    mode: Literal["workspace", "global", "both"] = Field(
        default="both",
        description="Which scopes associations are written to and read from",
    )
    backup_count: int = Field(
        default=3,
        ge=0,
        description="Backups of unreadable state files to keep",
    )

    @field_validator("state_dir")
    @classmethod
    def validate_state_dir(cls, v: str) -> str:
        """Warn if the state path exists but is not a directory."""
        if v:
            path = Path(v).expanduser()
            if path.exists() and not path.is_dir():
                warnings.warn(
                    f"State path exists but is not a directory: {v}",
                    UserWarning,
                )
        return v


class SuggestionConfig(BaseModel):
    """Ticket identifier grammar used for branch suggestions."""

    provider: Literal["", "linear", "jira"] = Field(
        default="",
        description="Ticket provider grammar (empty = provider-neutral default)",
    )
    pattern: str = Field(
        default="",
        description="Custom identifier regex; overrides the provider grammar",
    )

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        if v:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"Invalid identifier pattern {v!r}: {e}") from e
        return v


class BranchNamingConfig(BaseModel):
    """Naming convention for branches created from tickets."""

    convention: Literal["conventional", "simple", "ticket-only", "custom"] = Field(
        default="conventional",
        description="conventional: feat/<id>-<slug>, simple: <id>-<slug>, ticket-only: <id>",
    )
    custom_template: str = Field(
        default="",
        description="Template for the custom convention. Placeholders: {type}, {identifier}, {slug}",
    )
    max_slug_length: int = Field(
        default=50,
        ge=1,
        description="Maximum length of the title slug",
    )


class RegistryConfig(BaseModel):
    """Repository registry settings."""

    stale_after_days: int = Field(
        default=30,
        ge=1,
        description="Days without a sighting before a repository (or association) is considered old",
    )
    parent_dir: str = Field(
        default="",
        description="Directory scanned by repository discovery (empty = parent of the workspace repository)",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    dir: str = Field(
        default="",
        description="Log directory (empty = ~/.branchlink/logs)",
    )
    max_bytes: int = Field(
        default=10485760,  # 10MB
        ge=0,
        description="Maximum log file size in bytes",
    )
    backup_count: int = Field(
        default=5,
        ge=0,
        description="Number of backup log files to keep",
    )
    disable_file: bool = Field(
        default=False,
        description="Disable file logging (stderr only)",
    )

    @field_validator("dir")
    @classmethod
    def validate_log_dir(cls, v: str) -> str:
        """Warn if log directory doesn't exist (will be created on use)."""
        if v:
            path = Path(v).expanduser()
            if path.exists() and not path.is_dir():
                warnings.warn(
                    f"Log path exists but is not a directory: {v}",
                    UserWarning,
                )
        return v


class BranchLinkConfig(BaseModel):
    """Root configuration model."""

    model_config = ConfigDict(populate_by_name=True)

    version: int = Field(
        default=1,
        ge=1,
        description="Config schema version",
    )

    git: GitConfig = Field(default_factory=GitConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    suggestions: SuggestionConfig = Field(default_factory=SuggestionConfig)
    branch_naming: BranchNamingConfig = Field(default_factory=BranchNamingConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> "BranchLinkConfig":
        """Create config with all defaults."""
        return cls()

    def state_dir(self) -> Path:
        """Resolved directory for persisted state."""
        if self.storage.state_dir:
            return Path(self.storage.state_dir).expanduser()
        return Path.home() / ".branchlink"
