"""branchlink: ticket-to-branch associations across git repositories."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("branchlink")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .engine import BranchLinkEngine  # noqa: F401
from .errors import BranchLinkError, ErrorKind  # noqa: F401
from .models import (  # noqa: F401
    Association,
    AssociationSource,
    AssociationState,
    RepositoryDescriptor,
    TicketHistory,
)

__all__ = [
    "Association",
    "AssociationSource",
    "AssociationState",
    "BranchLinkEngine",
    "BranchLinkError",
    "ErrorKind",
    "RepositoryDescriptor",
    "TicketHistory",
    "__version__",
]
