"""
permctl - temporary permission manager for Linux.

Grants time-bounded sudo access to allowlisted commands. A SQLite ledger is
the source of truth; the sudoers drop-in is regenerated from it under an
exclusive lock on every change.
"""

__version__ = "0.1.0"

from .config import Config, CommandPolicy, load_config
from .errors import PermctlError
from .manager import PermissionManager, VerifyReport, VerifyStatus
from .models import GrantFilter, GrantStatus, PermissionGrant

__all__ = [
    "__version__",
    # Config
    "Config",
    "CommandPolicy",
    "load_config",
    # Lifecycle
    "PermissionManager",
    "VerifyReport",
    "VerifyStatus",
    # Records
    "PermissionGrant",
    "GrantStatus",
    "GrantFilter",
    # Errors
    "PermctlError",
]
