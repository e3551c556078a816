"""Install persistence, token refresh, and sub-account minting."""

from .discovery import DiscoveryMinter, DiscoverySummary, MintError, MintFailure
from .refresh import RefreshCoordinator
from .service import InstallOutcome, InstallService, InstallStatus
from .store import (
    InstallNotFound,
    InstallRecord,
    RefreshTokenMissing,
    StoreUnavailable,
    TokenStore,
    get_token_store,
    token_patch,
)

__all__ = [
    "DiscoveryMinter",
    "DiscoverySummary",
    "MintError",
    "MintFailure",
    "RefreshCoordinator",
    "InstallOutcome",
    "InstallService",
    "InstallStatus",
    "InstallNotFound",
    "InstallRecord",
    "RefreshTokenMissing",
    "StoreUnavailable",
    "TokenStore",
    "get_token_store",
    "token_patch",
]
