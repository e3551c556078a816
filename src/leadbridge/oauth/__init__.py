"""OAuth module for LeadConnector marketplace app installs.

Usage:
    from leadbridge.oauth import ProviderClient, resolve_identity

    client = ProviderClient.from_settings()

    # Exchange code for tokens (single use, never retried)
    tokens = await client.exchange_authorization_code(code)

    # Decide agency vs sub-account and the storage key
    identity = await resolve_identity(tokens, client.identify_caller)
    identity.tenant_key  # "agency_<companyId>" or "location_<locationId>"
"""

from .client import (
    CallerIdentity,
    OAuthConfigError,
    ProviderClient,
    ProviderResult,
    SubAccountSnapshot,
    TokenResult,
    UpstreamTokenError,
    fingerprint,
)
from .identity import (
    IdentityAmbiguous,
    ScopeKind,
    TenantIdentity,
    agency_tenant_key,
    classify,
    resolve_identity,
    sub_account_tenant_key,
)
from .state import OAuthState, build_authorize_url, safe_return_to

__all__ = [
    "CallerIdentity",
    "OAuthConfigError",
    "ProviderClient",
    "ProviderResult",
    "SubAccountSnapshot",
    "TokenResult",
    "UpstreamTokenError",
    "fingerprint",
    "IdentityAmbiguous",
    "ScopeKind",
    "TenantIdentity",
    "agency_tenant_key",
    "classify",
    "resolve_identity",
    "sub_account_tenant_key",
    "OAuthState",
    "build_authorize_url",
    "safe_return_to",
]
