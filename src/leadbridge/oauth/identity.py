"""Install classification: agency (Company) vs sub-account (Location).

Ids embedded in the token response are authoritative. The ``/users/me`` probe
is consulted only when the token carries neither id, and its ids only fill
gaps. A known sub-account id always makes the install a sub-account install.
The caller's ``user_type`` hint is never an input here.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from .client import CallerIdentity, TokenResult

logger = logging.getLogger(__name__)

AGENCY_KEY_PREFIX = "agency_"
AGENCY_CLIENT_KEY_PREFIX = "agency_byClient_"
SUB_ACCOUNT_KEY_PREFIX = "location_"


class ScopeKind(str, enum.Enum):
    AGENCY = "agency"
    SUB_ACCOUNT = "sub_account"

    @property
    def provider_label(self) -> str:
        """Name the provider uses for this scope."""
        return "Company" if self is ScopeKind.AGENCY else "Location"


class IdentityAmbiguous(Exception):
    """Neither the token nor the identity probe yielded an id."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or "Cannot classify install: no company or location id in token response or identity probe"
        )


@dataclass(frozen=True)
class TenantIdentity:
    scope_kind: ScopeKind
    tenant_key: str
    agency_id: str | None = None
    sub_account_id: str | None = None

    @property
    def is_agency(self) -> bool:
        return self.scope_kind is ScopeKind.AGENCY


def agency_tenant_key(agency_id: str) -> str:
    return f"{AGENCY_KEY_PREFIX}{agency_id}"


def client_fallback_tenant_key(client_fingerprint: str) -> str:
    return f"{AGENCY_CLIENT_KEY_PREFIX}{client_fingerprint}"


def sub_account_tenant_key(sub_account_id: str) -> str:
    return f"{SUB_ACCOUNT_KEY_PREFIX}{sub_account_id}"


def classify(
    token: TokenResult,
    probe: CallerIdentity | None = None,
    *,
    client_fingerprint: str | None = None,
) -> TenantIdentity:
    """Decide scope and tenant key for an install.

    Args:
        token: Parsed token response
        probe: Identity probe result, if one was taken
        client_fingerprint: When given, an install with no ids at all is keyed
            ``agency_byClient_<fingerprint>`` instead of failing

    Raises:
        IdentityAmbiguous: If no id is known and no fingerprint fallback applies
    """
    agency_id = token.company_id
    sub_account_id = token.location_id
    if probe is not None:
        agency_id = agency_id or probe.agency_id
        sub_account_id = sub_account_id or probe.sub_account_id

    if sub_account_id:
        return TenantIdentity(
            scope_kind=ScopeKind.SUB_ACCOUNT,
            tenant_key=sub_account_tenant_key(sub_account_id),
            agency_id=agency_id,
            sub_account_id=sub_account_id,
        )

    if agency_id:
        return TenantIdentity(
            scope_kind=ScopeKind.AGENCY,
            tenant_key=agency_tenant_key(agency_id),
            agency_id=agency_id,
        )

    if client_fingerprint:
        logger.warning("install has no ids; keying by client fingerprint %s", client_fingerprint)
        return TenantIdentity(
            scope_kind=ScopeKind.AGENCY,
            tenant_key=client_fallback_tenant_key(client_fingerprint),
        )

    raise IdentityAmbiguous()


async def resolve_identity(
    token: TokenResult,
    probe_fn: Callable[[str], Awaitable[CallerIdentity]],
    *,
    client_fingerprint: str | None = None,
) -> TenantIdentity:
    """Classify, probing ``/users/me`` once if the token names no id."""
    probe = None
    if not token.company_id and not token.location_id:
        probe = await probe_fn(token.access_token)

    identity = classify(token, probe, client_fingerprint=client_fingerprint)
    logger.info(
        "install classified as %s key=%s probed=%s",
        identity.scope_kind.provider_label,
        identity.tenant_key,
        probe is not None,
    )
    return identity
