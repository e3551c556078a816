"""Install orchestration: what the OAuth callback and admin surfaces call.

Usage:
    service = InstallService.from_settings()

    outcome = await service.complete_install(code, user_type_hint="Company")
    outcome.identity.tenant_key     # "agency_C1"
    outcome.discovery.minted_ids    # ["A", "C"]

    status = await service.install_status(sub_account_id="L9")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, TYPE_CHECKING

import httpx

from ..oauth.client import ProviderClient, TokenResult, UpstreamTokenError
from ..oauth.identity import TenantIdentity, agency_tenant_key, resolve_identity, sub_account_tenant_key
from .discovery import DiscoveryMinter, DiscoverySummary
from .refresh import RefreshCoordinator
from .store import (
    InstallNotFound,
    RefreshTokenMissing,
    TokenStore,
    get_token_store,
    install_patch,
)

if TYPE_CHECKING:
    from ..config import LeadBridgeSettings

logger = logging.getLogger(__name__)


@dataclass
class InstallOutcome:
    identity: TenantIdentity
    scopes: list[str]
    discovery: DiscoverySummary | None = None
    discovery_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_key": self.identity.tenant_key,
            "scope_kind": self.identity.scope_kind.value,
            "user_type": self.identity.scope_kind.provider_label,
            "agency_id": self.identity.agency_id,
            "sub_account_id": self.identity.sub_account_id,
            "scopes": self.scopes,
            "discovery": self.discovery.to_dict() if self.discovery else None,
            "discovery_error": self.discovery_error,
        }


@dataclass
class InstallStatus:
    installed: bool = False
    agency_id: str | None = None
    sub_account_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "installed": self.installed,
            "agencyId": self.agency_id,
            "locationId": self.sub_account_id,
        }


class InstallService:
    """Ties the provider client, identity classifier, store and minter together."""

    def __init__(
        self,
        store: TokenStore,
        provider: ProviderClient,
        *,
        discover_on_install: bool = True,
        allow_client_fingerprint_fallback: bool = False,
        coordinator: RefreshCoordinator | None = None,
        minter: DiscoveryMinter | None = None,
    ):
        self.store = store
        self.provider = provider
        self.discover_on_install = discover_on_install
        self.allow_client_fingerprint_fallback = allow_client_fingerprint_fallback
        self.coordinator = coordinator or RefreshCoordinator(store, provider)
        self.minter = minter or DiscoveryMinter(
            store, provider, self.coordinator, integration_id=provider.app_id
        )

    @classmethod
    def from_settings(
        cls,
        settings_obj: "LeadBridgeSettings | None" = None,
        store: TokenStore | None = None,
        provider: ProviderClient | None = None,
    ) -> "InstallService":
        """Build a service wired from ``LeadBridgeSettings``.

        Raises:
            OAuthConfigError: If client credentials are missing
        """
        if settings_obj is None:
            from ..config import settings as settings_obj

        store = store or get_token_store()
        provider = provider or ProviderClient.from_settings(settings_obj)
        coordinator = RefreshCoordinator(store, provider)
        minter = DiscoveryMinter(
            store,
            provider,
            coordinator,
            integration_id=settings_obj.resolved_app_id,
            concurrency=settings_obj.mint_concurrency,
            page_size=settings_obj.location_page_size,
            max_pages=settings_obj.location_max_pages,
        )
        return cls(
            store,
            provider,
            discover_on_install=settings_obj.discover_on_install,
            allow_client_fingerprint_fallback=settings_obj.allow_client_fingerprint_fallback,
            coordinator=coordinator,
            minter=minter,
        )

    async def complete_install(
        self,
        code: str,
        *,
        redirect_uri: str | None = None,
        user_type_hint: str | None = None,
    ) -> InstallOutcome:
        """Exchange the code, classify, persist, and for agencies mint sub-accounts.

        A discovery failure after the agency record is written is logged and
        reported in ``discovery_error``; the install itself still succeeds.

        Raises:
            UpstreamTokenError: If the code exchange is rejected
            IdentityAmbiguous: If the install cannot be classified
            StoreUnavailable: If the database is unreachable
        """
        tokens = await self.provider.exchange_authorization_code(
            code, redirect_uri=redirect_uri, user_type=user_type_hint
        )
        fallback = self.provider.client_fingerprint if self.allow_client_fingerprint_fallback else None
        identity = await resolve_identity(
            tokens, self.provider.identify_caller, client_fingerprint=fallback
        )

        await self.store.upsert(identity.tenant_key, install_patch(identity, tokens))
        outcome = InstallOutcome(identity=identity, scopes=tokens.scopes)

        if user_type_hint and user_type_hint != identity.scope_kind.provider_label:
            logger.info(
                "user_type hint %s disagrees with token; stored as %s",
                user_type_hint,
                identity.scope_kind.provider_label,
            )

        if identity.is_agency and identity.agency_id and self.discover_on_install:
            try:
                outcome.discovery = await self.minter.discover_and_mint(identity.agency_id)
            except (UpstreamTokenError, InstallNotFound, httpx.HTTPError) as e:
                logger.warning("discovery after install failed agency=%s: %s", identity.agency_id, e)
                outcome.discovery_error = str(e)

        return outcome

    async def backfill(self, agency_id: str | None = None) -> DiscoverySummary:
        """Re-run discovery and minting for an agency already on file.

        With no ``agency_id`` an arbitrary stored agency is used.
        """
        if not agency_id:
            record = await self.store.find_any_agency_install()
            if record is None or not record.agency_id:
                raise InstallNotFound(None, "No agency install on file")
            agency_id = record.agency_id
            logger.info("backfill picked agency=%s", agency_id)
        return await self.minter.discover_and_mint(agency_id)

    async def mint_sub_account(self, agency_id: str, sub_account_id: str) -> TokenResult:
        return await self.minter.mint_one(agency_id, sub_account_id)

    async def sub_account_access_token(self, sub_account_id: str) -> TokenResult:
        """Fresh access token for a sub-account, rotating its stored refresh token.

        Raises:
            InstallNotFound: If no record exists for the sub-account
            RefreshTokenMissing: If the record has no refresh token
            UpstreamTokenError: If the refresh is rejected
        """
        tenant_key = sub_account_tenant_key(sub_account_id)
        record = await self.store.get_by_tenant_key(tenant_key)
        if record is None:
            raise InstallNotFound(tenant_key)
        if not record.refresh_token:
            raise RefreshTokenMissing(tenant_key)

        tokens = await self.provider.refresh_access_token(record.refresh_token)
        await self.store.update_tokens(tenant_key, tokens)
        return tokens

    async def install_status(
        self, agency_id: str | None = None, sub_account_id: str | None = None
    ) -> InstallStatus:
        """Whether the app is installed for a sub-account, or anywhere under an agency.

        A sub-account id takes precedence. For an agency, any sub-account with a
        refresh token counts, then the agency's own record.
        """
        if sub_account_id:
            record = await self.store.get_by_tenant_key(sub_account_tenant_key(sub_account_id))
            if record is None:
                return InstallStatus()
            return InstallStatus(
                installed=bool(record.refresh_token),
                agency_id=record.agency_id,
                sub_account_id=sub_account_id,
            )

        if agency_id:
            for record in await self.store.list_sub_accounts(agency_id):
                if record.refresh_token:
                    return InstallStatus(True, agency_id, record.sub_account_id)
            agency = await self.store.get_by_tenant_key(agency_tenant_key(agency_id))
            if agency is not None and agency.refresh_token:
                return InstallStatus(True, agency_id, None)

        return InstallStatus()
