"""Sub-account discovery and per-sub-account token minting for agency installs.

Discovery is an ordered chain of listing steps. The first step that yields any
entries wins; a paged listing that failed halfway still counts with the pages
it got. Each discovered sub-account is then minted through the refresh
coordinator and stored under ``location_<id>``. One bad sub-account never
aborts the rest: mint failures are collected in the summary.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx

from ..oauth.client import (
    ProviderClient,
    ProviderResult,
    SubAccountSnapshot,
    TokenResult,
    UpstreamTokenError,
)
from ..oauth.identity import ScopeKind, TenantIdentity, agency_tenant_key, sub_account_tenant_key
from .refresh import RefreshCoordinator
from .store import TokenStore, install_patch

logger = logging.getLogger(__name__)

ListingStep = Callable[[str], Awaitable[ProviderResult[list[SubAccountSnapshot]]]]


@dataclass
class MintFailure:
    sub_account_id: str
    status: int = 0
    reason: str = ""


@dataclass
class DiscoverySummary:
    agency_id: str
    found: int = 0
    minted: int = 0
    minted_ids: list[str] = field(default_factory=list)
    failures: list[MintFailure] = field(default_factory=list)
    source: str | None = None  # listing step that produced the entries

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    def to_dict(self) -> dict:
        return {
            "agency_id": self.agency_id,
            "found": self.found,
            "minted": self.minted,
            "minted_ids": list(self.minted_ids),
            "failed_ids": [f.sub_account_id for f in self.failures],
            "source": self.source,
        }


class MintError(Exception):
    """A single requested mint did not produce a token."""

    def __init__(self, sub_account_id: str, status: int = 0, body: str = ""):
        self.sub_account_id = sub_account_id
        self.status = status
        self.body = body
        super().__init__(f"Location token mint failed for {sub_account_id} (status {status})")


def dedupe(snapshots: list[SubAccountSnapshot]) -> list[SubAccountSnapshot]:
    """Drop repeated ids, keeping the first occurrence and the original order."""
    seen: set[str] = set()
    unique = []
    for snapshot in snapshots:
        if snapshot.id in seen:
            continue
        seen.add(snapshot.id)
        unique.append(snapshot)
    return unique


class DiscoveryMinter:
    """Enumerates an agency's sub-accounts and mints a token pair for each.

    Re-running for the same agency rewrites the same ``location_<id>`` records,
    so it is safe to call again after a partial failure.
    """

    def __init__(
        self,
        store: TokenStore,
        provider: ProviderClient,
        coordinator: RefreshCoordinator | None = None,
        *,
        integration_id: str | None = None,
        concurrency: int = 4,
        page_size: int = 200,
        max_pages: int = 50,
    ):
        self.store = store
        self.provider = provider
        self.coordinator = coordinator or RefreshCoordinator(store, provider)
        self.integration_id = integration_id
        self.concurrency = max(1, concurrency)
        self.page_size = page_size
        self.max_pages = max_pages

    def _listing_steps(self, agency_id: str) -> list[tuple[str, ListingStep]]:
        return [
            (
                "installed_locations",
                lambda token: self.provider.list_installed_sub_accounts(
                    token, agency_id, self.integration_id
                ),
            ),
            (
                "company_locations",
                lambda token: self.provider.list_all_sub_accounts(
                    token, agency_id, self.page_size, self.max_pages
                ),
            ),
        ]

    async def discover(self, agency_id: str) -> tuple[list[SubAccountSnapshot], str | None]:
        """Run the listing chain. Returns the unique snapshots and the winning step."""
        agency_key = agency_tenant_key(agency_id)
        for name, step in self._listing_steps(agency_id):
            result = await self.coordinator.call_with_refresh(agency_key, step)
            if result.value:
                snapshots = dedupe(result.value)
                logger.info(
                    "discovery agency=%s step=%s status=%s found=%d",
                    agency_id,
                    name,
                    result.status,
                    len(snapshots),
                )
                return snapshots, name
            logger.info(
                "discovery agency=%s step=%s yielded nothing status=%s",
                agency_id,
                name,
                result.status,
            )
        return [], None

    async def discover_and_mint(self, agency_id: str) -> DiscoverySummary:
        """Discover every sub-account of ``agency_id`` and mint each one.

        Raises:
            InstallNotFound: If the agency has no stored access token
            StoreUnavailable: If the database fails mid-run
        """
        snapshots, source = await self.discover(agency_id)
        summary = DiscoverySummary(agency_id=agency_id, found=len(snapshots), source=source)
        if not snapshots:
            logger.warning("discovery agency=%s found no sub-accounts", agency_id)
            return summary

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(snapshot: SubAccountSnapshot) -> MintFailure | None:
            async with semaphore:
                return await self._attempt(agency_id, snapshot)

        tasks = [asyncio.ensure_future(bounded(s)) for s in snapshots]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            # No sibling mint may keep writing after a fatal error.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for snapshot, failure in zip(snapshots, outcomes):
            if failure is None:
                summary.minted_ids.append(snapshot.id)
            else:
                summary.failures.append(failure)
        summary.minted = len(summary.minted_ids)

        logger.info(
            "discovery done agency=%s found=%d minted=%d failed=%d",
            agency_id,
            summary.found,
            summary.minted,
            len(summary.failures),
        )
        return summary

    async def _attempt(self, agency_id: str, snapshot: SubAccountSnapshot) -> MintFailure | None:
        try:
            await self._mint(agency_id, snapshot.id, snapshot.name)
        except MintError as e:
            logger.warning(
                "mint failed agency=%s location=%s status=%s", agency_id, snapshot.id, e.status
            )
            return MintFailure(snapshot.id, e.status, e.body)
        except UpstreamTokenError as e:
            logger.warning(
                "mint failed agency=%s location=%s refresh rejected status=%s",
                agency_id,
                snapshot.id,
                e.status,
            )
            return MintFailure(snapshot.id, e.status, e.body)
        except httpx.HTTPError as e:
            logger.warning("mint failed agency=%s location=%s error=%s", agency_id, snapshot.id, e)
            return MintFailure(snapshot.id, 0, str(e))
        return None

    async def mint_one(
        self, agency_id: str, sub_account_id: str, name: str | None = None
    ) -> TokenResult:
        """Mint and store a single sub-account token.

        Raises:
            MintError: If the provider did not return a token
            InstallNotFound: If the agency has no stored access token
        """
        return await self._mint(agency_id, sub_account_id, name)

    async def _mint(self, agency_id: str, sub_account_id: str, name: str | None) -> TokenResult:
        result = await self.coordinator.call_with_refresh(
            agency_tenant_key(agency_id),
            lambda token: self.provider.mint_sub_account_token(token, agency_id, sub_account_id),
        )
        if not result.ok:
            raise MintError(sub_account_id, result.status, result.body)

        tokens: TokenResult = result.value
        identity = TenantIdentity(
            scope_kind=ScopeKind.SUB_ACCOUNT,
            tenant_key=sub_account_tenant_key(sub_account_id),
            agency_id=agency_id,
            sub_account_id=sub_account_id,
        )
        await self.store.upsert(identity.tenant_key, install_patch(identity, tokens, name))
        logger.info("minted location=%s agency=%s", sub_account_id, agency_id)
        return tokens
