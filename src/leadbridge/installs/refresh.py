"""Refresh-and-retry around provider calls that need a stored access token."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, TypeVar

from ..oauth.client import ProviderClient, ProviderResult
from .store import InstallNotFound, TokenStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProviderOp = Callable[[str], Awaitable[ProviderResult[T]]]


class RefreshCoordinator:
    """Runs an operation with a tenant's access token, refreshing once on 401.

    Per invocation the provider refresh endpoint is called at most once and
    the operation at most twice. Refreshes for one tenant key are serialized,
    so concurrent callers that all hit 401 share a single rotation.

    Usage:
        coordinator = RefreshCoordinator(store, provider)
        result = await coordinator.call_with_refresh(
            "agency_C1",
            lambda token: provider.mint_sub_account_token(token, "C1", "L1"),
        )
    """

    def __init__(self, store: TokenStore, provider: ProviderClient):
        self.store = store
        self.provider = provider
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _tenant_lock(self, tenant_key: str):
        """Per-key lock, dropped once nobody holds or waits on it."""
        lock = self._locks.setdefault(tenant_key, asyncio.Lock())
        self._lock_users[tenant_key] = self._lock_users.get(tenant_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[tenant_key] -= 1
            if not self._lock_users[tenant_key]:
                del self._lock_users[tenant_key]
                del self._locks[tenant_key]

    async def call_with_refresh(self, tenant_key: str, op: ProviderOp) -> ProviderResult:
        """Call ``op`` with the stored access token; on 401 refresh once and retry.

        Returns the last ``ProviderResult``. A second 401, or a first 401 with
        no refresh token on file, comes back as-is.

        Raises:
            InstallNotFound: If the record is missing or has no access token
            UpstreamTokenError: If the refresh itself is rejected
        """
        record = await self.store.get_by_tenant_key(tenant_key)
        if record is None or not record.access_token:
            raise InstallNotFound(tenant_key)

        result = await op(record.access_token)
        if not result.unauthorized:
            return result

        async with self._tenant_lock(tenant_key):
            current = await self.store.get_by_tenant_key(tenant_key)
            current_access = current.access_token if current else None
            if current_access and current_access != record.access_token:
                logger.info("token already rotated key=%s, retrying", tenant_key)
                return await op(current_access)

            refresh_token = current.refresh_token if current else None
            if not refresh_token:
                logger.warning("401 with no refresh token on file key=%s", tenant_key)
                return result

            logger.info("refreshing access token key=%s", tenant_key)
            tokens = await self.provider.refresh_access_token(refresh_token)
            await self.store.update_tokens(tenant_key, tokens)

        retried = await op(tokens.access_token)
        if retried.unauthorized:
            logger.warning("still unauthorized after refresh key=%s", tenant_key)
        return retried
