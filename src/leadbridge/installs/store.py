"""Token store: install records keyed by tenant key.

Writes are field-level merges. A patch only touches the columns it names, and
a ``tokens`` patch only touches the token fields it names, so a refresh that
carries no refresh token keeps the one on file and a scopes-only patch leaves
tokens alone. ``created_at`` / ``updated_at`` / ``tokens.saved_at`` are owned
here; callers never set them.

Usage:
    store = get_token_store()

    await store.upsert("agency_C1", {"scope_kind": "agency", "agency_id": "C1",
                                     "tokens": token_patch(tokens)})
    record = await store.get_by_tenant_key("agency_C1")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import PROVIDER, Install
from ..oauth.client import TokenResult
from ..oauth.identity import ScopeKind, TenantIdentity

logger = logging.getLogger(__name__)

PATCH_FIELDS = frozenset(
    {
        "provider",
        "scope_kind",
        "agency_id",
        "sub_account_id",
        "sub_account_name",
        "scopes",
        "tokens",
    }
)
TOKEN_FIELDS = frozenset({"access_token", "refresh_token", "token_type", "expires_in", "scope"})

_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, OSError)


class StoreUnavailable(Exception):
    """The database could not be reached."""


class InstallNotFound(Exception):
    """No usable install record for a tenant key."""

    def __init__(self, tenant_key: str | None, message: str | None = None):
        self.tenant_key = tenant_key
        super().__init__(message or f"No install found for {tenant_key}")


class RefreshTokenMissing(InstallNotFound):
    """The record exists but holds no refresh token."""

    def __init__(self, tenant_key: str):
        super().__init__(tenant_key, f"{tenant_key} is not installed: no refresh token on file")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StoredTokens:
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in_seconds: int | None = None
    raw_scope: str = ""
    saved_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StoredTokens | None":
        if not data:
            return None
        return cls(
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type") or "Bearer",
            expires_in_seconds=data.get("expires_in"),
            raw_scope=data.get("scope") or "",
            saved_at=data.get("saved_at"),
        )


@dataclass
class InstallRecord:
    """Read-only view of an install row."""

    tenant_key: str
    scope_kind: ScopeKind | None = None
    agency_id: str | None = None
    sub_account_id: str | None = None
    sub_account_name: str | None = None
    scopes: list[str] = field(default_factory=list)
    tokens: StoredTokens | None = None
    provider: str = PROVIDER
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def access_token(self) -> str | None:
        return self.tokens.access_token if self.tokens else None

    @property
    def refresh_token(self) -> str | None:
        return self.tokens.refresh_token if self.tokens else None

    @classmethod
    def from_row(cls, row: Install) -> "InstallRecord":
        return cls(
            tenant_key=row.tenant_key,
            scope_kind=ScopeKind(row.scope_kind) if row.scope_kind else None,
            agency_id=row.agency_id,
            sub_account_id=row.sub_account_id,
            sub_account_name=row.sub_account_name,
            scopes=list(row.scopes or []),
            tokens=StoredTokens.from_dict(row.tokens),
            provider=row.provider,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def redacted(self) -> dict[str, Any]:
        """Dict view safe to show: token values replaced by presence flags."""
        tokens = None
        if self.tokens:
            tokens = {
                "access_token": "redacted" if self.tokens.access_token else None,
                "refresh_token": "redacted" if self.tokens.refresh_token else None,
                "token_type": self.tokens.token_type,
                "expires_in": self.tokens.expires_in_seconds,
                "scope": self.tokens.raw_scope,
                "saved_at": self.tokens.saved_at,
            }
        return {
            "tenant_key": self.tenant_key,
            "provider": self.provider,
            "scope_kind": self.scope_kind.value if self.scope_kind else None,
            "agency_id": self.agency_id,
            "sub_account_id": self.sub_account_id,
            "sub_account_name": self.sub_account_name,
            "scopes": self.scopes,
            "tokens": tokens,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def token_patch(tokens: TokenResult) -> dict[str, Any]:
    """Token fields to merge for a token response.

    Missing access or refresh tokens are left out so the stored ones survive.
    """
    patch: dict[str, Any] = {
        "token_type": tokens.token_type,
        "expires_in": tokens.expires_in,
        "scope": tokens.scope,
    }
    if tokens.access_token:
        patch["access_token"] = tokens.access_token
    if tokens.refresh_token:
        patch["refresh_token"] = tokens.refresh_token
    return patch


def install_patch(
    identity: TenantIdentity,
    tokens: TokenResult,
    sub_account_name: str | None = None,
) -> dict[str, Any]:
    """Full patch for a freshly exchanged or minted token. Unknown ids are omitted."""
    patch: dict[str, Any] = {
        "provider": PROVIDER,
        "scope_kind": identity.scope_kind.value,
        "scopes": tokens.scopes,
        "tokens": token_patch(tokens),
    }
    if identity.agency_id:
        patch["agency_id"] = identity.agency_id
    if identity.sub_account_id:
        patch["sub_account_id"] = identity.sub_account_id
    if sub_account_name:
        patch["sub_account_name"] = sub_account_name
    return patch


class TokenStore:
    """Sole writer of install records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def upsert(self, tenant_key: str, patch: dict[str, Any]) -> None:
        """Merge ``patch`` into the record for ``tenant_key``, creating it if needed.

        Raises:
            ValueError: If the patch names unknown fields
            StoreUnavailable: If the database is unreachable
        """
        unknown = set(patch) - PATCH_FIELDS
        if unknown:
            raise ValueError(f"Unknown install fields: {sorted(unknown)}")
        if "tokens" in patch:
            unknown_tokens = set(patch["tokens"] or {}) - TOKEN_FIELDS
            if unknown_tokens:
                raise ValueError(f"Unknown token fields: {sorted(unknown_tokens)}")

        for attempt in (1, 2):
            try:
                created = await self._merge(tenant_key, patch)
                break
            except IntegrityError:
                # A concurrent writer created the row first; merge into it.
                if attempt == 2:
                    raise
                logger.info("install upsert raced on insert key=%s, retrying as merge", tenant_key)
            except _UNAVAILABLE_ERRORS as e:
                raise StoreUnavailable(f"Install store unavailable: {e}") from e

        tokens = patch.get("tokens") or {}
        logger.info(
            "install upsert key=%s new=%s fields=%s has_refresh=%s",
            tenant_key,
            created,
            sorted(patch),
            bool(tokens.get("refresh_token")),
        )

    async def _merge(self, tenant_key: str, patch: dict[str, Any]) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(Install, tenant_key, with_for_update=True)
                now = _now()
                created = row is None
                if created:
                    row = Install(tenant_key=tenant_key, provider=PROVIDER, created_at=now)
                    session.add(row)

                for name, value in patch.items():
                    if name == "tokens":
                        merged = dict(row.tokens or {})
                        merged.update(value or {})
                        merged["saved_at"] = now.isoformat()
                        row.tokens = merged
                    elif name == "scope_kind":
                        row.scope_kind = ScopeKind(value).value if value else None
                    elif name == "scopes":
                        row.scopes = list(value) if value is not None else None
                    else:
                        setattr(row, name, value)
                row.updated_at = now
        return created

    async def update_tokens(self, tenant_key: str, tokens: TokenResult) -> None:
        """Merge a refreshed token into an existing record."""
        await self.upsert(tenant_key, {"tokens": token_patch(tokens)})

    async def get_by_tenant_key(self, tenant_key: str) -> InstallRecord | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(Install, tenant_key)
                return InstallRecord.from_row(row) if row else None
        except _UNAVAILABLE_ERRORS as e:
            raise StoreUnavailable(f"Install store unavailable: {e}") from e

    async def find_any_agency_install(self) -> InstallRecord | None:
        """Some agency install, or None.

        Admin/debug convenience only: with several agencies installed, which
        one comes back is unspecified.
        """
        stmt = (
            select(Install)
            .where(
                Install.provider == PROVIDER,
                Install.scope_kind == ScopeKind.AGENCY.value,
                Install.agency_id.is_not(None),
            )
            .limit(1)
        )
        try:
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).scalars().first()
                return InstallRecord.from_row(row) if row else None
        except _UNAVAILABLE_ERRORS as e:
            raise StoreUnavailable(f"Install store unavailable: {e}") from e

    async def list_sub_accounts(self, agency_id: str) -> list[InstallRecord]:
        stmt = (
            select(Install)
            .where(
                Install.scope_kind == ScopeKind.SUB_ACCOUNT.value,
                Install.agency_id == agency_id,
            )
            .order_by(Install.tenant_key)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [InstallRecord.from_row(row) for row in rows]
        except _UNAVAILABLE_ERRORS as e:
            raise StoreUnavailable(f"Install store unavailable: {e}") from e


_store: TokenStore | None = None


def get_token_store() -> TokenStore:
    """Process-wide store handle, created on first use."""
    global _store
    if _store is None:
        from ..database import get_session_factory

        _store = TokenStore(get_session_factory())
    return _store
