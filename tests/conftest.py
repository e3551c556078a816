"""Shared test fixtures for the LeadBridge test suite."""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from leadbridge.installs.store import TokenStore
from leadbridge.models import Base
from leadbridge.oauth.client import (
    CallerIdentity,
    ProviderClient,
    ProviderResult,
    TokenResult,
    fingerprint,
)

# Sample values used across tests
SAMPLE_CLIENT_ID = "app123-abcdef"
SAMPLE_CLIENT_SECRET = "test_client_secret"
SAMPLE_COMPANY_ID = "C1"


def token_payload(**overrides) -> dict:
    """Token endpoint response body."""
    payload = {
        "access_token": "a1",
        "refresh_token": "r1",
        "token_type": "Bearer",
        "expires_in": 3600,
        "scope": "locations.readonly oauth.readonly",
    }
    payload.update(overrides)
    return payload


def make_tokens(**overrides) -> TokenResult:
    return TokenResult.from_payload(token_payload(**overrides), require_access=False)


# ============================================================================
# Database
# ============================================================================


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory):
    return TokenStore(session_factory)


# ============================================================================
# Provider
# ============================================================================


@pytest.fixture
def mock_provider():
    """ProviderClient stand-in with every network call mocked."""
    provider = MagicMock(spec=ProviderClient)
    provider.client_id = SAMPLE_CLIENT_ID
    provider.app_id = "app123"
    provider.client_fingerprint = fingerprint(SAMPLE_CLIENT_ID)

    provider.exchange_authorization_code = AsyncMock(
        return_value=make_tokens(companyId=SAMPLE_COMPANY_ID)
    )
    provider.refresh_access_token = AsyncMock(
        return_value=make_tokens(access_token="a2", refresh_token="r2")
    )
    provider.identify_caller = AsyncMock(return_value=CallerIdentity())
    provider.list_installed_sub_accounts = AsyncMock(return_value=ProviderResult(status=200, value=[]))
    provider.list_all_sub_accounts = AsyncMock(return_value=ProviderResult(status=200, value=[]))
    provider.mint_sub_account_token = AsyncMock(
        side_effect=lambda token, agency_id, location_id: ProviderResult(
            status=201,
            value=make_tokens(
                access_token=f"loc-{location_id}",
                refresh_token=f"loc-r-{location_id}",
                companyId=agency_id,
                locationId=location_id,
            ),
        )
    )
    return provider
