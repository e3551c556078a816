"""Tests for the install token store."""

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from leadbridge.installs.store import (
    StoreUnavailable,
    TokenStore,
    install_patch,
    token_patch,
)
from leadbridge.oauth.identity import ScopeKind, classify
from tests.conftest import make_tokens


@pytest.mark.asyncio
async def test_first_write_creates_record(store):
    tokens = make_tokens(companyId="C1")
    identity = classify(tokens)

    await store.upsert(identity.tenant_key, install_patch(identity, tokens))
    record = await store.get_by_tenant_key("agency_C1")

    assert record.scope_kind is ScopeKind.AGENCY
    assert record.agency_id == "C1"
    assert record.sub_account_id is None
    assert record.provider == "leadconnector"
    assert record.scopes == ["locations.readonly", "oauth.readonly"]
    assert record.access_token == "a1"
    assert record.refresh_token == "r1"
    assert record.tokens.expires_in_seconds == 3600
    assert record.tokens.saved_at is not None
    assert record.created_at is not None
    assert record.updated_at is not None


@pytest.mark.asyncio
async def test_missing_record(store):
    assert await store.get_by_tenant_key("agency_nope") is None


@pytest.mark.asyncio
async def test_scopes_patch_leaves_tokens(store):
    await store.upsert("agency_C1", {"agency_id": "C1", "tokens": token_patch(make_tokens())})

    await store.upsert("agency_C1", {"scopes": ["contacts.readonly"]})
    record = await store.get_by_tenant_key("agency_C1")

    assert record.scopes == ["contacts.readonly"]
    assert record.access_token == "a1"
    assert record.refresh_token == "r1"
    assert record.agency_id == "C1"


@pytest.mark.asyncio
async def test_refresh_without_refresh_token_keeps_stored_one(store):
    await store.upsert("agency_C1", {"tokens": token_patch(make_tokens())})

    await store.update_tokens("agency_C1", make_tokens(access_token="a2", refresh_token=None))
    record = await store.get_by_tenant_key("agency_C1")

    assert record.access_token == "a2"
    assert record.refresh_token == "r1"


@pytest.mark.asyncio
async def test_refresh_only_token_keeps_stored_access_token(store):
    await store.upsert("location_L1", {"tokens": token_patch(make_tokens())})

    await store.update_tokens("location_L1", make_tokens(access_token=None, refresh_token="r2"))
    record = await store.get_by_tenant_key("location_L1")

    assert record.access_token == "a1"
    assert record.refresh_token == "r2"


@pytest.mark.asyncio
async def test_refresh_rotates_refresh_token(store):
    await store.upsert("agency_C1", {"tokens": token_patch(make_tokens())})

    await store.update_tokens("agency_C1", make_tokens(access_token="a2", refresh_token="r2"))
    record = await store.get_by_tenant_key("agency_C1")

    assert record.refresh_token == "r2"


@pytest.mark.asyncio
async def test_created_at_only_on_first_write(store):
    await store.upsert("agency_C1", {"agency_id": "C1"})
    first = await store.get_by_tenant_key("agency_C1")

    await store.upsert("agency_C1", {"scopes": ["x"]})
    second = await store.get_by_tenant_key("agency_C1")

    assert second.created_at == first.created_at
    assert second.updated_at >= first.updated_at


@pytest.mark.asyncio
async def test_unknown_fields_rejected(store):
    with pytest.raises(ValueError):
        await store.upsert("agency_C1", {"created_at": "now"})
    with pytest.raises(ValueError):
        await store.upsert("agency_C1", {"tokens": {"saved_at": "now"}})


@pytest.mark.asyncio
async def test_insert_race_falls_back_to_merge(store, monkeypatch):
    original = store._merge
    calls = []

    async def flaky(tenant_key, patch):
        calls.append(tenant_key)
        if len(calls) == 1:
            raise IntegrityError("INSERT INTO installs", {}, Exception("UNIQUE constraint failed"))
        return await original(tenant_key, patch)

    monkeypatch.setattr(store, "_merge", flaky)
    await store.upsert("location_L1", {"sub_account_id": "L1"})

    assert len(calls) == 2
    assert (await store.get_by_tenant_key("location_L1")).sub_account_id == "L1"


@pytest.mark.asyncio
async def test_find_any_agency_install(store):
    assert await store.find_any_agency_install() is None

    await store.upsert("location_L1", {"scope_kind": "sub_account", "agency_id": "C1", "sub_account_id": "L1"})
    assert await store.find_any_agency_install() is None

    await store.upsert("agency_C1", {"scope_kind": "agency", "agency_id": "C1"})
    record = await store.find_any_agency_install()

    assert record.tenant_key == "agency_C1"


@pytest.mark.asyncio
async def test_list_sub_accounts(store):
    await store.upsert("location_B", {"scope_kind": "sub_account", "agency_id": "C1", "sub_account_id": "B"})
    await store.upsert("location_A", {"scope_kind": "sub_account", "agency_id": "C1", "sub_account_id": "A"})
    await store.upsert("location_Z", {"scope_kind": "sub_account", "agency_id": "C2", "sub_account_id": "Z"})

    records = await store.list_sub_accounts("C1")

    assert [r.sub_account_id for r in records] == ["A", "B"]


@pytest.mark.asyncio
async def test_redacted_hides_token_values(store):
    await store.upsert("agency_C1", {"agency_id": "C1", "tokens": token_patch(make_tokens())})
    record = await store.get_by_tenant_key("agency_C1")

    view = record.redacted()

    assert view["tokens"]["access_token"] == "redacted"
    assert view["tokens"]["refresh_token"] == "redacted"
    assert "a1" not in str(view)
    assert "r1" not in str(view)


@pytest.mark.asyncio
async def test_unreachable_database_raises_store_unavailable(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/missing/dir/x.db")
    store = TokenStore(async_sessionmaker(engine, expire_on_commit=False))

    with pytest.raises(StoreUnavailable):
        await store.get_by_tenant_key("agency_C1")
    with pytest.raises(StoreUnavailable):
        await store.upsert("agency_C1", {"agency_id": "C1"})

    await engine.dispose()
