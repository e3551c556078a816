"""Tests for the HTTP surface."""

from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from leadbridge.config import LeadBridgeSettings
from leadbridge.database import get_db
from leadbridge.installs.service import InstallService
from leadbridge.installs.store import StoreUnavailable, token_patch
from leadbridge.oauth.client import ProviderResult, SubAccountSnapshot, UpstreamTokenError
from leadbridge.oauth.state import OAuthState
from leadbridge.web.deps import get_install_service, get_settings, get_store
from tests.conftest import SAMPLE_CLIENT_ID, SAMPLE_CLIENT_SECRET, make_tokens

BASE_URL = "https://bridge.example.com"
CUSTOM_PAGE = "https://app.gohighlevel.com/custom-page-link/abc"


@pytest.fixture
def test_settings():
    return LeadBridgeSettings(
        client_id=SAMPLE_CLIENT_ID,
        client_secret=SAMPLE_CLIENT_SECRET,
        redirect_uri=f"{BASE_URL}/api/oauth/callback",
        app_base_url=BASE_URL,
        scopes="locations.readonly oauth.write",
    )


@pytest_asyncio.fixture
async def client(store, mock_provider, test_settings, session_factory):
    """HTTPX async test client against the LeadBridge app."""
    from leadbridge.web.app import app

    service = InstallService(store, mock_provider)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_install_service] = lambda: service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url=BASE_URL) as c:
        yield c

    app.dependency_overrides.clear()


def _start_login(client, nonce="n1", **state_fields):
    client.cookies.set("rl_state", nonce)
    return OAuthState(nonce=nonce, **state_fields).encode()


class TestLogin:
    @pytest.mark.asyncio
    async def test_redirects_to_consent(self, client):
        resp = await client.get("/api/oauth/login", params={"returnTo": CUSTOM_PAGE, "user_type": "location"})

        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith("https://marketplace.gohighlevel.com/oauth/authorize?")
        query = parse_qs(urlparse(location).query)
        assert query["client_id"] == [SAMPLE_CLIENT_ID]
        assert query["scope"] == ["locations.readonly oauth.write"]
        assert query["user_type"] == ["Location"]

        state = OAuthState.parse(query["state"][0])
        assert state.return_to == CUSTOM_PAGE
        assert state.user_type == "Location"

        cookie = resp.headers["set-cookie"]
        assert f"rl_state={state.nonce}" in cookie
        assert "HttpOnly" in cookie
        assert "Max-Age=600" in cookie

    @pytest.mark.asyncio
    async def test_untrusted_return_to_dropped(self, client):
        resp = await client.get("/api/oauth/login", params={"returnTo": "https://evil.com/x"})

        state = OAuthState.parse(parse_qs(urlparse(resp.headers["location"]).query)["state"][0])
        assert state.return_to is None

    @pytest.mark.asyncio
    async def test_unconfigured(self, client, test_settings):
        test_settings.client_id = ""

        resp = await client.get("/api/oauth/login")

        assert resp.status_code == 500
        assert resp.json()["error"] == "oauth_not_configured"


class TestCallback:
    @pytest.mark.asyncio
    async def test_agency_install_redirects_home(self, client, store):
        state = _start_login(client)

        resp = await client.get("/api/oauth/callback", params={"code": "c1", "state": state})

        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert 'rl_state=""' in resp.headers["set-cookie"]
        assert await store.get_by_tenant_key("agency_C1") is not None

    @pytest.mark.asyncio
    async def test_redirects_to_return_to(self, client):
        state = _start_login(client, return_to=CUSTOM_PAGE)

        resp = await client.get("/api/oauth/callback", params={"code": "c1", "state": state})

        assert resp.headers["location"] == CUSTOM_PAGE

    @pytest.mark.asyncio
    async def test_state_user_type_is_passed_as_hint(self, client, mock_provider):
        state = _start_login(client, user_type="Location")

        await client.get("/api/oauth/callback", params={"code": "c1", "state": state})

        assert mock_provider.exchange_authorization_code.await_args.kwargs["user_type"] == "Location"

    @pytest.mark.asyncio
    async def test_json_format(self, client, mock_provider):
        mock_provider.exchange_authorization_code.return_value = make_tokens(companyId="C1", locationId="L9")
        state = _start_login(client)

        resp = await client.get("/api/oauth/callback", params={"code": "c1", "state": state, "format": "json"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["tenant_key"] == "location_L9"
        assert body["user_type"] == "Location"
        assert "a1" not in resp.text
        assert "r1" not in resp.text

    @pytest.mark.asyncio
    async def test_state_mismatch(self, client, mock_provider):
        _start_login(client, nonce="cookie-nonce")

        resp = await client.get("/api/oauth/callback", params={"code": "c1", "state": "other"})

        assert resp.status_code == 400
        mock_provider.exchange_authorization_code.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_cookie(self, client):
        resp = await client.get("/api/oauth/callback", params={"code": "c1", "state": "n1"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_no_state_requires_provider_referer(self, client):
        resp = await client.get("/api/oauth/callback", params={"code": "c1"})
        assert resp.status_code == 400

        resp = await client.get(
            "/api/oauth/callback",
            params={"code": "c1"},
            headers={"referer": "https://evil.example/?gohighlevel.com"},
        )
        assert resp.status_code == 400

        resp = await client.get(
            "/api/oauth/callback",
            params={"code": "c1"},
            headers={"referer": "https://marketplace.gohighlevel.com/"},
        )
        assert resp.status_code == 302

    @pytest.mark.asyncio
    async def test_provider_error(self, client):
        resp = await client.get("/api/oauth/callback", params={"error": "access_denied"})

        assert resp.status_code == 400
        assert "access_denied" in resp.text

    @pytest.mark.asyncio
    async def test_missing_code(self, client):
        resp = await client.get("/api/oauth/callback")
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_exchange_rejected(self, client, mock_provider):
        mock_provider.exchange_authorization_code.side_effect = UpstreamTokenError(400, "invalid_grant " * 100)
        state = _start_login(client)

        resp = await client.get("/api/oauth/callback", params={"code": "c1", "state": state})

        assert resp.status_code == 502
        body = resp.json()
        assert body["status"] == 400
        assert len(body["body"]) <= 400

    @pytest.mark.asyncio
    async def test_ambiguous_identity(self, client, mock_provider):
        mock_provider.exchange_authorization_code.return_value = make_tokens()
        state = _start_login(client)

        resp = await client.get("/api/oauth/callback", params={"code": "c1", "state": state})

        assert resp.status_code == 422


class TestInstallRoutes:
    @pytest.mark.asyncio
    async def test_backfill(self, client, store, mock_provider):
        await store.upsert("agency_C1", {"scope_kind": "agency", "agency_id": "C1", "tokens": token_patch(make_tokens())})
        mock_provider.list_installed_sub_accounts.return_value = ProviderResult(
            status=200, value=[SubAccountSnapshot("A"), SubAccountSnapshot("B")]
        )

        resp = await client.post("/api/installs/backfill", params={"companyId": "C1"})

        assert resp.status_code == 200
        assert resp.json()["minted_ids"] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_backfill_without_agency(self, client):
        resp = await client.post("/api/installs/backfill")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_mint(self, client, store):
        await store.upsert("agency_C1", {"agency_id": "C1", "tokens": token_patch(make_tokens())})

        resp = await client.post("/api/installs/mint", params={"companyId": "C1", "locationId": "L1"})

        assert resp.status_code == 200
        assert resp.json()["tenant_key"] == "location_L1"
        assert "loc-L1" not in resp.text

    @pytest.mark.asyncio
    async def test_mint_failure(self, client, store, mock_provider):
        await store.upsert("agency_C1", {"agency_id": "C1", "tokens": token_patch(make_tokens())})
        mock_provider.mint_sub_account_token.side_effect = None
        mock_provider.mint_sub_account_token.return_value = ProviderResult(status=400, body="nope")

        resp = await client.post("/api/installs/mint", params={"companyId": "C1", "locationId": "L1"})

        assert resp.status_code == 502
        assert resp.json()["location_id"] == "L1"

    @pytest.mark.asyncio
    async def test_show_install_redacted(self, client, store):
        await store.upsert("agency_C1", {"agency_id": "C1", "tokens": token_patch(make_tokens())})

        resp = await client.get("/api/installs/agency_C1")

        assert resp.status_code == 200
        assert resp.json()["tokens"]["access_token"] == "redacted"
        assert "r1" not in resp.text

    @pytest.mark.asyncio
    async def test_show_missing_install(self, client):
        resp = await client.get("/api/installs/agency_nope")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_store_unavailable(self, client, store):
        store.get_by_tenant_key = AsyncMock(side_effect=StoreUnavailable("db down"))

        resp = await client.get("/api/installs/agency_C1")

        assert resp.status_code == 503


class TestInstalled:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("param", ["locationId", "location_id", "location", "subAccountId", "accountId"])
    async def test_location_aliases(self, client, store, param):
        await store.upsert(
            "location_L9",
            {"scope_kind": "sub_account", "agency_id": "C1", "sub_account_id": "L9", "tokens": token_patch(make_tokens())},
        )

        resp = await client.get("/api/installed", params={param: "L9"})

        assert resp.json() == {"installed": True, "agencyId": "C1", "locationId": "L9"}
        assert resp.headers["cache-control"] == "no-store"

    @pytest.mark.asyncio
    async def test_company_alias(self, client, store):
        await store.upsert("agency_C1", {"scope_kind": "agency", "agency_id": "C1", "tokens": token_patch(make_tokens())})

        resp = await client.get("/api/installed", params={"companyId": "C1"})

        assert resp.json()["installed"] is True

    @pytest.mark.asyncio
    async def test_not_installed(self, client):
        resp = await client.get("/api/installed", params={"locationId": "nope"})
        assert resp.json()["installed"] is False


class TestLocationToken:
    @pytest.mark.asyncio
    async def test_fresh_token(self, client, store):
        await store.upsert("location_L9", {"sub_account_id": "L9", "tokens": token_patch(make_tokens())})

        resp = await client.get("/api/tokens/location", params={"locationId": "L9"})

        assert resp.status_code == 200
        assert resp.json()["access_token"] == "a2"
        assert resp.headers["cache-control"] == "no-store"

    @pytest.mark.asyncio
    async def test_missing_param(self, client):
        resp = await client.get("/api/tokens/location")
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_location(self, client):
        resp = await client.get("/api/tokens/location", params={"locationId": "nope"})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_not_installed(self, client, store):
        await store.upsert("location_L9", {"sub_account_id": "L9"})

        resp = await client.get("/api/tokens/location", params={"locationId": "L9"})

        assert resp.status_code == 409


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_ready(self, client):
        resp = await client.get("/ready")
        assert resp.json()["status"] == "ready"
