"""OAuth 2.0 and install-discovery client for the LeadConnector API.

Wraps the handful of provider endpoints an app install needs:
1. Exchange an authorization code for tokens
2. Refresh an access token
3. Ask the provider who a token belongs to (``/users/me``)
4. Enumerate the sub-accounts (locations) under an agency
5. Mint a location token from an agency token

Token-endpoint calls raise ``UpstreamTokenError`` on failure. Everything else
returns a ``ProviderResult`` so callers can branch on status (401 drives the
refresh coordinator) without exception handling.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, TYPE_CHECKING

import httpx

from . import ids

if TYPE_CHECKING:
    from ..config import LeadBridgeSettings

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://services.leadconnectorhq.com"
API_VERSION = "2021-07-28"

TOKEN_PATH = "/oauth/token"
USERS_ME_PATH = "/users/me"
INSTALLED_LOCATIONS_PATH = "/oauth/installedLocations"
LOCATION_TOKEN_PATH = "/oauth/locationToken"

# Upstream bodies are echoed into errors and logs; keep them short.
BODY_PREVIEW_CHARS = 400

T = TypeVar("T")


def fingerprint(value: str) -> str:
    """Short non-reversible fingerprint for logs (sha256, 12 hex chars)."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


@dataclass
class TokenResult:
    """Tokens returned by the token or location-token endpoint."""

    access_token: str | None
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int = 86400
    scope: str = ""
    company_id: str | None = None
    location_id: str | None = None
    user_type: str | None = None  # "Company" or "Location"

    @property
    def scopes(self) -> list[str]:
        return self.scope.split()

    @classmethod
    def from_payload(cls, data: Any, require_access: bool = True) -> "TokenResult | None":
        """Parse a token payload; None when ``access_token`` is missing.

        With ``require_access=False`` (location tokens) a payload carrying only
        a ``refresh_token`` is accepted and ``access_token`` stays None.
        """
        if not isinstance(data, dict):
            return None
        access_token = ids.clean_id(data.get("access_token"))
        refresh_token = ids.clean_id(data.get("refresh_token"))
        if not access_token and (require_access or not refresh_token):
            return None

        try:
            expires_in = int(data.get("expires_in") or 86400)
        except (TypeError, ValueError):
            expires_in = 86400

        scope = data.get("scope")
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            token_type=ids.clean_id(data.get("token_type")) or "Bearer",
            expires_in=expires_in,
            scope=scope if isinstance(scope, str) else "",
            company_id=ids.resolve_id(data, ids.TOKEN_AGENCY_ID_PATHS),
            location_id=ids.resolve_id(data, ids.TOKEN_SUB_ACCOUNT_ID_PATHS),
            user_type=ids.clean_id(data.get("userType")),
        )


@dataclass
class CallerIdentity:
    """Ids the identity probe could find. Both may be None."""

    agency_id: str | None = None
    sub_account_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.agency_id and not self.sub_account_id


@dataclass
class SubAccountSnapshot:
    """A sub-account seen during discovery."""

    id: str
    name: str | None = None
    installed: bool | None = None

    @classmethod
    def from_entry(cls, entry: dict[str, Any]) -> "SubAccountSnapshot | None":
        sub_account_id = ids.resolve_id(entry, ids.SUB_ACCOUNT_ID_FIELDS)
        if not sub_account_id:
            return None
        installed = entry.get("isInstalled")
        return cls(
            id=sub_account_id,
            name=ids.clean_id(entry.get("name")),
            installed=installed if isinstance(installed, bool) else None,
        )


@dataclass
class ProviderResult(Generic[T]):
    """Outcome of a best-effort provider call.

    ``status`` is the HTTP status, or 0 when the request never got a response.
    ``value`` may hold partial data even when ``ok`` is False (paged listings).
    """

    status: int
    value: T | None = None
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300 and self.value is not None

    @property
    def unauthorized(self) -> bool:
        return self.status == 401


@dataclass
class _Listing:
    status: int
    entries: list[SubAccountSnapshot] = field(default_factory=list)
    body: str = ""


class OAuthConfigError(Exception):
    """Client credentials are missing."""


class UpstreamTokenError(Exception):
    """The provider rejected a token exchange, refresh or mint."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = (body or "")[:BODY_PREVIEW_CHARS]
        super().__init__(f"Token endpoint returned {status}: {self.body}")


class ProviderClient:
    """Typed client for the provider's OAuth and location endpoints.

    Usage:
        client = ProviderClient.from_settings()

        tokens = await client.exchange_authorization_code(code)
        who = await client.identify_caller(tokens.access_token)

        listing = await client.list_installed_sub_accounts(
            tokens.access_token, agency_id, client.app_id
        )
        if listing.ok:
            for snapshot in listing.value:
                ...
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str = "http://localhost:8030/api/oauth/callback",
        app_id: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        api_version: str = API_VERSION,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client_id = client_id.strip()
        self.client_secret = client_secret.strip()
        self.redirect_uri = redirect_uri.strip()
        self.app_id = app_id
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings_obj: "LeadBridgeSettings | None" = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "ProviderClient":
        """Create a client from ``LeadBridgeSettings``.

        Raises:
            OAuthConfigError: If client id or secret is missing
        """
        if settings_obj is None:
            from ..config import settings as settings_obj

        if not settings_obj.oauth_configured:
            raise OAuthConfigError(
                "OAuth client not configured. Set GHL_CLIENT_ID and GHL_CLIENT_SECRET."
            )

        return cls(
            client_id=settings_obj.client_id,
            client_secret=settings_obj.client_secret,
            redirect_uri=settings_obj.redirect_uri,
            app_id=settings_obj.resolved_app_id,
            base_url=settings_obj.api_base_url,
            api_version=settings_obj.api_version,
            timeout=settings_obj.http_timeout_seconds,
            transport=transport,
        )

    @property
    def client_fingerprint(self) -> str:
        return fingerprint(self.client_id)

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    def _bearer_headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Version": self.api_version,
        }

    # Token endpoint

    async def exchange_authorization_code(
        self,
        code: str,
        redirect_uri: str | None = None,
        user_type: str | None = None,
    ) -> TokenResult:
        """Exchange a single-use authorization code for tokens.

        ``user_type`` ("Company" or "Location") only shapes the request; the
        response decides how the install is classified.

        Raises:
            UpstreamTokenError: On any non-2xx response. Never retried.
        """
        form = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": (redirect_uri or self.redirect_uri).strip(),
            "code": code,
        }
        if user_type:
            form["user_type"] = user_type

        logger.info(
            "exchange start client=%s redirect=%s user_type_hint=%s",
            self.client_fingerprint,
            fingerprint(form["redirect_uri"]),
            user_type or "(none)",
        )
        return await self._post_token(form, "exchange")

    async def refresh_access_token(self, refresh_token: str) -> TokenResult:
        """Trade a refresh token for a new access token.

        Raises:
            UpstreamTokenError: If the refresh token was rejected. Terminal.
        """
        form = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
        }
        return await self._post_token(form, "refresh")

    async def _post_token(self, form: dict[str, str], action: str) -> TokenResult:
        try:
            async with self._http() as client:
                response = await client.post(
                    TOKEN_PATH,
                    data=form,
                    headers={
                        "Content-Type": "application/x-www-form-urlencoded",
                        "Accept": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            logger.error("%s transport error: %s", action, e)
            raise UpstreamTokenError(0, f"transport error: {e}") from e

        if not response.is_success:
            logger.error(
                "%s failed status=%s body=%s",
                action,
                response.status_code,
                response.text[:BODY_PREVIEW_CHARS],
            )
            raise UpstreamTokenError(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError:
            raise UpstreamTokenError(response.status_code, f"bad JSON: {response.text}")

        tokens = TokenResult.from_payload(payload)
        if tokens is None:
            raise UpstreamTokenError(
                response.status_code, "invalid token response: missing access_token"
            )

        logger.info(
            "%s ok scopes=%d has_refresh=%s company_in_token=%s location_in_token=%s",
            action,
            len(tokens.scopes),
            bool(tokens.refresh_token),
            bool(tokens.company_id),
            bool(tokens.location_id),
        )
        return tokens

    # Identity probe

    async def identify_caller(self, access_token: str) -> CallerIdentity:
        """Ask the provider which agency / sub-account a token belongs to.

        Never raises. Any failure yields an empty ``CallerIdentity``.
        """
        try:
            async with self._http() as client:
                response = await client.get(
                    USERS_ME_PATH, headers=self._bearer_headers(access_token)
                )
        except httpx.HTTPError as e:
            logger.warning("identity probe transport error: %s", e)
            return CallerIdentity()

        body: Any = {}
        if response.is_success:
            try:
                body = response.json()
            except ValueError:
                body = {}

        identity = CallerIdentity(
            agency_id=ids.resolve_id(body, ids.AGENCY_ID_PATHS),
            sub_account_id=ids.resolve_id(body, ids.SUB_ACCOUNT_ID_PATHS),
        )
        logger.info(
            "identity probe status=%s has_agency=%s has_sub_account=%s",
            response.status_code,
            bool(identity.agency_id),
            bool(identity.sub_account_id),
        )
        return identity

    # Sub-account discovery

    async def list_installed_sub_accounts(
        self,
        access_token: str,
        agency_id: str,
        integration_id: str | None,
    ) -> ProviderResult[list[SubAccountSnapshot]]:
        """Sub-accounts where this app is installed. Best effort."""
        params: dict[str, Any] = {"companyId": agency_id, "isInstalled": "true"}
        if integration_id:
            params["appId"] = integration_id

        listing = await self._get_listing(access_token, INSTALLED_LOCATIONS_PATH, params)
        logger.info(
            "installed locations status=%s count=%d", listing.status, len(listing.entries)
        )
        if not 200 <= listing.status < 300:
            return ProviderResult(status=listing.status, body=listing.body)
        return ProviderResult(status=listing.status, value=listing.entries)

    async def list_all_sub_accounts(
        self,
        access_token: str,
        agency_id: str,
        page_size: int = 200,
        max_pages: int = 50,
    ) -> ProviderResult[list[SubAccountSnapshot]]:
        """Every sub-account of an agency, page by page.

        Stops at the first short page or failing call. Entries from pages
        fetched before a failure are kept in ``value``.
        """
        collected: list[SubAccountSnapshot] = []
        status = 200
        for page in range(1, max_pages + 1):
            listing = await self._get_listing(
                access_token,
                f"/companies/{agency_id}/locations",
                {"page": page, "limit": page_size},
            )
            if not 200 <= listing.status < 300:
                logger.warning(
                    "company locations page=%d failed status=%s kept=%d",
                    page,
                    listing.status,
                    len(collected),
                )
                return ProviderResult(status=listing.status, value=collected, body=listing.body)

            status = listing.status
            collected.extend(listing.entries)
            if len(listing.entries) < page_size:
                break

        logger.info("company locations count=%d", len(collected))
        return ProviderResult(status=status, value=collected)

    async def _get_listing(
        self, access_token: str, path: str, params: dict[str, Any]
    ) -> _Listing:
        try:
            async with self._http() as client:
                response = await client.get(
                    path, params=params, headers=self._bearer_headers(access_token)
                )
        except httpx.HTTPError as e:
            logger.warning("listing %s transport error: %s", path, e)
            return _Listing(status=0, body=str(e))

        if not response.is_success:
            return _Listing(
                status=response.status_code, body=response.text[:BODY_PREVIEW_CHARS]
            )

        try:
            payload = response.json()
        except ValueError:
            return _Listing(status=response.status_code)

        snapshots = []
        for entry in ids.extract_entries(payload):
            snapshot = SubAccountSnapshot.from_entry(entry)
            if snapshot is not None:
                snapshots.append(snapshot)
        return _Listing(status=response.status_code, entries=snapshots)

    # Location token minting

    async def mint_sub_account_token(
        self,
        agency_access_token: str,
        agency_id: str,
        sub_account_id: str,
    ) -> ProviderResult[TokenResult]:
        """Mint a location-scoped token pair from an agency token."""
        try:
            async with self._http() as client:
                response = await client.post(
                    LOCATION_TOKEN_PATH,
                    json={"companyId": agency_id, "locationId": sub_account_id},
                    headers={
                        **self._bearer_headers(agency_access_token),
                        "Content-Type": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            logger.warning("location token transport error location=%s: %s", sub_account_id, e)
            return ProviderResult(status=0, body=str(e))

        if not response.is_success:
            logger.warning(
                "location token failed location=%s status=%s",
                sub_account_id,
                response.status_code,
            )
            return ProviderResult(
                status=response.status_code, body=response.text[:BODY_PREVIEW_CHARS]
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None

        tokens = TokenResult.from_payload(payload, require_access=False)
        if tokens is None:
            return ProviderResult(
                status=response.status_code, body="invalid location token response"
            )
        return ProviderResult(status=response.status_code, value=tokens)
