"""Authorization URL and ``state`` parameter handling.

State format: ``nonce | base64url(returnTo) | ut=Company|Location``, where the
second and third segments are optional. The nonce is also set in a short-lived
cookie by the login route and compared on callback.
"""

from __future__ import annotations

import base64
import binascii
import secrets
from dataclasses import dataclass
from urllib.parse import urlencode, urlparse

USER_TYPES = ("Company", "Location")
CUSTOM_PAGE_PREFIX = "/custom-page-link/"

# Installs started from the marketplace arrive without our state.
PROVIDER_DOMAINS = ("gohighlevel.com", "leadconnectorhq.com")


def new_nonce() -> str:
    return secrets.token_urlsafe(16)


def normalize_user_type(value: str | None) -> str | None:
    """Canonical "Company"/"Location", or None for anything else."""
    if not value:
        return None
    lowered = value.strip().lower()
    for user_type in USER_TYPES:
        if lowered == user_type.lower():
            return user_type
    return None


def _b64encode(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def _b64decode(text: str) -> str | None:
    padding = "=" * ((4 - len(text) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(text + padding).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None


@dataclass
class OAuthState:
    nonce: str
    return_to: str | None = None
    user_type: str | None = None

    def encode(self) -> str:
        parts = [self.nonce]
        if self.return_to:
            parts.append(_b64encode(self.return_to))
        if self.user_type:
            parts.append(f"ut={self.user_type}")
        return "|".join(parts)

    @classmethod
    def parse(cls, raw: str | None) -> "OAuthState":
        parts = [p.strip() for p in (raw or "").split("|") if p.strip()]
        if not parts:
            return cls(nonce="")

        return_to = None
        user_type = None
        for part in parts[1:]:
            if part.startswith("ut="):
                user_type = normalize_user_type(part[3:])
            elif return_to is None:
                return_to = _b64decode(part)
        return cls(nonce=parts[0], return_to=return_to, user_type=user_type)

    def matches(self, cookie_nonce: str | None) -> bool:
        if not self.nonce or not cookie_nonce:
            return False
        return secrets.compare_digest(self.nonce, cookie_nonce)


def safe_return_to(url: str | None, allowed_hosts: set[str], own_base_url: str) -> str:
    """Return ``url`` if it points somewhere we trust, else "/".

    Trusted: relative paths, our own host (and its subdomains), and
    custom-page links on an allow-listed provider host.
    """
    if not url:
        return "/"
    url = url.strip()
    if url.startswith("/") and not url.startswith("//"):
        return url

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return "/"
    host = parsed.hostname.lower()

    if host in allowed_hosts and parsed.path.startswith(CUSTOM_PAGE_PREFIX):
        return url

    own_host = (urlparse(own_base_url).hostname or "").lower()
    if own_host and (host == own_host or host.endswith("." + own_host)):
        return url

    return "/"


def build_authorize_url(
    authorize_url: str,
    client_id: str,
    redirect_uri: str,
    state: str | None = None,
    scopes: list[str] | None = None,
    user_type: str | None = None,
) -> str:
    """Marketplace consent URL for the authorization-code flow."""
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
    }
    if scopes:
        params["scope"] = " ".join(scopes)
    if user_type:
        params["user_type"] = user_type
    if state:
        params["state"] = state
    return f"{authorize_url}?{urlencode(params)}"


def referer_is_provider(referer: str | None) -> bool:
    """True when the referer's host is a provider domain or one of its subdomains."""
    if not referer:
        return False
    try:
        host = (urlparse(referer.strip()).hostname or "").lower()
    except ValueError:
        return False
    return any(host == domain or host.endswith("." + domain) for domain in PROVIDER_DOMAINS)
