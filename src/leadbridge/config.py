"""LeadBridge configuration via pydantic-settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class LeadBridgeSettings(BaseSettings):
    # Marketplace app credentials
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://localhost:8030/api/oauth/callback"
    scopes: str = ""
    # Marketplace app id; the client id prefix before "-" when unset.
    app_id: str | None = None

    api_base_url: str = "https://services.leadconnectorhq.com"
    authorize_url: str = "https://marketplace.gohighlevel.com/oauth/authorize"
    api_version: str = "2021-07-28"
    http_timeout_seconds: float = 30.0

    database_url: str = "sqlite+aiosqlite:///leadbridge.db"
    echo_sql: bool = False

    # Agency installs: enumerate sub-accounts and mint their tokens right away.
    discover_on_install: bool = True
    mint_concurrency: int = 4
    location_page_size: int = 200
    location_max_pages: int = 50
    # Key unidentifiable agency installs by client id fingerprint instead of failing.
    allow_client_fingerprint_fallback: bool = False

    oauth_log: bool = False

    state_cookie_name: str = "rl_state"
    state_cookie_max_age: int = 600
    state_cookie_secure: bool = True
    return_to_hosts: str = "app.gohighlevel.com"
    app_base_url: str = "http://localhost:8030"

    model_config = {"env_prefix": "GHL_", "env_file": ".env", "extra": "ignore"}

    @property
    def oauth_configured(self) -> bool:
        return bool(self.client_id.strip() and self.client_secret.strip())

    @property
    def resolved_app_id(self) -> str | None:
        if self.app_id and self.app_id.strip():
            return self.app_id.strip()
        client_id = self.client_id.strip()
        if not client_id:
            return None
        return client_id.split("-", 1)[0]

    @property
    def scope_list(self) -> list[str]:
        return self.scopes.split()

    @property
    def return_to_host_set(self) -> set[str]:
        return {h.strip().lower() for h in self.return_to_hosts.split(",") if h.strip()}


settings = LeadBridgeSettings()
