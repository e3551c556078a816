"""FastAPI dependencies for the LeadBridge web app."""

from __future__ import annotations

from ..config import LeadBridgeSettings, settings
from ..installs.service import InstallService
from ..installs.store import TokenStore, get_token_store


def get_settings() -> LeadBridgeSettings:
    return settings


def get_store() -> TokenStore:
    return get_token_store()


def get_install_service() -> InstallService:
    """Service wired from settings. Raises ``OAuthConfigError`` when unconfigured."""
    return InstallService.from_settings(settings, store=get_token_store())
