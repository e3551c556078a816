"""OAuth install routes: send the user to consent, then finish the install."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from ...config import LeadBridgeSettings
from ...installs.service import InstallService
from ...oauth.client import OAuthConfigError
from ...oauth.state import (
    OAuthState,
    build_authorize_url,
    new_nonce,
    normalize_user_type,
    referer_is_provider,
    safe_return_to,
)
from ..deps import get_install_service, get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])


@router.get("/login")
async def oauth_login(
    return_to: str = Query("", alias="returnTo"),
    user_type: str = "",
    cfg: LeadBridgeSettings = Depends(get_settings),
):
    if not cfg.client_id.strip() or not cfg.redirect_uri.strip():
        raise OAuthConfigError("Set GHL_CLIENT_ID and GHL_REDIRECT_URI.")

    nonce = new_nonce()
    safe = safe_return_to(return_to, cfg.return_to_host_set, cfg.app_base_url)
    hint = normalize_user_type(user_type)
    state = OAuthState(nonce=nonce, return_to=safe if safe != "/" else None, user_type=hint)

    url = build_authorize_url(
        cfg.authorize_url,
        cfg.client_id.strip(),
        cfg.redirect_uri.strip(),
        state.encode(),
        scopes=cfg.scope_list,
        user_type=hint,
    )
    response = RedirectResponse(url, status_code=302)
    response.set_cookie(
        key=cfg.state_cookie_name,
        value=nonce,
        max_age=cfg.state_cookie_max_age,
        httponly=True,
        secure=cfg.state_cookie_secure,
        samesite="lax",
        path="/",
    )
    return response


@router.get("/callback")
async def oauth_callback(
    request: Request,
    code: str = "",
    state: str = "",
    error: str = "",
    response_format: str = Query("", alias="format"),
    cfg: LeadBridgeSettings = Depends(get_settings),
    service: InstallService = Depends(get_install_service),
):
    if error:
        return PlainTextResponse(f"OAuth error: {error}", status_code=400)
    if not code:
        return PlainTextResponse("Missing ?code", status_code=400)

    parsed = OAuthState.parse(state)
    if state:
        if not parsed.matches(request.cookies.get(cfg.state_cookie_name)):
            logger.warning("callback rejected: state nonce mismatch")
            return PlainTextResponse("Invalid state", status_code=400)
    elif not referer_is_provider(request.headers.get("referer")):
        logger.warning("callback rejected: no state and referer is not the provider")
        return PlainTextResponse("Invalid state", status_code=400)

    outcome = await service.complete_install(code, user_type_hint=parsed.user_type)

    if response_format == "json":
        response = JSONResponse(outcome.to_dict(), headers={"Cache-Control": "no-store"})
    else:
        target = safe_return_to(parsed.return_to, cfg.return_to_host_set, cfg.app_base_url)
        response = RedirectResponse(target, status_code=302)
    response.delete_cookie(
        cfg.state_cookie_name,
        path="/",
        secure=cfg.state_cookie_secure,
        httponly=True,
        samesite="lax",
    )
    return response
