"""Map domain exceptions to JSON error responses.

Bodies echo upstream status and a truncated upstream body, never token values.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..installs.discovery import MintError
from ..installs.store import InstallNotFound, RefreshTokenMissing, StoreUnavailable
from ..oauth.client import BODY_PREVIEW_CHARS, OAuthConfigError, UpstreamTokenError
from ..oauth.identity import IdentityAmbiguous

logger = logging.getLogger(__name__)


async def _upstream_token_error(request: Request, exc: UpstreamTokenError):
    return JSONResponse(
        {"error": "upstream_token_error", "status": exc.status, "body": exc.body[:BODY_PREVIEW_CHARS]},
        status_code=502,
    )


async def _mint_error(request: Request, exc: MintError):
    return JSONResponse(
        {
            "error": "mint_failed",
            "location_id": exc.sub_account_id,
            "status": exc.status,
            "body": exc.body[:BODY_PREVIEW_CHARS],
        },
        status_code=502,
    )


async def _identity_ambiguous(request: Request, exc: IdentityAmbiguous):
    return JSONResponse({"error": "identity_ambiguous", "detail": str(exc)}, status_code=422)


async def _refresh_token_missing(request: Request, exc: RefreshTokenMissing):
    return JSONResponse({"error": "not_installed", "detail": str(exc)}, status_code=409)


async def _install_not_found(request: Request, exc: InstallNotFound):
    return JSONResponse({"error": "install_not_found", "detail": str(exc)}, status_code=404)


async def _store_unavailable(request: Request, exc: StoreUnavailable):
    logger.error("store unavailable on %s: %s", request.url.path, exc)
    return JSONResponse({"error": "store_unavailable"}, status_code=503)


async def _oauth_config_error(request: Request, exc: OAuthConfigError):
    return JSONResponse({"error": "oauth_not_configured", "detail": str(exc)}, status_code=500)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(UpstreamTokenError, _upstream_token_error)
    app.add_exception_handler(MintError, _mint_error)
    app.add_exception_handler(IdentityAmbiguous, _identity_ambiguous)
    app.add_exception_handler(RefreshTokenMissing, _refresh_token_missing)
    app.add_exception_handler(InstallNotFound, _install_not_found)
    app.add_exception_handler(StoreUnavailable, _store_unavailable)
    app.add_exception_handler(OAuthConfigError, _oauth_config_error)
