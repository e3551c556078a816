"""Install admin and lookup routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from ...installs.service import InstallService
from ...installs.store import InstallNotFound, TokenStore
from ...oauth.identity import sub_account_tenant_key
from ..deps import get_install_service, get_store

router = APIRouter(prefix="/api", tags=["installs"])

NO_STORE = {"Cache-Control": "no-store", "X-Robots-Tag": "noindex"}


def _first(*values: str | None) -> str:
    for value in values:
        if value and value.strip():
            return value.strip()
    return ""


@router.post("/installs/backfill")
async def backfill_installs(
    company_id: str = Query("", alias="companyId"),
    service: InstallService = Depends(get_install_service),
):
    summary = await service.backfill(company_id.strip() or None)
    return summary.to_dict()


@router.post("/installs/mint")
async def mint_install(
    company_id: str = Query(..., alias="companyId"),
    location_id: str = Query(..., alias="locationId"),
    service: InstallService = Depends(get_install_service),
):
    tokens = await service.mint_sub_account(company_id.strip(), location_id.strip())
    return {
        "tenant_key": sub_account_tenant_key(location_id.strip()),
        "location_id": location_id.strip(),
        "scopes": tokens.scopes,
        "has_refresh": bool(tokens.refresh_token),
    }


@router.get("/installs/{tenant_key}")
async def show_install(tenant_key: str, store: TokenStore = Depends(get_store)):
    record = await store.get_by_tenant_key(tenant_key)
    if record is None:
        raise InstallNotFound(tenant_key)
    return record.redacted()


@router.get("/installed")
async def installed(
    location_id: str | None = None,
    location_id_camel: str | None = Query(None, alias="locationId"),
    location: str | None = None,
    sub_account_id: str | None = Query(None, alias="subAccountId"),
    account_id: str | None = Query(None, alias="accountId"),
    agency_id: str | None = None,
    agency_id_camel: str | None = Query(None, alias="agencyId"),
    company_id: str | None = Query(None, alias="companyId"),
    service: InstallService = Depends(get_install_service),
):
    status = await service.install_status(
        agency_id=_first(agency_id, agency_id_camel, company_id) or None,
        sub_account_id=_first(location_id, location_id_camel, location, sub_account_id, account_id) or None,
    )
    return JSONResponse(status.to_dict(), headers=NO_STORE)


@router.get("/tokens/location")
async def location_token(
    location_id: str = Query("", alias="locationId"),
    service: InstallService = Depends(get_install_service),
):
    if not location_id.strip():
        return JSONResponse({"error": "Missing locationId"}, status_code=400)
    tokens = await service.sub_account_access_token(location_id.strip())
    return JSONResponse(
        {"access_token": tokens.access_token, "scope": tokens.scope},
        headers={"Cache-Control": "no-store"},
    )
