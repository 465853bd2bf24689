"""Operator endpoints for billing administration.

All routes require ``Authorization: Bearer <API_ADMIN_SECRET_KEY>``.
Provider failures during a sync surface as HTTP 502 through the
application's exception handler.
"""

from __future__ import annotations

import logging
from typing import Annotated

from billing_engine.models.billing import SubscriptionRecord
from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import AdminDep, EngineSettingsDep, GatewayDep, LocksDep, SessionFactoryDep
from api.schemas import (
    AccountBillingResponse,
    AccountEntitlementResponse,
    GrantProRequest,
    RevokeProRequest,
)
from api.services.admin_service import AccountNotFoundError, AdminService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[AdminDep])


def get_admin_service(
    session_factory: SessionFactoryDep,
    gateway: GatewayDep,
    settings: EngineSettingsDep,
    locks: LocksDep,
) -> AdminService:
    return AdminService(session_factory, gateway, settings, locks=locks)


AdminServiceDep = Annotated[AdminService, Depends(get_admin_service)]


@router.post("/grant-pro", response_model=AccountEntitlementResponse)
async def grant_pro(body: GrantProRequest, service: AdminServiceDep) -> AccountEntitlementResponse:
    """Give the account with ``email`` lifetime pro access."""
    try:
        result = await service.grant_pro(body.email, body.report_credits)
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return AccountEntitlementResponse(**result)


@router.post("/revoke-pro", response_model=AccountEntitlementResponse)
async def revoke_pro(body: RevokeProRequest, service: AdminServiceDep) -> AccountEntitlementResponse:
    """Return the account with ``email`` to the free tier."""
    try:
        result = await service.revoke_pro(body.email)
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return AccountEntitlementResponse(**result)


@router.get("/accounts/{account_id}/billing", response_model=AccountBillingResponse)
async def account_billing(account_id: str, service: AdminServiceDep) -> AccountBillingResponse:
    try:
        result = await service.account_billing(account_id)
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return AccountBillingResponse(**result)


@router.post("/accounts/{account_id}/sync", response_model=SubscriptionRecord)
async def sync_account(account_id: str, service: AdminServiceDep) -> SubscriptionRecord:
    """Re-read the subscription from the provider and refresh the stored record."""
    try:
        record = await service.sync_account(account_id)
    except AccountNotFoundError as exc:
        logger.info("Sync requested for unknown account %s", account_id)
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return record
