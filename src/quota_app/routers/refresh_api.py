import logging
from typing import Literal

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from quota_app.reconciler import AccountNotFoundError
from quota_app.refresh_service import RefreshService
from quota_app.scheduler import AutoRefreshScheduler
from quota_app.settings import (
    get_oauth_client_id,
    save_auto_refresh_minutes,
)
from quota_library.device_flow import FLOW_COMPLETE, DeviceFlowManager
from quota_library.error_handler import ProviderError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["refresh"])


class RefreshResponse(BaseModel):
    ok: bool
    account_id: int
    skipped: bool = False
    source: str | None = None
    percentage: float | None = None
    error: str | None = None


class RefreshAllResponse(BaseModel):
    ok: bool
    succeeded: int
    failed: int
    skipped: int


class VerifyRequest(BaseModel):
    account_type: Literal["copilot", "claude_code", "claude_web"]
    token: str
    identity: str | None = None


class VerifyResponse(BaseModel):
    valid: bool
    source: str | None = None
    error: str | None = None


class AutoRefreshRequest(BaseModel):
    minutes: int


class AutoRefreshResponse(BaseModel):
    ok: bool
    minutes: int


class OAuthStartResponse(BaseModel):
    flow_id: str
    user_code: str
    verification_uri: str
    interval: int
    expires_in: int


class OAuthPollResponse(BaseModel):
    status: str
    error: str | None = None


def get_refresh_service(request: Request) -> RefreshService:
    return request.app.state.refresh_service


def get_scheduler(request: Request) -> AutoRefreshScheduler:
    return request.app.state.scheduler


def get_device_flows(request: Request) -> DeviceFlowManager:
    return request.app.state.device_flows


@router.post("/refresh/{account_id}", response_model=RefreshResponse)
async def refresh_account(
    account_id: int,
    service: RefreshService = Depends(get_refresh_service),
) -> RefreshResponse:
    try:
        outcome = await service.refresh_account(account_id)
    except AccountNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    except ProviderError as e:
        return RefreshResponse(ok=False, account_id=account_id, error=str(e))

    return RefreshResponse(
        ok=outcome.ok,
        account_id=account_id,
        skipped=outcome.skipped,
        source=outcome.source,
        percentage=outcome.percentage,
        error=outcome.error,
    )


@router.post("/refresh-all", response_model=RefreshAllResponse)
async def refresh_all(
    service: RefreshService = Depends(get_refresh_service),
) -> RefreshAllResponse:
    report = await service.refresh_all(trigger="bulk")
    return RefreshAllResponse(
        ok=report.failed == 0,
        succeeded=report.succeeded,
        failed=report.failed,
        skipped=report.skipped,
    )


@router.post("/verify", response_model=VerifyResponse)
async def verify_credential(
    payload: VerifyRequest,
    service: RefreshService = Depends(get_refresh_service),
) -> VerifyResponse:
    result = await service.reconciler.verify_credential(
        payload.account_type, payload.token.strip(), payload.identity
    )
    return VerifyResponse(valid=result.valid, source=result.source, error=result.error)


@router.post("/settings/auto-refresh", response_model=AutoRefreshResponse)
async def set_auto_refresh(
    payload: AutoRefreshRequest,
    request: Request,
    scheduler: AutoRefreshScheduler = Depends(get_scheduler),
) -> AutoRefreshResponse:
    minutes = await save_auto_refresh_minutes(request.app.state.db_session_maker, payload.minutes)
    if scheduler.running:
        scheduler.set_interval(minutes)
    return AutoRefreshResponse(ok=True, minutes=minutes)


@router.post("/oauth/start", response_model=OAuthStartResponse)
async def start_oauth(
    request: Request,
    flows: DeviceFlowManager = Depends(get_device_flows),
) -> OAuthStartResponse:
    client_id = await get_oauth_client_id(request.app.state.db_session_maker)
    if not client_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="GitHub OAuth Client ID not configured",
        )
    try:
        flow = await flows.start(client_id)
    except (ProviderError, httpx.RequestError) as e:
        logger.warning("Device flow start failed: %s", e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return OAuthStartResponse(
        flow_id=flow.flow_id,
        user_code=flow.user_code,
        verification_uri=flow.verification_uri,
        interval=flow.interval,
        expires_in=flow.expires_in,
    )


@router.get("/oauth/poll/{flow_id}", response_model=OAuthPollResponse)
async def poll_oauth(
    flow_id: str,
    request: Request,
    flows: DeviceFlowManager = Depends(get_device_flows),
) -> OAuthPollResponse:
    client_id = await get_oauth_client_id(request.app.state.db_session_maker)
    if not client_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="GitHub OAuth Client ID not configured",
        )

    flow = await flows.poll(client_id, flow_id)
    if flow is None:
        return OAuthPollResponse(status="expired", error="Flow expired or not found")
    if flow.status == FLOW_COMPLETE:
        # Token stays with the flow until the account layer takes it
        return OAuthPollResponse(status="complete")
    return OAuthPollResponse(status=flow.status, error=flow.error)
