# src/routers/integrations_router.py
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from typing import List, Optional
import uuid
import structlog

from src.dependencies.auth import get_current_user
from src.dependencies.db import get_broker
from src.errors import (
    AccountNotFound,
    ConfigurationMissing,
    IdentityNotFound,
    IntegrationError,
    NoUsableToken,
    ReauthorizationRequired,
    UnsupportedPlatform,
)
from src.config import Platform
from src.infrastructure.providers.registry import parse_platform
from src.schemas.integration_schema import (
    AccountSummary,
    AuthorizationUrl,
    CanonicalItem,
    CanonicalMetricsResult,
    ConnectRequest,
    PlatformStatus,
)

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/integrations", tags=["integrations"])

HTTP_STATUS = {
    ConfigurationMissing: status.HTTP_503_SERVICE_UNAVAILABLE,
    ReauthorizationRequired: status.HTTP_409_CONFLICT,
    NoUsableToken: status.HTTP_409_CONFLICT,
    IdentityNotFound: status.HTTP_422_UNPROCESSABLE_ENTITY,
    AccountNotFound: status.HTTP_404_NOT_FOUND,
    UnsupportedPlatform: status.HTTP_404_NOT_FOUND,
}


def to_http(exc: IntegrationError) -> HTTPException:
    code = HTTP_STATUS.get(type(exc), status.HTTP_502_BAD_GATEWAY)
    return HTTPException(status_code=code, detail={"code": exc.code, "message": str(exc)})


def _platform(value: str) -> Platform:
    try:
        return parse_platform(value)
    except UnsupportedPlatform as e:
        raise to_http(e)


@router.get("/oauth/{platform}/start", response_model=AuthorizationUrl)
async def oauth_start(platform: str, request: Request, current_user=Depends(get_current_user), broker=Depends(get_broker)):
    p = _platform(platform)
    try:
        url = broker.authorization_url(current_user.id, p)
    except ConfigurationMissing as e:
        logger.warning("oauth_start_unconfigured", platform=p.value)
        raise to_http(e)
    if "application/json" in request.headers.get("accept", ""):
        return {"url": url}
    return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get("/oauth/{platform}/callback")
async def oauth_callback(platform: str, code: Optional[str] = None, state: Optional[str] = None, error: Optional[str] = None, broker=Depends(get_broker)):
    p = _platform(platform)
    if error and not code:
        # user denied consent at the provider
        logger.info("oauth_callback_denied", platform=p.value, error=error)
        return RedirectResponse(
            broker.settings.client_redirect("/integrations", connected=p.value, error="1"),
            status_code=status.HTTP_302_FOUND,
        )
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")
    outcome = await broker.handle_callback(p, code, state)
    return RedirectResponse(broker.callback_redirect(outcome), status_code=status.HTTP_302_FOUND)


@router.post("/connect", response_model=AccountSummary, status_code=status.HTTP_201_CREATED)
async def connect(payload: ConnectRequest, current_user=Depends(get_current_user), broker=Depends(get_broker)):
    account = await broker.connect(current_user.id, payload)
    return broker.summarize(account)


@router.get("/accounts", response_model=List[AccountSummary])
async def list_accounts(current_user=Depends(get_current_user), broker=Depends(get_broker)):
    return await broker.list_accounts(current_user.id)


@router.get("/accounts/{account_id}/metrics", response_model=CanonicalMetricsResult)
async def account_metrics(account_id: uuid.UUID, current_user=Depends(get_current_user), broker=Depends(get_broker)):
    try:
        return await broker.fetch_metrics(current_user.id, account_id)
    except IntegrationError as e:
        logger.warning("metrics_request_failed", account_id=str(account_id), code=e.code)
        raise to_http(e)


@router.get("/accounts/{account_id}/items", response_model=List[CanonicalItem])
async def account_items(
    account_id: uuid.UUID,
    limit: int = Query(25, ge=1, le=100),
    public_only: bool = False,
    shorts_only: bool = False,
    current_user=Depends(get_current_user),
    broker=Depends(get_broker),
):
    try:
        return await broker.fetch_items(current_user.id, account_id, limit, public_only=public_only, shorts_only=shorts_only)
    except IntegrationError as e:
        logger.warning("items_request_failed", account_id=str(account_id), code=e.code)
        raise to_http(e)


@router.get("/platforms", response_model=List[PlatformStatus])
async def platforms(broker=Depends(get_broker)):
    return broker.platform_status()


@router.get("/health")
async def health():
    return {"status": "ok"}
