"""adsync — Meta API Routes.

OAuth connect/disconnect, consent and schedule toggles, sync triggers and
run polling. Triggers return a run id immediately; clients poll the run.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine
from sqlmodel import Session

from adsync.config import settings
from adsync.connectors.meta.auth import TokenManager
from adsync.core.errors import AdSyncError, TokenExchangeError
from adsync.core.logging import get_logger
from adsync.models.meta_models import SyncMode
from adsync.sync import store
from adsync.sync.service import SyncService

logger = get_logger("api.meta")

router = APIRouter(tags=["Meta"])

STATE_COOKIE = "meta_auth_state"
STATE_COOKIE_MAX_AGE = 5 * 60  # seconds


# ── Dependencies ──


def get_sync_service(request: Request) -> SyncService:
    return request.app.state.sync_service


def get_token_manager(request: Request) -> TokenManager:
    return request.app.state.token_manager


def get_db(request: Request):
    db_engine: Engine = request.app.state.db_engine
    with Session(db_engine) as session:
        yield session


def get_user_id() -> str:
    # Single-user deployment until an auth layer supplies the user
    return settings.default_user_id


# ── Request Models ──


class ConsentRequest(BaseModel):
    account_id: str
    allow_spend: bool = False
    allow_conversions: bool = False


class OnDemandSyncRequest(BaseModel):
    account_id: str
    date_start: str = Field(description="YYYY-MM-DD")
    date_stop: str = Field(description="YYYY-MM-DD")


class ScheduleRequest(BaseModel):
    account_id: str
    enabled: bool


class BackfillRequest(BaseModel):
    account_id: str
    days: int = Field(default=settings.backfill_days, ge=1, le=1095)


# ── Auth ──


@router.get("/auth/meta/login", include_in_schema=False)
async def meta_login(tokens: TokenManager = Depends(get_token_manager)):
    """Redirect to the Meta consent dialog with a CSRF state cookie."""
    state = tokens.generate_state()
    response = RedirectResponse(tokens.build_authorization_url(state))
    response.set_cookie(
        STATE_COOKIE,
        state,
        max_age=STATE_COOKIE_MAX_AGE,
        httponly=True,
        secure=settings.meta_redirect_uri.startswith("https"),
    )
    return response


@router.get("/auth/meta/callback", include_in_schema=False)
async def meta_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    tokens: TokenManager = Depends(get_token_manager),
    service: SyncService = Depends(get_sync_service),
    user_id: str = Depends(get_user_id),
):
    """Exchange the code, store a long-lived token and discover ad accounts."""
    if not code:
        raise HTTPException(status_code=400, detail="No code provided")
    if not tokens.validate_state(state, request.cookies.get(STATE_COOKIE)):
        logger.error("CSRF warning: OAuth state mismatch or missing")
        raise HTTPException(status_code=403, detail="Security check failed (CSRF)")

    try:
        token_data = await tokens.exchange_code(code)
        long_token = await tokens.upgrade_to_long_lived(token_data.access_token)
        tokens.store(
            user_id, long_token, settings.long_lived_token_ttl_days * 24 * 60 * 60
        )
        accounts = await service.discover_accounts(user_id)
    except TokenExchangeError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except AdSyncError as e:
        logger.error(f"Meta callback failed: {e}")
        raise HTTPException(status_code=500, detail="Authentication failed")

    target = settings.app_url or "*"
    response = HTMLResponse(
        f"""<script>
  try {{
    window.opener.postMessage({{ type: 'META_AUTH_SUCCESS', accounts: {len(accounts)} }}, '{target}');
    setTimeout(() => window.close(), 500);
  }} catch (e) {{ window.close(); }}
</script>
<h1>Connected!</h1>
<p>You can close this window now.</p>"""
    )
    response.delete_cookie(STATE_COOKIE)
    return response


@router.get("/meta/debug/token")
async def token_status(
    tokens: TokenManager = Depends(get_token_manager),
    user_id: str = Depends(get_user_id),
):
    """Expiry information for the stored token."""
    status = tokens.token_status(user_id)
    if status is None:
        raise HTTPException(status_code=404, detail="No token found")
    return {
        "has_token": status.has_token,
        "is_valid": status.is_valid,
        "expires_at": status.expires_at.isoformat() if status.expires_at else None,
        "days_remaining": status.days_remaining,
    }


@router.post("/meta/disconnect")
async def disconnect(
    tokens: TokenManager = Depends(get_token_manager),
    user_id: str = Depends(get_user_id),
):
    """Forget the stored token. Linked accounts and synced data are kept."""
    tokens.delete(user_id)
    return {"status": "success"}


# ── Accounts & Consent ──


@router.get("/meta/adaccounts")
async def list_ad_accounts(
    session: Session = Depends(get_db),
    tokens: TokenManager = Depends(get_token_manager),
    user_id: str = Depends(get_user_id),
):
    if not tokens.get_access_token(user_id):
        raise HTTPException(status_code=401, detail="Not connected to Meta")
    accounts = store.list_accounts(session, user_id)
    return {"status": "success", "data": [a.model_dump() for a in accounts]}


@router.post("/meta/consents")
async def update_consent(body: ConsentRequest, session: Session = Depends(get_db)):
    if store.get_account(session, body.account_id) is None:
        raise HTTPException(status_code=404, detail="Account not found")
    consent = store.set_consent(
        session, body.account_id, body.allow_spend, body.allow_conversions
    )
    return {"status": "success", "consent": consent.model_dump()}


# ── Sync ──


@router.post("/meta/sync/on-demand")
async def sync_on_demand(
    body: OnDemandSyncRequest,
    service: SyncService = Depends(get_sync_service),
    user_id: str = Depends(get_user_id),
):
    try:
        run_id = await service.run_sync(
            user_id, body.account_id, SyncMode.ON_DEMAND, body.date_start, body.date_stop
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AdSyncError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "success", "run_id": run_id}


@router.post("/meta/sync/backfill")
async def sync_backfill(
    body: BackfillRequest,
    service: SyncService = Depends(get_sync_service),
    user_id: str = Depends(get_user_id),
):
    try:
        run_id = await service.backfill(user_id, body.account_id, body.days)
    except AdSyncError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "success", "run_id": run_id}


@router.post("/meta/sync/schedule")
async def toggle_schedule(body: ScheduleRequest, session: Session = Depends(get_db)):
    if not store.set_sync_enabled(session, body.account_id, body.enabled):
        raise HTTPException(status_code=404, detail="Account not found")
    return {"status": "success", "enabled": body.enabled}


@router.get("/meta/sync/runs/{run_id}")
async def get_sync_run(run_id: str, service: SyncService = Depends(get_sync_service)):
    run = service.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Not found")
    return {"status": "success", "data": run.model_dump(mode="json")}
