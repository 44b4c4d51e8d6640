"""Gmail OAuth and sync API: start a background sync, poll its state, stream it over SSE."""
import asyncio
import json
import logging
from typing import Optional
from uuid import uuid4

from celery.result import AsyncResult
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from ..auth import get_current_user_for_sse, get_current_user_required
from ..celery_app import celery_app
from ..config import settings
from ..database import SessionLocal, get_sync_db
from ..gmail_queries import format_gmail_date
from ..gmail_service import finish_gmail_oauth, gmail_connected, start_gmail_oauth
from ..models import User
from ..schemas import GmailStatusResponse, SyncStartResponse, SyncStateResponse
from ..sync_state_db import (
    TERMINAL_STATUSES,
    get_state_from_db,
    get_sync_state,
    set_sync_state_error,
    set_sync_state_queued,
)
from ..tasks import run_email_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sync"])

SSE_POLL_INTERVAL_S = 0.5


@router.get("/gmail/auth")
def gmail_auth(
    redirect_url: Optional[str] = None,
    current_user: User = Depends(get_current_user_for_sse),
):
    """
    Start Gmail OAuth for the caller. Open in a browser (pass ?token=JWT);
    Google redirects back to /api/gmail/callback.
    """
    try:
        auth_url = start_gmail_oauth(current_user.id, redirect_url or settings.frontend_url)
    except FileNotFoundError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return RedirectResponse(url=auth_url, status_code=302)


@router.get("/gmail/callback")
def gmail_callback(code: Optional[str] = None, state: Optional[str] = None, error: Optional[str] = None):
    """OAuth redirect target: validate state, store the user's token, bounce back to the frontend."""
    if error:
        raise HTTPException(status_code=400, detail=f"Google OAuth error: {error}")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")
    try:
        redirect_url = finish_gmail_oauth(code=code, state=state)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return RedirectResponse(url=redirect_url, status_code=302)


@router.get("/sync", response_model=GmailStatusResponse)
def sync_info(
    current_user: User = Depends(get_current_user_required),
    db: Session = Depends(get_sync_db),
):
    """Whether Gmail is connected and when the last sync finished."""
    row = get_sync_state(db, current_user.id)
    return GmailStatusResponse(
        gmail_connected=gmail_connected(current_user.id),
        last_synced_at=row.last_synced_at if row else None,
        status=(row.status if row and row.status else "idle"),
    )


@router.post("/sync", response_model=SyncStartResponse)
def start_sync(
    after_date: Optional[str] = None,
    current_user: User = Depends(get_current_user_required),
    db: Session = Depends(get_sync_db),
):
    """Queue a Gmail sync. Optional after_date (YYYY-MM-DD or YYYY/MM/DD) overrides the default window."""
    if after_date:
        try:
            format_gmail_date(after_date)
        except ValueError:
            raise HTTPException(status_code=400, detail="after_date must be YYYY-MM-DD or YYYY/MM/DD")
    if not gmail_connected(current_user.id):
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Gmail authorization required. Open /api/gmail/auth in your browser to sign in.",
                "needs_auth": True,
            },
        )
    # Queued row is written before dispatch so a fast-failing worker's error is the last write
    task_id = uuid4().hex
    set_sync_state_queued(db, current_user.id, task_id)
    try:
        run_email_sync.apply_async(args=[current_user.id, after_date], task_id=task_id)
    except Exception as e:
        logger.error(f"Could not queue sync for user {current_user.id}: {e}")
        set_sync_state_error(db, f"Could not queue sync: {e}", user_id=current_user.id)
        raise HTTPException(status_code=503, detail="Sync queue unavailable")
    logger.info(f"Queued sync task {task_id} for user {current_user.id}")
    return SyncStartResponse(task_id=task_id, status="queued", after_date=after_date)


@router.get("/sync/status", response_model=SyncStateResponse)
def sync_status(
    current_user: User = Depends(get_current_user_required),
    db: Session = Depends(get_sync_db),
):
    """Latest sync state for this user, plus the Celery task state when one was queued."""
    state = get_state_from_db(db, current_user.id)
    task_state = None
    if state.get("task_id"):
        try:
            task_state = AsyncResult(state["task_id"], app=celery_app).state
        except Exception as e:
            logger.warning(f"Could not read Celery state for {state['task_id']}: {e}")
    return SyncStateResponse(**state, task_state=task_state)


async def _sse_generator(user_id: int):
    """Yield sync state until the run is idle or errored."""
    while True:
        session = SessionLocal()
        try:
            state = get_state_from_db(session, user_id)
        finally:
            session.close()
        yield {"data": json.dumps(state)}
        if state.get("status") in TERMINAL_STATUSES:
            break
        await asyncio.sleep(SSE_POLL_INTERVAL_S)


@router.get("/sync/events")
async def sync_events(current_user: User = Depends(get_current_user_for_sse)):
    """SSE stream of sync progress. Pass ?token=JWT when using EventSource."""
    return EventSourceResponse(_sse_generator(current_user.id))
