"""Celery tasks. Each task owns its DB session and records its outcome in sync_state."""
import logging
from typing import Optional

from celery import shared_task

from .database import SessionLocal
from .services.email_processor import run_sync
from .sync_state_db import (
    set_sync_progress,
    set_sync_state_error,
    set_sync_state_idle,
    set_sync_state_syncing,
)

logger = logging.getLogger(__name__)


@shared_task(bind=True, name="jobtrail.tasks.run_email_sync")
def run_email_sync(self, user_id: int, after_date: Optional[str] = None):
    """
    Run one Gmail sync for user_id. after_date: optional YYYY-MM-DD or YYYY/MM/DD.
    Progress, counters and failures are written to sync_state for polling / SSE.
    """
    db = SessionLocal()
    task_id = getattr(getattr(self, "request", None), "id", None)
    try:
        set_sync_state_syncing(db, user_id=user_id, task_id=task_id)

        # Progress goes through its own session so a rollback in the run never discards it
        progress_db = SessionLocal()

        def on_progress(processed: int, total: int, message: str):
            try:
                set_sync_progress(progress_db, user_id, processed, total, message)
            except Exception:
                progress_db.rollback()
                raise

        try:
            result = run_sync(db, user_id, after_date=after_date, on_progress=on_progress)
        finally:
            progress_db.close()

        if result.get("error"):
            set_sync_state_error(db, result["error"], user_id=user_id, needs_auth=bool(result.get("needs_auth")))
        else:
            set_sync_state_idle(db, result, user_id=user_id)
        return result
    except Exception as e:
        logger.exception(f"Sync task failed for user {user_id}")
        db.rollback()
        set_sync_state_error(db, str(e), user_id=user_id)
        raise
    finally:
        db.close()
