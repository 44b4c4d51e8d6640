"""Per-user background sync state in DB (SyncState model). Read by the status endpoint and SSE."""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from .models import SyncState

TERMINAL_STATUSES = ("idle", "error")


def get_sync_state(db: Session, user_id: int) -> Optional[SyncState]:
    return (
        db.query(SyncState)
        .filter(SyncState.user_id == user_id)
        .order_by(SyncState.id.desc())
        .first()
    )


def _row_for_update(db: Session, user_id: int) -> SyncState:
    row = get_sync_state(db, user_id)
    if row is None:
        row = SyncState(user_id=user_id, status="idle")
        db.add(row)
    row.updated_at = datetime.utcnow()
    return row


def _reset_counters(row: SyncState) -> None:
    row.processed = 0
    row.total = 0
    row.created = 0
    row.updated = 0
    row.skipped = 0
    row.already_processed = 0
    row.errors = 0
    row.error = None
    row.needs_auth = False


def set_sync_state_queued(db: Session, user_id: int, task_id: Optional[str]) -> None:
    row = _row_for_update(db, user_id)
    _reset_counters(row)
    row.status = "queued"
    row.task_id = task_id
    row.message = "Waiting for worker…"
    db.commit()


def set_sync_state_syncing(db: Session, user_id: int, task_id: Optional[str] = None) -> None:
    row = _row_for_update(db, user_id)
    _reset_counters(row)
    row.status = "syncing"
    if task_id:
        row.task_id = task_id
    row.message = "Connecting to Gmail…"
    db.commit()


def set_sync_progress(db: Session, user_id: int, processed: int, total: int, message: str) -> None:
    row = _row_for_update(db, user_id)
    row.processed = processed
    row.total = total
    row.message = message or ""
    db.commit()


def set_sync_state_idle(db: Session, result: dict, user_id: int) -> None:
    now = datetime.utcnow()
    row = _row_for_update(db, user_id)
    scanned = result.get("emails_scanned", 0)
    row.status = "idle"
    row.error = None
    row.needs_auth = False
    row.message = "Done"
    row.processed = scanned
    row.total = scanned
    row.created = result.get("new_applications", 0)
    row.updated = result.get("updated_applications", 0)
    row.skipped = result.get("skipped", 0)
    row.already_processed = result.get("already_processed", 0)
    row.errors = result.get("errors", 0)
    row.last_synced_at = now
    db.commit()


def set_sync_state_error(db: Session, error: str, user_id: int, needs_auth: bool = False) -> None:
    row = _row_for_update(db, user_id)
    row.status = "error"
    row.error = error
    row.needs_auth = needs_auth
    row.message = "Gmail re-authentication required" if needs_auth else ""
    db.commit()


def state_to_dict(row: Optional[SyncState]) -> dict:
    if row is None:
        return {
            "status": "idle",
            "message": "",
            "processed": 0,
            "total": 0,
            "created": 0,
            "updated": 0,
            "skipped": 0,
            "already_processed": 0,
            "errors": 0,
            "error": None,
            "needs_auth": False,
            "task_id": None,
            "last_synced_at": None,
        }
    return {
        "status": row.status or "idle",
        "message": (row.message or "").strip(),
        "processed": row.processed or 0,
        "total": row.total or 0,
        "created": row.created or 0,
        "updated": row.updated or 0,
        "skipped": row.skipped or 0,
        "already_processed": row.already_processed or 0,
        "errors": row.errors or 0,
        "error": row.error,
        "needs_auth": bool(row.needs_auth),
        "task_id": row.task_id,
        "last_synced_at": row.last_synced_at.isoformat() if row.last_synced_at else None,
    }


def get_state_from_db(db: Session, user_id: int) -> dict:
    return state_to_dict(get_sync_state(db, user_id))
