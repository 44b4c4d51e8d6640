"""Operator repair endpoints for email links, the sync ledger and application status."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import get_current_user_required
from ..database import get_sync_db
from ..models import User
from ..schemas import CompanyRequest, FixStatusRequest
from ..services.repair_service import (
    RepairError,
    debug_email_links,
    fix_duplicate_links,
    fix_email_links,
    fix_status,
    reset_sync,
)

router = APIRouter(prefix="/api", tags=["repair"])


def _http_error(e: RepairError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"error": e.message, **e.detail})


@router.post("/sync/reset")
def reset_company_sync(
    body: CompanyRequest,
    current_user: User = Depends(get_current_user_required),
    db: Session = Depends(get_sync_db),
):
    """Forget ledger entries for a company's emails so the next sync reprocesses them."""
    try:
        return reset_sync(db, current_user.id, body.company)
    except RepairError as e:
        raise _http_error(e)


@router.post("/sync/fix-duplicates")
def fix_duplicates(
    body: CompanyRequest,
    current_user: User = Depends(get_current_user_required),
    db: Session = Depends(get_sync_db),
):
    try:
        return fix_duplicate_links(db, current_user.id, body.company)
    except RepairError as e:
        raise _http_error(e)


@router.post("/sync/fix-emails")
def fix_emails(
    body: CompanyRequest,
    current_user: User = Depends(get_current_user_required),
    db: Session = Depends(get_sync_db),
):
    """Re-link emails whose subject names a different application's role."""
    try:
        return fix_email_links(db, current_user.id, body.company)
    except RepairError as e:
        raise _http_error(e)


@router.post("/applications/fix-status")
def fix_application_status(
    body: FixStatusRequest,
    current_user: User = Depends(get_current_user_required),
    db: Session = Depends(get_sync_db),
):
    try:
        return fix_status(
            db,
            current_user.id,
            company=body.company,
            status=body.status,
            role=body.role,
            close_reason=body.close_reason,
        )
    except RepairError as e:
        raise _http_error(e)


@router.get("/debug/emails")
def debug_emails(
    company: Optional[str] = None,
    current_user: User = Depends(get_current_user_required),
    db: Session = Depends(get_sync_db),
):
    try:
        return debug_email_links(db, current_user.id, company or "")
    except RepairError as e:
        raise _http_error(e)
