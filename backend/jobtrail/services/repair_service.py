"""Operator repair tools for one company's applications: email links, ledger, status."""
import logging
import re
from collections import defaultdict
from typing import Optional

from sqlalchemy.orm import Session

from ..database import commit_with_retry
from ..models import Application, ApplicationEmail, APPLICATION_STATUSES, CLOSE_REASONS
from .application_store import ApplicationStore, InvalidStatusError
from .reconciler import pick_link_winner
from .sync_ledger import SyncLedger

logger = logging.getLogger(__name__)


class RepairError(Exception):
    def __init__(self, message: str, status_code: int = 400, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail or {}


def _require_company(company: Optional[str]) -> str:
    company = (company or "").strip()
    if not company:
        raise RepairError("Company name required", 400)
    return company


def _normalize_role(text: str) -> str:
    text = re.sub(r"[^a-z0-9\s]", " ", (text or "").lower())
    return re.sub(r"\s+", " ", text).strip()


def role_in_text(text: str, role: str) -> bool:
    norm_role = _normalize_role(role)
    return bool(norm_role) and norm_role in _normalize_role(text)


def best_role_match(apps: list[Application], text: str) -> Optional[Application]:
    """Application whose role appears in text; the longest role wins, then the oldest."""
    matches = [a for a in apps if a.role and role_in_text(text, a.role)]
    if not matches:
        return None
    return max(matches, key=lambda a: len(_normalize_role(a.role)))


def _app_summary(app: Application) -> dict:
    return {
        "id": app.id,
        "company": app.company,
        "role": app.role,
        "status": app.status,
        "close_reason": app.close_reason,
        "created_at": app.created_at.isoformat() if app.created_at else None,
    }


def _links_for_apps(db: Session, app_ids: list[int]) -> list[ApplicationEmail]:
    if not app_ids:
        return []
    return (
        db.query(ApplicationEmail)
        .filter(ApplicationEmail.application_id.in_(app_ids))
        .order_by(ApplicationEmail.id.asc())
        .all()
    )


def fix_duplicate_links(db: Session, user_id: int, company: str) -> dict:
    """Collapse every message linked to several of the company's applications onto one."""
    company = _require_company(company)
    store = ApplicationStore(db, user_id)
    apps = store.find_by_company(company)
    if len(apps) < 2:
        raise RepairError("Need at least 2 applications to fix duplicates", 400)

    by_id = {a.id: a for a in apps}
    links_by_message: dict[str, list[ApplicationEmail]] = defaultdict(list)
    for link in _links_for_apps(db, list(by_id)):
        links_by_message[link.gmail_message_id].append(link)

    fixes = []
    for message_id, links in links_by_message.items():
        if len(links) <= 1:
            continue
        sample = links[0]
        winner = pick_link_winner(apps, sample.subject or "", sample.email_date)
        removed = store.relink_email(message_id, winner.id, among=set(by_id))
        fixes.append({
            "email": sample.subject,
            "to": winner.role,
            "application_id": winner.id,
            "removed_links": removed,
        })
        logger.info(f"Collapsed {len(links)} links for '{sample.subject}' onto application {winner.id}")

    commit_with_retry(db)
    return {
        "success": True,
        "message": f"Fixed {len(fixes)} duplicate emails",
        "fixes": fixes,
        "applications": [_app_summary(a) for a in apps],
    }


def fix_email_links(db: Session, user_id: int, company: str) -> dict:
    """Move emails whose subject names another application's role onto that application."""
    company = _require_company(company)
    store = ApplicationStore(db, user_id)
    apps = store.find_by_company(company)
    if not apps:
        raise RepairError("No applications found", 404, {"company": company})

    by_id = {a.id: a for a in apps}
    links = _links_for_apps(db, list(by_id))
    fixes = []
    for link in links:
        current = by_id.get(link.application_id)
        target = best_role_match(apps, link.subject or "")
        if target is None or target.id == link.application_id:
            continue
        already = (
            db.query(ApplicationEmail)
            .filter(
                ApplicationEmail.application_id == target.id,
                ApplicationEmail.gmail_message_id == link.gmail_message_id,
            )
            .first()
        )
        if already:
            db.delete(link)
        else:
            link.application_id = target.id
        fixes.append({
            "email": link.subject,
            "from": current.role if current else None,
            "to": target.role,
        })
        logger.info(f"Relinked '{link.subject}' from {current.role if current else '?'} to {target.role}")

    db.flush()
    commit_with_retry(db)
    return {
        "success": True,
        "message": f"Fixed {len(fixes)} email links",
        "fixes": fixes,
        "applications": [_app_summary(a) for a in apps],
    }


def reset_sync(db: Session, user_id: int, company: str) -> dict:
    """Forget the company's messages in the ledger so the next sync reprocesses them."""
    company = _require_company(company)
    store = ApplicationStore(db, user_id)
    apps = store.find_by_company(company)
    if not apps:
        raise RepairError("No applications found for company", 404, {"company": company})

    email_ids = {a.source_email_id for a in apps if a.source_email_id}
    email_ids.update(link.gmail_message_id for link in _links_for_apps(db, [a.id for a in apps]))
    deleted = SyncLedger(db, user_id).reset(email_ids)
    logger.info(f"Reset {deleted} ledger entries for '{company}' ({len(email_ids)} message ids)")
    return {
        "success": True,
        "message": f"Reset sync for {len(apps)} {company} applications",
        "applications": [_app_summary(a) for a in apps],
        "emails_reset": len(email_ids),
        "ledger_entries_deleted": deleted,
    }


def fix_status(
    db: Session,
    user_id: int,
    company: str,
    status: str,
    role: Optional[str] = None,
    close_reason: Optional[str] = None,
) -> dict:
    """Set status by hand. The only path that can reopen a closed application."""
    company = _require_company(company)
    if status not in APPLICATION_STATUSES:
        raise RepairError("Invalid status", 400, {"valid_statuses": list(APPLICATION_STATUSES)})
    if status != "closed":
        close_reason = None
    elif close_reason not in CLOSE_REASONS:
        raise RepairError(
            "close_reason required when status is closed", 400, {"valid_close_reasons": list(CLOSE_REASONS)}
        )

    store = ApplicationStore(db, user_id)
    apps = store.find_by_company(company)
    if role:
        role_key = role.strip().lower()
        apps = [a for a in apps if a.role and role_key in a.role.lower()]
    if not apps:
        raise RepairError("No applications found", 404, {"company": company, "role": role})
    if len(apps) > 1 and not role:
        raise RepairError(
            "Multiple applications found, please specify role",
            400,
            {"applications": [_app_summary(a) for a in apps]},
        )

    app = apps[0]
    previous = app.status
    try:
        store.update_status(app.id, status, close_reason)
    except InvalidStatusError as e:
        db.rollback()
        raise RepairError(str(e), 400) from e
    commit_with_retry(db)
    logger.info(f"Manual status fix for application {app.id}: {previous} -> {status}")
    return {
        "success": True,
        "message": f'Updated {app.company} - {app.role} from "{previous}" to "{status}"',
        "application": _app_summary(app),
    }


def debug_email_links(db: Session, user_id: int, company: str) -> list[dict]:
    """Each matching application with its linked emails, newest first."""
    company = _require_company(company)
    store = ApplicationStore(db, user_id)
    result = []
    for app in store.find_by_company(company):
        emails = store.emails_for(app.id)
        result.append({
            "application": _app_summary(app),
            "emails": [
                {
                    "id": e.id,
                    "gmail_message_id": e.gmail_message_id,
                    "subject": e.subject,
                    "email_date": e.email_date.isoformat() if e.email_date else None,
                    "email_type": e.email_type,
                }
                for e in emails
            ],
        })
    return result

