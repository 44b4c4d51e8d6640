"""Per-user access to applications and their linked Gmail messages.

The store flushes but never commits; callers own the transaction.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Collection, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import Application, ApplicationEmail, APPLICATION_STATUSES, CLOSE_REASONS

logger = logging.getLogger(__name__)


class InvalidStatusError(ValueError):
    """Status / close_reason combination that would break the lifecycle rules."""


@dataclass
class EmailRecord:
    gmail_message_id: str
    subject: Optional[str] = None
    from_address: Optional[str] = None
    from_name: Optional[str] = None
    snippet: Optional[str] = None
    email_date: Optional[datetime] = None
    email_type: Optional[str] = None


def normalize_key(value: Optional[str]) -> Optional[str]:
    """Lowercase and collapse whitespace; blank becomes None."""
    if value is None:
        return None
    value = re.sub(r"\s+", " ", value).strip().lower()
    return value or None


def validate_status(status: str, close_reason: Optional[str]) -> None:
    if status not in APPLICATION_STATUSES:
        raise InvalidStatusError(f"Unknown status: {status}")
    if status == "closed":
        if close_reason not in CLOSE_REASONS:
            raise InvalidStatusError(
                f"close_reason must be one of {', '.join(CLOSE_REASONS)} when status is closed"
            )
    elif close_reason is not None:
        raise InvalidStatusError("close_reason is only allowed when status is closed")


def _oldest_first(apps: list[Application]) -> list[Application]:
    return sorted(apps, key=lambda a: (a.created_at or datetime.max, a.id))


class ApplicationStore:
    def __init__(self, db: Session, user_id: int):
        self.db = db
        self.user_id = user_id

    def _apps(self):
        return self.db.query(Application).filter(Application.user_id == self.user_id)

    def get(self, app_id: int) -> Optional[Application]:
        return self._apps().filter(Application.id == app_id).first()

    def list_all(self) -> list[Application]:
        return self._apps().order_by(Application.created_at.asc(), Application.id.asc()).all()

    def find_by_url(self, url: str) -> Optional[Application]:
        if not url:
            return None
        return (
            self._apps()
            .filter(Application.job_url == url)
            .order_by(Application.created_at.asc(), Application.id.asc())
            .first()
        )

    def find_by_company_role(self, company: str, role: Optional[str]) -> Optional[Application]:
        """Case/whitespace-insensitive match on company AND role; a null role only matches a null role."""
        company_key = normalize_key(company)
        if not company_key:
            return None
        role_key = normalize_key(role)
        matches = [
            a for a in self._apps().all()
            if normalize_key(a.company) == company_key and normalize_key(a.role) == role_key
        ]
        return _oldest_first(matches)[0] if matches else None

    def find_by_company(self, fragment: str) -> list[Application]:
        fragment = (fragment or "").strip().lower()
        if not fragment:
            return []
        return (
            self._apps()
            .filter(func.lower(Application.company).contains(fragment, autoescape=True))
            .order_by(Application.created_at.asc(), Application.id.asc())
            .all()
        )

    def create(
        self,
        company: str,
        role: Optional[str] = None,
        status: str = "applied",
        close_reason: Optional[str] = None,
        location: Optional[str] = None,
        job_url: Optional[str] = None,
        source_email_id: Optional[str] = None,
        applied_date: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> Application:
        validate_status(status, close_reason)
        app = Application(
            user_id=self.user_id,
            company=company.strip()[:255],
            role=(role.strip()[:255] if role else None),
            location=location,
            status=status,
            close_reason=close_reason,
            job_url=job_url,
            source_email_id=source_email_id,
            applied_date=applied_date,
            notes=notes,
            created_at=datetime.utcnow(),
        )
        self.db.add(app)
        self.db.flush()
        logger.info(f"Created application {app.id}: {app.company} / {app.role} ({status})")
        return app

    def update_status(
        self,
        app_id: int,
        status: str,
        close_reason: Optional[str] = None,
        applied_date: Optional[datetime] = None,
    ) -> Application:
        validate_status(status, close_reason)
        app = self.get(app_id)
        if app is None:
            raise LookupError(f"Application {app_id} not found")
        app.status = status
        app.close_reason = close_reason
        if applied_date is not None:
            app.applied_date = applied_date
        app.updated_at = datetime.utcnow()
        self.db.flush()
        return app

    def links_for_message(self, gmail_message_id: str) -> list[ApplicationEmail]:
        return (
            self.db.query(ApplicationEmail)
            .join(Application, Application.id == ApplicationEmail.application_id)
            .filter(
                Application.user_id == self.user_id,
                ApplicationEmail.gmail_message_id == gmail_message_id,
            )
            .order_by(Application.created_at.asc(), Application.id.asc())
            .all()
        )

    def emails_for(self, app_id: int) -> list[ApplicationEmail]:
        return (
            self.db.query(ApplicationEmail)
            .filter(ApplicationEmail.application_id == app_id)
            .order_by(ApplicationEmail.email_date.desc())
            .all()
        )

    def link_email(self, app_id: int, record: EmailRecord) -> tuple[ApplicationEmail, bool]:
        """Attach a message to an application. Returns (link, created); an existing link is left as is."""
        existing = (
            self.db.query(ApplicationEmail)
            .filter(
                ApplicationEmail.application_id == app_id,
                ApplicationEmail.gmail_message_id == record.gmail_message_id,
            )
            .first()
        )
        if existing:
            return existing, False
        link = ApplicationEmail(
            application_id=app_id,
            gmail_message_id=record.gmail_message_id,
            from_address=(record.from_address or "")[:255] or None,
            from_name=(record.from_name or "")[:255] or None,
            subject=(record.subject or "")[:500] or None,
            snippet=record.snippet,
            email_date=record.email_date,
            email_type=record.email_type,
            created_at=datetime.utcnow(),
        )
        self.db.add(link)
        self.db.flush()
        return link, True

    def relink_email(
        self, gmail_message_id: str, new_app_id: int, among: Optional[Collection[int]] = None
    ) -> int:
        """
        Leave exactly one link for the message, on new_app_id.
        Moves an existing link if the target has none. Returns links removed.
        With `among`, only links to those application ids are touched.
        """
        links = self.links_for_message(gmail_message_id)
        if among is not None:
            links = [l for l in links if l.application_id in among or l.application_id == new_app_id]
        keep = next((l for l in links if l.application_id == new_app_id), None)
        removed = 0
        for link in links:
            if link is keep:
                continue
            if keep is None:
                link.application_id = new_app_id
                keep = link
                continue
            self.db.delete(link)
            removed += 1
        self.db.flush()
        return removed
