"""Turn one classified email into application writes: match, link, advance status."""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..database import commit_with_retry
from ..email_classifier import ClassificationOutcome, EmailVerdict
from ..gmail_service import FetchedEmail, extract_sender_address, extract_sender_name
from ..models import Application, SYNC_RESULT_PROCESSED, SYNC_RESULT_SKIPPED
from .application_store import ApplicationStore, EmailRecord, InvalidStatusError
from .sync_ledger import SyncLedger

logger = logging.getLogger(__name__)

# Forward order; "closed" is terminal and reachable from any of these.
STATUS_RANK = {"saved": 0, "applied": 1, "interviewing": 2, "offer": 3}

TYPE_TO_STATUS = {
    "application": "applied",
    "interview": "interviewing",
    "offer": "offer",
    "rejection": "closed",
}

_URL_RE = re.compile(r"https?://[^\s<>\"')\]]+", re.I)


@dataclass
class StatusChange:
    status: str
    close_reason: Optional[str] = None
    applied_date: Optional[datetime] = None


@dataclass
class ReconcileResult:
    action: str  # created, updated, linked, unchanged, skipped, failed
    application_id: Optional[int] = None
    relinked: int = 0
    reason: Optional[str] = None
    error: Optional[str] = None


def extract_urls(text: str) -> list[str]:
    """URLs in order of appearance, trailing punctuation trimmed, no repeats."""
    urls: list[str] = []
    for m in _URL_RE.finditer(text or ""):
        url = m.group(0).rstrip(".,;:!?")
        if url not in urls:
            urls.append(url)
    return urls


def status_for_type(email_type: str) -> Optional[StatusChange]:
    target = TYPE_TO_STATUS.get(email_type)
    if target is None:
        return None
    if target == "closed":
        return StatusChange("closed", close_reason="rejected")
    return StatusChange(target)


def derive_transition(
    current_status: str,
    email_type: str,
    email_date: Optional[datetime] = None,
    current_applied_date: Optional[datetime] = None,
) -> Optional[StatusChange]:
    """
    Status change implied by an email, or None.

    Moves forward only; any open status may close; closed never reopens.
    """
    proposed = status_for_type(email_type)
    if proposed is None or current_status == "closed":
        return None
    if proposed.status == "closed":
        return proposed
    if STATUS_RANK[proposed.status] <= STATUS_RANK.get(current_status, -1):
        return None
    if current_status == "saved" and current_applied_date is None:
        proposed.applied_date = email_date
    return proposed


def pick_link_winner(candidates: list[Application], subject: str, email_date: Optional[datetime]) -> Application:
    """
    Choose which application keeps a message linked to several.

    Oldest first: the first whose role appears in the subject wins; otherwise the
    one created closest to the email date.
    """
    ordered = sorted(candidates, key=lambda a: (a.created_at or datetime.max, a.id))
    subject_lower = (subject or "").lower()
    for app in ordered:
        role = (app.role or "").strip().lower()
        if role and role in subject_lower:
            return app
    if email_date is None:
        return ordered[0]

    def distance(app: Application) -> float:
        if app.created_at is None:
            return float("inf")
        return abs((app.created_at - email_date).total_seconds())

    return min(ordered, key=distance)


class Reconciler:
    def __init__(self, store: ApplicationStore, ledger: SyncLedger, confidence_threshold: Optional[float] = None):
        self.store = store
        self.ledger = ledger
        self.confidence_threshold = (
            confidence_threshold if confidence_threshold is not None else settings.classifier_confidence_threshold
        )

    @property
    def db(self):
        return self.store.db

    def skip_reason(self, outcome: ClassificationOutcome) -> Optional[str]:
        verdict = outcome.verdict
        if outcome.degenerate:
            return outcome.reason or "classification failed"
        if verdict.type == "unknown":
            return "not a job email"
        if verdict.confidence < self.confidence_threshold:
            return f"low confidence ({verdict.confidence:.2f})"
        if not verdict.company:
            return "no company"
        return None

    def reconcile(self, email: FetchedEmail, outcome: ClassificationOutcome) -> ReconcileResult:
        reason = self.skip_reason(outcome)
        if reason:
            logger.info(f"Skipping '{email.subject}': {reason}")
            self.ledger.mark_processed(email.id, SYNC_RESULT_SKIPPED)
            return ReconcileResult(action="skipped", reason=reason)

        try:
            with self.db.begin_nested():
                result = self._apply(email, outcome.verdict)
            commit_with_retry(self.db)
        except (SQLAlchemyError, InvalidStatusError, LookupError) as e:
            self.db.rollback()
            logger.error(f"Failed to store email {email.id} ('{email.subject}'): {e}")
            return ReconcileResult(action="failed", error=str(e))

        self.ledger.mark_processed(email.id, SYNC_RESULT_PROCESSED)
        return result

    def match(self, email: FetchedEmail, verdict: EmailVerdict) -> Optional[Application]:
        for url in extract_urls(email.body):
            app = self.store.find_by_url(url)
            if app:
                return app
        return self.store.find_by_company_role(verdict.company, verdict.role)

    def _apply(self, email: FetchedEmail, verdict: EmailVerdict) -> ReconcileResult:
        target = self.match(email, verdict)
        linked_apps: list[Application] = []
        for link in self.store.links_for_message(email.id):
            app = self.store.get(link.application_id)
            if app and app not in linked_apps:
                linked_apps.append(app)

        candidates = [target] if target else []
        candidates += [a for a in linked_apps if a not in candidates]

        if not candidates:
            initial = status_for_type(verdict.type)
            app = self.store.create(
                company=verdict.company,
                role=verdict.role,
                status=initial.status,
                close_reason=initial.close_reason,
                location=verdict.location,
                source_email_id=email.id,
                applied_date=email.date,
            )
            self.store.link_email(app.id, self._record(email, verdict))
            return ReconcileResult(action="created", application_id=app.id)

        winner = candidates[0]
        relinked = 0
        if len(candidates) > 1:
            winner = pick_link_winner(candidates, email.subject, email.date)
            if any(a.id != winner.id for a in linked_apps):
                self.store.relink_email(email.id, winner.id)
                relinked = 1
                logger.warning(
                    f"Email {email.id} was linked to {[a.id for a in linked_apps]}; "
                    f"kept on application {winner.id} ({winner.company} / {winner.role})"
                )

        _, link_created = self.store.link_email(winner.id, self._record(email, verdict))

        change = derive_transition(winner.status, verdict.type, email.date, winner.applied_date)
        if change:
            logger.info(f"Application {winner.id}: {winner.status} -> {change.status}")
            self.store.update_status(winner.id, change.status, change.close_reason, change.applied_date)
            return ReconcileResult(action="updated", application_id=winner.id, relinked=relinked)
        action = "linked" if (link_created or relinked) else "unchanged"
        return ReconcileResult(action=action, application_id=winner.id, relinked=relinked)

    @staticmethod
    def _record(email: FetchedEmail, verdict: EmailVerdict) -> EmailRecord:
        return EmailRecord(
            gmail_message_id=email.id,
            subject=email.subject,
            from_address=extract_sender_address(email.sender),
            from_name=extract_sender_name(email.sender),
            snippet=email.snippet,
            email_date=email.date,
            email_type=verdict.type,
        )
