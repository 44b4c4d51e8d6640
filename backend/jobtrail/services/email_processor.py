"""Email sync run: query Gmail, classify each new message, reconcile into applications."""
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..email_classifier import EmailClassifier, is_calendar_invite
from ..gmail_queries import build_job_queries
from ..gmail_service import GmailAuthRequiredError, GmailMailbox
from ..models import SYNC_RESULT_SKIPPED
from .application_store import ApplicationStore
from .fetcher import fetch_job_emails
from .reconciler import Reconciler
from .sync_ledger import SyncLedger

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


def _empty_counters() -> dict:
    return {
        "emails_scanned": 0,
        "new_applications": 0,
        "updated_applications": 0,
        "skipped": 0,
        "already_processed": 0,
        "errors": 0,
        "relinked": 0,
    }


def run_sync(
    db: Session,
    user_id: int,
    mailbox: Optional[GmailMailbox] = None,
    classifier: Optional[EmailClassifier] = None,
    after_date: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> dict:
    """
    Run one sync for a user and return counters.

    An expired or revoked Gmail token aborts the run with {"error", "needs_auth": True};
    any other failure on a single message is counted in "errors" and skipped.
    Mailbox and classifier created here are closed before returning.
    """
    counters = _empty_counters()

    def progress(processed: int, total: int, message: str):
        if not on_progress:
            return
        try:
            on_progress(processed, total, message)
        except Exception as e:
            # never stops the batch
            logger.warning(f"Progress update failed ({message}): {e}")

    try:
        queries = build_job_queries(after_date)
    except ValueError as e:
        return {**counters, "error": f"Invalid after_date: {e}"}

    owns_mailbox = mailbox is None
    owns_classifier = classifier is None
    store = ApplicationStore(db, user_id)
    ledger = SyncLedger(db, user_id)
    reconciler = Reconciler(store, ledger)

    try:
        progress(0, 0, "Connecting to Gmail…")
        try:
            if mailbox is None:
                mailbox = GmailMailbox.for_user(user_id)
            mailbox.open()
            if classifier is None:
                classifier = EmailClassifier()
        except GmailAuthRequiredError:
            raise
        except Exception as e:
            logger.error(f"Sync setup failed for user {user_id}: {e}")
            return {**counters, "error": str(e)}

        logger.info(f"=== SYNC START (user={user_id}, queries={len(queries)}) ===")
        fetched = fetch_job_emails(
            mailbox,
            queries,
            exclude_ids=ledger.processed_ids(),
            on_progress=lambda n, msg: progress(0, n, msg),
        )
        emails = fetched.emails
        total = len(emails)
        counters["already_processed"] = fetched.excluded
        counters["emails_scanned"] = total + fetched.excluded

        for idx, email in enumerate(emails):
            progress(idx, total, f"Processing {idx + 1}/{total}")
            try:
                if ledger.has_processed(email.id):
                    counters["already_processed"] += 1
                    continue
                if is_calendar_invite(email.subject):
                    logger.info(f"Skipping calendar invite: {email.subject}")
                    ledger.mark_processed(email.id, SYNC_RESULT_SKIPPED)
                    counters["skipped"] += 1
                    continue
                outcome = classifier.classify(email.subject, email.sender, email.body)
                result = reconciler.reconcile(email, outcome)
            except Exception as e:
                db.rollback()
                logger.error(f"Email {idx + 1}/{total}: processing failed ({email.id}): {str(e)[:200]}")
                counters["errors"] += 1
                continue

            if result.action == "created":
                counters["new_applications"] += 1
            elif result.action == "updated":
                counters["updated_applications"] += 1
            elif result.action == "skipped":
                counters["skipped"] += 1
            elif result.action == "failed":
                counters["errors"] += 1
            counters["relinked"] += result.relinked

        progress(total, total, "Done")
    except GmailAuthRequiredError as e:
        db.rollback()
        logger.warning(f"Sync aborted for user {user_id}: {e}")
        return {**counters, "error": str(e), "needs_auth": True}
    finally:
        if owns_mailbox and mailbox is not None:
            mailbox.close()
        if owns_classifier and classifier is not None:
            classifier.close()

    logger.info(f"=== SYNC COMPLETE (user={user_id}) ===")
    logger.info(f"Scanned: {counters['emails_scanned']}")
    logger.info(f"Created: {counters['new_applications']}")
    logger.info(f"Updated: {counters['updated_applications']}")
    logger.info(f"Skipped: {counters['skipped']}")
    logger.info(f"Already processed: {counters['already_processed']}")
    logger.info(f"Relinked: {counters['relinked']}")
    logger.info(f"Errors: {counters['errors']}")
    return counters
