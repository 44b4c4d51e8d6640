"""Tests for a full sync run over a fake mailbox and classifier."""
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from jobtrail.email_classifier import ClassificationOutcome, EmailVerdict
from jobtrail.gmail_service import GmailAuthRequiredError
from jobtrail.models import Application, EmailSyncLog
from jobtrail.services import email_processor
from jobtrail.services.email_processor import run_sync
from jobtrail.services.sync_ledger import SyncLedger


def _gmail_message(msg_id, subject, body="aGVsbG8="):
    return {
        "id": msg_id,
        "threadId": f"t-{msg_id}",
        "internalDate": "1709283600000",
        "payload": {
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": "Acme Careers <jobs@acme.com>"},
            ],
            "body": {"data": body},
        },
    }


def _mailbox(messages: dict, failing: dict = None) -> MagicMock:
    """Every query lists the same ids; the fetcher dedups them."""
    failing = failing or {}
    mailbox = MagicMock()
    mailbox.list_message_ids.side_effect = lambda query, max_results=30: list(messages)[:max_results]

    def get(msg_id):
        if msg_id in failing:
            raise failing[msg_id]
        return _gmail_message(msg_id, messages[msg_id])

    mailbox.get_message.side_effect = get
    return mailbox


def _classifier(verdicts: dict) -> MagicMock:
    """Keyed by subject."""
    classifier = MagicMock()

    def classify(subject, sender, body):
        result = verdicts[subject]
        if isinstance(result, Exception):
            raise result
        return ClassificationOutcome(verdict=EmailVerdict(**result))

    classifier.classify.side_effect = classify
    return classifier


APPLIED = {"type": "application", "company": "Acme", "role": "Senior Engineer", "confidence": 0.9}
INTERVIEW = {"type": "interview", "company": "Acme", "role": "Senior Engineer", "confidence": 0.9}
NEWSLETTER = {"type": "unknown", "confidence": 0.2}


def test_sync_creates_then_updates_and_counts(db_session, user):
    mailbox = _mailbox({"m1": "Thanks for applying", "m2": "Interview invitation", "m3": "Weekly digest"})
    classifier = _classifier({
        "Thanks for applying": APPLIED,
        "Interview invitation": INTERVIEW,
        "Weekly digest": NEWSLETTER,
    })

    result = run_sync(db_session, user.id, mailbox=mailbox, classifier=classifier)

    assert "error" not in result
    assert result["emails_scanned"] == 3
    assert result["new_applications"] == 1
    assert result["updated_applications"] == 1
    assert result["skipped"] == 1
    assert result["errors"] == 0
    app = db_session.query(Application).one()
    assert app.status == "interviewing"
    assert SyncLedger(db_session, user.id).processed_ids() == {"m1", "m2", "m3"}
    assert classifier.classify.call_count == 3


def test_second_sync_skips_ledgered_messages(db_session, user):
    messages = {"m1": "Thanks for applying"}
    run_sync(db_session, user.id, mailbox=_mailbox(messages), classifier=_classifier({"Thanks for applying": APPLIED}))

    mailbox = _mailbox(messages)
    classifier = _classifier({"Thanks for applying": APPLIED})
    result = run_sync(db_session, user.id, mailbox=mailbox, classifier=classifier)

    assert result["already_processed"] == 1
    assert result["emails_scanned"] == 1
    assert result["new_applications"] == 0
    classifier.classify.assert_not_called()
    mailbox.get_message.assert_not_called()
    assert db_session.query(Application).count() == 1


def test_calendar_invites_are_ledgered_without_classifying(db_session, user):
    classifier = _classifier({})
    result = run_sync(
        db_session,
        user.id,
        mailbox=_mailbox({"c1": "Invitation from Google Calendar: Interview with Acme @ Tue Mar 5"}),
        classifier=classifier,
    )
    assert result["skipped"] == 1
    classifier.classify.assert_not_called()
    assert db_session.query(EmailSyncLog).one().result == "skipped"


def test_one_failing_message_does_not_stop_the_batch(db_session, user):
    mailbox = _mailbox({"bad": "Broken", "good": "Thanks for applying"})
    classifier = _classifier({"Broken": RuntimeError("boom"), "Thanks for applying": APPLIED})

    result = run_sync(db_session, user.id, mailbox=mailbox, classifier=classifier)

    assert result["errors"] == 1
    assert result["new_applications"] == 1
    ledger = SyncLedger(db_session, user.id)
    assert not ledger.has_processed("bad")
    assert ledger.has_processed("good")


def test_revoked_token_aborts_with_needs_auth(db_session, user):
    mailbox = _mailbox({"m1": "Thanks for applying", "m2": "Interview invitation"},
                       failing={"m2": GmailAuthRequiredError("Token has been expired or revoked")})
    classifier = _classifier({"Thanks for applying": APPLIED, "Interview invitation": INTERVIEW})

    result = run_sync(db_session, user.id, mailbox=mailbox, classifier=classifier)

    assert result["needs_auth"] is True
    assert "revoked" in result["error"]
    classifier.classify.assert_not_called()
    assert db_session.query(EmailSyncLog).count() == 0
    assert db_session.query(Application).count() == 0


def test_missing_token_returns_needs_auth(db_session, user, monkeypatch, tmp_path):
    from jobtrail.config import settings

    monkeypatch.setattr(settings, "token_dir", str(tmp_path))
    result = run_sync(db_session, user.id, classifier=_classifier({}))
    assert result["needs_auth"] is True


def test_invalid_after_date_is_reported(db_session, user):
    result = run_sync(db_session, user.id, mailbox=_mailbox({}), classifier=_classifier({}), after_date="soon")
    assert "after_date" in result["error"]


def test_owned_mailbox_and_classifier_are_closed(db_session, user, monkeypatch):
    mailbox = _mailbox({"m1": "Thanks for applying"})
    classifier = _classifier({"Thanks for applying": APPLIED})
    monkeypatch.setattr(email_processor.GmailMailbox, "for_user", classmethod(lambda cls, uid: mailbox))
    monkeypatch.setattr(email_processor, "EmailClassifier", lambda: classifier)

    run_sync(db_session, user.id)

    mailbox.close.assert_called_once()
    classifier.close.assert_called_once()


def test_injected_dependencies_are_left_open(db_session, user):
    mailbox = _mailbox({})
    classifier = _classifier({})
    run_sync(db_session, user.id, mailbox=mailbox, classifier=classifier)
    mailbox.close.assert_not_called()
    classifier.close.assert_not_called()


def test_progress_callback_reports_completion(db_session, user):
    calls = []
    run_sync(
        db_session,
        user.id,
        mailbox=_mailbox({"m1": "Thanks for applying"}),
        classifier=_classifier({"Thanks for applying": APPLIED}),
        on_progress=lambda processed, total, message: calls.append((processed, total, message)),
    )
    assert calls[-1] == (1, 1, "Done")


def test_failing_progress_write_does_not_stop_the_batch(db_session, user):
    def flaky_progress(processed, total, message):
        if message.startswith("Processing 2/"):
            raise OperationalError("UPDATE sync_state", {}, Exception("database is locked"))

    result = run_sync(
        db_session,
        user.id,
        mailbox=_mailbox({"m1": "Thanks for applying", "m2": "Interview invitation"}),
        classifier=_classifier({"Thanks for applying": APPLIED, "Interview invitation": INTERVIEW}),
        on_progress=flaky_progress,
    )

    assert result["new_applications"] == 1
    assert result["updated_applications"] == 1
    assert result["errors"] == 0
    assert db_session.query(Application).one().status == "interviewing"
