"""Tests for reconciling classified emails into applications."""
from datetime import datetime

import pytest
from sqlalchemy.exc import SQLAlchemyError

from jobtrail.email_classifier import ClassificationOutcome
from jobtrail.models import Application, ApplicationEmail, EmailSyncLog
from jobtrail.services.application_store import ApplicationStore, InvalidStatusError
from jobtrail.services.reconciler import (
    Reconciler,
    derive_transition,
    extract_urls,
    pick_link_winner,
)
from jobtrail.services.sync_ledger import SyncLedger


@pytest.fixture
def store(db_session, user):
    return ApplicationStore(db_session, user.id)


@pytest.fixture
def ledger(db_session, user):
    return SyncLedger(db_session, user.id)


@pytest.fixture
def reconciler(store, ledger):
    return Reconciler(store, ledger, confidence_threshold=0.6)


def _add_app(db, user, company="Acme", role="Senior Engineer", status="applied", close_reason=None,
             created_at=datetime(2024, 1, 1), job_url=None):
    app = Application(
        user_id=user.id,
        company=company,
        role=role,
        status=status,
        close_reason=close_reason,
        created_at=created_at,
        job_url=job_url,
    )
    db.add(app)
    db.commit()
    return app


def _link(db, app, message_id, subject="Subject", email_date=None):
    db.add(ApplicationEmail(
        application_id=app.id,
        gmail_message_id=message_id,
        subject=subject,
        email_date=email_date,
    ))
    db.commit()


def _links(db, message_id):
    return db.query(ApplicationEmail).filter(ApplicationEmail.gmail_message_id == message_id).all()


# ----------------------------
# Pure rules
# ----------------------------

@pytest.mark.parametrize(
    "current,email_type,expected",
    [
        ("applied", "interview", "interviewing"),
        ("applied", "offer", "offer"),
        ("interviewing", "application", None),
        ("offer", "interview", None),
        ("interviewing", "interview", None),
        ("offer", "rejection", "closed"),
        ("saved", "rejection", "closed"),
        ("closed", "interview", None),
        ("closed", "offer", None),
        ("closed", "rejection", None),
        ("applied", "unknown", None),
    ],
)
def test_derive_transition_is_monotonic(current, email_type, expected):
    change = derive_transition(current, email_type)
    assert (change.status if change else None) == expected


def test_rejection_transition_carries_close_reason():
    change = derive_transition("interviewing", "rejection")
    assert change.close_reason == "rejected"
    assert derive_transition("applied", "interview").close_reason is None


def test_saved_to_applied_stamps_applied_date():
    when = datetime(2024, 3, 1)
    assert derive_transition("saved", "application", when).applied_date == when
    assert derive_transition("applied", "interview", when).applied_date is None


def test_extract_urls_keeps_order_and_trims_punctuation():
    body = "Apply at https://jobs.acme.com/123. Or see (https://acme.com/careers) and https://jobs.acme.com/123"
    assert extract_urls(body) == ["https://jobs.acme.com/123", "https://acme.com/careers"]


def test_pick_link_winner_prefers_role_in_subject_then_date():
    a = Application(id=1, role="Designer", created_at=datetime(2024, 1, 1))
    b = Application(id=2, role="Data Analyst", created_at=datetime(2024, 3, 1))
    assert pick_link_winner([b, a], "Interview: Data Analyst", None) is b
    assert pick_link_winner([a, b], "Next steps", datetime(2024, 2, 25)) is b
    assert pick_link_winner([b, a], "Next steps", datetime(2024, 1, 5)) is a
    assert pick_link_winner([b, a], "Next steps", None) is a


# ----------------------------
# Reconcile
# ----------------------------

def test_first_application_email_creates_application(reconciler, db_session, ledger, make_email, make_outcome):
    email = make_email("m1", subject="Thank you for applying to Senior Engineer at Acme", date=datetime(2024, 3, 1, 9, 0))
    result = reconciler.reconcile(email, make_outcome("application", "Acme", "Senior Engineer", location="Remote"))

    assert result.action == "created"
    app = db_session.query(Application).one()
    assert (app.company, app.role, app.status, app.close_reason) == ("Acme", "Senior Engineer", "applied", None)
    assert app.applied_date == datetime(2024, 3, 1, 9, 0)
    assert app.source_email_id == "m1"
    assert app.location == "Remote"
    link = _links(db_session, "m1")[0]
    assert link.application_id == app.id
    assert link.email_type == "application"
    assert link.from_address == "jobs@acme.com"
    assert ledger.has_processed("m1")
    assert db_session.query(EmailSyncLog).one().result == "processed"


def test_reprocessing_same_email_changes_nothing(reconciler, db_session, make_email, make_outcome):
    email = make_email("m1")
    outcome = make_outcome("application", "Acme", "Senior Engineer")
    reconciler.reconcile(email, outcome)
    before = db_session.query(Application).one().updated_at

    result = reconciler.reconcile(email, outcome)

    assert result.action == "unchanged"
    assert db_session.query(Application).count() == 1
    assert len(_links(db_session, "m1")) == 1
    assert db_session.query(Application).one().updated_at == before
    assert db_session.query(EmailSyncLog).count() == 1


def test_company_and_role_match_is_case_and_whitespace_insensitive(reconciler, db_session, user, make_email, make_outcome):
    app = _add_app(db_session, user, company="Acme", role="Senior Engineer")
    result = reconciler.reconcile(make_email("m2"), make_outcome("interview", " ACME ", "senior   engineer"))
    assert result.action == "updated"
    assert result.application_id == app.id
    db_session.refresh(app)
    assert app.status == "interviewing"
    assert db_session.query(Application).count() == 1


def test_rejection_closes_only_the_matching_role(reconciler, db_session, user, make_email, make_outcome):
    senior = _add_app(db_session, user, role="Senior Engineer", created_at=datetime(2024, 1, 1))
    staff = _add_app(db_session, user, role="Staff Engineer", created_at=datetime(2024, 1, 2))

    reconciler.reconcile(
        make_email("m3", subject="Update on your Staff Engineer application"),
        make_outcome("rejection", "Acme", "Staff Engineer"),
    )

    db_session.refresh(senior)
    db_session.refresh(staff)
    assert (staff.status, staff.close_reason) == ("closed", "rejected")
    assert (senior.status, senior.close_reason) == ("applied", None)


def test_closed_application_is_never_reopened(reconciler, db_session, user, make_email, make_outcome):
    app = _add_app(db_session, user, status="closed", close_reason="rejected")
    result = reconciler.reconcile(make_email("m4"), make_outcome("interview", "Acme", "Senior Engineer"))
    db_session.refresh(app)
    assert app.status == "closed"
    assert app.close_reason == "rejected"
    assert result.action == "linked"


def test_status_never_moves_backwards(reconciler, db_session, user, make_email, make_outcome):
    app = _add_app(db_session, user, status="offer")
    reconciler.reconcile(make_email("m5"), make_outcome("application", "Acme", "Senior Engineer"))
    db_session.refresh(app)
    assert app.status == "offer"


def test_rejection_as_first_email_creates_closed_application(reconciler, db_session, make_email, make_outcome):
    reconciler.reconcile(make_email("m6"), make_outcome("rejection", "Acme", "Designer"))
    app = db_session.query(Application).one()
    assert (app.status, app.close_reason) == ("closed", "rejected")


def test_null_role_only_matches_null_role(reconciler, db_session, user, make_email, make_outcome):
    _add_app(db_session, user, role="Senior Engineer")
    result = reconciler.reconcile(make_email("m7"), make_outcome("application", "Acme", None))
    assert result.action == "created"
    assert db_session.query(Application).count() == 2

    again = reconciler.reconcile(make_email("m8"), make_outcome("interview", "Acme", None))
    assert again.application_id == result.application_id


def test_job_url_in_body_wins_over_company_role(reconciler, db_session, user, make_email, make_outcome):
    by_url = _add_app(db_session, user, company="Acme Corporation", role="Platform Engineer",
                      job_url="https://boards.greenhouse.io/acme/jobs/42")
    _add_app(db_session, user, company="Acme", role="Senior Engineer", created_at=datetime(2023, 12, 1))
    email = make_email("m9", body="Track it here: https://boards.greenhouse.io/acme/jobs/42.")
    result = reconciler.reconcile(email, make_outcome("interview", "Acme", "Senior Engineer"))
    assert result.application_id == by_url.id


def test_earliest_application_wins_duplicate_company_role(reconciler, db_session, user, make_email, make_outcome):
    older = _add_app(db_session, user, created_at=datetime(2024, 1, 1))
    _add_app(db_session, user, created_at=datetime(2024, 2, 1))
    result = reconciler.reconcile(make_email("m10"), make_outcome("interview", "Acme", "Senior Engineer"))
    assert result.application_id == older.id


def test_existing_link_is_reused_instead_of_creating(reconciler, db_session, user, make_email, make_outcome):
    app = _add_app(db_session, user, company="Acme", role="Backend Engineer")
    _link(db_session, app, "m11")
    result = reconciler.reconcile(make_email("m11"), make_outcome("application", "ACME Corp", "Backend Eng"))
    assert result.application_id == app.id
    assert db_session.query(Application).count() == 1


def test_conflicting_links_collapse_onto_role_in_subject(reconciler, db_session, user, make_email, make_outcome):
    designer = _add_app(db_session, user, role="Designer", created_at=datetime(2024, 1, 1))
    analyst = _add_app(db_session, user, role="Data Analyst", created_at=datetime(2024, 2, 1))
    _link(db_session, designer, "m12")
    _link(db_session, analyst, "m12")

    result = reconciler.reconcile(
        make_email("m12", subject="Interview for Data Analyst"),
        make_outcome("interview", "Acme", "Data Analyst"),
    )

    assert result.relinked == 1
    assert [l.application_id for l in _links(db_session, "m12")] == [analyst.id]
    db_session.refresh(analyst)
    db_session.refresh(designer)
    assert analyst.status == "interviewing"
    assert designer.status == "applied"


def test_conflicting_links_fall_back_to_closest_creation_date(reconciler, db_session, user, make_email, make_outcome):
    early = _add_app(db_session, user, role="Designer", created_at=datetime(2024, 1, 1))
    late = _add_app(db_session, user, role="Analyst", created_at=datetime(2024, 3, 1))
    _link(db_session, early, "m13")
    _link(db_session, late, "m13")

    result = reconciler.reconcile(
        make_email("m13", subject="Next steps", date=datetime(2024, 2, 25)),
        make_outcome("interview", "Acme", None),
    )

    assert result.application_id == late.id
    assert [l.application_id for l in _links(db_session, "m13")] == [late.id]


@pytest.mark.parametrize(
    "outcome_kwargs",
    [
        {"type": "unknown"},
        {"confidence": 0.59},
        {"company": None},
    ],
)
def test_gate_skips_without_writing_applications(reconciler, db_session, ledger, make_email, make_outcome, outcome_kwargs):
    result = reconciler.reconcile(make_email("m14"), make_outcome(**outcome_kwargs))
    assert result.action == "skipped"
    assert db_session.query(Application).count() == 0
    assert db_session.query(EmailSyncLog).one().result == "skipped"


def test_degenerate_classification_is_skipped(reconciler, db_session, make_email):
    result = reconciler.reconcile(make_email("m15"), ClassificationOutcome.failed("invalid JSON"))
    assert result.action == "skipped"
    assert db_session.query(Application).count() == 0


def test_confidence_at_threshold_is_accepted(reconciler, db_session, make_email, make_outcome):
    result = reconciler.reconcile(make_email("m16"), make_outcome(confidence=0.6))
    assert result.action == "created"


def test_store_failure_rolls_back_and_leaves_email_unmarked(
    reconciler, store, ledger, db_session, make_email, make_outcome, monkeypatch
):
    def broken_link(*_args, **_kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(store, "link_email", broken_link)
    result = reconciler.reconcile(make_email("m17"), make_outcome())

    assert result.action == "failed"
    assert "disk I/O error" in result.error
    assert db_session.query(Application).count() == 0
    assert not ledger.has_processed("m17")


# ----------------------------
# Store invariants
# ----------------------------

def test_closed_requires_close_reason(store):
    app = store.create(company="Acme", role="Engineer")
    with pytest.raises(InvalidStatusError):
        store.update_status(app.id, "closed")


def test_open_status_rejects_close_reason(store):
    app = store.create(company="Acme", role="Engineer")
    with pytest.raises(InvalidStatusError):
        store.update_status(app.id, "applied", close_reason="rejected")


def test_unknown_status_rejected(store):
    with pytest.raises(InvalidStatusError):
        store.create(company="Acme", status="pending")


def test_relink_moves_link_when_target_has_none(store, db_session, user):
    a = _add_app(db_session, user, role="A")
    b = _add_app(db_session, user, role="B")
    _link(db_session, a, "m20")
    removed = store.relink_email("m20", b.id)
    assert removed == 0
    assert [l.application_id for l in _links(db_session, "m20")] == [b.id]
