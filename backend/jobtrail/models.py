"""SQLAlchemy models."""
from datetime import datetime
from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    String,
    DateTime,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# Application lifecycle. "closed" is terminal and sits outside the forward ranking.
APPLICATION_STATUSES = ("saved", "applied", "interviewing", "offer", "closed")
CLOSE_REASONS = ("rejected", "withdrawn", "ghosted", "accepted")

SYNC_RESULT_PROCESSED = "processed"
SYNC_RESULT_SKIPPED = "skipped"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Application(Base):
    __tablename__ = "applications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    company = Column(String(255), nullable=False, index=True)
    role = Column(String(255), nullable=True)
    location = Column(String(255), nullable=True)
    status = Column(String(32), nullable=False, default="applied")  # saved, applied, interviewing, offer, closed
    close_reason = Column(String(32), nullable=True)  # rejected, withdrawn, ghosted, accepted; only when closed
    job_url = Column(String(1000), nullable=True, index=True)
    source_email_id = Column(String, nullable=True, index=True)  # Gmail message that created it
    applied_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    emails = relationship(
        "ApplicationEmail",
        back_populates="application",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ApplicationEmail(Base):
    """Gmail message linked to an application. Same message can be (mis)linked to several."""
    __tablename__ = "application_emails"

    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(Integer, ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)
    gmail_message_id = Column(String, nullable=False, index=True)
    from_address = Column(String(255), nullable=True)
    from_name = Column(String(255), nullable=True)
    subject = Column(String(500), nullable=True)
    snippet = Column(Text, nullable=True)
    email_date = Column(DateTime, nullable=True)
    email_type = Column(String(32), nullable=True)  # application, interview, rejection, offer
    created_at = Column(DateTime, default=datetime.utcnow)

    application = relationship("Application", back_populates="emails")

    __table_args__ = (
        UniqueConstraint("application_id", "gmail_message_id", name="uq_application_emails_app_message"),
    )


class EmailSyncLog(Base):
    """Ledger of Gmail messages already handled by a sync (per user)."""
    __tablename__ = "email_sync_log"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    email_id = Column(String, nullable=False, index=True)
    processed_at = Column(DateTime, default=datetime.utcnow)
    result = Column(String(16), nullable=False, default=SYNC_RESULT_PROCESSED)  # processed, skipped

    __table_args__ = (
        UniqueConstraint("user_id", "email_id", name="uq_email_sync_log_user_email"),
    )


class SyncState(Base):
    """Progress and outcome of the latest background sync (per user)."""
    __tablename__ = "sync_state"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(16), default="idle")  # idle, queued, syncing, error
    message = Column(String(255), nullable=True)
    processed = Column(Integer, default=0)
    total = Column(Integer, default=0)
    created = Column(Integer, default=0)
    updated = Column(Integer, default=0)
    skipped = Column(Integer, default=0)
    already_processed = Column(Integer, default=0)
    errors = Column(Integer, default=0)
    error = Column(Text, nullable=True)
    needs_auth = Column(Boolean, default=False)
    task_id = Column(String(64), nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class OAuthState(Base):
    """OAuth CSRF state for the Gmail consent flow."""
    __tablename__ = "oauth_state"

    state_token = Column(String(64), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    redirect_url = Column(String(512), nullable=True)
    created_at = Column(DateTime, nullable=False)


Index("ix_applications_user_company", Application.user_id, Application.company)
