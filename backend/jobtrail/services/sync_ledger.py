"""Per-user record of Gmail messages a sync has already handled."""
from datetime import datetime
from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..database import commit_with_retry
from ..models import EmailSyncLog, SYNC_RESULT_PROCESSED, SYNC_RESULT_SKIPPED

LEDGER_RESULTS = (SYNC_RESULT_PROCESSED, SYNC_RESULT_SKIPPED)


class SyncLedger:
    def __init__(self, db: Session, user_id: int):
        self.db = db
        self.user_id = user_id

    def _query(self):
        return self.db.query(EmailSyncLog).filter(EmailSyncLog.user_id == self.user_id)

    def has_processed(self, email_id: str) -> bool:
        return self._query().filter(EmailSyncLog.email_id == email_id).first() is not None

    def processed_ids(self) -> set[str]:
        rows = self.db.query(EmailSyncLog.email_id).filter(EmailSyncLog.user_id == self.user_id).all()
        return {r[0] for r in rows}

    def mark_processed(self, email_id: str, result: str = SYNC_RESULT_PROCESSED) -> None:
        """Record email_id once; marking an already-recorded id is a no-op."""
        if result not in LEDGER_RESULTS:
            raise ValueError(f"Unknown ledger result: {result}")
        if self.has_processed(email_id):
            return
        try:
            with self.db.begin_nested():
                self.db.add(EmailSyncLog(
                    user_id=self.user_id,
                    email_id=email_id,
                    result=result,
                    processed_at=datetime.utcnow(),
                ))
                self.db.flush()
        except IntegrityError:
            # Concurrent sync recorded it first
            pass
        commit_with_retry(self.db)

    def reset(self, email_ids: Iterable[str]) -> int:
        """Forget the given ids so the next sync re-reads them. Returns rows deleted."""
        ids = [e for e in set(email_ids) if e]
        if not ids:
            return 0
        deleted = (
            self._query()
            .filter(EmailSyncLog.email_id.in_(ids))
            .delete(synchronize_session=False)
        )
        commit_with_retry(self.db)
        return deleted
