"""Gmail OAuth CSRF state persisted in DB, bound to the user who started the flow."""
from datetime import datetime
from typing import Optional

from .database import SessionLocal
from .models import OAuthState

OAUTH_STATE_TTL_SECONDS = 900  # 15 minutes


def oauth_state_set(state_token: str, user_id: int, redirect_url: Optional[str] = None) -> None:
    """Bind state_token to user_id; reissuing the same token rebinds it."""
    with SessionLocal() as db:
        db.merge(OAuthState(
            state_token=state_token,
            user_id=user_id,
            redirect_url=redirect_url or "",
            created_at=datetime.utcnow(),
        ))
        db.commit()


def oauth_state_consume(state_token: str) -> Optional[dict]:
    """
    One-time lookup: the row is deleted whether or not it is still fresh.
    Returns {"redirect_url", "user_id"}, or None when unknown or older than the TTL.
    """
    with SessionLocal() as db:
        row = db.get(OAuthState, state_token)
        if row is None:
            return None
        age_s = (datetime.utcnow() - row.created_at).total_seconds()
        binding = {"redirect_url": row.redirect_url or "", "user_id": row.user_id}
        db.delete(row)
        db.commit()
    return binding if age_s <= OAUTH_STATE_TTL_SECONDS else None
