"""Gmail API integration: per-user OAuth tokens, mailbox client, message parsing."""
import base64
import html
import logging
import os
import pickle
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import settings
from .database import resolve_backend_path
from .oauth_state_db import oauth_state_set, oauth_state_consume

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]

RETRYABLE_STATUSES = (429, 500, 503)


class GmailAuthRequiredError(Exception):
    """Token missing, expired or revoked. The whole sync must stop and the user re-authenticate."""


class MessageNotFoundError(Exception):
    """Gmail returned 404 for a message (deleted between list and get)."""


@dataclass
class FetchedEmail:
    id: str
    thread_id: Optional[str]
    subject: str
    sender: str
    date: Optional[datetime]  # naive UTC
    snippet: str
    body: str


# ----------------------------
# Tokens / OAuth
# ----------------------------

def _token_path_for_user(user_id: int) -> str:
    return os.path.join(resolve_backend_path(settings.token_dir), f"token_{user_id}.pickle")


def _save_credentials(user_id: int, creds) -> None:
    token_path = _token_path_for_user(user_id)
    os.makedirs(os.path.dirname(token_path), exist_ok=True)
    with open(token_path, "wb") as token:
        pickle.dump(creds, token)
    try:
        os.chmod(token_path, 0o600)
    except OSError:
        logger.debug("Could not chmod %s", token_path)


def load_credentials(user_id: int):
    """Return valid Gmail credentials for the user, refreshing if needed."""
    token_path = _token_path_for_user(user_id)
    if not os.path.exists(token_path):
        raise GmailAuthRequiredError("Gmail not connected. Open /api/gmail/auth to sign in.")
    with open(token_path, "rb") as token:
        creds = pickle.load(token)
    if creds and creds.valid:
        return creds
    if creds and creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
        except RefreshError as e:
            raise GmailAuthRequiredError(
                "Gmail token expired and refresh failed. Open /api/gmail/auth to sign in again."
            ) from e
        _save_credentials(user_id, creds)
        return creds
    raise GmailAuthRequiredError("Gmail authorization required. Open /api/gmail/auth to sign in.")


def gmail_connected(user_id: int) -> bool:
    """True if a sync can run without interactive OAuth."""
    try:
        load_credentials(user_id)
    except GmailAuthRequiredError:
        return False
    return True


def _oauth_flow() -> InstalledAppFlow:
    creds_path = resolve_backend_path(settings.credentials_path)
    if not os.path.exists(creds_path):
        raise FileNotFoundError(
            f"Gmail credentials not found at {creds_path}. "
            "Download from Google Cloud Console and save as credentials.json"
        )
    if not settings.gmail_oauth_redirect_uri:
        raise ValueError("GMAIL_OAUTH_REDIRECT_URI must be set to connect Gmail")
    return InstalledAppFlow.from_client_secrets_file(
        creds_path, SCOPES, redirect_uri=settings.gmail_oauth_redirect_uri
    )


def start_gmail_oauth(user_id: int, redirect_url_after: str) -> str:
    """Return the Google consent URL; CSRF state is bound to user_id."""
    flow = _oauth_flow()
    state = secrets.token_urlsafe(32)
    oauth_state_set(state, user_id, redirect_url_after)
    auth_url, _ = flow.authorization_url(prompt="consent", state=state, access_type="offline")
    return auth_url


def finish_gmail_oauth(code: str, state: str) -> str:
    """
    Validate state, exchange code for tokens and store them for the bound user.
    Returns the redirect URL. Raises ValueError if state is invalid or expired.
    """
    entry = oauth_state_consume(state)
    if not entry:
        raise ValueError("Invalid or expired OAuth state")
    user_id = entry.get("user_id")
    if user_id is None:
        raise ValueError("OAuth state has no user binding")
    flow = _oauth_flow()
    flow.fetch_token(code=code)
    creds = flow.credentials
    if not getattr(creds, "refresh_token", None):
        raise ValueError("Google did not return a refresh token; retry with prompt=consent")
    _save_credentials(user_id, creds)
    logger.info(f"Stored Gmail token for user {user_id}")
    return entry.get("redirect_url") or settings.frontend_url


# ----------------------------
# Mailbox client
# ----------------------------

class GmailMailbox:
    """
    Owned Gmail API client with an explicit open/close lifecycle.

    Translates Google errors into GmailAuthRequiredError (401 / refresh failure)
    and MessageNotFoundError (404); retries 429/500/503 with exponential backoff.
    """

    def __init__(self, credentials=None, service=None, max_retries: Optional[int] = None, backoff_base_s: float = 1.0):
        self._credentials = credentials
        self._service = service
        self._owns_service = service is None
        self.max_retries = max(1, max_retries or settings.gmail_max_retries)
        self.backoff_base_s = backoff_base_s

    @classmethod
    def for_user(cls, user_id: int) -> "GmailMailbox":
        return cls(credentials=load_credentials(user_id))

    def open(self) -> "GmailMailbox":
        if self._service is None:
            self._service = build("gmail", "v1", credentials=self._credentials, cache_discovery=False)
        return self

    def close(self) -> None:
        if self._service is not None and self._owns_service:
            self._service.close()
            self._service = None

    def __enter__(self) -> "GmailMailbox":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def service(self):
        if self._service is None:
            raise RuntimeError("GmailMailbox is not open")
        return self._service

    def _execute(self, fn: Callable[[], dict]) -> dict:
        for attempt in range(self.max_retries):
            try:
                return fn()
            except RefreshError as e:
                raise GmailAuthRequiredError("Gmail token rejected; re-authentication required") from e
            except HttpError as e:
                status = int(getattr(e.resp, "status", 0) or 0)
                if status == 401:
                    raise GmailAuthRequiredError("Gmail token rejected; re-authentication required") from e
                if status == 404:
                    raise MessageNotFoundError(str(e)) from e
                if status in RETRYABLE_STATUSES and attempt < self.max_retries - 1:
                    time.sleep(self.backoff_base_s * (2 ** attempt))
                    continue
                raise
        raise RuntimeError("unreachable")

    def list_message_ids(self, query: str, max_results: int = 30) -> list[str]:
        """Message IDs matching query, at most max_results (follows page tokens)."""
        ids: list[str] = []
        page_token = None
        while len(ids) < max_results:
            result = self._execute(
                lambda: self.service.users()
                .messages()
                .list(userId="me", q=query, maxResults=max_results - len(ids), pageToken=page_token)
                .execute()
            )
            ids.extend(m["id"] for m in result.get("messages", []) if m.get("id"))
            next_token = result.get("nextPageToken")
            if not next_token or next_token == page_token:
                break
            page_token = next_token
        return ids[:max_results]

    def get_message(self, msg_id: str) -> dict:
        """Full message resource."""
        return self._execute(
            lambda: self.service.users().messages().get(userId="me", id=msg_id, format="full").execute()
        )


# ----------------------------
# Message parsing
# ----------------------------

_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.I | re.S)


def _decode(data: str) -> str:
    missing_padding = len(data) % 4
    if missing_padding:
        data += "=" * (4 - missing_padding)
    return base64.urlsafe_b64decode(data).decode("utf-8", errors="replace")


def strip_html(raw: str) -> str:
    text = _BLOCK_RE.sub(" ", raw or "")
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def _find_part(payload: dict, mime_type: str) -> Optional[str]:
    """Depth-first search for the first part of mime_type with inline data."""
    for part in payload.get("parts") or []:
        data = (part.get("body") or {}).get("data")
        if part.get("mimeType") == mime_type and data:
            return _decode(data)
        if part.get("parts"):
            found = _find_part(part, mime_type)
            if found is not None:
                return found
    return None


def extract_body(payload: dict, max_chars: Optional[int] = None) -> str:
    """
    Best-effort plain text: direct body, else first text/plain part (recursing
    into multiparts), else first text/html part with tags stripped.
    """
    max_chars = max_chars if max_chars is not None else settings.gmail_body_max_chars
    data = (payload.get("body") or {}).get("data")
    if data:
        text = _decode(data)
        if payload.get("mimeType") == "text/html":
            text = strip_html(text)
    else:
        text = _find_part(payload, "text/plain")
        if text is None:
            raw_html = _find_part(payload, "text/html")
            text = strip_html(raw_html) if raw_html else ""
    return text[:max_chars]


def _get_headers(message: dict) -> dict:
    return {h["name"].lower(): h["value"] for h in (message.get("payload") or {}).get("headers", [])}


def _parse_date(date_header: Optional[str], internal_date_ms: Optional[str]) -> Optional[datetime]:
    parsed = None
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            parsed = None
    if parsed is None and internal_date_ms:
        try:
            parsed = datetime.fromtimestamp(int(internal_date_ms) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            return None
    if parsed is None:
        return None
    if parsed.tzinfo:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def message_to_email(message: dict, body_max_chars: Optional[int] = None) -> FetchedEmail:
    headers = _get_headers(message)
    return FetchedEmail(
        id=message.get("id", ""),
        thread_id=message.get("threadId"),
        subject=headers.get("subject", ""),
        sender=headers.get("from", ""),
        date=_parse_date(headers.get("date"), message.get("internalDate")),
        snippet=html.unescape(message.get("snippet") or ""),
        body=extract_body(message.get("payload") or {}, body_max_chars),
    )


def extract_sender_name(from_header: str) -> Optional[str]:
    """'Name <addr@x.com>' -> 'Name'."""
    m = re.match(r"^\s*([^<]+?)\s*<", from_header or "")
    return m.group(1).strip().strip('"') or None if m else None


def extract_sender_address(from_header: str) -> str:
    m = re.search(r"<([^>]+)>", from_header or "")
    return (m.group(1) if m else (from_header or "")).strip()
