"""Fetch job-related Gmail messages across the query set, deduplicated per run."""
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from ..config import settings
from ..gmail_service import (
    FetchedEmail,
    GmailAuthRequiredError,
    GmailMailbox,
    MessageNotFoundError,
    message_to_email,
)

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    emails: list[FetchedEmail] = field(default_factory=list)
    listed: int = 0
    duplicates: int = 0
    excluded: int = 0
    failed: int = 0
    per_query: dict[str, int] = field(default_factory=dict)


def fetch_job_emails(
    mailbox: GmailMailbox,
    queries: list[str],
    max_per_query: Optional[int] = None,
    exclude_ids: Iterable[str] = (),
    body_max_chars: Optional[int] = None,
    on_progress: Optional[Callable[[int, str], None]] = None,
) -> FetchResult:
    """
    Run each query, fetch every new message once.

    Messages already seen in this run or present in exclude_ids are not fetched.
    One failed listing or message is logged and skipped; GmailAuthRequiredError
    propagates so the caller can abort the run.
    """
    max_per_query = max_per_query or settings.gmail_max_per_query
    body_max_chars = body_max_chars if body_max_chars is not None else settings.gmail_body_max_chars
    excluded = set(exclude_ids)
    seen: set[str] = set()
    result = FetchResult()

    for i, query in enumerate(queries):
        try:
            ids = mailbox.list_message_ids(query, max_results=max_per_query)
        except GmailAuthRequiredError:
            raise
        except Exception as e:
            logger.error(f"Query failed ({query}): {e}")
            result.per_query[query] = 0
            result.failed += 1
            continue

        result.per_query[query] = len(ids)
        result.listed += len(ids)
        logger.info(f"Query {i + 1}/{len(queries)} returned {len(ids)} messages: {query}")

        for msg_id in ids:
            if msg_id in seen:
                result.duplicates += 1
                continue
            seen.add(msg_id)
            if msg_id in excluded:
                result.excluded += 1
                continue
            try:
                message = mailbox.get_message(msg_id)
            except GmailAuthRequiredError:
                raise
            except MessageNotFoundError:
                logger.warning(f"Message {msg_id} no longer exists, skipping")
                result.failed += 1
                continue
            except Exception as e:
                logger.error(f"Failed to fetch message {msg_id}: {e}")
                result.failed += 1
                continue
            result.emails.append(message_to_email(message, body_max_chars))

        if on_progress:
            on_progress(len(result.emails), f"Searched {i + 1}/{len(queries)} queries")

    logger.info(
        f"Fetched {len(result.emails)} emails "
        f"(listed={result.listed}, duplicates={result.duplicates}, "
        f"excluded={result.excluded}, failed={result.failed})"
    )
    return result
