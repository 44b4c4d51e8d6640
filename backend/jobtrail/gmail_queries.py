"""Gmail search queries for job-related mail (English + French).

Each query covers a single semantic category so per-category result counts
stay diagnosable in the sync logs.
"""
from datetime import date, datetime
from typing import Optional, Union

from .config import settings

ATS_SENDERS = (
    "greenhouse",
    "lever",
    "workday",
    "icims",
    "jobvite",
    "ashby",
    "welcomekit",
    "smartrecruiters",
)

JOB_QUERIES = [
    # English - confirmation emails
    "subject:(application OR applied OR applying)",
    'subject:("thank you for applying" OR "thanks for applying")',
    'subject:("thank you for your application" OR "thank you for your interest")',
    # French - confirmation emails
    "subject:(candidature OR postuler OR postulé)",
    'subject:("candidature bien reçue" OR "candidature reçue")',
    'subject:("merci pour votre candidature" OR "merci de votre intérêt")',
    # English - interview / process
    "subject:(interview OR screening OR recruiter)",
    "subject:(unfortunately OR regret OR rejected)",
    'subject:(offer OR congratulations OR "excited to")',
    'subject:("your application" OR "job application")',
    'subject:("book a slot" OR schedule OR calendly OR availability)',
    'subject:("next steps" OR "moving forward" OR "phone call" OR "video call")',
    # Recruiter outreach
    "subject:(\"let's talk\" OR \"let's chat\" OR \"let's connect\")",
    'subject:("quick call" OR "quick chat" OR "intro call")',
    'subject:("would love to chat" OR "love to connect")',
    # French - interview / process
    "subject:(entretien OR recruteur)",
    "subject:(malheureusement OR regret)",
    "subject:(offre OR félicitations)",
    # ATS platforms
    "from:(" + " OR ".join(ATS_SENDERS) + ")",
]

DateLike = Union[date, datetime, str]


def format_gmail_date(value: DateLike) -> str:
    """Normalize a date (or YYYY-MM-DD / YYYY/MM/DD string) to Gmail's YYYY/MM/DD."""
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y/%m/%d")
    text = (value or "").strip()
    if not text:
        raise ValueError("empty date")
    parsed = datetime.strptime(text.replace("/", "-"), "%Y-%m-%d")
    return parsed.strftime("%Y/%m/%d")


def date_filter(after_date: Optional[DateLike] = None, days_back: Optional[int] = None) -> str:
    if after_date:
        return f"after:{format_gmail_date(after_date)}"
    days = days_back if days_back is not None else settings.gmail_default_days_back
    return f"newer_than:{max(1, int(days))}d"


def build_job_queries(after_date: Optional[DateLike] = None, days_back: Optional[int] = None) -> list[str]:
    """Return the ordered query set, each combined with an explicit after: date or the default recency window."""
    suffix = date_filter(after_date, days_back)
    return [f"{q} {suffix}" for q in JOB_QUERIES]
