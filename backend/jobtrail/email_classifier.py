"""Email classification: one OpenAI call returning JSON, validated into a strict verdict."""
import json
import math
import logging
import re
from dataclasses import dataclass
from typing import Literal, Optional

from openai import OpenAI
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .config import settings

logger = logging.getLogger(__name__)

EMAIL_TYPES = ("application", "interview", "rejection", "offer", "unknown")

CALENDAR_INVITE_PREFIXES = ("Invitation from",)
CALENDAR_INVITE_MARKERS = ("has been added to your calendar", "Accepted:", "Declined:")


class EmailVerdict(BaseModel):
    """What the model says about one email."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["application", "interview", "rejection", "offer", "unknown"]
    company: Optional[str] = None
    role: Optional[str] = None
    location: Optional[str] = None
    confidence: float = 0.0

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("company", "role", "location", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if v is None:
            return None
        if not isinstance(v, str):
            raise ValueError("expected a string")
        v = v.strip()
        if not v or v.lower() in ("null", "none", "unknown", "n/a"):
            return None
        return v[:255]

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v):
        if v is None:
            return 0.0
        if isinstance(v, bool) or not isinstance(v, (int, float, str)):
            raise ValueError("confidence must be a number")
        v = float(v)
        if not math.isfinite(v):
            raise ValueError("confidence must be finite")
        return max(0.0, min(1.0, v))


DEGENERATE_VERDICT = EmailVerdict(type="unknown", company=None, role=None, location=None, confidence=0.0)


@dataclass(frozen=True)
class ClassificationOutcome:
    verdict: EmailVerdict
    degenerate: bool = False
    reason: Optional[str] = None

    @classmethod
    def failed(cls, reason: str) -> "ClassificationOutcome":
        return cls(verdict=DEGENERATE_VERDICT, degenerate=True, reason=reason)


def is_calendar_invite(subject: str) -> bool:
    subject = subject or ""
    return subject.startswith(CALENDAR_INVITE_PREFIXES) or any(m in subject for m in CALENDAR_INVITE_MARKERS)


def build_prompt(subject: str, sender: str, body: str, body_max_chars: int) -> str:
    body_sample = (body or "")[:body_max_chars]
    return f"""You are parsing a job application email. Analyze the email and extract information.

Email From: {sender}
Email Subject: {subject}
Email Body (first {body_max_chars} chars):
{body_sample}

Determine:
1. type: What kind of email is this?
   - "application" = confirmation that an application was received/submitted
   - "interview" = interview invitation, scheduling, or confirmation
   - "rejection" = rejection or "not moving forward" message
   - "offer" = job offer
   - "unknown" = not job-related or can't determine
2. company: the hiring company (from the email domain or content). null if unclear.
3. role: the job position mentioned, exactly as written. null if not clear.
4. location: job location if mentioned (city, country, or "Remote"). null if not mentioned.
5. confidence: how confident you are, 0.0 to 1.0.

Return a JSON object with exactly these keys:
{{"type": "...", "company": "...", "role": "...", "location": "...", "confidence": 0.0}}"""


def parse_verdict(text: str) -> ClassificationOutcome:
    """Validate raw model text. Never raises; failures produce the degenerate outcome."""
    text = (text or "").strip()
    if not text:
        return ClassificationOutcome.failed("empty response")
    if text.startswith("```"):
        text = re.sub(r"^```\w*\n?", "", text).replace("```", "").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        # Tolerate prose around a single JSON object
        m = re.search(r"\{[\s\S]*\}", text)
        if not m:
            return ClassificationOutcome.failed("no JSON object in response")
        try:
            data = json.loads(m.group(0))
        except json.JSONDecodeError as e:
            return ClassificationOutcome.failed(f"invalid JSON: {e}")
    if not isinstance(data, dict):
        return ClassificationOutcome.failed("response is not a JSON object")
    try:
        verdict = EmailVerdict.model_validate(data)
    except ValidationError as e:
        return ClassificationOutcome.failed(f"schema violation: {e.error_count()} error(s)")
    return ClassificationOutcome(verdict=verdict)


class EmailClassifier:
    """
    Classifies one email per call. Owns its OpenAI client unless one is injected;
    use as a context manager or call close() when done.
    """

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: Optional[str] = None,
        body_max_chars: Optional[int] = None,
        max_tokens: int = 200,
    ):
        self._owns_client = client is None
        if client is None:
            if not settings.openai_api_key:
                raise ValueError("OPENAI_API_KEY not set. Add to .env or environment.")
            client = OpenAI(api_key=settings.openai_api_key, timeout=settings.openai_timeout_s)
        self._client = client
        self.model = model or settings.openai_model
        self.body_max_chars = body_max_chars or settings.classifier_body_max_chars
        self.max_tokens = max_tokens

    def classify(self, subject: str, sender: str, body: str) -> ClassificationOutcome:
        prompt = build_prompt(subject, sender, body, self.body_max_chars)
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                temperature=settings.openai_temperature,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": "Return strict JSON only. Do not add markdown or commentary."},
                    {"role": "user", "content": prompt},
                ],
            )
            text = response.choices[0].message.content if response.choices else ""
        except Exception as e:
            logger.error(f"Classification call failed for '{subject}': {e}")
            return ClassificationOutcome.failed(f"model call failed: {e}")
        outcome = parse_verdict(text or "")
        if outcome.degenerate:
            logger.warning(f"Unusable classification for '{subject}': {outcome.reason}")
        return outcome

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
        self._client = None

    def __enter__(self) -> "EmailClassifier":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
