"""Pydantic schemas for API."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class CompanyRequest(BaseModel):
    company: str


class FixStatusRequest(BaseModel):
    company: str
    status: str
    role: Optional[str] = None
    close_reason: Optional[str] = None


class SyncStartResponse(BaseModel):
    task_id: str
    status: str
    after_date: Optional[str] = None


class GmailStatusResponse(BaseModel):
    gmail_connected: bool
    last_synced_at: Optional[datetime] = None
    status: str = "idle"


class SyncStateResponse(BaseModel):
    status: str
    message: str = ""
    processed: int = 0
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    already_processed: int = 0
    errors: int = 0
    error: Optional[str] = None
    needs_auth: bool = False
    task_id: Optional[str] = None
    task_state: Optional[str] = None
    last_synced_at: Optional[str] = None
