from __future__ import annotations

import datetime as dt
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AuthUrlOut(BaseModel):
    success: bool = True
    provider: str
    url: str


class AuthOut(BaseModel):
    success: bool = True
    access_token: str
    user_email: str
    mail_account_id: int


class TokenStatusOut(BaseModel):
    success: bool = True
    mail_account_id: int
    email: str
    has_token: bool
    has_refresh_token: bool
    is_expired: bool
    needs_reauth: bool


class MailAccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider: str
    email: str
    is_active: bool
    needs_reauth: bool
    last_sync_at: dt.datetime | None
    last_sync_error: str | None


class SyncRequest(BaseModel):
    max_results: int | None = Field(None, ge=1, le=500)
    query: str | None = Field(None, max_length=200)


class SyncOut(BaseModel):
    success: bool = True
    mail_account_id: int
    synced: int
    skipped: int
    failed: int


class AttachmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    attachment_id: str
    filename: str
    mime_type: str | None
    size: int
    content_id: str | None
    is_inline: bool


class EmailSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    message_id: str
    thread_id: str | None
    from_address: str | None
    subject: str | None
    snippet: str | None
    received_at: dt.datetime | None
    is_read: bool
    has_attachments: bool
    has_images: bool
    analyzed_at: dt.datetime | None


class EmailOut(EmailSummaryOut):
    to_address: str | None
    cc_address: str | None
    body: str | None
    html_body: str | None
    label_ids: list[str] | None
    attachments: list[AttachmentOut] = []


class AnalyzeRequest(BaseModel):
    force: bool = False


class AnalyzeBatchRequest(BaseModel):
    limit: int = Field(10, ge=1, le=100)
    force: bool = False


class PaymentReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email_id: int
    is_payment: bool
    amount: float | None
    currency: str | None
    merchant: str | None
    payment_date: dt.datetime | None
    card_type: str | None
    payment_type: str | None
    category: str | None
    summary: str | None
    is_duplicate: bool
    primary_report_id: int | None
    created_at: dt.datetime | None
    subject: str | None = None
    from_address: str | None = None

    @classmethod
    def from_report(cls, r: Any) -> "PaymentReportOut":
        out = cls.model_validate(r)
        if r.email is not None:
            out.subject = r.email.subject
            out.from_address = r.email.from_address
        return out


class PaymentReportDetailOut(PaymentReportOut):
    raw_data: dict | None = None


class PageOut(BaseModel):
    success: bool = True
    data: list[PaymentReportOut]
    total_count: int
    total_pages: int
    current_page: int
    limit: int
    has_next: bool
    has_prev: bool


class MonthlyStatOut(BaseModel):
    month: int
    total_amount: float
    count: int


class DailyStatOut(BaseModel):
    day: int
    date: dt.date
    total_amount: float
    count: int


class MonthlyStatsOut(BaseModel):
    success: bool = True
    year: int
    months: list[MonthlyStatOut]
    total_amount: float
    total_count: int


class DailyStatsOut(BaseModel):
    success: bool = True
    year: int
    month: int
    days: list[DailyStatOut]
    total_amount: float
    total_count: int


class EnqueueRequest(BaseModel):
    message_ids: list[int] = Field(..., min_length=1, max_length=1000)
