"""Read side: stored messages, attachments, payment records and spending stats."""
from __future__ import annotations

import calendar
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, selectinload

from inboxpay.errors import NotFoundError
from inboxpay.models import Email, EmailAttachment, PaymentReport

MAX_PAGE_LIMIT = 100


@dataclass
class RecordFilters:
    search: str | None = None
    category: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    include_duplicates: bool = False


@dataclass
class Page:
    data: list[PaymentReport]
    total_count: int
    current_page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.current_page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.current_page > 1


def get_messages(
    db: Session,
    user_id: int,
    *,
    unread_only: bool = False,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Email]:
    stmt = select(Email).where(Email.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Email.is_read.is_(False))
    if search:
        stmt = stmt.where(Email.search_text.icontains(search.lower(), autoescape=True))
    stmt = stmt.order_by(Email.received_at.desc(), Email.id.desc()).limit(limit).offset(offset)
    return db.execute(stmt).scalars().all()


def get_message(db: Session, user_id: int, email_id: int) -> Email:
    email = db.execute(
        select(Email)
        .options(selectinload(Email.attachments))
        .where(Email.id == email_id, Email.user_id == user_id)
    ).scalar_one_or_none()
    if not email:
        raise NotFoundError(f"Email {email_id} not found")
    return email


def get_attachment(db: Session, user_id: int, attachment_id: int) -> EmailAttachment:
    att = db.execute(
        select(EmailAttachment)
        .join(Email, Email.id == EmailAttachment.email_id)
        .where(EmailAttachment.id == attachment_id, Email.user_id == user_id)
    ).scalar_one_or_none()
    if not att:
        raise NotFoundError(f"Attachment {attachment_id} not found")
    return att


def _payment_filters(user_id: int, filters: RecordFilters) -> list:
    conds = [Email.user_id == user_id, PaymentReport.is_payment.is_(True)]
    if not filters.include_duplicates:
        conds.append(PaymentReport.is_duplicate.is_(False))
    if filters.category:
        conds.append(PaymentReport.category == filters.category)
    if filters.start_date:
        conds.append(PaymentReport.payment_date >= datetime.combine(filters.start_date, datetime.min.time()))
    if filters.end_date:
        # end date is inclusive
        conds.append(
            PaymentReport.payment_date < datetime.combine(filters.end_date + timedelta(days=1), datetime.min.time())
        )
    if filters.search:
        conds.append(Email.search_text.icontains(filters.search.lower(), autoescape=True))
    return conds


def get_records(
    db: Session,
    user_id: int,
    filters: RecordFilters | None = None,
    *,
    page: int = 1,
    limit: int = 20,
) -> Page:
    filters = filters or RecordFilters()
    page = max(page, 1)
    limit = max(1, min(limit, MAX_PAGE_LIMIT))
    conds = _payment_filters(user_id, filters)

    total = db.execute(
        select(func.count(PaymentReport.id)).join(Email, Email.id == PaymentReport.email_id).where(*conds)
    ).scalar_one()
    rows = (
        db.execute(
            select(PaymentReport)
            .join(Email, Email.id == PaymentReport.email_id)
            .options(selectinload(PaymentReport.email))
            .where(*conds)
            .order_by(PaymentReport.payment_date.desc().nullslast(), PaymentReport.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        .scalars()
        .all()
    )
    return Page(data=rows, total_count=total, current_page=page, limit=limit)


def get_record(db: Session, user_id: int, report_id: int) -> PaymentReport:
    report = db.execute(
        select(PaymentReport)
        .join(Email, Email.id == PaymentReport.email_id)
        .options(selectinload(PaymentReport.email))
        .where(PaymentReport.id == report_id, Email.user_id == user_id)
    ).scalar_one_or_none()
    if not report:
        raise NotFoundError(f"Report {report_id} not found")
    return report


def _payments_between(db: Session, user_id: int, start: datetime, end: datetime) -> list[PaymentReport]:
    return (
        db.execute(
            select(PaymentReport)
            .join(Email, Email.id == PaymentReport.email_id)
            .where(
                Email.user_id == user_id,
                PaymentReport.is_payment.is_(True),
                PaymentReport.is_duplicate.is_(False),
                PaymentReport.payment_date >= start,
                PaymentReport.payment_date < end,
            )
        )
        .scalars()
        .all()
    )


def get_monthly_stats(db: Session, user_id: int, year: int) -> dict:
    reports = _payments_between(db, user_id, datetime(year, 1, 1), datetime(year + 1, 1, 1))

    months = {m: {"month": m, "total_amount": 0.0, "count": 0} for m in range(1, 13)}
    for r in reports:
        row = months[r.payment_date.month]
        row["count"] += 1
        if r.amount is not None:
            row["total_amount"] += float(r.amount)

    rows = [{**row, "total_amount": round(row["total_amount"], 2)} for row in months.values()]
    return {
        "year": year,
        "months": rows,
        "total_amount": round(sum(r["total_amount"] for r in rows), 2),
        "total_count": sum(r["count"] for r in rows),
    }


def get_daily_stats(db: Session, user_id: int, year: int, month: int) -> dict:
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    reports = _payments_between(db, user_id, start, end)

    days_in_month = calendar.monthrange(year, month)[1]
    days = {d: {"day": d, "date": date(year, month, d), "total_amount": 0.0, "count": 0} for d in range(1, days_in_month + 1)}
    for r in reports:
        row = days[r.payment_date.day]
        row["count"] += 1
        if r.amount is not None:
            row["total_amount"] += float(r.amount)

    rows = [{**row, "total_amount": round(row["total_amount"], 2)} for row in days.values()]
    return {
        "year": year,
        "month": month,
        "days": rows,
        "total_amount": round(sum(r["total_amount"] for r in rows), 2),
        "total_count": sum(r["count"] for r in rows),
    }


def delete_reports(db: Session, user_id: int) -> int:
    """Drop every report for the user and mark their mail unanalyzed again."""
    email_ids = select(Email.id).where(Email.user_id == user_id)
    res = db.execute(
        delete(PaymentReport).where(PaymentReport.email_id.in_(email_ids)).execution_options(synchronize_session=False)
    )
    db.execute(
        Email.__table__.update().where(Email.user_id == user_id).values(analyzed_at=None)
    )
    db.commit()
    db.expire_all()
    return res.rowcount
