from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime

from dateutil import parser as date_parser
from sqlalchemy import select
from sqlalchemy.orm import Session

from inboxpay.errors import NotFoundError
from inboxpay.llm import LLM, PaymentInfo, get_llm
from inboxpay.models import Email, PaymentReport, utcnow
from inboxpay.services.content_collector import ContentCollector
from inboxpay.services.duplicates import DuplicateDetector

logger = logging.getLogger("inboxpay.services.analysis")


def _to_datetime(v: str | None) -> datetime | None:
    if not v:
        return None
    try:
        dt = date_parser.parse(v)
    except (ValueError, OverflowError):
        logger.info("unparseable payment date value=%r", v)
        return None
    # stored naive like every other timestamp column
    return dt.replace(tzinfo=None)


@dataclass
class BatchResult:
    analyzed: int = 0
    payments: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class AnalysisEngine:
    def __init__(
        self,
        db: Session,
        *,
        llm: LLM | None = None,
        collector: ContentCollector | None = None,
        duplicates: DuplicateDetector | None = None,
    ):
        self.db = db
        self.llm = llm or get_llm()
        self.collector = collector or ContentCollector(db)
        self.duplicates = duplicates or DuplicateDetector(db)

    def _load(self, message_id: int, owner_id: int | None) -> Email:
        stmt = select(Email).where(Email.id == message_id)
        if owner_id is not None:
            stmt = stmt.where(Email.user_id == owner_id)
        email = self.db.execute(stmt).scalar_one_or_none()
        if not email:
            raise NotFoundError(f"Email {message_id} not found")
        return email

    async def analyze(self, message_id: int, *, force: bool = False, owner_id: int | None = None) -> PaymentReport:
        email = self._load(message_id, owner_id)
        existing = email.payment_report
        if existing is not None and not force:
            return existing

        files = await self.collector.collect(email.id, email.html_body)
        # a classifier failure propagates before anything is written
        info: PaymentInfo = await self.llm.analyze_payment_email(
            sender=email.from_address or "",
            subject=email.subject or "",
            body=email.body or "",
            html_body=email.html_body,
            files=files,
        )

        if existing is not None:
            self.duplicates.release_group(existing)
            self.db.delete(existing)
            self.db.flush()
            self.db.expire(email, ["payment_report"])

        report = PaymentReport(email_id=email.id, is_payment=info.is_payment, summary=info.summary)
        if info.is_payment:
            report.amount = info.amount
            report.currency = info.currency
            report.merchant = info.merchant
            report.payment_date = _to_datetime(info.payment_date) or email.received_at
            report.card_type = info.card_type
            report.payment_type = info.payment_type
            report.category = info.category
        report.raw_data = info.model_dump(by_alias=True)
        self.db.add(report)

        email.analyzed_at = utcnow()
        email.payment_report = report
        self.db.commit()

        logger.info(
            "analyze done email_id=%s is_payment=%s files=%s forced=%s",
            email.id,
            report.is_payment,
            len(files),
            force and existing is not None,
        )
        return report

    async def analyze_batch(self, owner_id: int, *, limit: int = 10, force: bool = False) -> BatchResult:
        stmt = select(Email.id).where(Email.user_id == owner_id)
        if not force:
            stmt = stmt.where(Email.analyzed_at.is_(None))
        ids = self.db.execute(stmt.order_by(Email.received_at.desc(), Email.id.desc()).limit(limit)).scalars().all()

        result = BatchResult()
        for email_id in ids:
            try:
                report = await self.analyze(email_id, force=force)
            except Exception as e:
                self.db.rollback()
                result.failed += 1
                logger.warning("analyze_batch item failed email_id=%s error=%s", email_id, e)
                continue
            result.analyzed += 1
            if report.is_payment:
                result.payments += 1
        logger.info(
            "analyze_batch done owner_id=%s analyzed=%s payments=%s failed=%s",
            owner_id,
            result.analyzed,
            result.payments,
            result.failed,
        )
        return result
