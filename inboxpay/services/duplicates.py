from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from inboxpay.config import settings
from inboxpay.models import Email, PaymentReport

logger = logging.getLogger("inboxpay.services.duplicates")

_PARENS_RE = re.compile(r"\([^)]*\)|\[[^\]]*\]")
_PUNCT_RE = re.compile(r"[^\w\s]")
_CORPORATE_SUFFIXES = {"inc", "llc", "ltd", "corp", "corporation", "co", "company", "gmbh", "주식회사"}


def normalize_merchant(raw: str | None) -> str:
    """
    'Starbucks Inc.' -> 'starbucks', '(주)쿠팡' -> '쿠팡',
    'Uber (Apple Pay)' -> 'uber'.
    """
    if not raw:
        return ""
    s = raw.strip().lower()
    s = s.replace("(주)", " ").replace("㈜", " ")
    s = _PARENS_RE.sub(" ", s)
    s = _PUNCT_RE.sub(" ", s)
    parts = [p for p in s.split() if p not in _CORPORATE_SUFFIXES]
    return " ".join(parts)


def merchants_similar(a: str | None, b: str | None) -> bool:
    na, nb = normalize_merchant(a), normalize_merchant(b)
    if not na or not nb:
        return False
    if na == nb or na in nb or nb in na:
        return True
    first_a, first_b = na.split()[0], nb.split()[0]
    return first_a == first_b and len(first_a) >= 3


def _dates_close(a: datetime | None, b: datetime | None, tolerance_days: int) -> bool:
    if a is None or b is None:
        return True
    return abs((a.date() - b.date()).days) <= tolerance_days


def _amounts_close(a, b, epsilon: float) -> bool:
    if a is None or b is None:
        return True
    return abs(float(a) - float(b)) <= epsilon + 1e-9


def detail_score(r: PaymentReport) -> int:
    score = 0
    if r.amount is not None:
        score += 3
    if r.merchant:
        score += 3
    if r.payment_date is not None:
        score += 2
    for v in (r.card_type, r.currency, r.payment_type, r.category):
        if v:
            score += 1
    summary_len = len(r.summary or "")
    if summary_len >= 20:
        score += 1
    if summary_len >= 80:
        score += 1
    return score


@dataclass
class DuplicateGroup:
    primary: PaymentReport
    duplicates: list[PaymentReport] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "primary_report_id": self.primary.id,
            "duplicate_report_ids": [d.id for d in self.duplicates],
            "merchant": self.primary.merchant,
            "amount": float(self.primary.amount) if self.primary.amount is not None else None,
        }


class DuplicateDetector:
    def __init__(
        self,
        db: Session,
        *,
        date_tolerance_days: int | None = None,
        amount_epsilon: float | None = None,
    ):
        self.db = db
        self.date_tolerance_days = (
            date_tolerance_days if date_tolerance_days is not None else settings.DUPLICATE_DATE_TOLERANCE_DAYS
        )
        self.amount_epsilon = amount_epsilon if amount_epsilon is not None else settings.DUPLICATE_AMOUNT_EPSILON

    def is_potential_duplicate(self, a: PaymentReport, b: PaymentReport) -> bool:
        return (
            _dates_close(a.payment_date, b.payment_date, self.date_tolerance_days)
            and _amounts_close(a.amount, b.amount, self.amount_epsilon)
            and merchants_similar(a.merchant, b.merchant)
        )

    def _candidates(self, owner_id: int) -> list[PaymentReport]:
        rows = (
            self.db.execute(
                select(PaymentReport)
                .join(Email, Email.id == PaymentReport.email_id)
                .where(
                    Email.user_id == owner_id,
                    PaymentReport.is_payment.is_(True),
                    PaymentReport.is_duplicate.is_(False),
                )
            )
            .scalars()
            .all()
        )
        # undated records sort last
        return sorted(
            rows,
            key=lambda r: (r.payment_date is None, r.payment_date or datetime.min, r.created_at or datetime.min, r.id),
        )

    def detect(self, owner_id: int) -> list[DuplicateGroup]:
        records = self._candidates(owner_id)
        grouped: set[int] = set()
        groups: list[DuplicateGroup] = []

        for i, seed in enumerate(records):
            if seed.id in grouped:
                continue
            members = [seed]
            for cand in records[i + 1 :]:
                if cand.id not in grouped and self.is_potential_duplicate(seed, cand):
                    members.append(cand)
            if len(members) < 2:
                continue
            grouped.update(m.id for m in members)
            # max() keeps the first of equal scores, i.e. the earliest record
            primary = max(members, key=detail_score)
            groups.append(DuplicateGroup(primary=primary, duplicates=[m for m in members if m is not primary]))
        return groups

    def _release_orphans(self, owner_id: int) -> int:
        """Clear duplicates whose primary was deleted underneath them (FK ``SET NULL``)."""
        email_ids = select(Email.id).where(Email.user_id == owner_id)
        res = self.db.execute(
            update(PaymentReport)
            .where(
                PaymentReport.email_id.in_(email_ids),
                PaymentReport.is_duplicate.is_(True),
                PaymentReport.primary_report_id.is_(None),
            )
            .values(is_duplicate=False)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount:
            self.db.expire_all()
            logger.info("release_orphans owner_id=%s released=%s", owner_id, res.rowcount)
        return res.rowcount

    def mark_duplicates(self, owner_id: int) -> dict:
        self._release_orphans(owner_id)
        groups = self.detect(owner_id)
        marked = 0
        demoted: dict[int, int] = {}
        for g in groups:
            for dup in g.duplicates:
                dup.is_duplicate = True
                dup.primary_report_id = g.primary.id
                demoted[dup.id] = g.primary.id
                marked += 1

        # an earlier primary can lose to a richer newcomer; move its members along with it
        repointed = 0
        if demoted:
            followers = (
                self.db.execute(select(PaymentReport).where(PaymentReport.primary_report_id.in_(list(demoted))))
                .scalars()
                .all()
            )
            for f in followers:
                f.primary_report_id = demoted[f.primary_report_id]
                repointed += 1
        self.db.commit()
        logger.info(
            "mark_duplicates owner_id=%s groups=%s marked=%s repointed=%s", owner_id, len(groups), marked, repointed
        )
        return {"groups": len(groups), "marked": marked}

    def reset_duplicates(self, owner_id: int) -> int:
        email_ids = select(Email.id).where(Email.user_id == owner_id)
        res = self.db.execute(
            update(PaymentReport)
            .where(PaymentReport.email_id.in_(email_ids), PaymentReport.is_duplicate.is_(True))
            .values(is_duplicate=False, primary_report_id=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        logger.info("reset_duplicates owner_id=%s cleared=%s", owner_id, res.rowcount)
        return res.rowcount

    def release_group(self, primary: PaymentReport) -> int:
        """Un-mark every record pointing at ``primary``. Caller commits."""
        members = (
            self.db.execute(select(PaymentReport).where(PaymentReport.primary_report_id == primary.id))
            .scalars()
            .all()
        )
        for m in members:
            m.is_duplicate = False
            m.primary_report_id = None
        if members:
            logger.info("release_group primary_report_id=%s released=%s", primary.id, len(members))
        return len(members)
