from __future__ import annotations

import datetime as dt

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from inboxpay.db import get_db
from inboxpay.deps import get_current_user_id
from inboxpay.rate_limit import limiter
from inboxpay.schemas import (
    AnalyzeBatchRequest,
    AnalyzeRequest,
    DailyStatsOut,
    EnqueueRequest,
    MonthlyStatsOut,
    PageOut,
    PaymentReportDetailOut,
    PaymentReportOut,
)
from inboxpay.services import reports
from inboxpay.services.analysis import AnalysisEngine
from inboxpay.services.analysis_queue import analysis_queue
from inboxpay.services.duplicates import DuplicateDetector
from inboxpay.services.reports import RecordFilters
from inboxpay.worker.celery_app import celery_app

router = APIRouter(prefix="/analysis", tags=["analysis"])


@router.post("/messages/{email_id}", response_model=dict)
async def analyze_message(
    email_id: int,
    req: AnalyzeRequest | None = None,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    req = req or AnalyzeRequest()
    report = await AnalysisEngine(db).analyze(email_id, force=req.force, owner_id=user_id)
    return {"success": True, "data": PaymentReportOut.from_report(report).model_dump(mode="json")}


@router.post("/messages/{email_id}/reanalyze", response_model=dict)
def reanalyze_message(email_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    reports.get_message(db, user_id, email_id)
    job = celery_app.send_task(
        "inboxpay.worker.tasks.reanalyze_message",
        kwargs={"user_id": user_id, "email_id": email_id},
    )
    return {"success": True, "queued": True, "task_id": job.id}


@router.post("/batch", response_model=dict)
async def analyze_batch(
    req: AnalyzeBatchRequest | None = None,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    req = req or AnalyzeBatchRequest()
    result = await AnalysisEngine(db).analyze_batch(user_id, limit=req.limit, force=req.force)
    return {"success": True, **result.to_dict()}


@router.get("/records", response_model=PageOut)
@limiter.limit("100/minute")
def list_records(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    search: str | None = Query(None, max_length=100),
    category: str | None = Query(None, max_length=64),
    start_date: dt.date | None = None,
    end_date: dt.date | None = None,
    include_duplicates: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=reports.MAX_PAGE_LIMIT),
):
    filters = RecordFilters(
        search=search,
        category=category,
        start_date=start_date,
        end_date=end_date,
        include_duplicates=include_duplicates,
    )
    p = reports.get_records(db, user_id, filters, page=page, limit=limit)
    return PageOut(
        data=[PaymentReportOut.from_report(r) for r in p.data],
        total_count=p.total_count,
        total_pages=p.total_pages,
        current_page=p.current_page,
        limit=p.limit,
        has_next=p.has_next,
        has_prev=p.has_prev,
    )


@router.get("/records/{report_id}", response_model=dict)
def get_record(report_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    report = reports.get_record(db, user_id, report_id)
    return {"success": True, "data": PaymentReportDetailOut.from_report(report).model_dump(mode="json")}


@router.delete("/records", response_model=dict)
def delete_records(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    deleted = reports.delete_reports(db, user_id)
    return {"success": True, "deleted": deleted}


@router.get("/stats/monthly", response_model=MonthlyStatsOut)
def monthly_stats(
    year: int = Query(..., ge=1970, le=9999),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return MonthlyStatsOut(**reports.get_monthly_stats(db, user_id, year))


@router.get("/stats/daily", response_model=DailyStatsOut)
def daily_stats(
    year: int = Query(..., ge=1970, le=9999),
    month: int = Query(..., ge=1, le=12),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return DailyStatsOut(**reports.get_daily_stats(db, user_id, year, month))


@router.get("/duplicates", response_model=dict)
def detect_duplicates(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    groups = DuplicateDetector(db).detect(user_id)
    return {"success": True, "groups": [g.to_dict() for g in groups]}


@router.post("/duplicates/mark", response_model=dict)
def mark_duplicates(
    background: bool = False,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    if background:
        job = celery_app.send_task("inboxpay.worker.tasks.mark_duplicates", kwargs={"user_id": user_id})
        return {"success": True, "queued": True, "task_id": job.id}
    return {"success": True, **DuplicateDetector(db).mark_duplicates(user_id)}


@router.post("/duplicates/reset", response_model=dict)
def reset_duplicates(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    cleared = DuplicateDetector(db).reset_duplicates(user_id)
    return {"success": True, "cleared": cleared}


# --- queue control ---
@router.get("/queue", response_model=dict)
def queue_status(user_id: int = Depends(get_current_user_id)):
    return {"success": True, **analysis_queue.status()}


@router.post("/queue/enqueue", response_model=dict)
def queue_enqueue(req: EnqueueRequest, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    added = analysis_queue.enqueue_messages(db, req.message_ids, owner_id=user_id)
    return {"success": True, "added": added, "size": len(analysis_queue)}


@router.post("/queue/produce", response_model=dict)
async def queue_produce(user_id: int = Depends(get_current_user_id)):
    r = await analysis_queue.run_producer()
    return {"success": True, "ran": r.ran, "added": r.added, "size": len(analysis_queue)}


@router.post("/queue/drain", response_model=dict)
async def queue_drain(user_id: int = Depends(get_current_user_id)):
    r = await analysis_queue.run_consumer()
    return {"success": True, **r.to_dict(), "size": len(analysis_queue)}


@router.delete("/queue", response_model=dict)
def queue_clear(user_id: int = Depends(get_current_user_id)):
    return {"success": True, "removed": analysis_queue.clear()}
