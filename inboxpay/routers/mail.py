from __future__ import annotations

from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy import select
from sqlalchemy.orm import Session

from inboxpay.db import get_db
from inboxpay.deps import get_current_user_id
from inboxpay.models import MailAccount
from inboxpay.rate_limit import limiter
from inboxpay.schemas import EmailOut, EmailSummaryOut, SyncOut, SyncRequest
from inboxpay.services import reports
from inboxpay.services.mailbox_sync import MailboxSyncEngine
from inboxpay.worker.celery_app import celery_app

router = APIRouter(prefix="/mail", tags=["mail"])
MAX_LIMIT = 200


@router.post("/accounts/{account_id}/sync", response_model=SyncOut)
async def sync_account(
    account_id: int,
    req: SyncRequest | None = None,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    acct = db.execute(
        select(MailAccount).where(MailAccount.id == account_id, MailAccount.user_id == user_id)
    ).scalar_one_or_none()
    if not acct:
        raise HTTPException(status_code=404, detail="Mail account not found")

    req = req or SyncRequest()
    result = await MailboxSyncEngine(db).sync_account(acct, max_results=req.max_results, query=req.query)
    return SyncOut(mail_account_id=acct.id, synced=result.synced, skipped=result.skipped, failed=result.failed)


@router.post("/sync", response_model=dict)
def queue_sync(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    accounts = db.execute(
        select(MailAccount).where(MailAccount.user_id == user_id, MailAccount.is_active.is_(True))
    ).scalars().all()
    if not accounts:
        raise HTTPException(status_code=400, detail="No mail account connected")

    # by name, so the API process does not import the worker tasks
    task_ids = [
        celery_app.send_task("inboxpay.worker.tasks.sync_account", kwargs={"mail_account_id": a.id}).id
        for a in accounts
    ]
    return {"success": True, "queued": len(task_ids), "task_ids": task_ids}


@router.get("/messages", response_model=dict)
@limiter.limit("100/minute")
def list_messages(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    unread_only: bool = False,
    search: str | None = Query(None, max_length=100),
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
):
    rows = reports.get_messages(db, user_id, unread_only=unread_only, search=search, limit=limit, offset=offset)
    return {"success": True, "data": [EmailSummaryOut.model_validate(e).model_dump(mode="json") for e in rows]}


@router.get("/messages/{email_id}", response_model=dict)
def get_message(email_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    email = reports.get_message(db, user_id, email_id)
    return {"success": True, "data": EmailOut.model_validate(email).model_dump(mode="json")}


@router.get("/attachments/{attachment_id}")
def get_attachment(attachment_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    att = reports.get_attachment(db, user_id, attachment_id)
    disposition = "inline" if att.is_inline else "attachment"
    return Response(
        content=att.data or b"",
        media_type=att.mime_type or "application/octet-stream",
        headers={"Content-Disposition": f"{disposition}; filename*=UTF-8''{quote(att.filename)}"},
    )
