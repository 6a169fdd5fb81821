from __future__ import annotations

import asyncio
import logging

from sqlalchemy.orm import Session

from inboxpay.config import settings
from inboxpay.db import SessionLocal
from inboxpay.errors import ReauthRequiredError, SyncInProgressError
from inboxpay.models import MailAccount, MailProvider
from inboxpay.oauth.vault import TokenVault
from inboxpay.services.analysis import AnalysisEngine
from inboxpay.services.duplicates import DuplicateDetector
from inboxpay.services.mailbox_sync import MailboxSyncEngine, sync_guard
from inboxpay.worker.celery_app import celery_app

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    force=True,
)
logger = logging.getLogger("inboxpay.worker.tasks")


def _db() -> Session:
    return SessionLocal()


def _run_async(coro):
    """
    Run a coroutine from a sync Celery task.

    Services are async because every provider/classifier call is network I/O.
    """
    try:
        loop = asyncio.get_running_loop()
        fut = asyncio.run_coroutine_threadsafe(coro, loop)
        return fut.result()
    except RuntimeError:
        return asyncio.run(coro)


@celery_app.task(name="inboxpay.worker.tasks.sync_account", bind=True)
def sync_account(self, mail_account_id: int, max_results: int | None = None) -> dict:
    task_id = getattr(self.request, "id", None)
    logger.info("sync_account start task_id=%s mail_account_id=%s", task_id, mail_account_id)
    db = _db()
    try:
        acct = db.get(MailAccount, mail_account_id)
        if not acct or not acct.is_active:
            logger.warning("sync_account skipped, no active account mail_account_id=%s", mail_account_id)
            return {"ok": False, "error": "account not found"}
        try:
            result = _run_async(MailboxSyncEngine(db).sync_account(acct, max_results=max_results))
        except ReauthRequiredError as e:
            return {"ok": False, "needs_reauth": True, "error": str(e)}
        except SyncInProgressError:
            logger.info("sync_account skipped, already running mail_account_id=%s", mail_account_id)
            return {"ok": False, "busy": True}
        return {"ok": True, **result.to_dict()}
    finally:
        db.close()


@celery_app.task(name="inboxpay.worker.tasks.sync_all_accounts")
def sync_all_accounts() -> dict:
    with sync_guard.try_run() as acquired:
        if not acquired:
            return {"ok": False, "skipped": True}
        db = _db()
        try:
            summary = _run_async(MailboxSyncEngine(db).sync_all())
        finally:
            db.close()
    return {"ok": True, **summary.to_dict()}


@celery_app.task(name="inboxpay.worker.tasks.refresh_all_tokens")
def refresh_all_tokens(provider: str = MailProvider.gmail.value) -> dict:
    db = _db()
    try:
        summary = _run_async(TokenVault(db).refresh_all(provider))
    finally:
        db.close()
    return {"ok": True, "success": summary.success, "failed": summary.failed}


@celery_app.task(name="inboxpay.worker.tasks.reanalyze_message", bind=True)
def reanalyze_message(self, user_id: int, email_id: int) -> dict:
    logger.info("reanalyze_message start task_id=%s user_id=%s email_id=%s", self.request.id, user_id, email_id)
    db = _db()
    try:
        report = _run_async(AnalysisEngine(db).analyze(email_id, force=True, owner_id=user_id))
        return {"ok": True, "report_id": report.id, "is_payment": report.is_payment}
    finally:
        db.close()


@celery_app.task(name="inboxpay.worker.tasks.mark_duplicates")
def mark_duplicates(user_id: int, reset: bool = False) -> dict:
    db = _db()
    try:
        detector = DuplicateDetector(db)
        cleared = detector.reset_duplicates(user_id) if reset else 0
        result = detector.mark_duplicates(user_id)
        return {"ok": True, "cleared": cleared, **result}
    finally:
        db.close()
