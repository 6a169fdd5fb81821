from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from dateutil.relativedelta import relativedelta
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from inboxpay.config import settings
from inboxpay.errors import SyncInProgressError
from inboxpay.gmail_client import GmailClient
from inboxpay.models import AuditLog, Email, EmailAttachment, MailAccount
from inboxpay.oauth.vault import TokenVault
from inboxpay.parsing import AttachmentDescriptor, parse_message
from inboxpay.scheduling import ActorGuard

logger = logging.getLogger("inboxpay.services.mailbox_sync")

EXISTING_LOOKUP_CHUNK = 500

# one mailbox sync actor per process
sync_guard = ActorGuard("mailbox_sync")


@dataclass
class SyncResult:
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    attachments_failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SyncAllResult:
    accounts: int = 0
    succeeded: int = 0
    failed: int = 0
    busy: int = 0
    synced: int = 0
    skipped: int = 0
    errors: dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def build_query(after_epoch: int, extra: str | None = None) -> str:
    parts = [f"after:{after_epoch}"]
    base = (settings.GMAIL_QUERY_BASE or "").strip()
    if base:
        parts.append(base)
    if extra and extra.strip():
        parts.append(extra.strip())
    return " ".join(parts)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MailboxSyncEngine:
    """Pulls new provider messages for one account into the emails table.

    First sync (no stored messages) walks every page of the lookback window.
    Later syncs fetch a single page of mail newer than the latest stored
    message, so a scheduled run stays cheap.
    """

    def __init__(
        self,
        db: Session,
        *,
        vault: TokenVault | None = None,
        client_factory: Callable[[str], GmailClient] = GmailClient,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.vault = vault or TokenVault(db)
        self.client_factory = client_factory
        self.now = now

    def _latest_internal_ms(self, account: MailAccount) -> int | None:
        return self.db.execute(
            select(func.max(Email.internal_date_ms)).where(Email.mail_account_id == account.id)
        ).scalar_one_or_none()

    def _existing_ids(self, account: MailAccount, message_ids: list[str]) -> set[str]:
        found: set[str] = set()
        for i in range(0, len(message_ids), EXISTING_LOOKUP_CHUNK):
            chunk = message_ids[i : i + EXISTING_LOOKUP_CHUNK]
            rows = self.db.execute(
                select(Email.message_id).where(Email.mail_account_id == account.id, Email.message_id.in_(chunk))
            ).scalars()
            found.update(rows)
        return found

    async def _list_ids(self, client: GmailClient, query: str, *, page_size: int, paginate: bool) -> list[str]:
        ids: list[str] = []
        seen: set[str] = set()
        page_token: str | None = None
        seen_tokens: set[str] = set()
        pages = 0
        while True:
            resp = await client.list_messages(query, page_token=page_token, max_results=page_size)
            pages += 1
            for m in resp.get("messages") or []:
                mid = m.get("id")
                if mid and mid not in seen:
                    seen.add(mid)
                    ids.append(mid)

            if not paginate:
                break
            page_token = resp.get("nextPageToken")
            if not page_token:
                break
            if page_token in seen_tokens:
                logger.warning("gmail pagination stalled query=%s pages=%s", query, pages)
                break
            if pages >= settings.SYNC_MAX_PAGES:
                logger.warning("gmail pagination hit page cap query=%s pages=%s", query, pages)
                break
            seen_tokens.add(page_token)
        return ids

    async def _save_attachment(self, client: GmailClient, email: Email, att: AttachmentDescriptor) -> None:
        data = att.data
        if data is None:
            data = await client.get_attachment(email.message_id, att.attachment_id)
        self.db.add(
            EmailAttachment(
                email_id=email.id,
                attachment_id=att.attachment_id,
                filename=att.filename or "unknown",
                mime_type=att.mime_type,
                size=att.size or len(data),
                content_id=att.content_id,
                is_inline=att.is_inline,
                data=data,
            )
        )
        self.db.commit()

    async def _fetch_and_save(self, client: GmailClient, account: MailAccount, message_id: str, result: SyncResult) -> None:
        try:
            raw = await client.get_message(message_id, format="full")
            parsed = parse_message(raw)
            email = Email(
                user_id=account.user_id,
                mail_account_id=account.id,
                message_id=parsed.message_id,
                thread_id=parsed.thread_id,
                from_address=parsed.from_address,
                to_address=parsed.to_address,
                cc_address=parsed.cc_address,
                subject=parsed.subject,
                body=parsed.text_body,
                html_body=parsed.html_body,
                search_text=parsed.search_text,
                snippet=parsed.snippet,
                label_ids=parsed.label_ids,
                internal_date_ms=parsed.internal_date_ms,
                received_at=parsed.received_at,
                is_read=parsed.is_read,
                has_attachments=bool(parsed.attachments),
                has_images=bool(parsed.inline_images),
            )
            self.db.add(email)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            result.failed += 1
            logger.warning("sync message failed account_id=%s message_id=%s error=%s", account.id, message_id, e)
            return

        result.synced += 1
        # attachments are best effort; the message row stays either way
        for att in parsed.all_attachments:
            try:
                await self._save_attachment(client, email, att)
            except Exception as e:
                self.db.rollback()
                result.attachments_failed += 1
                logger.warning(
                    "sync attachment failed message_id=%s attachment=%s error=%s", message_id, att.filename, e
                )

    def _naive_now(self) -> datetime:
        return self.now().astimezone(timezone.utc).replace(tzinfo=None)

    def _claim(self, account: MailAccount) -> bool:
        """Atomically take the account's sync slot. A claim older than SYNC_CLAIM_STALE_SECONDS is taken over."""
        started = self._naive_now()
        stale_before = started - timedelta(seconds=settings.SYNC_CLAIM_STALE_SECONDS)
        res = self.db.execute(
            update(MailAccount)
            .where(
                MailAccount.id == account.id,
                or_(MailAccount.sync_started_at.is_(None), MailAccount.sync_started_at < stale_before),
            )
            .values(sync_started_at=started)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return res.rowcount == 1

    def _release(self, account: MailAccount) -> None:
        self.db.execute(
            update(MailAccount)
            .where(MailAccount.id == account.id)
            .values(sync_started_at=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    async def sync_account(self, account: MailAccount, *, max_results: int | None = None, query: str | None = None) -> SyncResult:
        if not self._claim(account):
            logger.info("sync_account busy account_id=%s", account.id)
            raise SyncInProgressError(f"Sync already running for {account.email}", account_id=account.id)
        try:
            return await self._sync_claimed(account, max_results=max_results, query=query)
        finally:
            self._release(account)

    async def _sync_claimed(self, account: MailAccount, *, max_results: int | None, query: str | None) -> SyncResult:
        logger.info("sync_account start account_id=%s email=%s", account.id, account.email)
        access_token = await self.vault.get_valid_access_token(account)

        latest_ms = self._latest_internal_ms(account)
        if latest_ms is None:
            since = self.now() - relativedelta(months=settings.SYNC_LOOKBACK_MONTHS)
            after = int(since.timestamp())
            page_size, paginate = settings.SYNC_FIRST_PAGE_SIZE, True
        else:
            # +2s: Gmail's after: is inclusive at second granularity
            after = latest_ms // 1000 + 2
            page_size, paginate = max_results or settings.SYNC_INCREMENTAL_PAGE_SIZE, False
        q = build_query(after, query)

        result = SyncResult()
        client = self.client_factory(access_token)
        try:
            ids = await self._list_ids(client, q, page_size=page_size, paginate=paginate)
            if ids:
                existing = self._existing_ids(account, ids)
                result.skipped = len(existing)
                for mid in ids:
                    if mid in existing:
                        continue
                    await self._fetch_and_save(client, account, mid, result)
        except Exception as e:
            self.db.rollback()
            account.last_sync_error = str(e)[:1000]
            self.db.commit()
            logger.exception("sync_account failed account_id=%s", account.id)
            raise
        finally:
            await client.aclose()

        account.last_sync_at = self._naive_now()
        account.last_sync_error = None
        if ids:
            self.db.add(AuditLog(user_id=account.user_id, action="mail_sync", meta={"account_id": account.id, "query": q, **result.to_dict()}))
        self.db.commit()
        logger.info(
            "sync_account done account_id=%s first_sync=%s listed=%s synced=%s skipped=%s failed=%s",
            account.id,
            latest_ms is None,
            len(ids),
            result.synced,
            result.skipped,
            result.failed,
        )
        return result

    async def sync_all(self, *, max_results: int | None = None) -> SyncAllResult:
        accounts = self.db.execute(
            select(MailAccount).where(MailAccount.is_active.is_(True), MailAccount.needs_reauth.is_(False))
        ).scalars().all()

        summary = SyncAllResult(accounts=len(accounts))
        for account in accounts:
            try:
                r = await self.sync_account(account, max_results=max_results)
            except SyncInProgressError:
                summary.busy += 1
                continue
            except Exception as e:
                summary.failed += 1
                summary.errors[account.id] = str(e)
                logger.warning("sync_all account failed account_id=%s error=%s", account.id, e)
                continue
            summary.succeeded += 1
            summary.synced += r.synced
            summary.skipped += r.skipped
        logger.info(
            "sync_all done accounts=%s succeeded=%s failed=%s busy=%s synced=%s",
            summary.accounts,
            summary.succeeded,
            summary.failed,
            summary.busy,
            summary.synced,
        )
        return summary
